"""
Credentials Management
======================

Account credentials are owned by an external store. The engine receives them
per call and never writes them anywhere. For the MCP surface they are looked
up through the biosecret CLI; tests replace the provider.
"""

import json
import subprocess
from dataclasses import dataclass, field

from contracts import (
    CredentialsDeniedError,
    CredentialsNotFoundError,
)
from imap_mcp.settings import DEFAULT_IMAP_PORT

KEY_PREFIX = "imap-mcp"

# Well-known providers whose IMAP host is not simply imap.<domain>.
KNOWN_SERVERS = {
    "gmail.com": "imap.gmail.com",
    "googlemail.com": "imap.gmail.com",
    "outlook.com": "outlook.office365.com",
    "hotmail.com": "outlook.office365.com",
    "live.com": "outlook.office365.com",
    "yahoo.com": "imap.mail.yahoo.com",
    "icloud.com": "imap.mail.me.com",
    "me.com": "imap.mail.me.com",
    "mac.com": "imap.mail.me.com",
    "aol.com": "imap.aol.com",
}


@dataclass(frozen=True)
class Credentials:
    """IMAP account credentials held in memory only."""

    email: str
    password: str = field(repr=False)
    host: str
    port: int = DEFAULT_IMAP_PORT


def guess_imap_host(email: str) -> str | None:
    """Best guess at the IMAP server for an address, or None without a domain."""
    _, at, domain = email.rpartition("@")
    domain = domain.strip().lower()
    if not at or not domain:
        return None
    return KNOWN_SERVERS.get(domain, f"imap.{domain}")


def retrieve_credentials(account: str) -> Credentials:
    """
    Retrieve credentials via biosecret CLI.

    PRE: biosecret CLI is available in PATH
    PRE: User has stored a JSON record under key "imap-mcp/{account}" with
         "password" and optionally "host" and "port"

    POST: Returns Credentials on success; host falls back to guess_imap_host

    ERRORS:
    - CredentialsDeniedError: User cancelled biometric prompt
    - CredentialsNotFoundError: No usable credentials under expected key
    """
    try:
        result = subprocess.run(
            ["biosecret", "get", f"{KEY_PREFIX}/{account}"],
            capture_output=True,
            text=True,
            timeout=30,
        )

        if result.returncode != 0:
            stderr = result.stderr.lower() if result.stderr else ""
            if "cancel" in stderr or "denied" in stderr:
                raise CredentialsDeniedError("User cancelled biometric authentication")
            raise CredentialsNotFoundError(f"No credentials found for {account}")

        data = json.loads(result.stdout)
        host = data.get("host") or guess_imap_host(account)
        if not host or "password" not in data:
            raise CredentialsNotFoundError(f"Incomplete credentials for {account}")
        return Credentials(
            email=data.get("email", account),
            password=data["password"],
            host=host,
            port=int(data.get("port", DEFAULT_IMAP_PORT)),
        )
    except subprocess.TimeoutExpired as e:
        raise CredentialsDeniedError("Biometric authentication timed out") from e
    except (json.JSONDecodeError, ValueError) as e:
        raise CredentialsNotFoundError("Invalid credential format") from e
    except FileNotFoundError as e:
        raise CredentialsNotFoundError("biosecret CLI not found in PATH") from e
