"""
Engine Settings
===============

Tunables for the IMAP engine. Held in memory only; there is no config file and
nothing is read from environment variables.
"""

from dataclasses import dataclass

DEFAULT_IMAP_PORT = 993

# Items requested for every inbox fetch. BODY.PEEK keeps \Seen untouched.
DEFAULT_FETCH_ITEMS = "(UID FLAGS ENVELOPE BODY.PEEK[TEXT]<0.256> BODYSTRUCTURE)"


@dataclass(frozen=True)
class Settings:
    """Timeouts and limits shared by sessions and the account service."""

    command_timeout: float = 30.0
    connect_timeout: float = 15.0
    logout_grace: float = 0.5
    default_port: int = DEFAULT_IMAP_PORT
    max_messages: int = 50
    max_workers: int = 4
    fetch_items: str = DEFAULT_FETCH_ITEMS
