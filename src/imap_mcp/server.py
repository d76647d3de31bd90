"""
IMAP MCP Server
===============

MCP server exposing the IMAP account service as tools.

Every tool takes an ``account`` email; credentials are looked up per call
through the credential provider and are never returned or logged.

INVARIANTS ENFORCED:
- INV-GLOBAL-02: No send/reply/forward tools exist
- INV-GLOBAL-03: Trash only flags \\Deleted; no expunge tool exists
- INV-GLOBAL-05: No logging of message bodies, subjects or passwords
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from contracts import IMAPEngineError
from imap_mcp.credentials import Credentials, retrieve_credentials
from imap_mcp.ids import message_id, uid_from_message_id
from imap_mcp.service import IMAPService

# Configure logging to NEVER include message content (INV-GLOBAL-05)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("imap-mcp")

CredentialProvider = Callable[[str], Credentials]

ACCOUNT_SCHEMA = {
    "type": "string",
    "description": "Account email address",
}

MESSAGE_REF_PROPERTIES = {
    "account": ACCOUNT_SCHEMA,
    "uid": {
        "type": "integer",
        "description": "Message UID in INBOX",
        "minimum": 1,
    },
    "message_id": {
        "type": "string",
        "description": "Message id as returned by imap_fetch_inbox (imap-<uid>-<email>)",
    },
}


class IMAPMCPServer:
    """
    IMAP MCP Server - inbox access for AI agents.

    This class intentionally does NOT implement:
    - send, reply, forward, compose (INV-GLOBAL-02)
    - expunge or permanent delete (INV-GLOBAL-03)
    """

    def __init__(
        self,
        service: IMAPService | None = None,
        credential_provider: CredentialProvider | None = None,
    ) -> None:
        self._service = service or IMAPService()
        self._credential_provider = credential_provider or retrieve_credentials
        self._server = Server("imap-mcp")
        self._setup_tools()

    @property
    def service(self) -> IMAPService:
        return self._service

    def _setup_tools(self) -> None:
        """Register MCP tools."""

        @self._server.list_tools()
        async def list_tools() -> list[Tool]:
            return [
                Tool(
                    name="imap_test_connection",
                    description="Check that the account's server accepts its credentials",
                    inputSchema={
                        "type": "object",
                        "properties": {"account": ACCOUNT_SCHEMA},
                        "required": ["account"],
                    },
                ),
                Tool(
                    name="imap_fetch_inbox",
                    description="Fetch the newest INBOX messages without marking them read",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "account": ACCOUNT_SCHEMA,
                            "max_messages": {
                                "type": "integer",
                                "description": "Maximum messages to return (default 50)",
                                "minimum": 1,
                            },
                        },
                        "required": ["account"],
                    },
                ),
                Tool(
                    name="imap_mark_read",
                    description="Mark an INBOX message as read (set \\Seen flag)",
                    inputSchema={
                        "type": "object",
                        "properties": MESSAGE_REF_PROPERTIES,
                        "required": ["account"],
                    },
                ),
                Tool(
                    name="imap_trash",
                    description="Flag an INBOX message \\Deleted (no expunge)",
                    inputSchema={
                        "type": "object",
                        "properties": MESSAGE_REF_PROPERTIES,
                        "required": ["account"],
                    },
                ),
                Tool(
                    name="imap_list_mailboxes",
                    description="List all mailboxes on the account's server",
                    inputSchema={
                        "type": "object",
                        "properties": {"account": ACCOUNT_SCHEMA},
                        "required": ["account"],
                    },
                ),
                Tool(
                    name="imap_connect",
                    description="Open and keep a logged-in session for the account",
                    inputSchema={
                        "type": "object",
                        "properties": {"account": ACCOUNT_SCHEMA},
                        "required": ["account"],
                    },
                ),
                Tool(
                    name="imap_disconnect",
                    description="Close the account's kept session",
                    inputSchema={
                        "type": "object",
                        "properties": {"account": ACCOUNT_SCHEMA},
                        "required": ["account"],
                    },
                ),
                Tool(
                    name="imap_status",
                    description="Status of kept sessions (one account, or all)",
                    inputSchema={
                        "type": "object",
                        "properties": {"account": ACCOUNT_SCHEMA},
                    },
                ),
            ]

        @self._server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            handler = self._handlers().get(name)
            if handler is None:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]
            try:
                # IMAP calls block; keep them off the event loop
                result = await asyncio.to_thread(handler, **(arguments or {}))
                return [TextContent(type="text", text=self._serialize_result(result))]
            except (IMAPEngineError, ValueError) as e:
                return [TextContent(type="text", text=f"Error: {e.__class__.__name__}: {e}")]

    def _handlers(self) -> dict[str, Callable[..., Any]]:
        return {
            "imap_test_connection": self.imap_test_connection,
            "imap_fetch_inbox": self.imap_fetch_inbox,
            "imap_mark_read": self.imap_mark_read,
            "imap_trash": self.imap_trash,
            "imap_list_mailboxes": self.imap_list_mailboxes,
            "imap_connect": self.imap_connect,
            "imap_disconnect": self.imap_disconnect,
            "imap_status": self.imap_status,
        }

    def _credentials(self, account: str) -> Credentials:
        return self._credential_provider(account)

    def imap_test_connection(self, *, account: str) -> dict:
        """
        Implements ConnectionTestContract.
        INV-TESTCONN-01: Session closed on every outcome.
        """
        creds = self._credentials(account)
        self._service.test_connection(creds.host, creds.port, creds.email, creds.password)
        logger.info(f"Connection test passed for {creds.host}")
        return {"ok": True, "account": creds.email, "host": creds.host, "port": creds.port}

    def imap_fetch_inbox(self, *, account: str, max_messages: int | None = None) -> dict:
        """
        Implements FetchInboxContract.
        INV-FETCHINBOX-02: Does NOT mark messages as read.
        """
        creds = self._credentials(account)
        # Log operation but NEVER log message content (INV-GLOBAL-05)
        logger.info(f"Fetching INBOX from {creds.host} with max_messages={max_messages}")
        messages = self._service.fetch_inbox_messages(
            creds.email, creds.host, creds.port, creds.password, max_messages
        )
        return {
            "account": creds.email,
            "messages": [
                {"id": message_id(message.uid, creds.email), **asdict(message)}
                for message in messages
            ],
        }

    def imap_mark_read(
        self, *, account: str, uid: int | None = None, message_id: str | None = None
    ) -> dict:
        """Implements FlagUpdateContract (POST-FLAGS-01)."""
        creds = self._credentials(account)
        target = _resolve_uid(uid, message_id)
        self._service.mark_as_read(creds.email, creds.host, creds.port, creds.password, target)
        return {"account": creds.email, "uid": target, "flag": "\\Seen"}

    def imap_trash(
        self, *, account: str, uid: int | None = None, message_id: str | None = None
    ) -> dict:
        """
        Implements FlagUpdateContract (POST-FLAGS-02).
        INV-FLAGS-02: EXPUNGE is never sent.
        """
        creds = self._credentials(account)
        target = _resolve_uid(uid, message_id)
        self._service.trash_message(creds.email, creds.host, creds.port, creds.password, target)
        return {"account": creds.email, "uid": target, "flag": "\\Deleted"}

    def imap_list_mailboxes(self, *, account: str) -> dict:
        session = self._service.get_session(account)
        if session is not None and session.connected:
            mailboxes = session.list_mailboxes()
        else:
            creds = self._credentials(account)
            mailboxes = self._service.list_mailboxes(
                creds.email, creds.host, creds.port, creds.password
            )
        return {"account": account, "mailboxes": mailboxes}

    def imap_connect(self, *, account: str) -> dict:
        """Implements RegistryContract (POST-REGISTRY-01)."""
        creds = self._credentials(account)
        client = self._service.connect(creds.email, creds.host, creds.port, creds.password)
        return {"account": creds.email, "status": client.status()}

    def imap_disconnect(self, *, account: str) -> dict:
        """Implements RegistryContract (POST-REGISTRY-02)."""
        self._service.disconnect(account)
        return {"account": account, "disconnected": True}

    def imap_status(self, *, account: str | None = None) -> dict:
        """
        Status of sessions kept by imap_connect. With ``account``, raises
        NotConnectedError when that account has no kept session.
        """
        if account is not None:
            return {"sessions": [self._service.status(account)]}
        return {
            "sessions": [
                self._service.status(email) for email in self._service.connected_accounts()
            ]
        }

    def shutdown(self) -> None:
        self._service.disconnect_all()

    def _serialize_result(self, result: Any) -> str:
        """Serialize result to JSON string."""

        def default_serializer(obj: Any) -> Any:
            if hasattr(obj, "__dataclass_fields__"):
                return asdict(obj)
            if isinstance(obj, datetime):
                return obj.isoformat()
            if hasattr(obj, "value"):  # Enum
                return obj.value
            raise TypeError(f"Cannot serialize {type(obj)}")

        return json.dumps(result, default=default_serializer, indent=2)

    async def run(self) -> None:
        """Run the MCP server."""
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self._server.run(
                    read_stream, write_stream, self._server.create_initialization_options()
                )
        finally:
            self.shutdown()


def _resolve_uid(uid: int | None, message_id: str | None) -> int:
    if uid is not None:
        return int(uid)
    if message_id is None:
        raise ValueError("either uid or message_id is required")
    resolved = uid_from_message_id(message_id)
    if resolved is None:
        raise ValueError(f"not an IMAP message id: {message_id}")
    return resolved


# Singleton for process lifetime
_server_instance: IMAPMCPServer | None = None


def get_server() -> IMAPMCPServer:
    """Get or create the server singleton."""
    global _server_instance
    if _server_instance is None:
        _server_instance = IMAPMCPServer()
    return _server_instance


def create_server(
    service: IMAPService | None = None,
    credential_provider: CredentialProvider | None = None,
) -> IMAPMCPServer:
    """Create a new server instance (for testing)."""
    return IMAPMCPServer(service=service, credential_provider=credential_provider)
