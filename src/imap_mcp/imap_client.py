"""
IMAP Session
============

One IMAP4rev1 session over one TLS connection, built on the command channel.

Verbs run strictly one after another; a session must only be used from one
thread at a time. A timeout or socket failure closes the session: it is never
reused for another command.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable

from contracts import (
    AuthFailedError,
    CommandFailedError,
    CommandTimeoutError,
    ConnectionFailedError,
    ConnectionStatus,
    FolderNotFoundError,
    IMAPEngineError,
    MailboxEntry,
    MailboxInfo,
    NotConnectedError,
    ParsedMessage,
    SessionState,
)
from imap_mcp.parser import (
    parse_fetch_response,
    parse_list_response,
    parse_search_response,
    parse_select_response,
)
from imap_mcp.protocol import CommandChannel, CommandResult
from imap_mcp.settings import DEFAULT_IMAP_PORT, Settings
from imap_mcp.transport import Transport

logger = logging.getLogger(__name__)

SEEN = "+FLAGS (\\Seen)"
DELETED = "+FLAGS (\\Deleted)"

TransportFactory = Callable[[str, int, float], Transport]


def tls_transport(host: str, port: int, connect_timeout: float) -> Transport:
    return Transport(host, port, connect_timeout=connect_timeout)


def quote_string(value: str) -> str:
    """IMAP quoted string with backslashes and double quotes escaped."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class IMAPClient:
    """
    IMAP session verbs.

    Implements SessionContract: connect, login, select_mailbox, uid_search,
    uid_fetch, uid_store, list_mailboxes, disconnect.

    Verbs called from several threads are serialised on the session lock, so
    a kept session never has two commands on the wire.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_IMAP_PORT,
        *,
        settings: Settings | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.settings = settings or Settings()
        self.greeting = ""
        self._transport_factory = transport_factory or tls_transport
        self._transport: Transport | None = None
        self._channel: CommandChannel | None = None
        self._state = SessionState.DISCONNECTED
        self._mailbox: str | None = None
        self._username = ""
        self._start_time: datetime | None = None
        self._lock = threading.RLock()

    def __enter__(self) -> IMAPClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.disconnect()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def mailbox(self) -> str | None:
        return self._mailbox

    @property
    def connected(self) -> bool:
        return (
            self._channel is not None
            and not self._channel.poisoned
            and self._state in (SessionState.READY, SessionState.MAILBOX_SELECTED)
        )

    @property
    def channel(self) -> CommandChannel | None:
        return self._channel

    def connect(self) -> str:
        """Open TLS and wait for the untagged greeting. Returns the greeting line."""
        with self._lock:
            return self._connect()

    def _connect(self) -> str:
        if self.connected:
            return self.greeting
        if self._state is not SessionState.DISCONNECTED:
            raise NotConnectedError(f"session to {self.host} is {self._state.value}")

        self._state = SessionState.CONNECTING
        transport = self._transport_factory(self.host, self.port, self.settings.connect_timeout)
        try:
            transport.open()
            channel = CommandChannel(transport, timeout=self.settings.command_timeout)
            greeting = channel.read_greeting(self.settings.connect_timeout)
        except IMAPEngineError:
            transport.close()
            self._state = SessionState.CLOSED
            raise

        self._transport = transport
        self._channel = channel
        self._state = SessionState.READY
        self._start_time = datetime.now()
        self.greeting = greeting
        logger.info(f"Connected to {self.host}:{self.port}")
        return greeting

    def login(self, username: str, password: str) -> None:
        with self._lock:
            try:
                self._execute(f"LOGIN {quote_string(username)} {quote_string(password)}")
            except CommandFailedError as e:
                raise AuthFailedError(e.detail) from e
            self._username = username
        logger.info(f"Logged in to {self.host}")  # No credentials logged

    def select_mailbox(self, name: str) -> MailboxInfo:
        with self._lock:
            try:
                result = self._execute(f"SELECT {quote_string(name)}")
            except CommandFailedError as e:
                raise FolderNotFoundError(e.detail) from e
            self._state = SessionState.MAILBOX_SELECTED
            self._mailbox = name
        return parse_select_response(name, result.body, result.completion)

    def uid_search(self, criteria: str = "ALL") -> list[int]:
        result = self._execute(f"UID SEARCH {criteria}")
        return parse_search_response(result.body)

    def uid_fetch(self, uids: Iterable[int], items: str | None = None) -> list[ParsedMessage]:
        uids = list(uids)
        if not uids:
            return []
        uid_set = ",".join(str(uid) for uid in uids)
        result = self._execute(f"UID FETCH {uid_set} {items or self.settings.fetch_items}")
        messages = parse_fetch_response(result.body)
        # Log counts only, never subjects or previews
        logger.debug(f"Fetched {len(messages)} of {len(uids)} requested messages")
        return messages

    def uid_store(self, uid: int, flags: str) -> None:
        self._execute(f"UID STORE {uid} {flags}")

    def list_mailboxes(self) -> list[MailboxEntry]:
        result = self._execute('LIST "" "*"')
        return parse_list_response(result.body)

    def disconnect(self) -> None:
        """Best-effort LOGOUT, then close. Never raises."""
        with self._lock:
            channel = self._channel
            try:
                if channel is not None and not channel.poisoned and self._transport is not None:
                    tag = channel.send_untracked("LOGOUT")
                    channel.wait_for_tag(tag, self.settings.logout_grace)
            except IMAPEngineError as e:
                logger.debug(f"LOGOUT to {self.host} did not complete: {e}")
            finally:
                self._close()

    def status(self) -> ConnectionStatus:
        uptime = 0
        if self._start_time and self.connected:
            uptime = int((datetime.now() - self._start_time).total_seconds())
        return ConnectionStatus(
            email=self._username,
            host=self.host,
            state=self._state,
            mailbox=self._mailbox,
            uptime_seconds=uptime,
        )

    def _execute(self, text: str) -> CommandResult:
        with self._lock:
            channel = self._require_connection()
            try:
                return channel.send(text)
            except (CommandTimeoutError, ConnectionFailedError):
                self._close()
                raise

    def _require_connection(self) -> CommandChannel:
        """Ensure connected, raise NotConnectedError if not."""
        if self._channel is not None and self._channel.poisoned:
            self._close()
        if not self.connected:
            raise NotConnectedError(f"no open session to {self.host}")
        return self._channel

    def _close(self) -> None:
        transport, self._transport = self._transport, None
        self._channel = None
        self._mailbox = None
        if transport is not None:
            transport.close()
            logger.info(f"Disconnected from {self.host}")
        self._state = SessionState.CLOSED
