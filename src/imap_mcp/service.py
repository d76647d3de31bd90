"""
IMAP Account Service
====================

Per-account operations on top of IMAPClient.

Ephemeral operations (test_connection, fetch_inbox_messages, mark_as_read,
trash_message, list_mailboxes) open their own session and close it on every
exit path. Persistent sessions live in a registry keyed by account email.

INVARIANTS ENFORCED:
- Messages are only flagged \\Deleted; EXPUNGE is never sent
- No retries; the caller decides what to do with an error
- Credentials are passed per call and not kept by ephemeral operations
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from typing import Iterable, Iterator

from contracts import (
    ConnectionStatus,
    IMAPEngineError,
    MailboxEntry,
    NotConnectedError,
    ParsedMessage,
)
from imap_mcp.credentials import Credentials
from imap_mcp.ids import message_id, uid_from_message_id
from imap_mcp.imap_client import DELETED, SEEN, IMAPClient, TransportFactory
from imap_mcp.settings import Settings

logger = logging.getLogger(__name__)

INBOX = "INBOX"


class IMAPService:
    """
    Account-level IMAP operations.

    Implements ConnectionTestContract, FetchInboxContract, FlagUpdateContract,
    RegistryContract and MessageIdContract.
    """

    message_id = staticmethod(message_id)
    uid_from_message_id = staticmethod(uid_from_message_id)

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self._transport_factory = transport_factory
        self._sessions: dict[str, IMAPClient] = {}
        self._lock = threading.Lock()

    def new_client(self, host: str, port: int | None = None) -> IMAPClient:
        return IMAPClient(
            host,
            port or self.settings.default_port,
            settings=self.settings,
            transport_factory=self._transport_factory,
        )

    @contextmanager
    def session(self, host: str, port: int, email: str, password: str) -> Iterator[IMAPClient]:
        """Connected, logged-in session that is always disconnected on exit."""
        client = self.new_client(host, port)
        try:
            client.connect()
            client.login(email, password)
            yield client
        finally:
            client.disconnect()

    # =========================================================================
    # EPHEMERAL OPERATIONS
    # =========================================================================

    def test_connection(self, host: str, port: int, email: str, password: str) -> None:
        """Connect and log in, then disconnect. Raises on any failure."""
        with self.session(host, port, email, password):
            logger.info(f"Connection test to {host} succeeded")

    def fetch_inbox_messages(
        self,
        email: str,
        host: str,
        port: int,
        password: str,
        max_messages: int | None = None,
    ) -> list[ParsedMessage]:
        """
        Fetch the newest messages in INBOX without marking them read.

        Only the last ``max_messages`` UIDs returned by ``UID SEARCH ALL`` are
        fetched. The result is ordered by UID.
        """
        limit = self.settings.max_messages if max_messages is None else max_messages
        if limit < 1:
            raise ValueError(f"max_messages must be at least 1, got {limit}")

        with self.session(host, port, email, password) as client:
            client.select_mailbox(INBOX)
            uids = client.uid_search("ALL")
            messages = client.uid_fetch(uids[-limit:])

        logger.info(f"Fetched {len(messages)} messages from {host}")
        return sorted(messages, key=lambda message: message.uid)

    def mark_as_read(self, email: str, host: str, port: int, password: str, uid: int) -> None:
        self._store_flags(email, host, port, password, uid, SEEN)

    def trash_message(self, email: str, host: str, port: int, password: str, uid: int) -> None:
        """Flag a message \\Deleted. The server decides when it is expunged."""
        self._store_flags(email, host, port, password, uid, DELETED)

    def list_mailboxes(self, email: str, host: str, port: int, password: str) -> list[MailboxEntry]:
        with self.session(host, port, email, password) as client:
            return client.list_mailboxes()

    def _store_flags(
        self, email: str, host: str, port: int, password: str, uid: int, flags: str
    ) -> None:
        with self.session(host, port, email, password) as client:
            client.select_mailbox(INBOX)
            client.uid_store(uid, flags)
        logger.info(f"Stored {flags} on UID {uid} at {host}")

    def fetch_all_inboxes(
        self, accounts: Iterable[Credentials], max_messages: int | None = None
    ) -> dict[str, list[ParsedMessage] | IMAPEngineError]:
        """
        Fetch several inboxes in parallel, one session per account.

        Each account maps to its messages or to the error that stopped it.
        """
        accounts = list(accounts)
        if not accounts:
            return {}

        results: dict[str, list[ParsedMessage] | IMAPEngineError] = {}
        workers = max(1, min(self.settings.max_workers, len(accounts)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(
                    self.fetch_inbox_messages,
                    account.email,
                    account.host,
                    account.port,
                    account.password,
                    max_messages,
                ): account.email
                for account in accounts
            }
            for future in as_completed(futures):
                email = futures[future]
                try:
                    results[email] = future.result()
                except IMAPEngineError as e:
                    logger.warning(f"Inbox fetch failed for {email}: {e.code}")
                    results[email] = e
        return results

    # =========================================================================
    # CONNECTION REGISTRY
    # =========================================================================

    def connect(self, email: str, host: str, port: int, password: str) -> IMAPClient:
        """
        Open a logged-in session and register it under ``email``.

        A session already registered for the account is replaced and closed.
        A session that fails to log in is closed and never registered.
        """
        client = self.new_client(host, port)
        try:
            client.connect()
            client.login(email, password)
        except IMAPEngineError:
            client.disconnect()
            raise

        with self._lock:
            previous = self._sessions.get(email)
            self._sessions[email] = client

        if previous is not None and previous is not client:
            previous.disconnect()
        logger.info(f"Registered session for {host}")
        return client

    def get_session(self, email: str) -> IMAPClient | None:
        with self._lock:
            return self._sessions.get(email)

    def disconnect(self, email: str) -> None:
        with self._lock:
            client = self._sessions.pop(email, None)
        if client is not None:
            client.disconnect()

    def disconnect_all(self) -> None:
        with self._lock:
            clients = list(self._sessions.values())
            self._sessions.clear()
        for client in clients:
            client.disconnect()

    def connected_accounts(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def status(self, email: str) -> ConnectionStatus:
        client = self.get_session(email)
        if client is None:
            raise NotConnectedError(f"no registered session for {email}")
        return client.status()
