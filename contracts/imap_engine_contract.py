"""
IMAP Engine Contract
====================

Hand-rolled IMAP4rev1 client engine: TLS socket, tagged commands, line framing,
response parsing, and a per-account service layer exposed over MCP.

This contract defines the required behavior of all public interfaces.
Implementation SHALL perform ONLY declared behaviors.

AUTHORITY: This file is the SINGLE authoritative source for engine behavior.
Import from the ``contracts`` package index, not from this module directly.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, runtime_checkable


# =============================================================================
# DOMAIN TYPES
# =============================================================================

class SessionState(Enum):
    """Lifecycle of one IMAP session."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    MAILBOX_SELECTED = "mailbox_selected"
    CLOSED = "closed"


@dataclass(frozen=True)
class ParsedMessage:
    """Summary of one message extracted from a UID FETCH response."""
    uid: int
    subject: str
    from_name: str
    from_email: str
    date: datetime | None
    preview_text: str
    is_read: bool
    has_calendar_invite: bool


@dataclass(frozen=True)
class MailboxInfo:
    """State reported by the server when a mailbox is selected."""
    name: str
    exists: int = 0
    recent: int = 0
    uidvalidity: int = 0
    uidnext: int = 0
    read_only: bool = False


@dataclass(frozen=True)
class MailboxEntry:
    """One entry of a LIST response."""
    name: str
    delimiter: str | None
    flags: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConnectionStatus:
    """Current state of a registered session."""
    email: str
    host: str
    state: SessionState
    mailbox: str | None
    uptime_seconds: int


# =============================================================================
# ERROR TYPES
# =============================================================================

class IMAPEngineError(Exception):
    """Base error for all engine operations."""
    code: str = "IMAP_ERROR"
    prefix: str = "IMAP error"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(f"{self.prefix}: {detail}" if detail else self.prefix)


class ConnectionFailedError(IMAPEngineError):
    """
    ERRORS-TRANSPORT-01: TLS/TCP setup failed or the socket failed mid-operation.

    RECOVERY: Terminal for the operation. Caller decides whether to retry.
    """
    code = "CONNECTION_FAILED"
    prefix = "Connection failed"


class CommandTimeoutError(IMAPEngineError):
    """
    ERRORS-CHANNEL-01: Deadline elapsed awaiting the tagged response.

    RECOVERY: The session is closed. Caller must open a new one.
    """
    code = "TIMEOUT"
    prefix = "Command timed out"


class CommandFailedError(IMAPEngineError):
    """
    ERRORS-CHANNEL-02: Server answered the command with a tagged NO.

    RECOVERY: Session remains usable.
    """
    code = "COMMAND_FAILED"
    prefix = "Command failed"


class AuthFailedError(CommandFailedError):
    """
    ERRORS-SESSION-01: LOGIN rejected by the server.

    RECOVERY: Caller must obtain corrected credentials.
    """
    code = "AUTH_FAILED"
    prefix = "Authentication failed"


class FolderNotFoundError(CommandFailedError):
    """
    ERRORS-SESSION-02: SELECT rejected (mailbox missing or inaccessible).

    RECOVERY: Caller should list mailboxes for valid names.
    """
    code = "FOLDER_NOT_FOUND"
    prefix = "Mailbox not found"


class ProtocolError(IMAPEngineError):
    """
    ERRORS-CHANNEL-03: Tagged BAD, or a response with no recognised shape.

    RECOVERY: Session should be treated as suspect.
    """
    code = "PROTOCOL_ERROR"
    prefix = "Protocol error"


class NotConnectedError(IMAPEngineError):
    """
    ERRORS-SESSION-03: Verb invoked without a live connection.

    RECOVERY: Caller must connect first.
    """
    code = "NOT_CONNECTED"
    prefix = "Not connected to server"


class CredentialsDeniedError(IMAPEngineError):
    """
    ERRORS-CREDENTIALS-01: User cancelled the credential provider prompt.

    RECOVERY: Retry the tool call; the prompt is shown again.
    """
    code = "CREDENTIALS_DENIED"
    prefix = "Credential access denied"


class CredentialsNotFoundError(IMAPEngineError):
    """
    ERRORS-CREDENTIALS-02: No credentials stored for the requested account.

    RECOVERY: User must store credentials with the provider first.
    """
    code = "CREDENTIALS_NOT_FOUND"
    prefix = "Credentials not found"


# =============================================================================
# SESSION CONTRACT
# =============================================================================

@runtime_checkable
class SessionContract(Protocol):
    """
    IMAP session verbs (IMAPClient)

    SEQUENCE:
    1. connect() opens TLS and waits for the untagged greeting
    2. login() authenticates with plain LOGIN
    3. select_mailbox() selects a mailbox
    4. uid_search / uid_fetch / uid_store / list_mailboxes operate on it
    5. disconnect() sends LOGOUT and closes the transport

    PRE-SESSION-01: Verbs other than connect require a live connection
    PRE-SESSION-02: The caller uses one session from one thread at a time

    POST-SESSION-01: connect returns the greeting line; state is READY
    POST-SESSION-02: select_mailbox returns MailboxInfo; state is MAILBOX_SELECTED
    POST-SESSION-03: uid_fetch([]) returns [] without sending a command
    POST-SESSION-04: disconnect leaves the session CLOSED and never raises

    INV-SESSION-01 (Single Outstanding Command): a command is never written
                   before the previous command's tagged response or timeout
    INV-SESSION-02 (Tag Uniqueness): tags A001, A002, ... are never reused
    INV-SESSION-03 (No Reuse After Timeout): a timed out session is closed
    INV-SESSION-04 (Credential Redaction): LOGIN arguments never reach logs

    ERRORS:
    - CONNECTION_FAILED: TLS/TCP failure, server closed the socket
    - TIMEOUT: deadline elapsed awaiting a tagged response
    - COMMAND_FAILED / AUTH_FAILED / FOLDER_NOT_FOUND: tagged NO
    - PROTOCOL_ERROR: tagged BAD or unrecognised response
    - NOT_CONNECTED: verb without connection
    """

    def connect(self) -> str: ...

    def login(self, username: str, password: str) -> None: ...

    def select_mailbox(self, name: str) -> MailboxInfo: ...

    def uid_search(self, criteria: str) -> list[int]: ...

    def uid_fetch(self, uids: list[int]) -> list[ParsedMessage]: ...

    def uid_store(self, uid: int, flags: str) -> None: ...

    def list_mailboxes(self) -> list[MailboxEntry]: ...

    def disconnect(self) -> None: ...


# =============================================================================
# SERVICE CONTRACTS
# =============================================================================

@runtime_checkable
class ConnectionTestContract(Protocol):
    """
    Operation: test_connection

    PRE-TESTCONN-01: host, port, email, password supplied by the caller

    POST-TESTCONN-01: Returns None when greeting and LOGIN both succeed

    INV-TESTCONN-01 (Always Disconnect): session is closed on every outcome
    INV-TESTCONN-02 (Unregistered): session never enters the registry

    ERRORS:
    - CONNECTION_FAILED, TIMEOUT, AUTH_FAILED, PROTOCOL_ERROR
    """

    def test_connection(self, host: str, port: int, email: str, password: str) -> None: ...


@runtime_checkable
class FetchInboxContract(Protocol):
    """
    Operation: fetch_inbox_messages

    PRE-FETCHINBOX-01: max_messages >= 1

    POST-FETCHINBOX-01: Returns list of ParsedMessage
    POST-FETCHINBOX-02: len(result) <= max_messages
    POST-FETCHINBOX-03: Only the highest max_messages UIDs of SEARCH ALL are fetched
    POST-FETCHINBOX-04: Result ordered by uid ascending

    INV-FETCHINBOX-01 (Fresh Session): each call opens its own connection
    INV-FETCHINBOX-02 (Read-Only): BODY.PEEK is used; \\Seen is not set
    INV-FETCHINBOX-03 (Scoped Close): connection closed on success and failure
    INV-FETCHINBOX-04 (No Content Logging): subjects/previews never logged

    ERRORS:
    - CONNECTION_FAILED, TIMEOUT, AUTH_FAILED, FOLDER_NOT_FOUND, PROTOCOL_ERROR
    """

    def fetch_inbox_messages(
        self, email: str, host: str, port: int, password: str, max_messages: int = 50
    ) -> list[ParsedMessage]: ...


@runtime_checkable
class FlagUpdateContract(Protocol):
    """
    Operations: mark_as_read, trash_message

    PRE-FLAGS-01: uid is a UID in INBOX

    POST-FLAGS-01: mark_as_read issues UID STORE <uid> +FLAGS (\\Seen)
    POST-FLAGS-02: trash_message issues UID STORE <uid> +FLAGS (\\Deleted)

    INV-FLAGS-01 (Single Command): exactly one UID STORE per call
    INV-FLAGS-02 (No Expunge): trash only flags; EXPUNGE is never sent
    INV-FLAGS-03 (Scoped Close): connection closed on success and failure

    ERRORS:
    - CONNECTION_FAILED, TIMEOUT, AUTH_FAILED, FOLDER_NOT_FOUND,
      COMMAND_FAILED, PROTOCOL_ERROR
    """

    def mark_as_read(self, email: str, host: str, port: int, password: str, uid: int) -> None: ...

    def trash_message(self, email: str, host: str, port: int, password: str, uid: int) -> None: ...


@runtime_checkable
class RegistryContract(Protocol):
    """
    Operations: connect, disconnect, disconnect_all (persistent sessions)

    POST-REGISTRY-01: connect registers a logged-in session under the email
    POST-REGISTRY-02: disconnect removes and closes the session
    POST-REGISTRY-03: disconnect_all leaves the registry empty

    INV-REGISTRY-01 (Mutual Exclusion): map only touched under one lock
    INV-REGISTRY-02 (Replacement): reconnecting closes the previous session
    INV-REGISTRY-03 (Failed Login): a session that fails LOGIN is closed and
                    not registered
    """

    def connect(self, email: str, host: str, port: int, password: str): ...

    def disconnect(self, email: str) -> None: ...

    def disconnect_all(self) -> None: ...


@runtime_checkable
class MessageIdContract(Protocol):
    """
    Helpers: message_id, uid_from_message_id

    POST-MSGID-01: message_id(uid, email) == "imap-<uid>-<email>"
    POST-MSGID-02: uid_from_message_id(message_id(uid, email)) == uid

    INV-MSGID-01: wrong prefix, non-numeric or out of range uid -> None
    """


# =============================================================================
# GLOBAL INVARIANTS (Apply to ALL operations)
# =============================================================================

"""
INV-GLOBAL-01 (No Retry): The engine never retries; retry/backoff belongs to
             the caller.

INV-GLOBAL-02 (No Send): The engine has no SMTP capability.

INV-GLOBAL-03 (No Expunge): Messages are only flagged \\Deleted, never expunged.

INV-GLOBAL-04 (Credential Isolation): Credentials are supplied per call and
             not retained by ephemeral operations.

INV-GLOBAL-05 (No Content Logging): Message bodies, previews, subjects and
             passwords MUST NOT appear in logs.

INV-GLOBAL-06 (TLS Only): There is no plaintext transport.
"""


# =============================================================================
# TEST CASE INDEX (Traceability)
# =============================================================================

TEST_CASES = {
    # Session tests
    "test_connect_reads_greeting": {
        "contract": "SessionContract",
        "enforces": ["POST-SESSION-01"],
    },
    "test_verbs_require_connection": {
        "contract": "SessionContract",
        "enforces": ["PRE-SESSION-01", "ERRORS: NOT_CONNECTED"],
    },
    "test_select_returns_mailbox_info": {
        "contract": "SessionContract",
        "enforces": ["POST-SESSION-02"],
    },
    "test_uid_fetch_empty_skips_round_trip": {
        "contract": "SessionContract",
        "enforces": ["POST-SESSION-03"],
    },
    "test_disconnect_never_raises": {
        "contract": "SessionContract",
        "enforces": ["POST-SESSION-04"],
    },
    "test_second_command_rejected_while_outstanding": {
        "contract": "SessionContract",
        "enforces": ["INV-SESSION-01"],
        "adversarial": True,
    },
    "test_tags_increase": {
        "contract": "SessionContract",
        "enforces": ["INV-SESSION-02"],
    },
    "test_timeout_closes_session": {
        "contract": "SessionContract",
        "enforces": ["INV-SESSION-03", "ERRORS: TIMEOUT"],
        "adversarial": True,
    },
    "test_login_not_logged": {
        "contract": "SessionContract",
        "enforces": ["INV-SESSION-04", "INV-GLOBAL-05"],
        "adversarial": True,
    },
    "test_login_rejected": {
        "contract": "SessionContract",
        "enforces": ["ERRORS: AUTH_FAILED"],
    },

    # Service tests
    "test_test_connection_always_disconnects": {
        "contract": "ConnectionTestContract",
        "enforces": ["POST-TESTCONN-01", "INV-TESTCONN-01", "INV-TESTCONN-02"],
    },
    "test_fetch_inbox_end_to_end": {
        "contract": "FetchInboxContract",
        "enforces": ["POST-FETCHINBOX-01", "POST-FETCHINBOX-04", "INV-FETCHINBOX-01"],
    },
    "test_fetch_inbox_takes_last_uids": {
        "contract": "FetchInboxContract",
        "enforces": ["POST-FETCHINBOX-02", "POST-FETCHINBOX-03"],
    },
    "test_fetch_inbox_uses_peek": {
        "contract": "FetchInboxContract",
        "enforces": ["INV-FETCHINBOX-02"],
        "adversarial": True,
    },
    "test_fetch_inbox_closes_on_failure": {
        "contract": "FetchInboxContract",
        "enforces": ["INV-FETCHINBOX-03"],
        "adversarial": True,
    },
    "test_fetch_inbox_no_content_logging": {
        "contract": "FetchInboxContract",
        "enforces": ["INV-FETCHINBOX-04", "INV-GLOBAL-05"],
        "adversarial": True,
    },
    "test_mark_as_read_stores_seen": {
        "contract": "FlagUpdateContract",
        "enforces": ["POST-FLAGS-01", "INV-FLAGS-01"],
    },
    "test_trash_flags_deleted_without_expunge": {
        "contract": "FlagUpdateContract",
        "enforces": ["POST-FLAGS-02", "INV-FLAGS-02", "INV-GLOBAL-03"],
        "adversarial": True,
    },
    "test_flag_update_closes_on_failure": {
        "contract": "FlagUpdateContract",
        "enforces": ["INV-FLAGS-03"],
    },
    "test_registry_connect_disconnect": {
        "contract": "RegistryContract",
        "enforces": ["POST-REGISTRY-01", "POST-REGISTRY-02", "POST-REGISTRY-03"],
    },
    "test_registry_replaces_session": {
        "contract": "RegistryContract",
        "enforces": ["INV-REGISTRY-02"],
    },
    "test_registry_failed_login_not_registered": {
        "contract": "RegistryContract",
        "enforces": ["INV-REGISTRY-03"],
    },
    "test_message_id_round_trip": {
        "contract": "MessageIdContract",
        "enforces": ["POST-MSGID-01", "POST-MSGID-02"],
    },
    "test_message_id_malformed": {
        "contract": "MessageIdContract",
        "enforces": ["INV-MSGID-01"],
    },
}
