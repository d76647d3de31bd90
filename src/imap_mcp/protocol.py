"""
IMAP Command Channel
====================

Line framing, tag bookkeeping, and tagged command/response correlation on top
of a Transport.

Exactly one command is outstanding per channel. ``send`` blocks until the
server's tagged response for that command arrives or the deadline passes; a
second ``send`` while one is pending is rejected rather than queued. After a
timeout the channel is poisoned: late bytes from the abandoned command would
desynchronise framing, so the owner must close the connection.

Literals (``{N}`` at the end of a line followed by N raw octets) are consumed
exactly and spliced back into the logical response as ``{C}\\r\\n<text>``,
where C counts decoded characters so the parser can tokenise the text form.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from contracts import (
    CommandFailedError,
    CommandTimeoutError,
    ConnectionFailedError,
    NotConnectedError,
    ProtocolError,
)

logger = logging.getLogger(__name__)

CRLF = b"\r\n"
LITERAL_RE = re.compile(rb"\{(?P<size>\d+)\}$")
TAGGED_RE = re.compile(r"^(?P<tag>[A-Za-z0-9]+) (?P<status>OK|NO|BAD)\b", re.IGNORECASE)


class ByteTransport(Protocol):
    """What the channel needs from a transport."""

    def send(self, data: bytes) -> None: ...

    def recv(self, timeout: float) -> bytes: ...


# =============================================================================
# FRAMING
# =============================================================================

class LineFramer:
    """Accumulates received bytes and hands out complete CRLF-terminated lines."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def next_line(self) -> bytes | None:
        """Pop the next complete line without its CRLF, or None if incomplete."""
        end = self._buffer.find(CRLF)
        if end < 0:
            return None
        line = bytes(self._buffer[:end])
        del self._buffer[: end + len(CRLF)]
        return line

    def take(self, size: int) -> bytes | None:
        """Pop exactly ``size`` raw bytes, or None if not all have arrived yet."""
        if len(self._buffer) < size:
            return None
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def lines(self, data: bytes) -> list[bytes]:
        """Feed a chunk and return every line it completed, in arrival order."""
        self.feed(data)
        lines = []
        while (line := self.next_line()) is not None:
            lines.append(line)
        return lines

    def clear(self) -> None:
        self._buffer.clear()


class TagSequencer:
    """Issues A001, A002, ... for one session. Tags are never reused."""

    def __init__(self, prefix: str = "A") -> None:
        self.prefix = prefix
        self._counter = 0

    @property
    def last(self) -> str | None:
        if self._counter == 0:
            return None
        return self._format(self._counter)

    def next(self) -> str:
        self._counter += 1
        return self._format(self._counter)

    def _format(self, n: int) -> str:
        return f"{self.prefix}{n:03d}"


# =============================================================================
# RESPONSE LINES
# =============================================================================

class ResponseKind(Enum):
    GREETING = "greeting"
    UNTAGGED = "untagged"
    TAGGED = "tagged"
    CONTINUATION = "continuation"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ResponseLine:
    text: str
    kind: ResponseKind

    @classmethod
    def parse(cls, text: str) -> ResponseLine:
        return cls(text=text, kind=classify_line(text))


def classify_line(line: str) -> ResponseKind:
    """Classify one server line by its prefix."""
    upper = line.upper()
    if upper.startswith("* OK") or upper.startswith("* PREAUTH"):
        return ResponseKind.GREETING
    if line.startswith("* "):
        return ResponseKind.UNTAGGED
    if line.startswith("+"):
        return ResponseKind.CONTINUATION
    if TAGGED_RE.match(line):
        return ResponseKind.TAGGED
    return ResponseKind.UNKNOWN


# =============================================================================
# COMMANDS
# =============================================================================

@dataclass(frozen=True)
class Command:
    tag: str
    text: str = field(repr=False)
    issued_at: float
    deadline: float

    def wire(self) -> bytes:
        return f"{self.tag} {self.text}\r\n".encode("utf-8")

    @property
    def loggable(self) -> str:
        return redact(self.text)


@dataclass(frozen=True)
class CommandResult:
    """Untagged lines received for a command plus its tagged completion line."""
    command: Command
    lines: list[str]
    completion: str

    @property
    def body(self) -> str:
        if not self.lines:
            return ""
        return "\r\n".join(self.lines) + "\r\n"


def redact(text: str) -> str:
    """Hide LOGIN arguments from anything that may end up in a log."""
    if text[:6].upper() == "LOGIN ":
        return "LOGIN <redacted>"
    return text


class ChannelState(Enum):
    IDLE = "idle"
    AWAITING_TAG = "awaiting_tag"


class CommandChannel:
    """Sends tagged commands and collects their responses, one at a time."""

    def __init__(
        self,
        transport: ByteTransport,
        *,
        timeout: float = 30.0,
        sequencer: TagSequencer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.timeout = timeout
        self.sequencer = sequencer or TagSequencer()
        self.framer = LineFramer()
        self.poisoned = False
        self._clock = clock
        self._outstanding: Command | None = None
        self._guard = threading.Lock()

    @property
    def state(self) -> ChannelState:
        if self._outstanding is None:
            return ChannelState.IDLE
        return ChannelState.AWAITING_TAG

    @property
    def outstanding(self) -> Command | None:
        return self._outstanding

    def read_greeting(self, timeout: float | None = None) -> str:
        """Wait for the server's untagged OK/PREAUTH greeting."""
        deadline = self._clock() + (self.timeout if timeout is None else timeout)
        try:
            while True:
                line = self._read_response(deadline)
                if line.upper().startswith("* BYE"):
                    raise ConnectionFailedError(f"server refused session: {line}")
                if classify_line(line) is ResponseKind.GREETING:
                    return line
                logger.debug("Ignoring line received before greeting")
        except CommandTimeoutError:
            self._abandon()
            raise

    def send(self, text: str) -> CommandResult:
        """
        Send one command and block for its tagged response.

        Tagged OK returns the result; NO raises CommandFailedError; BAD or an
        unrecognised status raises ProtocolError; a missed deadline raises
        CommandTimeoutError and poisons the channel.
        """
        with self._guard:
            if self.poisoned:
                raise NotConnectedError("session abandoned after a timeout")
            if self._outstanding is not None:
                raise ProtocolError(f"command {self._outstanding.tag} still outstanding")
            command = self._issue(text)
            self._outstanding = command

        logger.debug(f"C: {command.tag} {command.loggable}")
        try:
            self._write(command.wire())
            prefix = f"{command.tag} "
            lines: list[str] = []
            while True:
                line = self._read_response(command.deadline)
                if line.startswith(prefix):
                    break
                lines.append(line)
        except CommandTimeoutError:
            self._abandon()
            raise
        finally:
            self._outstanding = None

        return self._complete(command, lines, line)

    def send_untracked(self, text: str) -> str:
        """
        Write a command without waiting for its response and return its tag.

        Only LOGOUT goes through here; the session is being torn down so
        nothing else will be sent after it.
        """
        tag = self.sequencer.next()
        logger.debug(f"C: {tag} {redact(text)} (untracked)")
        self._write(f"{tag} {text}\r\n".encode("utf-8"))
        return tag

    def wait_for_tag(self, tag: str, timeout: float) -> str | None:
        """Read until the tagged line for ``tag`` arrives; None on timeout."""
        deadline = self._clock() + timeout
        prefix = f"{tag} "
        try:
            while True:
                line = self._read_response(deadline)
                if line.startswith(prefix):
                    return line
        except CommandTimeoutError:
            return None

    def _issue(self, text: str) -> Command:
        now = self._clock()
        return Command(
            tag=self.sequencer.next(),
            text=text,
            issued_at=now,
            deadline=now + self.timeout,
        )

    def _complete(self, command: Command, lines: list[str], completion: str) -> CommandResult:
        rest = completion[len(command.tag) + 1:]
        status = rest.split(" ", 1)[0].upper()
        logger.debug(f"S: {command.tag} {status} ({len(lines)} untagged lines)")
        if status == "OK":
            return CommandResult(command=command, lines=lines, completion=completion)
        if status == "NO":
            raise CommandFailedError(completion)
        if status == "BAD":
            raise ProtocolError(completion)
        raise ProtocolError(f"unexpected response: {completion}")

    def _write(self, data: bytes) -> None:
        try:
            self.transport.send(data)
        except TimeoutError as e:
            raise CommandTimeoutError("write did not complete before the socket timeout") from e

    def _abandon(self) -> None:
        self.poisoned = True
        self.framer.clear()

    def _read_response(self, deadline: float) -> str:
        """Read one logical response line, folding in any literals it carries."""
        raw = self._read_line(deadline)
        parts = []
        while True:
            match = LITERAL_RE.search(raw)
            if match is None:
                parts.append(_decode(raw))
                return "".join(parts)
            literal = _decode(self._read_exact(int(match.group("size")), deadline))
            parts.append(f"{_decode(raw[: match.start()])}{{{len(literal)}}}\r\n{literal}")
            raw = self._read_line(deadline)

    def _read_line(self, deadline: float) -> bytes:
        while (line := self.framer.next_line()) is None:
            self._fill(deadline)
        return line

    def _read_exact(self, size: int, deadline: float) -> bytes:
        while (data := self.framer.take(size)) is None:
            self._fill(deadline)
        return data

    def _fill(self, deadline: float) -> None:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise CommandTimeoutError(self._timeout_detail())
        try:
            chunk = self.transport.recv(remaining)
        except TimeoutError as e:
            raise CommandTimeoutError(self._timeout_detail()) from e
        self.framer.feed(chunk)

    def _timeout_detail(self) -> str:
        if self._outstanding is not None:
            return f"no tagged response to {self._outstanding.tag} within {self.timeout:g}s"
        return "no response within deadline"


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")
