"""
IMAP Response Parsing
=====================

Pure functions that turn the untagged lines collected for one command into
typed results. Nothing here touches the network.

A response body is text: lines separated by CRLF (a bare LF is accepted), with
literals written as ``{N}`` at the end of a line followed by N characters.
"""

from __future__ import annotations

import html
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from contracts import MailboxEntry, MailboxInfo, ParsedMessage
from imap_mcp.encoded_words import decode_rfc2047

UINT32_MAX = 0xFFFFFFFF

NO_SUBJECT = "(no subject)"
UNKNOWN_SENDER = "Unknown"

PREVIEW_SOURCE_LIMIT = 256
PREVIEW_LIMIT = 200

# Tried in order; the first that parses wins.
DATE_FORMATS = (
    "%a, %d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S %Z",
)

FETCH_RE = re.compile(r"^\*\s+(\d+)\s+FETCH\b", re.IGNORECASE)
TAGGED_RE = re.compile(r"^[A-Za-z0-9]+ (?:OK|NO|BAD)\b", re.IGNORECASE)
LIST_RE = re.compile(r"^\*\s+(?:LIST|LSUB)\s+", re.IGNORECASE)
LINE_LITERAL_RE = re.compile(r"\{(\d+)\}$")
TOKEN_LITERAL_RE = re.compile(r"\{(\d+)\}\r?\n")
FETCH_ITEM_RE = re.compile(
    r"^(?:UID|FLAGS|ENVELOPE|BODYSTRUCTURE|INTERNALDATE|MODSEQ|RFC822(?:\.\w+)?"
    r"|BODY(?:\[.*\])?(?:<[\d.]+>)?|BINARY(?:\.SIZE)?\[.*\](?:<[\d.]+>)?|X-GM-\w+)$",
    re.IGNORECASE,
)
BODY_TEXT_RE = re.compile(r"BODY\[TEXT\](?:<[\d.]+>)?", re.IGNORECASE)
NEXT_ITEM_RE = re.compile(r"\s(?:BODYSTRUCTURE \(|ENVELOPE \(|FLAGS \(|UID \d+[\s)])")
CALENDAR_RE = re.compile(
    r'\b(?:text"?\s*(?:/|\s)\s*"?calendar|application"?\s*(?:/|\s)\s*"?ics)\b',
    re.IGNORECASE,
)
HTML_TAG_RE = re.compile(r"<[^>]+>")
WHITESPACE_RE = re.compile(r"\s+")
DATE_COMMENT_RE = re.compile(r"\s*\([^)]*\)\s*$")


class Atom(str):
    """An unquoted token such as ``UID``, ``\\Seen`` or ``BODY[TEXT]<0>``."""


# =============================================================================
# FRAMING AND TOKENS
# =============================================================================

def split_responses(body: str) -> list[str]:
    """Split a response body into logical responses, keeping literals intact."""
    responses = []
    current = []
    pos = 0
    size = len(body)
    while pos < size:
        end = body.find("\n", pos)
        if end < 0:
            line, pos = body[pos:], size
        else:
            line, pos = body[pos:end], end + 1
        line = line.rstrip("\r")

        literal = LINE_LITERAL_RE.search(line)
        if literal:
            length = int(literal.group(1))
            current.append(f"{line}\r\n{body[pos:pos + length]}")
            pos += length
            continue

        current.append(line)
        responses.append("".join(current))
        current = []

    if current:
        responses.append("".join(current))
    return [response for response in responses if response.strip()]


def tokenize(text: str) -> list:
    """
    Parse IMAP data into nested lists.

    Quoted strings and literals become ``str``, ``NIL`` becomes ``None``,
    parenthesised lists become ``list`` and everything else is an ``Atom``.
    Unbalanced input is closed off rather than rejected.
    """
    items, _ = _parse_list(text, 0, nested=False)
    return items


def _parse_list(text: str, pos: int, nested: bool) -> tuple[list, int]:
    items: list = []
    size = len(text)
    while pos < size:
        ch = text[pos]
        if ch in " \t\r\n":
            pos += 1
        elif ch == "(":
            sub, pos = _parse_list(text, pos + 1, nested=True)
            items.append(sub)
        elif ch == ")":
            pos += 1
            if nested:
                return items, pos
        elif ch == '"':
            value, pos = _read_quoted(text, pos + 1)
            items.append(value)
        else:
            literal = TOKEN_LITERAL_RE.match(text, pos) if ch == "{" else None
            if literal:
                start = literal.end()
                length = int(literal.group(1))
                items.append(text[start:start + length])
                pos = start + length
                continue
            atom, pos = _read_atom(text, pos)
            items.append(None if atom.upper() == "NIL" else Atom(atom))
    return items, pos


def _read_quoted(text: str, pos: int) -> tuple[str, int]:
    chars = []
    size = len(text)
    while pos < size:
        ch = text[pos]
        if ch == "\\" and pos + 1 < size:
            chars.append(text[pos + 1])
            pos += 2
        elif ch == '"':
            return "".join(chars), pos + 1
        else:
            chars.append(ch)
            pos += 1
    return "".join(chars), pos


def _read_atom(text: str, pos: int) -> tuple[str, int]:
    start = pos
    depth = 0
    size = len(text)
    while pos < size:
        ch = text[pos]
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(depth - 1, 0)
        elif depth == 0 and ch in ' ()"\t\r\n':
            break
        pos += 1
    if pos == start:
        pos += 1
    return text[start:pos], pos


# =============================================================================
# SEARCH
# =============================================================================

def parse_search_response(body: str) -> list[int]:
    """UIDs from the first ``* SEARCH`` line; non-numeric tokens are skipped."""
    for line in body.splitlines():
        trimmed = line.strip()
        if not trimmed.upper().startswith("* SEARCH"):
            continue
        uids = []
        for token in trimmed[len("* SEARCH"):].split():
            if token.isascii() and token.isdigit():
                value = int(token)
                if value <= UINT32_MAX:
                    uids.append(value)
        return uids
    return []


# =============================================================================
# FETCH
# =============================================================================

def split_fetch_blocks(body: str) -> list[str]:
    """One block per ``* <seq> FETCH`` response, with any continuation lines."""
    blocks = []
    current = None
    for response in split_responses(body):
        stripped = response.strip()
        if FETCH_RE.match(stripped):
            if current is not None:
                blocks.append(current)
            current = stripped
        elif stripped.startswith("*") or TAGGED_RE.match(stripped):
            if current is not None:
                blocks.append(current)
            current = None
        elif current is not None:
            current = f"{current}\n{stripped}"
    if current is not None:
        blocks.append(current)
    return blocks


def parse_fetch_response(body: str) -> list[ParsedMessage]:
    """Every FETCH block that carries a UID, in response order."""
    messages = []
    for block in split_fetch_blocks(body):
        message = parse_fetch_block(block)
        if message is not None:
            messages.append(message)
    return messages


def fetch_items(block: str) -> dict:
    """Map of upper-cased FETCH item name to its parsed value."""
    match = FETCH_RE.match(block)
    if match is None:
        return {}
    data = next((token for token in tokenize(block[match.end():]) if isinstance(token, list)), None)
    if data is None:
        return {}

    items = {}
    index = 0
    while index < len(data):
        key = data[index]
        if isinstance(key, Atom) and FETCH_ITEM_RE.match(key) and index + 1 < len(data):
            items.setdefault(key.upper(), data[index + 1])
            index += 2
        else:
            # Stray token (e.g. an unquoted body); resynchronise on the next item.
            index += 1
    return items


def parse_fetch_block(block: str) -> ParsedMessage | None:
    items = fetch_items(block)

    uid = _uid(items, block)
    if uid is None:
        return None

    flags = items.get("FLAGS")
    if not isinstance(flags, list):
        flags = extract_flags(block).split()
    is_read = any(str(flag).lower() == "\\seen" for flag in flags)

    date, subject, from_name, from_email = envelope_fields(items.get("ENVELOPE"))

    return ParsedMessage(
        uid=uid,
        subject=decode_rfc2047(subject),
        from_name=decode_rfc2047(from_name),
        from_email=from_email,
        date=date,
        preview_text=clean_preview(_preview_source(items, block)),
        is_read=is_read,
        has_calendar_invite=has_calendar_invite(block),
    )


def _uid(items: dict, block: str) -> int | None:
    value = items.get("UID")
    if value is None:
        match = re.search(r"\bUID (\d+)", block)
        value = match.group(1) if match else None
    if value is None or not str(value).isdigit():
        return None
    uid = int(value)
    return uid if uid <= UINT32_MAX else None


def extract_flags(block: str) -> str:
    """Raw text between ``FLAGS (`` and the next ``)``."""
    start = block.find("FLAGS (")
    if start < 0:
        return ""
    start += len("FLAGS (")
    end = block.find(")", start)
    if end < 0:
        return ""
    return block[start:end]


def envelope_fields(envelope) -> tuple[datetime | None, str, str, str]:
    """
    Date, subject, sender name and sender address from an ENVELOPE list.

    Envelope layout: (date subject from sender reply-to to cc bcc in-reply-to
    message-id), each address being (name adl mailbox host).
    """
    if not isinstance(envelope, list) or not envelope:
        return None, NO_SUBJECT, UNKNOWN_SENDER, ""

    date_raw = envelope[0] if isinstance(envelope[0], str) else ""
    subject = envelope[1] if len(envelope) > 1 and isinstance(envelope[1], str) else NO_SUBJECT

    from_name, from_email = "", ""
    if len(envelope) > 2:
        from_name, from_email = _first_address(envelope[2])

    if not from_name or from_name.upper() == "NIL":
        from_name = from_email or UNKNOWN_SENDER

    return parse_imap_date(date_raw), subject, from_name, from_email


def _first_address(addresses) -> tuple[str, str]:
    if not isinstance(addresses, list):
        return "", ""
    for address in addresses:
        if not isinstance(address, list) or len(address) < 4:
            continue
        name, _adl, mailbox, host = (str(part) if part is not None else "" for part in address[:4])
        if mailbox and host:
            return name, f"{mailbox}@{host}"
        return name, mailbox
    return "", ""


def _preview_source(items: dict, block: str) -> str:
    for key, value in items.items():
        if not key.startswith("BODY[TEXT]"):
            continue
        if value is None:
            return ""
        if isinstance(value, str) and not isinstance(value, Atom):
            return value[:PREVIEW_SOURCE_LIMIT]
        break
    return _raw_body_text(block)


def _raw_body_text(block: str) -> str:
    # Servers that do not quote the section leave the text bare after the marker.
    marker = BODY_TEXT_RE.search(block)
    if marker is None:
        return ""
    rest = block[marker.end():]
    following = NEXT_ITEM_RE.search(rest)
    if following:
        rest = rest[:following.start()]
    return rest.strip().rstrip(")").strip()[:PREVIEW_SOURCE_LIMIT]


def has_calendar_invite(block: str) -> bool:
    """Coarse check for a text/calendar or application/ics part anywhere in the block."""
    return CALENDAR_RE.search(block) is not None


def clean_preview(text: str) -> str:
    """Strip HTML tags, decode entities, collapse whitespace, cap the length."""
    clean = HTML_TAG_RE.sub("", text)
    clean = html.unescape(clean)
    clean = WHITESPACE_RE.sub(" ", clean).strip()
    if len(clean) > PREVIEW_LIMIT:
        clean = clean[:PREVIEW_LIMIT] + "..."
    return clean


def parse_imap_date(value: str) -> datetime | None:
    """Parse an envelope date; timezone-less results are taken as UTC."""
    if not value:
        return None
    cleaned = WHITESPACE_RE.sub(" ", DATE_COMMENT_RE.sub("", value.strip()))
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    # Obsolete zone names (EST, PDT, ...) and other RFC 2822 leniencies
    try:
        parsed = parsedate_to_datetime(cleaned)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# LIST / SELECT
# =============================================================================

def parse_list_response(body: str) -> list[MailboxEntry]:
    entries = []
    for response in split_responses(body):
        match = LIST_RE.match(response)
        if match is None:
            continue
        tokens = tokenize(response[match.end():])
        if len(tokens) < 3 or not isinstance(tokens[0], list) or tokens[2] is None:
            continue
        delimiter = tokens[1] if tokens[1] is None else str(tokens[1])
        entries.append(
            MailboxEntry(
                name=str(tokens[2]),
                delimiter=delimiter,
                flags=[str(flag) for flag in tokens[0] if flag is not None],
            )
        )
    return entries


def parse_select_response(name: str, body: str, completion: str = "") -> MailboxInfo:
    counts = {"EXISTS": 0, "RECENT": 0}
    codes = {"UIDVALIDITY": 0, "UIDNEXT": 0}
    for response in split_responses(body):
        count = re.match(r"^\*\s+(\d+)\s+(EXISTS|RECENT)\b", response, re.IGNORECASE)
        if count:
            counts[count.group(2).upper()] = int(count.group(1))
            continue
        code = re.search(r"\[(UIDVALIDITY|UIDNEXT)\s+(\d+)\]", response, re.IGNORECASE)
        if code:
            codes[code.group(1).upper()] = int(code.group(2))

    return MailboxInfo(
        name=name,
        exists=counts["EXISTS"],
        recent=counts["RECENT"],
        uidvalidity=codes["UIDVALIDITY"],
        uidnext=codes["UIDNEXT"],
        read_only="[READ-ONLY]" in completion.upper(),
    )
