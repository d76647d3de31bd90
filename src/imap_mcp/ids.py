"""
Synthetic message ids
=====================

``imap-<uid>-<account email>`` is the stable key callers use to deduplicate
IMAP messages against ones they already stored.
"""

from __future__ import annotations

PREFIX = "imap"
UINT32_MAX = 0xFFFFFFFF


def message_id(uid: int, account_email: str) -> str:
    return f"{PREFIX}-{uid}-{account_email}"


def uid_from_message_id(value: str) -> int | None:
    """UID encoded in a synthetic id, or None if the id is not one of ours."""
    parts = value.split("-", 2)
    if len(parts) < 2 or parts[0] != PREFIX:
        return None
    raw = parts[1]
    if not (raw.isascii() and raw.isdigit()):
        return None
    uid = int(raw)
    if uid > UINT32_MAX:
        return None
    return uid
