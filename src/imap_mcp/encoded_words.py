"""
RFC 2047 Encoded-Word Decoding
==============================

Decodes ``=?charset?B?...?=`` and ``=?charset?Q?...?=`` tokens found in
envelope header values. Anything that cannot be decoded is left as it was.
"""

from __future__ import annotations

import base64
import binascii
import codecs
import quopri
import re

ENCODED_WORD_RE = re.compile(r"=\?([^?]+)\?([BbQq])\?([^?]*)\?=")


def decode_rfc2047(text: str) -> str:
    """Replace every decodable encoded-word in ``text`` with its decoded value."""
    if not text or "=?" not in text:
        return text

    matches = list(ENCODED_WORD_RE.finditer(text))
    result = text
    following_decoded = False
    # Right to left so earlier spans keep their offsets.
    for index in range(len(matches) - 1, -1, -1):
        match = matches[index]
        decoded = _decode_word(match.group(1), match.group(2), match.group(3))
        if decoded is None:
            following_decoded = False
            continue

        end = match.end()
        # Whitespace between two adjacent encoded-words is not part of the text.
        if following_decoded:
            gap = text[end:matches[index + 1].start()]
            if gap.isspace():
                end += len(gap)
        result = result[:match.start()] + decoded + result[end:]
        following_decoded = True

    return result


def _decode_word(charset: str, encoding: str, payload: str) -> str | None:
    # RFC 2231 allows a language suffix: =?UTF-8*en?Q?...?=
    charset = charset.split("*", 1)[0].strip()
    try:
        codecs.lookup(charset)
    except LookupError:
        return None

    try:
        if encoding.upper() == "B":
            raw = base64.b64decode(payload + "=" * (-len(payload) % 4), validate=True)
        else:
            raw = quopri.decodestring(payload.encode("ascii"), header=True)
        return raw.decode(charset)
    except (binascii.Error, LookupError, UnicodeDecodeError, UnicodeEncodeError, ValueError):
        # LookupError: a registered codec that is not a text encoding (rot13, base64)
        return None
