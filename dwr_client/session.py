"""Session - Script-session ID derivation and handshake token extraction.

The handshake reply to ``__System.generateId`` is a JavaScript snippet.
The server session token is the third string argument of the first
``handleCallback(...)`` invocation in it. Extraction is a plain callable
so the matching strategy can be swapped without touching the client.

The script-session ID sent with every call is
``<server token>/<page id>``, where the page id is two tokenified 63-bit
integers (timestamp and random) joined by ``-``.
"""

from __future__ import annotations

import random
import re
import time
from typing import Callable

SYSTEM_SCRIPT = "__System"
GENERATE_ID_METHOD = "generateId"
SESSION_COOKIE_NAME = "DWRSESSIONID"

# 64 symbols; index is the low 6 bits of the value being encoded.
TOKEN_ALPHABET = "1234567890abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ*$"

_INT63_MASK = (1 << 63) - 1

# handleCallback("<batch>", "<call>", "<token>");
_HANDLE_CALLBACK_PATTERN = re.compile(
    r'handleCallback\("\w+",\s*"\w+",\s*"(.+?)"\);', re.ASCII
)

# Returns the server session token, or None when the reply carries none.
TokenExtractor = Callable[[str], str | None]


def extract_session_token(body: str) -> str | None:
    """Return the token from the first ``handleCallback`` line in ``body``.

    Only the first match is considered. Returns None if there is no match.
    """
    match = _HANDLE_CALLBACK_PATTERN.search(body)
    if match is None:
        return None
    return match.group(1)


def tokenify(number: int) -> str:
    """Encode a non-negative integer in the 64-symbol token alphabet.

    Least-significant group first. Zero encodes as an empty string.

    Raises:
        ValueError: If ``number`` is negative.
    """
    if number < 0:
        raise ValueError(f"Cannot tokenify negative number {number}")
    chars: list[str] = []
    remainder = number
    while remainder > 0:
        chars.append(TOKEN_ALPHABET[remainder & 0x3F])
        remainder >>= 6
    return "".join(chars)


def generate_page_id(
    timestamp_ns: int | None = None,
    random_value: int | None = None,
) -> str:
    """Build a page id ``<tokenA>-<tokenB>``.

    Args:
        timestamp_ns: Nanosecond timestamp for tokenA. Defaults to now.
        random_value: Value for tokenB. Defaults to a random 63-bit integer.
    """
    if timestamp_ns is None:
        timestamp_ns = time.time_ns()
    if random_value is None:
        random_value = random.getrandbits(63)
    token_a = tokenify(timestamp_ns & _INT63_MASK)
    token_b = tokenify(random_value & _INT63_MASK)
    return f"{token_a}-{token_b}"


def build_script_session_id(server_token: str, page_id: str | None = None) -> str:
    """Combine the server token and a page id into a script-session ID."""
    if page_id is None:
        page_id = generate_page_id()
    return f"{server_token}/{page_id}"
