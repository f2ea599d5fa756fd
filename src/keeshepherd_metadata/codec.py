"""Key codec for the metadata repository.

Turns file paths and secret names into flat key fragments that are safe both
as directory/file names and as table row keys, and computes the salted hash
that identifies a secret's value. Everything here is pure.

Encoded segments only contain ``A-Z a-z 0-9 % _ . - ~``. In particular they
never contain a path separator or ``|``, which the table backend uses to join
a file path and a secret name into one row key.
"""

from __future__ import annotations

import base64
import hashlib
import os
from urllib.parse import quote, unquote

ROW_KEY_SEPARATOR = "|"

PATH_SEPARATORS = ("/", "\\")

# Longest local record path before the folder name gets replaced by its hash
MAX_PATH_LENGTH = 250


def encode_segment(segment: str) -> str:
    """Percent-encode *segment*, leaving only unreserved characters as-is.

    Existing keys spell the escape of ``*`` in lower case (``%2a``), so it is
    kept that way here. ``%`` itself is always escaped, so no other ``%2A`` can
    occur in the output.
    """
    return quote(segment, safe="").replace("%2A", "%2a")


def decode_segment(segment: str) -> str:
    """Exact inverse of :func:`encode_segment`."""
    return unquote(segment)


def calculate_hash(value: str, salt: str) -> str:
    """Return the base64 SHA-256 digest of ``value + salt``."""
    digest = hashlib.sha256((value + salt).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def weak_hash(value: str) -> int:
    """31-bit rolling hash, used to shorten directory names that do not fit."""
    result = 0
    for char in value:
        result = ((result << 5) - result + ord(char)) & 0x7FFFFFFF
    return result


def full_path_that_fits(base: str | os.PathLike[str], folder: str, file_name: str) -> str:
    """Join *base*, *folder* and *file_name*, hashing *folder* if the result is too long."""
    result = os.path.join(base, folder, file_name)
    if len(result) > MAX_PATH_LENGTH:
        result = os.path.join(base, str(weak_hash(folder)), file_name)
    return result


def row_key(file_path: str, name: str) -> str:
    return encode_segment(file_path) + ROW_KEY_SEPARATOR + encode_segment(name)


def prefix_range(prefix: str) -> tuple[str, str]:
    """Half-open key range ``[lo, hi)`` holding every key that starts with *prefix*.

    *prefix* must be non-empty.
    """
    upper = prefix[:-1] + chr(ord(prefix[-1]) + 1)
    return prefix, upper


def is_path_prefix(prefix: str, file_path: str) -> bool:
    """Whether *file_path* is *prefix* itself or lies in the folder *prefix*.

    ``/a/b`` covers ``/a/b`` and ``/a/b/x`` but not ``/a/bc/y``.
    """
    if not prefix:
        return True
    if file_path == prefix:
        return True
    if not file_path.startswith(prefix):
        return False
    return prefix.endswith(PATH_SEPARATORS) or file_path[len(prefix)] in PATH_SEPARATORS


def matches_path(path: str, file_path: str, exact_match: bool) -> bool:
    if exact_match:
        return (file_path or "") == (path or "")
    return is_path_prefix(path or "", file_path or "")
