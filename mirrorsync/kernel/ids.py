from __future__ import annotations

import re
import secrets
from uuid import uuid4

_PREFIX_RE = re.compile(r"^[a-z][a-z0-9]{1,24}$")

# 64 hex chars; Google caps channel tokens at 256.
CHANNEL_SECRET_BYTES = 32


def new_prefixed_id(prefix: str) -> str:
    """`{prefix}_{uuid4 hex}`, e.g. `pass_3f2a...` for sync passes and `chn_...` for channels."""
    if not _PREFIX_RE.fullmatch(prefix):
        raise ValueError(f"Invalid id prefix {prefix!r}: use 2-25 lowercase letters/digits, starting with a letter")
    return f"{prefix}_{uuid4().hex}"


def is_prefixed_id(value: str, prefix: str) -> bool:
    return value.startswith(f"{prefix}_") and len(value) > len(prefix) + 1


def new_channel_secret() -> str:
    """Shared secret handed to the vendor with a push channel and echoed back on delivery."""
    return secrets.token_hex(CHANNEL_SECRET_BYTES)
