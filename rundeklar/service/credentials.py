"""Read the expiry claim of an access token without verifying it.

The authority is trusted on every call; the claim is only used to decide
when to refresh. Any structural defect yields ``None``, which callers
treat as "expires immediately".
"""

from __future__ import annotations

import base64
import binascii
import json
import math
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def parse_expiry(token: Optional[str]) -> Optional[datetime]:
    """Return the ``exp`` claim of a three-segment token as an aware UTC datetime."""
    if not token or not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3 or not parts[1]:
        return None
    try:
        payload = json.loads(_b64url_decode(parts[1]).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    exp = payload.get("exp")
    # bool is an int subclass; a literal true is not a timestamp
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    if not math.isfinite(exp):
        return None
    try:
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def seconds_until_expiry(token: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    expiry = parse_expiry(token)
    if expiry is None:
        return None
    return (expiry - (now or utc_now())).total_seconds()


def expires_within(
    token: Optional[str], threshold_seconds: float, *, now: Optional[datetime] = None
) -> bool:
    """True when the token expires inside the window, or cannot be parsed."""
    remaining = seconds_until_expiry(token, now=now)
    if remaining is None:
        return True
    return remaining < threshold_seconds
