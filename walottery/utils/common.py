"""Common utility functions for the reconciliation services."""

import time
from datetime import datetime, timezone


def shorten_address(address: str) -> str:
    """Shorten a ledger address or object id for display: '0x123456...abcd'.
    Returns the first 6 and last 4 characters, separated by '...'.
    Handles values with or without '0x' prefix.
    """
    if not address:
        return ""
    addr = address.lower()
    if addr.startswith("0x"):
        addr = addr[2:]
    # Always add 0x prefix
    if len(addr) < 10:
        return f"0x{addr}"  # too short to shorten, but ensure 0x
    return f"0x{addr[:6]}...{addr[-4:]}"


def now_ms() -> int:
    """Current wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_csv(raw) -> list:
    """Split a comma separated setting into trimmed, non-empty items."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [part.strip() for part in str(raw).split(",") if part.strip()]
