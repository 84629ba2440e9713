"""Human-readable document numbering.

Numbers look like ``INV/202610/0007``: a prefix, the calendar month, and a
counter that restarts at 1 for every ``(prefix, month)`` pair.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from . import log


class CounterStore(Protocol):
    """Storage that owns the authoritative counter values."""

    def increment_counter(self, key: str) -> int: ...


def counter_key(prefix: str, now: datetime) -> str:
    """Return the storage key for ``prefix`` in the month of ``now``."""

    return f"seq_{prefix}_{now:%Y%m}"


def format_number(prefix: str, now: datetime, value: int) -> str:
    """Render ``PREFIX/YYYYMM/NNNN`` with a zero-padded four digit counter."""

    return f"{prefix}/{now:%Y%m}/{value:04d}"


def next_number(store: CounterStore, prefix: str, now: datetime) -> str:
    """Advance the month counter for ``prefix`` and return the new number.

    The store increments and persists the counter before handing back the
    value, so every call consumes exactly one number even when the caller
    later fails. The read-modify-write assumes a single writer per store.
    """

    prefix = str(getattr(prefix, "value", prefix))
    value = store.increment_counter(counter_key(prefix, now))
    number = format_number(prefix, now, value)
    log.debug("Allocated document number '%s'", number)
    return number
