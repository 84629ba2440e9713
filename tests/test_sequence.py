"""Unit tests for document numbering."""

from __future__ import annotations

import re
from datetime import UTC, datetime

from tradedocs import sequence
from tradedocs.constants import NumberPrefix
from tradedocs.setup_workbook import build_master_workbook
from tradedocs.data_manager import WorkbookStore


class _MemoryCounters:
    def __init__(self):
        self.values = {}

    def increment_counter(self, key):
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]


MARCH = datetime(2026, 3, 15, tzinfo=UTC)
APRIL = datetime(2026, 4, 1, tzinfo=UTC)


def test_format_number_zero_pads_counter():
    """Numbers follow PREFIX/YYYYMM/NNNN."""

    assert sequence.format_number("INV", MARCH, 7) == "INV/202603/0007"


def test_counter_key_is_per_prefix_and_month():
    """Each prefix and calendar month owns a separate counter."""

    assert sequence.counter_key("QUO", MARCH) == "seq_QUO_202603"
    assert sequence.counter_key("QUO", APRIL) == "seq_QUO_202604"


def test_consecutive_numbers_strictly_increase():
    """N calls for the same prefix and month yield N distinct increasing suffixes."""

    store = _MemoryCounters()
    numbers = [sequence.next_number(store, "INV", MARCH) for _ in range(25)]
    suffixes = [int(number.rsplit("/", 1)[1]) for number in numbers]

    assert len(set(numbers)) == 25
    assert suffixes == list(range(1, 26))
    assert all(re.fullmatch(r"INV/202603/\d{4}", number) for number in numbers)


def test_counter_resets_for_new_month_and_is_independent_per_prefix():
    """A new month or a different prefix starts again at 0001."""

    store = _MemoryCounters()
    sequence.next_number(store, "INV", MARCH)
    sequence.next_number(store, "INV", MARCH)

    assert sequence.next_number(store, "INV", APRIL) == "INV/202604/0001"
    assert sequence.next_number(store, "PO", MARCH) == "PO/202603/0001"


def test_next_number_accepts_enum_prefix_and_workbook_store():
    """The workbook store is a valid counter backend and enums are unwrapped."""

    store = WorkbookStore(build_master_workbook())

    assert sequence.next_number(store, NumberPrefix.QUOTATION, MARCH) == "QUO/202603/0001"
    assert sequence.next_number(store, NumberPrefix.QUOTATION, MARCH) == "QUO/202603/0002"
    assert store.read_counter("seq_QUO_202603") == 2


def test_counter_beyond_four_digits_widens():
    """Suffixes past 9999 are not truncated."""

    assert sequence.format_number("PO", MARCH, 12345) == "PO/202603/12345"
