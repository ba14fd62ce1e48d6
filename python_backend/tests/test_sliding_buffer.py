"""
Unit tests for SlidingBuffer — shift-and-overwrite FIFO.
Run: python -m pytest tests/test_sliding_buffer.py -v
"""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import numpy as np
import pytest

from errors import CapacityExceeded, DimensionMismatch
from sliding_buffer import SlidingBuffer


@pytest.fixture
def buf():
    return SlidingBuffer(4, 2)


class TestSlidingBuffer:
    def test_starts_zeroed_and_not_full(self, buf):
        assert buf.rows.shape == (4, 2)
        assert not buf.rows.any()
        assert not buf.is_full

    def test_single_append_goes_to_tail(self, buf):
        buf.append(10, [1.0, 2.0])
        assert buf.timetags[-1] == 10
        np.testing.assert_array_equal(buf.rows[-1], [1.0, 2.0])
        assert buf.total_appended == 1

    def test_fifo_eviction_keeps_tag_row_pairs(self, buf):
        for i in range(6):
            buf.append(i, [i, -i])
        assert buf.is_full
        np.testing.assert_array_equal(buf.timetags, [2, 3, 4, 5])
        np.testing.assert_array_equal(buf.rows[:, 0], buf.timetags)
        np.testing.assert_array_equal(buf.rows[:, 1], -buf.timetags)

    def test_batch_append_shifts_by_batch_size(self, buf):
        buf.append_batch([1, 2], [[1, 1], [2, 2]])
        buf.append_batch([3, 4, 5], [[3, 3], [4, 4], [5, 5]])
        np.testing.assert_array_equal(buf.timetags, [2, 3, 4, 5])
        assert buf.total_appended == 5

    def test_full_capacity_batch_replaces_everything(self, buf):
        buf.append_batch([1, 2, 3, 4], np.ones((4, 2)))
        np.testing.assert_array_equal(buf.timetags, [1, 2, 3, 4])

    def test_no_reallocation(self, buf):
        rows_id = id(buf.rows)
        buf.append_batch([1, 2, 3], np.ones((3, 2)))
        assert id(buf.rows) == rows_id

    def test_oversized_batch_leaves_buffer_unchanged(self, buf):
        buf.append_batch([1, 2], [[1, 1], [2, 2]])
        before_tags, before_rows = buf.snapshot()
        with pytest.raises(CapacityExceeded):
            buf.append_batch(list(range(5)), np.ones((5, 2)))
        np.testing.assert_array_equal(buf.timetags, before_tags)
        np.testing.assert_array_equal(buf.rows, before_rows)
        assert buf.total_appended == 2

    def test_width_mismatch(self, buf):
        with pytest.raises(DimensionMismatch):
            buf.append(1, [1.0, 2.0, 3.0])

    def test_snapshot_is_a_copy(self, buf):
        buf.append(1, [1.0, 1.0])
        tags, rows = buf.snapshot()
        rows[-1, 0] = 99.0
        assert buf.rows[-1, 0] == 1.0
