"""Tests for the accumulating Timer."""

import pytest

from pymixed.core.compute.timing import Timer


class TestTimer:
    """Timer records the total and named sections."""

    def test_sections_recorded(self):
        timer = Timer()
        timer.start()
        with timer.section('setup'):
            pass
        with timer.section('optimization'):
            pass
        timer.stop()
        result = timer.result()
        assert set(result) == {'total_seconds', 'setup', 'optimization'}
        assert result['total_seconds'] >= 0.0

    def test_repeated_sections_accumulate(self):
        timer = Timer()
        timer.start()
        for _ in range(3):
            with timer.section('pirls'):
                pass
        timer.stop()
        assert 'pirls' in timer.result()

    def test_result_before_stop_raises(self):
        timer = Timer()
        timer.start()
        with pytest.raises(RuntimeError):
            timer.result()

    def test_stop_before_start_raises(self):
        with pytest.raises(RuntimeError):
            Timer().stop()
