"""Tests for the smoothing filters and the signal normaliser."""

import numpy as np
import pytest

from notescope.core.polisher import SignalNormalizer, following_median, mean_filter


class TestMeanFilter:
    def test_constant_is_unchanged(self):
        np.testing.assert_allclose(mean_filter(np.full(10, 3.0), 5), np.full(10, 3.0))

    def test_centred_window(self):
        x = np.array([0.0, 0.0, 9.0, 0.0, 0.0])
        out = mean_filter(x, 3)
        np.testing.assert_allclose(out, [0.0, 3.0, 3.0, 3.0, 0.0])

    def test_edges_are_truncated_not_padded(self):
        x = np.array([6.0, 0.0, 0.0, 0.0])
        out = mean_filter(x, 3)
        assert out[0] == pytest.approx(3.0)

    def test_even_length_has_extra_sample_before(self):
        x = np.array([1.0, 2.0, 3.0, 4.0, 5.0])
        out = mean_filter(x, 4)
        # Window for index 2 covers indices 0..3
        assert out[2] == pytest.approx(2.5)

    def test_empty_input(self):
        assert len(mean_filter(np.array([]), 5)) == 0


class TestFollowingMedian:
    def test_median_of_following_window(self):
        x = np.array([1.0, 5.0, 2.0, 8.0, 3.0])
        out = following_median(x, 3)
        np.testing.assert_allclose(out, [2.0, 5.0, 3.0])

    def test_short_input_gives_empty(self):
        assert len(following_median(np.arange(4.0), 5)) == 0


class TestSignalNormalizer:
    def test_peak_over_all_blocks(self):
        norm = SignalNormalizer()
        norm.push(np.array([0.1, -0.2], dtype=np.float32), 0.0)
        norm.push(np.array([-0.4, 0.3], dtype=np.float32), 0.1)
        assert norm.peak() == pytest.approx(0.4)

    def test_drain_scales_to_unit_peak(self):
        norm = SignalNormalizer()
        norm.push(np.array([0.1, -0.25], dtype=np.float32), 0.0)
        norm.push(np.array([0.2, 0.05], dtype=np.float32), 0.5)
        gain = norm.compute_gain()
        drained = list(norm.drain())
        assert gain == pytest.approx(4.0)
        assert [t for _, t in drained] == [0.0, 0.5]
        assert np.max(np.abs(np.concatenate([b for b, _ in drained]))) == pytest.approx(1.0)
        assert len(norm) == 0

    def test_blocks_are_copied_on_push(self):
        norm = SignalNormalizer()
        block = np.array([0.5, 0.5], dtype=np.float32)
        norm.push(block, 0.0)
        block[:] = 100.0
        assert norm.peak() == pytest.approx(0.5)

    def test_silence_uses_unit_gain(self):
        norm = SignalNormalizer()
        norm.push(np.zeros(4, dtype=np.float32), 0.0)
        assert norm.compute_gain() == 1.0
        block, _ = next(norm.drain())
        assert np.all(block == 0.0)

    def test_gain_is_float32_reciprocal(self):
        norm = SignalNormalizer()
        norm.push(np.array([0.3], dtype=np.float32), 0.0)
        assert norm.compute_gain() == float(np.float32(1.0) / np.float32(0.3))

    def test_clear(self):
        norm = SignalNormalizer()
        norm.push(np.ones(3, dtype=np.float32), 0.0)
        norm.compute_gain()
        norm.clear()
        assert len(norm) == 0
        assert norm.gain == 1.0
