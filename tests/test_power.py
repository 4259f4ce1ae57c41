"""Tests for the power meter."""

import math

import numpy as np
import pytest

from notescope.core.power import PowerMeter, PowerParameters
from notescope.errors import ConfigurationError, ProtocolError


@pytest.fixture
def meter():
    m = PowerMeter()
    m.initialise(PowerParameters(block_size=1024, filter_length=3, threshold_db=-120.0))
    return m


class TestPowerMeter:
    def test_process_before_initialise_raises(self):
        with pytest.raises(ProtocolError):
            PowerMeter().process(np.zeros(1024))

    def test_reset_before_initialise_raises(self):
        with pytest.raises(ProtocolError):
            PowerMeter().reset()

    @pytest.mark.parametrize("kwargs", [{"block_size": 0}, {"filter_length": 0}])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ConfigurationError):
            PowerMeter().initialise(PowerParameters(**kwargs))

    def test_constant_block_power(self, meter):
        meter.process(np.full(1024, 0.5, dtype=np.float32))
        assert meter.get_raw_power()[0] == pytest.approx(10 * math.log10(0.25))

    def test_silence_is_clamped_to_floor(self, meter):
        meter.process(np.zeros(1024, dtype=np.float32))
        expected = 10 * math.log10(1e-12 / 1024)
        assert meter.get_raw_power()[0] == pytest.approx(expected)

    def test_one_value_per_block(self, meter):
        for _ in range(7):
            meter.process(np.ones(1024))
        assert len(meter.get_raw_power()) == 7
        assert len(meter.get_smoothed_power()) == 7

    def test_smoothed_power_is_centred_mean(self, meter):
        for amp in (1.0, 0.1, 1.0, 0.1):
            meter.process(np.full(1024, amp))
        raw = meter.get_raw_power()
        smoothed = meter.get_smoothed_power()
        assert smoothed[1] == pytest.approx(np.mean(raw[0:3]))
        assert smoothed[2] == pytest.approx(np.mean(raw[1:4]))
        # Window is truncated at the edges
        assert smoothed[0] == pytest.approx(np.mean(raw[0:2]))
        assert smoothed[3] == pytest.approx(np.mean(raw[2:4]))

    def test_only_block_size_samples_are_used(self, meter):
        block = np.concatenate([np.full(1024, 0.5), np.full(100, 10.0)])
        meter.process(block)
        assert meter.get_raw_power()[0] == pytest.approx(10 * math.log10(0.25))

    def test_reset_clears_curve(self, meter):
        meter.process(np.ones(1024))
        meter.reset()
        assert len(meter.get_raw_power()) == 0
