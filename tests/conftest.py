"""Shared synthetic signals and helpers for the test suite."""

import numpy as np
import pytest

from notescope.core.analyzer import CoreFeatures
from notescope.core.parameters import CoreParameters
from notescope.core.pitch import PrecomputedPitchTracker
from notescope.core.stream import BlockStream

TEST_SR = 44100
STEP = 256
BLOCK = 2048


def n_samples_for_blocks(n_blocks: int, block_size: int = BLOCK, step_size: int = STEP) -> int:
    """Signal length that frames into exactly *n_blocks* blocks."""
    return block_size + (n_blocks - 1) * step_size


def tone(n: int, freq: float, amp: float = 0.5, sr: int = TEST_SR) -> np.ndarray:
    t = np.arange(n) / sr
    return (amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def run_features(signal, parameters, pitch_hz=None, sr=TEST_SR) -> CoreFeatures:
    """Run a whole signal through a fresh engine and finish it."""
    tracker = None if pitch_hz is None else PrecomputedPitchTracker(pitch_hz)
    cf = CoreFeatures(sr, tracker)
    cf.initialise(parameters)
    for block, timestamp in BlockStream(signal, sr, parameters.block_size, parameters.step_size):
        cf.process(block, timestamp)
    cf.finish()
    return cf


def make_melody_signal(sr: int = TEST_SR) -> np.ndarray:
    """
    4.5 s monophonic test signal.

    0.0-0.5 silence, 0.5-1.5 220 Hz, 1.5-2.0 linear glide to 196 Hz,
    2.0-3.0 196 Hz, 3.0-4.0 196 Hz with harmonics 2-8, 4.0-4.5 silence.
    """
    half = sr // 2
    f1, f2 = 220.0, 196.0
    mag = 0.5
    signal = np.zeros(half * 9, dtype=np.float32)

    i = np.arange(half, half * 8)
    freq = np.full(len(i), f1)
    gliding = (i >= half * 3) & (i < half * 4)
    freq[gliding] = f1 + (f2 - f1) * (i[gliding] - half * 3) / half
    freq[i >= half * 4] = f2

    # Phase accumulates per sample so the glide stays continuous.
    arg = np.concatenate([[0.0], np.cumsum(2 * np.pi * freq / sr)[:-1]])
    values = mag * np.sin(arg)
    harmonic = i > half * 6
    for h in range(2, 9):
        values[harmonic] += (mag / h) * np.sin(arg[harmonic] * h)

    signal[half:half * 8] = values
    return signal


@pytest.fixture
def parameters():
    """Default parameters without normalisation."""
    return CoreParameters(normalise=False)


@pytest.fixture(scope="session")
def melody_signal():
    return make_melody_signal()


@pytest.fixture
def silent_signal():
    return np.zeros(n_samples_for_blocks(200), dtype=np.float32)


@pytest.fixture
def tone_burst_signal():
    """Silence for 100 hops, then a 440 Hz tone to the end (250 blocks)."""
    signal = np.zeros(n_samples_for_blocks(250), dtype=np.float32)
    start = 100 * STEP
    signal[start:] = tone(len(signal) - start, 440.0)
    return signal
