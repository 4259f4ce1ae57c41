"""
Smoothing filters and signal normalisation.

Mean and median filtering of per-step curves used by the batch analysis,
plus the two-pass peak normaliser that holds back blocks until the whole
recording has been seen.
"""

import logging
from typing import Iterator, Optional

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

logger = logging.getLogger(__name__)


def mean_filter(values: np.ndarray, length: int) -> np.ndarray:
    """
    Centred moving average.

    The window is truncated at either end of the sequence and the mean is
    taken over whatever samples fall inside it, so the output has the
    same length as the input and no edge padding leaks in.

    Args:
        values: Input curve.
        length: Window length in steps (an odd length is centred exactly;
            an even one has one more sample before the centre than after).

    Returns:
        Filtered curve, same length as *values*.
    """
    x = np.asarray(values, dtype=float)
    n = len(x)
    if n == 0:
        return x.copy()

    before = length // 2
    after = length - before - 1

    csum = np.concatenate([[0.0], np.cumsum(x)])
    idx = np.arange(n)
    lo = np.maximum(idx - before, 0)
    hi = np.minimum(idx + after + 1, n)
    return (csum[hi] - csum[lo]) / (hi - lo)


def following_median(values: np.ndarray, length: int) -> np.ndarray:
    """
    Median of the *length* values starting at each step.

    Only steps with a complete window get a value, so the result is
    ``length - 1`` shorter than the input (empty if the input is shorter
    than one window).
    """
    x = np.asarray(values, dtype=float)
    if length < 1 or len(x) < length:
        return np.array([], dtype=float)
    return np.median(sliding_window_view(x, length), axis=1)


class SignalNormalizer:
    """
    Holds back audio blocks until the global peak is known.

    Blocks are copied on arrival. Once the stream is complete, ``drain``
    rescales every held block so the loudest sample has magnitude 1.0 and
    yields them in arrival order.
    """

    def __init__(self):
        self._pending: list[tuple[np.ndarray, float]] = []
        self._gain: Optional[float] = None

    def __len__(self) -> int:
        return len(self._pending)

    def push(self, block: np.ndarray, timestamp: float) -> None:
        """Store a copy of *block* for later replay."""
        self._pending.append((np.array(block, dtype=np.float32, copy=True), timestamp))

    def peak(self) -> float:
        """Largest absolute sample value across all held blocks."""
        peak = 0.0
        for block, _ in self._pending:
            if len(block):
                peak = max(peak, float(np.max(np.abs(block))))
        return peak

    def compute_gain(self) -> float:
        """
        Gain that brings the held signal to peak 1.0.

        A silent recording has no meaningful peak; it is passed through at
        unity gain.
        """
        peak = self.peak()
        if peak > 0.0:
            gain = float(np.float32(1.0) / np.float32(peak))
        else:
            gain = 1.0
        logger.debug("signal peak = %g, normalisation gain = %g", peak, gain)
        self._gain = gain
        return gain

    @property
    def gain(self) -> float:
        """Gain from the last ``compute_gain`` call (1.0 before that)."""
        return 1.0 if self._gain is None else self._gain

    def drain(self) -> Iterator[tuple[np.ndarray, float]]:
        """
        Yield every held block rescaled by the normalisation gain.

        The buffer is emptied as blocks are handed out.
        """
        if self._gain is None:
            self.compute_gain()
        gain = np.float32(self._gain)
        pending, self._pending = self._pending, []
        for block, timestamp in pending:
            yield block * gain, timestamp

    def clear(self) -> None:
        self._pending = []
        self._gain = None
