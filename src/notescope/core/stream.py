"""
Hop-aligned framing of an in-memory signal.

The engine consumes fixed-size overlapping blocks, each starting one hop
after the previous, the way an audio host would deliver them. Only full
blocks are produced; a tail shorter than one block is not analysed.
"""

from __future__ import annotations

from typing import Iterator

import numpy as np

from notescope.errors import ConfigurationError


class BlockStream:
    """
    Iterates ``(block, timestamp)`` pairs over a mono signal.

    Parameters
    ----------
    signal:
        1-D audio samples.
    sample_rate:
        Sample rate in Hz, used for the timestamps.
    block_size:
        Samples per block.
    step_size:
        Samples between the starts of consecutive blocks.
    """

    def __init__(
        self,
        signal: np.ndarray,
        sample_rate: float,
        block_size: int = 2048,
        step_size: int = 256,
    ):
        signal = np.asarray(signal)
        if signal.ndim != 1:
            raise ConfigurationError(f"expected a mono signal, got shape {signal.shape}")
        if block_size < 1 or step_size < 1:
            raise ConfigurationError("block_size and step_size must be positive")
        if step_size > block_size:
            raise ConfigurationError(
                f"step_size ({step_size}) may not exceed block_size ({block_size})"
            )
        self.signal = signal
        self.sample_rate = float(sample_rate)
        self.block_size = block_size
        self.step_size = step_size

    def __len__(self) -> int:
        n = len(self.signal)
        if n < self.block_size:
            return 0
        return 1 + (n - self.block_size) // self.step_size

    def __iter__(self) -> Iterator[tuple[np.ndarray, float]]:
        for i in range(len(self)):
            start = i * self.step_size
            yield self.signal[start:start + self.block_size], start / self.sample_rate
