"""
Per-block signal power in dB with a noise floor and mean smoothing.

Similar in spirit to a smoothed power curve: the raw curve is accumulated
block by block, and the smoothed curve is only computed when asked for.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np

from notescope.core.polisher import mean_filter
from notescope.errors import ConfigurationError, ProtocolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PowerParameters:
    """Power meter settings."""

    block_size: int = 2048
    filter_length: int = 18
    threshold_db: float = -120.0


class PowerMeter:
    """Filtered power calculation, one value per analysis step."""

    def __init__(self):
        self._initialised = False
        self._parameters = PowerParameters()
        self._threshold = 0.0
        self._raw_power: list[float] = []

    def initialise(self, parameters: PowerParameters) -> None:
        """
        Configure the meter.

        Raises:
            ConfigurationError: If block size or filter length is not positive.
        """
        if parameters.block_size < 1:
            raise ConfigurationError(
                f"PowerMeter: block_size must be > 0, got {parameters.block_size}"
            )
        if parameters.filter_length < 1:
            raise ConfigurationError(
                f"PowerMeter: filter_length must be > 0, got {parameters.filter_length}"
            )
        self._parameters = parameters
        # Threshold applies to the sum of squares, as a power ratio.
        self._threshold = math.pow(10.0, parameters.threshold_db / 10.0)
        self._initialised = True

    def reset(self) -> None:
        if not self._initialised:
            raise ProtocolError("PowerMeter.reset: never initialised")
        self._raw_power = []

    def process(self, block: np.ndarray) -> None:
        """Append the power of one block to the raw curve."""
        if not self._initialised:
            raise ProtocolError("PowerMeter.process: not initialised")

        block_size = self._parameters.block_size
        samples = np.asarray(block[:block_size], dtype=np.float64)
        total = float(np.dot(samples, samples))
        if total < self._threshold:
            total = self._threshold
        self._raw_power.append(10.0 * math.log10(total / float(block_size)))

    def get_raw_power(self) -> np.ndarray:
        return np.array(self._raw_power, dtype=float)

    def get_smoothed_power(self) -> np.ndarray:
        """Mean-filtered copy of the raw curve."""
        return mean_filter(self.get_raw_power(), self._parameters.filter_length)
