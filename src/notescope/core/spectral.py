"""
Spectral level rise tracking.

For every analysis step this records which in-band FFT bins are above two
magnitude floors, and, once a full history of spectra is available, the
fraction of in-band bins whose magnitude has risen by a given ratio within
that history.
"""

import logging
import math
from dataclasses import dataclass

import numpy as np
from scipy import fft as scipy_fft
from scipy import signal as scipy_signal

from notescope.errors import ConfigurationError, ProtocolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpectralRiseParameters:
    """Spectral rise tracker settings."""

    sample_rate: float = 48000.0
    block_size: int = 2048
    frequency_min_hz: float = 100.0
    frequency_max_hz: float = 4000.0
    rise_db: float = 20.0
    noise_floor_db: float = -70.0
    drop_floor_db: float = -60.0
    history_length: int = 20


class MagnitudeHistory:
    """
    Fixed-capacity ring buffer of magnitude spectra.

    Row ``(head + i) % capacity`` holds the i-th oldest retained spectrum.
    """

    def __init__(self, capacity: int, n_bins: int):
        self.capacity = capacity
        self._rows = np.zeros((capacity, n_bins), dtype=float)
        self._head = 0
        self._count = 0

    def __len__(self) -> int:
        return self._count

    def push(self, magnitudes: np.ndarray) -> None:
        if self._count == self.capacity:
            raise ProtocolError("MagnitudeHistory.push: buffer is full")
        self._rows[(self._head + self._count) % self.capacity] = magnitudes
        self._count += 1

    def pop_oldest(self) -> None:
        if self._count == 0:
            raise ProtocolError("MagnitudeHistory.pop_oldest: buffer is empty")
        self._head = (self._head + 1) % self.capacity
        self._count -= 1

    def row(self, i: int) -> np.ndarray:
        """The i-th oldest retained spectrum."""
        return self._rows[(self._head + i) % self.capacity]

    def rows(self, start: int, stop: int) -> np.ndarray:
        """Retained spectra ``start`` (inclusive) to ``stop`` (exclusive), oldest first."""
        idx = (self._head + np.arange(start, stop)) % self.capacity
        return self._rows[idx]

    def clear(self) -> None:
        self._head = 0
        self._count = 0


class SpectralRiseTracker:
    """
    Fraction of in-band bins that rose by a given ratio within a history window.

    The fraction reported at step *i* is computed when the spectrum of step
    ``i + history_length - 1`` arrives, so it describes activity over the
    history window that starts at step *i*.
    """

    def __init__(self):
        self._initialised = False
        self._parameters = SpectralRiseParameters()
        self._bin_min = 0
        self._bin_max = 0
        self._rise_ratio = 1.0
        self._noise_floor_mag = 0.0
        self._drop_floor_mag = 0.0
        self._window = np.array([])
        self._history = None
        self._fractions: list[float] = []
        self._bins_above_noise_floor: list[np.ndarray] = []
        self._bins_above_drop_floor: list[np.ndarray] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialise(self, parameters: SpectralRiseParameters) -> None:
        """
        Validate and apply the tracker settings.

        Raises:
            ConfigurationError: For a zero sample rate or block size, a
                frequency band outside 0..Nyquist or inverted, a
                non-positive rise, floors above 0 dB, or a history shorter
                than 2 steps.
        """
        p = parameters
        if not p.sample_rate or p.sample_rate < 0:
            raise ConfigurationError("SpectralRiseTracker: sample_rate must be positive")
        if not p.block_size or p.block_size < 0:
            raise ConfigurationError("SpectralRiseTracker: block_size must be positive")

        nyquist = p.sample_rate / 2.0
        if p.frequency_min_hz < 0.0 or p.frequency_min_hz >= nyquist:
            raise ConfigurationError(
                f"SpectralRiseTracker: min frequency ({p.frequency_min_hz}) is outside "
                f"range 0.0 - {nyquist} (for sample rate {p.sample_rate})"
            )
        if p.frequency_max_hz < p.frequency_min_hz:
            raise ConfigurationError(
                f"SpectralRiseTracker: fmax ({p.frequency_max_hz}) is less than "
                f"fmin ({p.frequency_min_hz})"
            )
        if p.frequency_max_hz >= nyquist:
            raise ConfigurationError(
                f"SpectralRiseTracker: max frequency ({p.frequency_max_hz}) is outside "
                f"range 0.0 - {nyquist} (for sample rate {p.sample_rate})"
            )
        if p.rise_db <= 0.0:
            raise ConfigurationError(
                f"SpectralRiseTracker: rise dB ({p.rise_db}) should be positive "
                "(it is a gain ratio)"
            )
        if p.noise_floor_db > 0.0:
            raise ConfigurationError(
                f"SpectralRiseTracker: noise floor dB ({p.noise_floor_db}) is expected "
                "to be negative (it is a signal level)"
            )
        if p.drop_floor_db > 0.0:
            raise ConfigurationError(
                f"SpectralRiseTracker: drop floor dB ({p.drop_floor_db}) is expected "
                "to be negative (it is a signal level)"
            )
        if p.history_length < 2:
            raise ConfigurationError(
                f"SpectralRiseTracker: history_length ({p.history_length}) must be at least 2"
            )

        self._parameters = p
        self._bin_min = int(p.block_size * p.frequency_min_hz / p.sample_rate)
        self._bin_max = int(p.block_size * p.frequency_max_hz / p.sample_rate)
        self._rise_ratio = math.pow(10.0, p.rise_db / 10.0)
        self._noise_floor_mag = math.pow(10.0, p.noise_floor_db / 20.0)
        self._drop_floor_mag = math.pow(10.0, p.drop_floor_db / 20.0)
        self._window = scipy_signal.get_window("hann", p.block_size)
        self._history = MagnitudeHistory(p.history_length, self.get_bin_count())
        self._initialised = True

        logger.debug(
            "spectral rise tracker: bins %d-%d, rise ratio %g, history %d",
            self._bin_min, self._bin_max, self._rise_ratio, p.history_length,
        )

    def reset(self) -> None:
        if not self._initialised:
            raise ProtocolError("SpectralRiseTracker.reset: never initialised")
        self._history.clear()
        self._fractions = []
        self._bins_above_noise_floor = []
        self._bins_above_drop_floor = []

    def process(self, block: np.ndarray) -> None:
        """Analyse one time-domain block."""
        if not self._initialised:
            raise ProtocolError("SpectralRiseTracker.process: not initialised")

        block_size = self._parameters.block_size
        windowed = self._window * np.asarray(block[:block_size], dtype=np.float64)

        # Phase is not used, so no fftshift.
        spectrum = scipy_fft.rfft(windowed)
        magnitudes = np.abs(spectrum[self._bin_min:self._bin_max + 1]) / float(block_size)

        bins = np.arange(self._bin_min, self._bin_max + 1)
        self._bins_above_noise_floor.append(bins[magnitudes > self._noise_floor_mag])
        self._bins_above_drop_floor.append(bins[magnitudes > self._drop_floor_mag])

        self._history.push(magnitudes)
        if len(self._history) >= self._parameters.history_length:
            self._fractions.append(self._extract_fraction())
            self._history.pop_oldest()

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def get_history_length(self) -> int:
        return self._parameters.history_length

    def get_bin_count(self) -> int:
        return self._bin_max - self._bin_min + 1

    def get_bin_range(self) -> tuple[int, int]:
        """First and last FFT bin (inclusive) of the analysed band."""
        return self._bin_min, self._bin_max

    def get_fractions(self) -> np.ndarray:
        return np.array(self._fractions, dtype=float)

    def get_bins_above_noise_floor_at(self, step: int) -> np.ndarray:
        """FFT bin indices above the noise floor at *step* (empty if unknown)."""
        return self._bins_at(self._bins_above_noise_floor, step)

    def get_bins_above_drop_floor_at(self, step: int) -> np.ndarray:
        """FFT bin indices above the drop floor at *step* (empty if unknown)."""
        return self._bins_at(self._bins_above_drop_floor, step)

    @staticmethod
    def _bins_at(per_step: list, step: int) -> np.ndarray:
        if 0 <= step < len(per_step):
            return per_step[step]
        return np.array([], dtype=int)

    def _extract_fraction(self) -> float:
        # A bin counts as risen if any spectrum after the oldest, excluding
        # the newest, exceeds the oldest by the rise ratio.
        m = len(self._history) - 1
        if m < 2:
            return 0.0
        oldest = self._history.row(0)
        between = self._history.rows(1, m)
        risen = np.any(between > oldest * self._rise_ratio, axis=0)
        return float(np.count_nonzero(risen)) / float(self.get_bin_count())
