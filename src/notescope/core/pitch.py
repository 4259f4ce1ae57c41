"""
Pitch tracker collaborators.

The onset engine only needs one frequency per analysis step, with values
<= 0 meaning "unvoiced". ``PyinPitchTracker`` produces that from audio
with librosa's probabilistic YIN; ``PrecomputedPitchTracker`` replays a
track computed elsewhere.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import librosa
import numpy as np

from notescope.errors import ConfigurationError, ProtocolError

logger = logging.getLogger(__name__)

# Beta prior over YIN thresholds, indexed by threshold distribution.
# Index 0 is a uniform prior; 1-3 have means 0.1, 0.15 and 0.2.
THRESHOLD_DISTRIBUTIONS = {
    0: (1.0, 1.0),
    1: (2.0, 18.0),
    2: (2.0, 34.0 / 3.0),
    3: (2.0, 8.0),
}


class PitchTracker(ABC):
    """
    Per-step fundamental frequency source.

    Blocks are fed in hop order; ``finish`` returns one Hz value per block,
    aligned so that value *i* describes block *i*.
    """

    @abstractmethod
    def initialise(self, step_size: int, block_size: int) -> None:
        ...

    @abstractmethod
    def reset(self) -> None:
        ...

    @abstractmethod
    def process(self, block: np.ndarray) -> None:
        ...

    @abstractmethod
    def finish(self) -> np.ndarray:
        """Hz per step; values <= 0 are unvoiced."""


class PyinPitchTracker(PitchTracker):
    """
    librosa pYIN over the signal reassembled from hop-aligned blocks.

    pYIN is a batch algorithm, so blocks are only collected in ``process``
    and the analysis runs in ``finish``. Frames are not centred, which
    keeps frame *i* on exactly the samples of block *i*.

    Args:
        sample_rate: Sample rate of the incoming blocks.
        threshold_distribution: Index into ``THRESHOLD_DISTRIBUTIONS``.
        low_amp_suppression: Frames with RMS below this are unvoiced.
        fmin: Lowest frequency searched (Hz).
        fmax: Highest frequency searched (Hz).
    """

    def __init__(
        self,
        sample_rate: float,
        threshold_distribution: int = 2,
        low_amp_suppression: float = 0.1,
        fmin: float = 65.41,
        fmax: float = 2093.0,
    ):
        if threshold_distribution not in THRESHOLD_DISTRIBUTIONS:
            raise ConfigurationError(
                f"unknown threshold distribution {threshold_distribution}"
            )
        if fmax >= sample_rate / 2.0:
            raise ConfigurationError(
                f"pitch fmax ({fmax}) must be below Nyquist ({sample_rate / 2.0})"
            )
        self.sample_rate = sample_rate
        self.threshold_distribution = threshold_distribution
        self.low_amp_suppression = low_amp_suppression
        self.fmin = fmin
        self.fmax = fmax

        self._step_size = 0
        self._block_size = 0
        self._chunks: list[np.ndarray] = []
        self._n_blocks = 0

    @classmethod
    def from_parameters(cls, sample_rate: float, parameters) -> "PyinPitchTracker":
        """Build a tracker from the pitch fields of a ``CoreParameters``."""
        return cls(
            sample_rate,
            threshold_distribution=parameters.pitch_threshold_distribution,
            low_amp_suppression=parameters.pitch_low_amp_suppression,
            fmin=parameters.pitch_fmin_hz,
            fmax=parameters.pitch_fmax_hz,
        )

    def initialise(self, step_size: int, block_size: int) -> None:
        self._step_size = step_size
        self._block_size = block_size
        self.reset()

    def reset(self) -> None:
        self._chunks = []
        self._n_blocks = 0

    def process(self, block: np.ndarray) -> None:
        if self._block_size == 0:
            raise ProtocolError("PyinPitchTracker.process: not initialised")
        block = np.asarray(block, dtype=np.float32)
        # Blocks overlap; after the first only the newest hop is new.
        if self._n_blocks == 0:
            self._chunks.append(block[:self._block_size].copy())
        else:
            self._chunks.append(block[self._block_size - self._step_size:self._block_size].copy())
        self._n_blocks += 1

    def finish(self) -> np.ndarray:
        n = self._n_blocks
        if n == 0:
            return np.array([], dtype=float)

        y = np.concatenate(self._chunks)
        f0, voiced_flag, _ = librosa.pyin(
            y=y,
            fmin=self.fmin,
            fmax=self.fmax,
            sr=self.sample_rate,
            frame_length=self._block_size,
            hop_length=self._step_size,
            beta_parameters=THRESHOLD_DISTRIBUTIONS[self.threshold_distribution],
            fill_na=None,
            center=False,
        )
        rms = librosa.feature.rms(
            y=y,
            frame_length=self._block_size,
            hop_length=self._step_size,
            center=False,
        )[0]

        f0 = self._trim_or_pad(np.asarray(f0, dtype=float), n, np.nan)
        voiced = self._trim_or_pad(voiced_flag.astype(float), n, 0.0).astype(bool)
        rms = self._trim_or_pad(np.asarray(rms, dtype=float), n, 0.0)
        voiced &= rms >= self.low_amp_suppression

        # Unvoiced frames carry the negated best guess, or -1 without one.
        guess = np.where(np.isfinite(f0) & (f0 > 0), f0, 1.0)
        hz = np.where(voiced, guess, -guess)

        logger.debug("pyin: %d frames, %d voiced", n, int(np.count_nonzero(voiced)))
        return hz

    @staticmethod
    def _trim_or_pad(arr: np.ndarray, n: int, pad_value: float) -> np.ndarray:
        if len(arr) >= n:
            return arr[:n]
        return np.pad(arr, (0, n - len(arr)), constant_values=pad_value)


class PrecomputedPitchTracker(PitchTracker):
    """
    Replays a Hz track supplied up front.

    The track is cut or padded (with unvoiced -1) to the number of blocks
    actually processed.
    """

    def __init__(self, pitch_hz: Sequence[float]):
        self.pitch_hz = np.asarray(pitch_hz, dtype=float)
        self._n_blocks = 0
        self._initialised = False

    def initialise(self, step_size: int, block_size: int) -> None:
        self._initialised = True
        self._n_blocks = 0

    def reset(self) -> None:
        self._n_blocks = 0

    def process(self, block: Optional[np.ndarray]) -> None:
        if not self._initialised:
            raise ProtocolError("PrecomputedPitchTracker.process: not initialised")
        self._n_blocks += 1

    def finish(self) -> np.ndarray:
        n = self._n_blocks
        if len(self.pitch_hz) >= n:
            return self.pitch_hz[:n].copy()
        return np.pad(self.pitch_hz, (0, n - len(self.pitch_hz)), constant_values=-1.0)
