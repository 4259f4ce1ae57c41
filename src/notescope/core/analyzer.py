"""
Onset and offset detection for monophonic note streams.

``CoreFeatures`` gathers pitch, power and spectral-rise curves block by
block, then in ``finish`` derives three independent sets of onset
candidates, fuses them into one note timeline and finds an offset for
every onset.

Every per-step curve shares one time origin: value *i* describes the
block starting at sample ``i * step_size``, and ``time_for_step`` maps it
to the centre of that block.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional, Sequence

import numpy as np

from notescope.core import parameters as units
from notescope.core.parameters import DEFAULT_CORE_PARAMETERS, CoreParameters, ProcessingMode
from notescope.core.pitch import PitchTracker, PyinPitchTracker
from notescope.core.polisher import SignalNormalizer, mean_filter
from notescope.core.power import PowerMeter, PowerParameters
from notescope.core.spectral import SpectralRiseParameters, SpectralRiseTracker
from notescope.errors import ProtocolError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class OnsetType(Enum):
    """What triggered an onset."""

    PITCH_CHANGE = "pitch_change"
    SPECTRAL_LEVEL_RISE = "spectral_level_rise"
    POWER_RISE = "power_rise"

    @property
    def rank(self) -> int:
        """Precision ranking used when candidates compete; higher wins."""
        return _ONSET_RANKS[self]


_ONSET_RANKS = {
    OnsetType.SPECTRAL_LEVEL_RISE: 3,
    OnsetType.PITCH_CHANGE: 2,
    OnsetType.POWER_RISE: 1,
}

# Detection order; a later cause overwrites an earlier one at the same step.
_CANDIDATE_ORDER = (
    OnsetType.PITCH_CHANGE,
    OnsetType.SPECTRAL_LEVEL_RISE,
    OnsetType.POWER_RISE,
)


class OffsetType(Enum):
    """Why a note was considered to have ended."""

    POWER_DROP = "power_drop"
    SPECTRAL_LEVEL_DROP = "spectral_level_drop"
    FOLLOWING_ONSET_REACHED = "following_onset_reached"


@dataclass(frozen=True)
class Onset:
    step: int
    cause: OnsetType
    time: float


@dataclass(frozen=True)
class Offset:
    onset_step: int
    step: int
    cause: OffsetType
    time: float


# ---------------------------------------------------------------------------
# Candidate detection, fusion and offsets
# ---------------------------------------------------------------------------

def detect_level_rise_onsets(fractions: Sequence[float], threshold: float) -> list[int]:
    """
    Onsets from the spectral rise fraction curve.

    The curve must first exceed *threshold*; the onset is the step where
    it then falls below half of it, once the rise has stabilised.
    """
    lower = threshold / 2.0
    above = False
    onsets = []
    for i, fraction in enumerate(fractions):
        if fraction > threshold:
            above = True
        elif fraction < lower and above:
            onsets.append(i)
            above = False
    return onsets


def detect_power_rise_onsets(
    raw_power: Sequence[float], look_ahead: int, threshold_db: float
) -> list[int]:
    """
    Onsets from the raw power curve.

    An onset is armed at step *i* when, within the following *look_ahead*
    steps, power exceeds ``raw_power[i] + threshold_db`` without first
    dipping below ``raw_power[i]``. It is emitted at the first later step
    whose first difference is smaller than the one before it.
    """
    raw = np.asarray(raw_power, dtype=float)
    n = len(raw)
    onsets = []
    onset_coming = False
    prev_derivative = 0.0
    for i in range(n - 1):
        derivative = raw[i + 1] - raw[i]
        if onset_coming:
            if derivative < prev_derivative:
                onsets.append(i)
                onset_coming = False
        elif i + look_ahead < n:
            for j in range(i, i + look_ahead + 1):
                if raw[j] < raw[i]:
                    break
                if raw[j] > raw[i] + threshold_db:
                    onset_coming = True
                    break
        prev_derivative = derivative
    return onsets


def merge_onset_candidates(
    candidates: Mapping[OnsetType, Iterable[int]], minimum_interval_steps: int
) -> dict[int, OnsetType]:
    """
    Fuse onset candidates into one timeline.

    Candidates closer than *minimum_interval_steps* to the last accepted
    onset are dropped, unless they outrank it, in which case they replace
    it. A dropped candidate does not move the reference point. When
    several causes report the same step, the last in detection order
    (pitch change, level rise, power rise) is kept.

    Returns:
        Onset step -> cause, in ascending step order.
    """
    by_step: dict[int, OnsetType] = {}
    for cause in _CANDIDATE_ORDER:
        for step in candidates.get(cause, ()):
            by_step[step] = cause

    merged: dict[int, OnsetType] = {}
    prev_step = -minimum_interval_steps
    prev_cause = OnsetType.PITCH_CHANGE

    for step in sorted(by_step):
        cause = by_step[step]
        if step < prev_step + minimum_interval_steps:
            if cause.rank > prev_cause.rank:
                merged.pop(prev_step, None)
            else:
                continue
        merged[step] = cause
        prev_step = step
        prev_cause = cause

    return merged


def detect_offsets(
    onset_steps: Sequence[int],
    raw_power: Sequence[float],
    bins_at: Callable[[int], np.ndarray],
    sustain_steps: int,
    duration_threshold_db: float,
    drop_ratio: float,
) -> tuple[dict[int, tuple[int, OffsetType]], np.ndarray]:
    """
    Find one offset per onset.

    The search for each onset runs from ``onset + sustain_steps`` up to
    the next onset (or the end of the curve). It stops when raw power
    falls *duration_threshold_db* below its level at the sustain start,
    or when the fraction of bins active at the sustain start that are
    still active falls to *drop_ratio* or less.

    Args:
        onset_steps: Ascending onset steps.
        raw_power: Raw power curve in dB.
        bins_at: Step -> active bin indices.
        sustain_steps: Offset from onset to sustain start.
        duration_threshold_db: Power drop ending a note.
        drop_ratio: Remaining active bin fraction ending a note.

    Returns:
        ``(onset_offsets, drop_df)``: onset step -> (offset step, cause),
        and the per-step remaining bin fraction (1.0 where unevaluated).
    """
    raw = np.asarray(raw_power, dtype=float)
    n = len(raw)
    drop_df = np.ones(n, dtype=float)
    offsets: dict[int, tuple[int, OffsetType]] = {}

    for k, onset in enumerate(onset_steps):
        limit = onset_steps[k + 1] if k + 1 < len(onset_steps) else n
        begin = onset + sustain_steps

        bins_at_begin = np.array([], dtype=int)
        target = -100.0
        if begin < n:
            bins_at_begin = bins_at(begin)
            target = raw[begin] - duration_threshold_db
            logger.debug(
                "onset %d: sustain begins at %d with power %.2f dB, target %.2f dB, "
                "%d bins active",
                onset, begin, raw[begin], target, len(bins_at_begin),
            )
        else:
            logger.debug("onset %d: sustain begin %d is past the end", onset, begin)

        n_begin = len(bins_at_begin)
        cause = OffsetType.FOLLOWING_ONSET_REACHED
        q = begin
        while q < limit:
            if raw[q] < target:
                cause = OffsetType.POWER_DROP
                break
            if n_begin > 0:
                remaining = len(np.intersect1d(bins_at(q), bins_at_begin))
                df = remaining / n_begin
                drop_df[q] = df
                if df <= drop_ratio:
                    cause = OffsetType.SPECTRAL_LEVEL_DROP
                    break
            q += 1

        offset = min(q, limit)
        offsets[onset] = (offset, cause)
        logger.debug("onset %d: offset at %d (%s)", onset, offset, cause.value)

    return offsets, drop_df


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CoreFeatures:
    """
    Streaming/batch note-structure engine.

    Lifecycle: ``initialise`` once, ``process`` once per hop, ``finish``
    once, then read results. ``reset`` returns to the freshly initialised
    state for another run with the same configuration.

    Args:
        sample_rate: Sample rate of the incoming blocks in Hz.
        pitch_tracker: Source of the per-step pitch track. Defaults to a
            ``PyinPitchTracker`` configured from the parameters passed to
            ``initialise``.
    """

    def __init__(self, sample_rate: float, pitch_tracker: Optional[PitchTracker] = None):
        self.sample_rate = float(sample_rate)
        self._pitch_tracker = pitch_tracker
        self._parameters = DEFAULT_CORE_PARAMETERS
        self._initialised = False
        self._finished = False

        self._power = PowerMeter()
        self._level_rise = SpectralRiseTracker()
        self._normalizer = SignalNormalizer()
        self._start_time: Optional[float] = None
        self._clear_results()

    def _clear_results(self) -> None:
        self._normalisation_gain = 1.0
        self._pitch_hz = np.array([], dtype=float)
        self._pitch = np.array([], dtype=float)
        self._filtered_pitch = np.array([], dtype=float)
        self._pitch_onset_df = np.array([], dtype=float)
        self._pitch_onset_df_validity = np.array([], dtype=bool)
        self._raw_power = np.array([], dtype=float)
        self._smoothed_power = np.array([], dtype=float)
        self._rise_fractions = np.array([], dtype=float)
        self._offset_drop_df = np.array([], dtype=float)
        self._pitch_onsets: list[int] = []
        self._level_rise_onsets: list[int] = []
        self._power_rise_onsets: list[int] = []
        self._merged_onsets: dict[int, OnsetType] = {}
        self._onset_offsets: dict[int, tuple[int, OffsetType]] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialise(self, parameters: CoreParameters = DEFAULT_CORE_PARAMETERS) -> None:
        """
        Validate and apply a configuration.

        Raises:
            ProtocolError: If already initialised.
            ConfigurationError: If any parameter is invalid. No state is
                changed in that case.
        """
        if self._initialised:
            raise ProtocolError("CoreFeatures.initialise: already initialised")

        parameters.validate(self.sample_rate)

        power = PowerMeter()
        power.initialise(PowerParameters(
            block_size=parameters.block_size,
            filter_length=parameters.power_filter_length,
            threshold_db=parameters.power_floor_db,
        ))

        level_rise = SpectralRiseTracker()
        level_rise.initialise(SpectralRiseParameters(
            sample_rate=self.sample_rate,
            block_size=parameters.block_size,
            frequency_min_hz=parameters.spectral_frequency_min_hz,
            frequency_max_hz=parameters.spectral_frequency_max_hz,
            rise_db=parameters.onset_sensitivity_level_db,
            noise_floor_db=parameters.spectral_noise_floor_db,
            drop_floor_db=parameters.spectral_drop_floor_db,
            history_length=units.ms_to_steps(
                parameters.onset_sensitivity_noise_time_window_ms,
                self.sample_rate,
                parameters.step_size,
            ),
        ))

        pitch_tracker = self._pitch_tracker
        if pitch_tracker is None:
            pitch_tracker = PyinPitchTracker.from_parameters(self.sample_rate, parameters)
        pitch_tracker.initialise(parameters.step_size, parameters.block_size)

        self._parameters = parameters
        self._power = power
        self._level_rise = level_rise
        self._pitch_tracker = pitch_tracker
        self._initialised = True

        logger.debug(
            "core features initialised: sr=%g step=%d block=%d mode=%s",
            self.sample_rate, parameters.step_size, parameters.block_size,
            parameters.processing_mode.value,
        )

    def reset(self) -> None:
        """Discard all input and results, keeping the configuration."""
        if not self._initialised:
            raise ProtocolError("CoreFeatures.reset: not initialised")
        self._power.reset()
        self._level_rise.reset()
        self._pitch_tracker.reset()
        self._normalizer.clear()
        self._start_time = None
        self._finished = False
        self._clear_results()

    def process(self, block: np.ndarray, timestamp: Optional[float] = None) -> None:
        """
        Feed one block of ``block_size`` samples.

        Args:
            block: Samples of the block starting one hop after the previous.
            timestamp: Time of the block's first sample in seconds. Only
                the first block's timestamp is used, as the start time.
        """
        if not self._initialised:
            raise ProtocolError("CoreFeatures.process: not initialised")
        if self._finished:
            raise ProtocolError("CoreFeatures.process: already finished")

        if self._start_time is None:
            self._start_time = 0.0 if timestamp is None else float(timestamp)

        if self._parameters.processing_mode is ProcessingMode.BUFFER_THEN_NORMALIZE:
            self._normalizer.push(block[:self._parameters.block_size], timestamp)
        else:
            self._process_block(block)

    def _process_block(self, block: np.ndarray) -> None:
        self._pitch_tracker.process(block)
        self._power.process(block)
        self._level_rise.process(block)

    def finish(self) -> None:
        """Run the batch analysis. Results are readable afterwards."""
        if not self._initialised:
            raise ProtocolError("CoreFeatures.finish: not initialised")
        if self._finished:
            raise ProtocolError("CoreFeatures.finish: already finished")

        if self._parameters.processing_mode is ProcessingMode.BUFFER_THEN_NORMALIZE:
            self._normalisation_gain = self._normalizer.compute_gain()
            for block, _ in self._normalizer.drain():
                self._process_block(block)

        self._pitch_hz = np.asarray(self._pitch_tracker.finish(), dtype=float)
        self._raw_power = self._power.get_raw_power()
        self._smoothed_power = self._power.get_smoothed_power()
        self._rise_fractions = self._level_rise.get_fractions()

        self._pitch = self._held_semitones(self._pitch_hz)
        self._detect_pitch_onsets()
        self._detect_level_rise_onsets()
        self._detect_power_rise_onsets()
        self._merge_onsets()
        self._detect_offsets()

        self._finished = True

    # ------------------------------------------------------------------
    # Batch analysis
    # ------------------------------------------------------------------

    @staticmethod
    def _held_semitones(pitch_hz: np.ndarray) -> np.ndarray:
        """Semitone track holding the last voiced value through gaps."""
        pitch = np.zeros(len(pitch_hz), dtype=float)
        prev = 0.0
        for i, hz in enumerate(pitch_hz):
            if hz > 0.0:
                prev = units.hz_to_pitch(hz)
            pitch[i] = prev
        return pitch

    def _detect_pitch_onsets(self) -> None:
        # Onset where a pitch is close to the mean of the window that
        # follows it, i.e. where the pitch has settled.
        p = self._parameters
        n = len(self._pitch)
        filter_length = self.ms_to_steps(p.pitch_average_window_ms, odd=True)
        half = filter_length // 2

        self._filtered_pitch = mean_filter(self._pitch, filter_length)

        # The last half window has no look-ahead and is left out.
        m = max(n - half, 0)
        validity = np.zeros(m, dtype=bool)
        df = np.abs(self._pitch[:m] - self._filtered_pitch[half:half + m])

        # Reject small df caused by missing pitch inside the window.
        last_absence = -half
        for i in range(m):
            if self._pitch_hz[i + half] <= 0.0:
                last_absence = i
            else:
                validity[i] = i - last_absence > half

        self._pitch_onset_df = df
        self._pitch_onset_df_validity = validity
        self._pitch_onsets = []

        if not p.use_pitch_onset_detector:
            return

        # The shorter cap keeps vibrato cycles from re-triggering.
        suppression = min(
            self.ms_to_steps(p.minimum_onset_interval_ms),
            self.ms_to_steps(120.0),
        )
        last_below = -suppression
        threshold = p.onset_sensitivity_pitch_cents / 100.0
        for i in range(m):
            if df[i] < threshold and validity[i]:
                if i > last_below + suppression:
                    self._pitch_onsets.append(i)
                last_below = i

        logger.debug("pitch onsets: %d candidates", len(self._pitch_onsets))

    def _detect_level_rise_onsets(self) -> None:
        self._level_rise_onsets = detect_level_rise_onsets(
            self._rise_fractions,
            self._parameters.onset_sensitivity_noise_percent / 100.0,
        )
        logger.debug("level rise onsets: %d candidates", len(self._level_rise_onsets))

    def _detect_power_rise_onsets(self) -> None:
        self._power_rise_onsets = detect_power_rise_onsets(
            self._raw_power,
            self.ms_to_steps(50.0),
            self._parameters.onset_sensitivity_raw_power_threshold_db,
        )
        logger.debug("power rise onsets: %d candidates", len(self._power_rise_onsets))

    def _merge_onsets(self) -> None:
        self._merged_onsets = merge_onset_candidates(
            {
                OnsetType.PITCH_CHANGE: self._pitch_onsets,
                OnsetType.SPECTRAL_LEVEL_RISE: self._level_rise_onsets,
                OnsetType.POWER_RISE: self._power_rise_onsets,
            },
            self.ms_to_steps(self._parameters.minimum_onset_interval_ms),
        )
        logger.debug("fused onsets: %d", len(self._merged_onsets))

    def _detect_offsets(self) -> None:
        p = self._parameters
        self._onset_offsets, self._offset_drop_df = detect_offsets(
            sorted(self._merged_onsets),
            self._raw_power,
            self._level_rise.get_bins_above_drop_floor_at,
            sustain_steps=self.ms_to_steps(p.sustain_begin_threshold_ms),
            duration_threshold_db=p.note_duration_threshold_db,
            drop_ratio=p.spectral_drop_ratio_percent / 100.0,
        )

    # ------------------------------------------------------------------
    # Helpers usable once initialised
    # ------------------------------------------------------------------

    def ms_to_steps(self, ms: float, odd: bool = False) -> int:
        return units.ms_to_steps(ms, self.sample_rate, self._parameters.step_size, odd)

    def steps_to_ms(self, steps: int) -> float:
        return units.steps_to_ms(steps, self.sample_rate, self._parameters.step_size)

    def get_start_time(self) -> float:
        return 0.0 if self._start_time is None else self._start_time

    def time_for_step(self, step: int) -> float:
        """Time in seconds at the centre of the block for *step*."""
        p = self._parameters
        half_block = (p.block_size // p.step_size) // 2
        return self.get_start_time() + (step + half_block) * p.step_size / self.sample_rate

    @property
    def parameters(self) -> CoreParameters:
        return self._parameters

    # ------------------------------------------------------------------
    # Results (readable after finish)
    # ------------------------------------------------------------------

    def _check_finished(self, name: str) -> None:
        if not self._finished:
            raise ProtocolError(f"CoreFeatures.{name}: not finished yet")

    def get_normalisation_gain(self) -> float:
        self._check_finished("get_normalisation_gain")
        return self._normalisation_gain

    def get_pitch_hz(self) -> np.ndarray:
        """Pitch tracker output, Hz per step (<= 0 when unvoiced)."""
        self._check_finished("get_pitch_hz")
        return self._pitch_hz.copy()

    def get_pitch_semis(self) -> np.ndarray:
        self._check_finished("get_pitch_semis")
        return self._pitch.copy()

    def get_filtered_pitch_semis(self) -> np.ndarray:
        self._check_finished("get_filtered_pitch_semis")
        return self._filtered_pitch.copy()

    def get_pitch_onset_df(self) -> np.ndarray:
        """Pitch change difference function, one value per step with a full look-ahead."""
        self._check_finished("get_pitch_onset_df")
        return self._pitch_onset_df.copy()

    def get_pitch_onset_df_validity(self) -> np.ndarray:
        self._check_finished("get_pitch_onset_df_validity")
        return self._pitch_onset_df_validity.copy()

    def get_raw_power_db(self) -> np.ndarray:
        self._check_finished("get_raw_power_db")
        return self._raw_power.copy()

    def get_smoothed_power_db(self) -> np.ndarray:
        self._check_finished("get_smoothed_power_db")
        return self._smoothed_power.copy()

    def get_onset_level_rise_fractions(self) -> np.ndarray:
        self._check_finished("get_onset_level_rise_fractions")
        return self._rise_fractions.copy()

    def get_onset_bin_count(self) -> int:
        self._check_finished("get_onset_bin_count")
        return self._level_rise.get_bin_count()

    def get_onset_bins_above_noise_floor_at(self, step: int) -> np.ndarray:
        self._check_finished("get_onset_bins_above_noise_floor_at")
        return self._level_rise.get_bins_above_noise_floor_at(step).copy()

    def get_onset_bins_above_drop_floor_at(self, step: int) -> np.ndarray:
        self._check_finished("get_onset_bins_above_drop_floor_at")
        return self._level_rise.get_bins_above_drop_floor_at(step).copy()

    def get_offset_drop_df(self) -> np.ndarray:
        """Fraction of sustain-begin bins still active, 1.0 where unevaluated."""
        self._check_finished("get_offset_drop_df")
        return self._offset_drop_df.copy()

    def get_pitch_onsets(self) -> list[int]:
        self._check_finished("get_pitch_onsets")
        return list(self._pitch_onsets)

    def get_level_rise_onsets(self) -> list[int]:
        self._check_finished("get_level_rise_onsets")
        return list(self._level_rise_onsets)

    def get_power_rise_onsets(self) -> list[int]:
        self._check_finished("get_power_rise_onsets")
        return list(self._power_rise_onsets)

    def get_merged_onsets(self) -> dict[int, OnsetType]:
        self._check_finished("get_merged_onsets")
        return dict(self._merged_onsets)

    def get_onset_offsets(self) -> dict[int, tuple[int, OffsetType]]:
        """Onset step -> (offset step, offset cause), in onset order."""
        self._check_finished("get_onset_offsets")
        return dict(self._onset_offsets)

    def get_onsets(self) -> list[Onset]:
        self._check_finished("get_onsets")
        return [
            Onset(step=step, cause=cause, time=self.time_for_step(step))
            for step, cause in self._merged_onsets.items()
        ]

    def get_offsets(self) -> list[Offset]:
        self._check_finished("get_offsets")
        return [
            Offset(onset_step=onset, step=step, cause=cause, time=self.time_for_step(step))
            for onset, (step, cause) in self._onset_offsets.items()
        ]
