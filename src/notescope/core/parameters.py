"""
Configuration for the note-structure engine.

All tunables live in immutable dataclasses with named defaults so that an
analysis run is fully described by the object passed to ``initialise``.
Unit conversion helpers shared by every component are defined here too.
"""

import math
from dataclasses import dataclass, replace
from enum import Enum

from notescope.errors import ConfigurationError


class ProcessingMode(Enum):
    """How incoming blocks reach the per-block trackers."""

    IMMEDIATE = "immediate"
    BUFFER_THEN_NORMALIZE = "buffer_then_normalize"

    @classmethod
    def from_flag(cls, normalise: bool) -> "ProcessingMode":
        return cls.BUFFER_THEN_NORMALIZE if normalise else cls.IMMEDIATE


# ---------------------------------------------------------------------------
# Unit conversions
# ---------------------------------------------------------------------------

def ms_to_steps(ms: float, sample_rate: float, step_size: int, odd: bool = False) -> int:
    """
    Convert a duration in milliseconds to a whole number of hops.

    Rounds up. When *odd* is set the result is bumped to the next odd
    number, which is what centred filters need.
    """
    n = int(math.ceil((ms / 1000.0) * sample_rate / step_size))
    if odd and n % 2 == 0:
        n += 1
    return n


def steps_to_ms(steps: int, sample_rate: float, step_size: int) -> float:
    """Convert a hop count back to milliseconds."""
    return (float(steps) * float(step_size) * 1000.0) / sample_rate


def hz_to_pitch(hz: float) -> float:
    """Frequency in Hz to semitones (A3 = 220 Hz = 57)."""
    return 12.0 * math.log2(hz / 220.0) + 57.0


def pitch_to_hz(semis: float) -> float:
    """Semitones (A3 = 57) to frequency in Hz."""
    return 220.0 * 2.0 ** ((semis - 57.0) / 12.0)


# ---------------------------------------------------------------------------
# Core engine parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CoreParameters:
    """Tunables for pitch, power, spectral-rise and onset/offset analysis."""

    step_size: int = 256                                  # samples
    block_size: int = 2048                                # samples
    normalise: bool = True

    # Pitch tracker
    pitch_threshold_distribution: int = 2                 # pYIN prior index
    pitch_low_amp_suppression: float = 0.1                # linear RMS
    pitch_fmin_hz: float = 65.41                          # C2
    pitch_fmax_hz: float = 2093.0                         # C7

    # Onsets
    pitch_average_window_ms: float = 150.0
    use_pitch_onset_detector: bool = True
    onset_sensitivity_pitch_cents: float = 15.0
    onset_sensitivity_noise_percent: float = 17.0
    onset_sensitivity_level_db: float = 8.0
    onset_sensitivity_noise_time_window_ms: float = 100.0
    onset_sensitivity_raw_power_threshold_db: float = 6.0
    minimum_onset_interval_ms: float = 100.0

    # Offsets
    sustain_begin_threshold_ms: float = 60.0
    note_duration_threshold_db: float = 12.0
    spectral_noise_floor_db: float = -70.0
    spectral_drop_floor_db: float = -60.0
    spectral_drop_ratio_percent: float = 40.0

    # Spectral band
    spectral_frequency_min_hz: float = 100.0
    spectral_frequency_max_hz: float = 4000.0

    # Power curve
    power_filter_length: int = 18                         # steps
    power_floor_db: float = -120.0

    @property
    def processing_mode(self) -> ProcessingMode:
        return ProcessingMode.from_flag(self.normalise)

    def with_overrides(self, **changes) -> "CoreParameters":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def validate(self, sample_rate: float) -> None:
        """
        Check the parameter set against the given sample rate.

        Raises:
            ConfigurationError: Describing the first problem found.
        """
        if sample_rate <= 0:
            raise ConfigurationError(f"sample rate must be positive, got {sample_rate}")
        if self.step_size < 1:
            raise ConfigurationError(f"step_size must be > 0, got {self.step_size}")
        if self.block_size < 1:
            raise ConfigurationError(f"block_size must be > 0, got {self.block_size}")
        if self.step_size > self.block_size:
            raise ConfigurationError(
                f"step_size ({self.step_size}) may not exceed block_size ({self.block_size})"
            )
        if self.pitch_average_window_ms <= 0:
            raise ConfigurationError(
                f"pitch_average_window_ms must be positive, got {self.pitch_average_window_ms}"
            )
        if self.pitch_threshold_distribution not in (0, 1, 2, 3):
            raise ConfigurationError(
                "pitch_threshold_distribution must be one of 0, 1, 2, 3, "
                f"got {self.pitch_threshold_distribution}"
            )
        if not 0.0 <= self.pitch_low_amp_suppression <= 1.0:
            raise ConfigurationError(
                "pitch_low_amp_suppression must lie in [0, 1], "
                f"got {self.pitch_low_amp_suppression}"
            )
        if not 0.0 < self.pitch_fmin_hz < self.pitch_fmax_hz:
            raise ConfigurationError(
                f"pitch range ({self.pitch_fmin_hz} - {self.pitch_fmax_hz} Hz) is invalid"
            )

        non_negative = {
            "onset_sensitivity_pitch_cents": self.onset_sensitivity_pitch_cents,
            "onset_sensitivity_noise_percent": self.onset_sensitivity_noise_percent,
            "onset_sensitivity_noise_time_window_ms": self.onset_sensitivity_noise_time_window_ms,
            "onset_sensitivity_raw_power_threshold_db": self.onset_sensitivity_raw_power_threshold_db,
            "minimum_onset_interval_ms": self.minimum_onset_interval_ms,
            "sustain_begin_threshold_ms": self.sustain_begin_threshold_ms,
            "note_duration_threshold_db": self.note_duration_threshold_db,
        }
        for name, value in non_negative.items():
            if value < 0:
                raise ConfigurationError(f"{name} must not be negative, got {value}")

        if not 0.0 <= self.spectral_drop_ratio_percent <= 100.0:
            raise ConfigurationError(
                "spectral_drop_ratio_percent must lie in [0, 100], "
                f"got {self.spectral_drop_ratio_percent}"
            )
        if self.power_filter_length < 1:
            raise ConfigurationError(
                f"power_filter_length must be > 0, got {self.power_filter_length}"
            )
        # Band, rise ratio and floors are checked by SpectralRiseTracker.


DEFAULT_CORE_PARAMETERS = CoreParameters()


# ---------------------------------------------------------------------------
# Glide parameters
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GlideParameters:
    """
    Glide detection thresholds.

    These defaults are expressed directly in hops; use ``from_core`` to
    derive them from millisecond values for a particular step size.
    """

    duration_threshold_steps: int = 8
    onset_proximity_threshold_steps: int = 30
    minimum_pitch_threshold_cents: float = 20.0
    minimum_hop_difference_cents: float = 10.0
    maximum_hop_difference_cents: float = 50.0
    median_filter_length_steps: int = 27
    use_smoothing: bool = False

    @classmethod
    def from_core(
        cls,
        core: CoreParameters,
        sample_rate: float,
        duration_ms: float = 50.0,
        proximity_ms: float = 175.0,
        **overrides,
    ) -> "GlideParameters":
        """
        Build glide parameters whose step counts match a core configuration.

        The median window follows the core pitch-averaging window.
        """
        return cls(
            duration_threshold_steps=ms_to_steps(duration_ms, sample_rate, core.step_size),
            onset_proximity_threshold_steps=ms_to_steps(
                proximity_ms, sample_rate, core.step_size
            ),
            median_filter_length_steps=ms_to_steps(
                core.pitch_average_window_ms, sample_rate, core.step_size, odd=True
            ),
            **overrides,
        )

    def validate(self) -> None:
        if self.duration_threshold_steps < 1:
            raise ConfigurationError(
                f"duration_threshold_steps must be > 0, got {self.duration_threshold_steps}"
            )
        if self.onset_proximity_threshold_steps < 0:
            raise ConfigurationError(
                "onset_proximity_threshold_steps must not be negative, "
                f"got {self.onset_proximity_threshold_steps}"
            )
        if self.median_filter_length_steps < 1:
            raise ConfigurationError(
                f"median_filter_length_steps must be > 0, got {self.median_filter_length_steps}"
            )
        if self.minimum_pitch_threshold_cents < 0 or self.minimum_hop_difference_cents < 0:
            raise ConfigurationError("glide pitch thresholds must not be negative")
        if self.maximum_hop_difference_cents <= self.minimum_hop_difference_cents:
            raise ConfigurationError(
                f"maximum_hop_difference_cents ({self.maximum_hop_difference_cents}) must exceed "
                f"minimum_hop_difference_cents ({self.minimum_hop_difference_cents})"
            )


DEFAULT_GLIDE_PARAMETERS = GlideParameters()
