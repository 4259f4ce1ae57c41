"""
Offline note-structure pipeline.

Frames an in-memory signal into hop-aligned blocks, runs it through the
onset/offset engine and then the glide extractor, and gathers everything
downstream consumers need into one ``NoteAnalysis``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from notescope.core.analyzer import CoreFeatures, OffsetType, OnsetType
from notescope.core.glide import GlideExtent, GlideExtractor
from notescope.core.parameters import (
    DEFAULT_CORE_PARAMETERS,
    CoreParameters,
    GlideParameters,
)
from notescope.core.pitch import PitchTracker
from notescope.core.stream import BlockStream

logger = logging.getLogger(__name__)


@dataclass
class NoteAnalysis:
    """Complete result of one pipeline run."""

    sample_rate: float
    step_size: int
    block_size: int
    n_steps: int
    duration: float
    normalisation_gain: float

    onsets: dict[int, OnsetType]
    onset_offsets: dict[int, tuple[int, OffsetType]]
    glides: dict[int, GlideExtent]

    step_times: np.ndarray
    pitch_hz: np.ndarray
    pitch_semis: np.ndarray
    raw_power_db: np.ndarray
    smoothed_power_db: np.ndarray
    rise_fractions: np.ndarray

    @property
    def n_notes(self) -> int:
        return len(self.onset_offsets)


class NotePipeline:
    """
    Runs the note-structure engine over a whole signal.

    Example:
        pipeline = NotePipeline(sample_rate=44100)
        analysis = pipeline.process(signal)
        for onset, (offset, cause) in analysis.onset_offsets.items():
            ...
    """

    def __init__(
        self,
        sample_rate: float,
        parameters: CoreParameters = DEFAULT_CORE_PARAMETERS,
        glide_parameters: Optional[GlideParameters] = None,
        pitch_tracker: Optional[PitchTracker] = None,
    ):
        """
        Initialize the pipeline.

        Args:
            sample_rate: Sample rate of the signals to be processed.
            parameters: Engine configuration.
            glide_parameters: Glide thresholds. Derived from *parameters*
                and the sample rate when omitted.
            pitch_tracker: Pitch source; librosa pYIN when omitted.
        """
        self.sample_rate = float(sample_rate)
        self.parameters = parameters
        if glide_parameters is None:
            glide_parameters = GlideParameters.from_core(parameters, self.sample_rate)
        self.glide_parameters = glide_parameters
        self.pitch_tracker = pitch_tracker

        self.features = CoreFeatures(self.sample_rate, pitch_tracker)
        self.features.initialise(parameters)
        self.glide_extractor = GlideExtractor(glide_parameters)

    def process(self, signal: np.ndarray) -> NoteAnalysis:
        """
        Analyse a complete mono signal.

        The pipeline may be reused; each call starts from a clean engine.
        """
        p = self.parameters
        features = self.features
        features.reset()

        stream = BlockStream(signal, self.sample_rate, p.block_size, p.step_size)
        logger.debug("processing %d blocks", len(stream))
        for block, timestamp in stream:
            features.process(block, timestamp)
        features.finish()

        pitch_hz = features.get_pitch_hz()
        onset_offsets = features.get_onset_offsets()
        glides = self.glide_extractor.extract_hz(pitch_hz, onset_offsets)

        n_steps = len(features.get_raw_power_db())
        logger.debug(
            "%d onsets, %d glides over %d steps", len(onset_offsets), len(glides), n_steps
        )

        return NoteAnalysis(
            sample_rate=self.sample_rate,
            step_size=p.step_size,
            block_size=p.block_size,
            n_steps=n_steps,
            duration=len(signal) / self.sample_rate,
            normalisation_gain=features.get_normalisation_gain(),
            onsets=features.get_merged_onsets(),
            onset_offsets=onset_offsets,
            glides=glides,
            step_times=np.array([features.time_for_step(i) for i in range(n_steps)]),
            pitch_hz=pitch_hz,
            pitch_semis=features.get_pitch_semis(),
            raw_power_db=features.get_raw_power_db(),
            smoothed_power_db=features.get_smoothed_power_db(),
            rise_fractions=features.get_onset_level_rise_fractions(),
        )
