"""
Note manifest serialization.

Turns a ``NoteAnalysis`` into a plain, JSON-serialisable dictionary with
one entry per note, so downstream classifiers and viewers can consume the
note timeline without importing numpy types.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np

from notescope.core.glide import GlideExtent
from notescope.pipeline import NoteAnalysis


@dataclass
class ManifestMetadata:
    """Metadata header for the note manifest."""

    sample_rate: float
    step_size: int
    block_size: int
    n_steps: int
    n_notes: int
    duration: float
    normalisation_gain: float
    schema_version: str = "1.0"


class NoteManifestExporter:
    """
    Exports a note analysis to a manifest dictionary or JSON text.

    Each note carries its onset and offset (step, time and cause), and the
    glide attached to its onset, if any. Per-step curves are included only
    on request since they dominate the manifest size.
    """

    def __init__(self, precision: int = 4, include_curves: bool = False):
        """
        Initialize the exporter.

        Args:
            precision: Decimal places for floating point values.
            include_curves: Also export the per-step pitch and power curves.
        """
        self.precision = precision
        self.include_curves = include_curves

    def _round(self, value: float) -> Optional[float]:
        """Round to configured precision; non-finite values become None."""
        f = float(value)
        if np.isnan(f) or np.isinf(f):
            return None
        return round(f, self.precision)

    def _time(self, analysis: NoteAnalysis, step: int) -> Optional[float]:
        # Step times are linear; offsets may sit one past the last step.
        if len(analysis.step_times) == 0:
            return None
        hop = analysis.step_size / analysis.sample_rate
        return self._round(analysis.step_times[0] + step * hop)

    def _glide_entry(
        self, analysis: NoteAnalysis, glide: Optional[GlideExtent]
    ) -> Optional[dict[str, Any]]:
        if glide is None:
            return None
        return {
            "start_step": glide.start,
            "end_step": glide.end,
            "start_time": self._time(analysis, glide.start),
            "end_time": self._time(analysis, glide.end),
        }

    def _build_note(self, analysis: NoteAnalysis, index: int, onset: int) -> dict[str, Any]:
        offset, offset_cause = analysis.onset_offsets[onset]
        onset_cause = analysis.onsets.get(onset)
        return {
            "note_index": index,
            "onset_step": onset,
            "onset_time": self._time(analysis, onset),
            "onset_cause": onset_cause.value if onset_cause is not None else None,
            "offset_step": offset,
            "offset_time": self._time(analysis, offset),
            "offset_cause": offset_cause.value,
            "glide": self._glide_entry(analysis, analysis.glides.get(onset)),
        }

    def build_manifest(self, analysis: NoteAnalysis) -> dict[str, Any]:
        """
        Build the complete manifest dictionary.

        Args:
            analysis: Result of ``NotePipeline.process``.

        Returns:
            Manifest dictionary ready for serialization.
        """
        metadata = ManifestMetadata(
            sample_rate=analysis.sample_rate,
            step_size=analysis.step_size,
            block_size=analysis.block_size,
            n_steps=analysis.n_steps,
            n_notes=analysis.n_notes,
            duration=self._round(analysis.duration),
            normalisation_gain=self._round(analysis.normalisation_gain),
        )

        notes = [
            self._build_note(analysis, i, onset)
            for i, onset in enumerate(sorted(analysis.onset_offsets))
        ]

        manifest: dict[str, Any] = {
            "metadata": {
                "sample_rate": metadata.sample_rate,
                "step_size": metadata.step_size,
                "block_size": metadata.block_size,
                "n_steps": metadata.n_steps,
                "n_notes": metadata.n_notes,
                "duration": metadata.duration,
                "normalisation_gain": metadata.normalisation_gain,
                "schema_version": metadata.schema_version,
            },
            "notes": notes,
        }

        if self.include_curves:
            manifest["curves"] = {
                "time": [self._round(t) for t in analysis.step_times],
                "pitch_hz": [self._round(v) for v in analysis.pitch_hz],
                "raw_power_db": [self._round(v) for v in analysis.raw_power_db],
                "smoothed_power_db": [self._round(v) for v in analysis.smoothed_power_db],
                "rise_fractions": [self._round(v) for v in analysis.rise_fractions],
            }

        return manifest

    def to_json(self, analysis: NoteAnalysis, indent: Optional[int] = 2) -> str:
        """Serialise the manifest to a JSON string."""
        return json.dumps(self.build_manifest(analysis), indent=indent)
