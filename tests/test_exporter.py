"""Tests for note manifest export."""

import json

import numpy as np
import pytest

from notescope.core.analyzer import OffsetType, OnsetType
from notescope.core.glide import GlideExtent
from notescope.io.exporter import NoteManifestExporter
from notescope.pipeline import NoteAnalysis

SR = 44100.0
STEP = 256
HOP = STEP / SR


@pytest.fixture
def analysis():
    n = 40
    times = 1024 / SR + np.arange(n) * HOP
    pitch = np.full(n, 220.0)
    pitch[:5] = -1.0
    raw = np.full(n, -30.0)
    raw[0] = -np.inf
    return NoteAnalysis(
        sample_rate=SR,
        step_size=STEP,
        block_size=2048,
        n_steps=n,
        duration=(2048 + (n - 1) * STEP) / SR,
        normalisation_gain=1.0,
        onsets={5: OnsetType.SPECTRAL_LEVEL_RISE, 20: OnsetType.PITCH_CHANGE},
        onset_offsets={
            20: (n, OffsetType.FOLLOWING_ONSET_REACHED),
            5: (18, OffsetType.POWER_DROP),
        },
        glides={20: GlideExtent(16, 22)},
        step_times=times,
        pitch_hz=pitch,
        pitch_semis=np.full(n, 57.0),
        raw_power_db=raw,
        smoothed_power_db=raw.copy(),
        rise_fractions=np.zeros(n - 4),
    )


class TestNoteManifestExporter:
    def test_metadata(self, analysis):
        manifest = NoteManifestExporter().build_manifest(analysis)
        meta = manifest["metadata"]
        assert meta["sample_rate"] == SR
        assert meta["step_size"] == STEP
        assert meta["n_steps"] == 40
        assert meta["n_notes"] == 2
        assert meta["schema_version"] == "1.0"

    def test_notes_ordered_by_onset(self, analysis):
        notes = NoteManifestExporter().build_manifest(analysis)["notes"]
        assert [note["onset_step"] for note in notes] == [5, 20]
        assert [note["note_index"] for note in notes] == [0, 1]

    def test_note_fields(self, analysis):
        first, second = NoteManifestExporter().build_manifest(analysis)["notes"]

        assert first["onset_cause"] == OnsetType.SPECTRAL_LEVEL_RISE.value
        assert first["offset_step"] == 18
        assert first["offset_cause"] == OffsetType.POWER_DROP.value
        assert first["onset_time"] == pytest.approx(analysis.step_times[5], abs=1e-4)
        assert first["glide"] is None

        assert second["glide"]["start_step"] == 16
        assert second["glide"]["end_step"] == 22

    def test_offset_past_last_step_has_time(self, analysis):
        second = NoteManifestExporter().build_manifest(analysis)["notes"][1]
        expected = analysis.step_times[0] + 40 * HOP
        assert second["offset_time"] == pytest.approx(expected, abs=1e-4)

    def test_curves_only_on_request(self, analysis):
        assert "curves" not in NoteManifestExporter().build_manifest(analysis)

        curves = NoteManifestExporter(include_curves=True).build_manifest(analysis)["curves"]
        assert len(curves["time"]) == 40
        assert curves["pitch_hz"][0] == -1.0
        # Silent steps have no finite power
        assert curves["raw_power_db"][0] is None
        assert curves["raw_power_db"][1] == -30.0

    def test_precision(self, analysis):
        notes = NoteManifestExporter(precision=2).build_manifest(analysis)["notes"]
        assert notes[0]["onset_time"] == round(analysis.step_times[5], 2)

    def test_json_is_valid(self, analysis):
        text = NoteManifestExporter(include_curves=True).to_json(analysis)
        parsed = json.loads(text)
        assert len(parsed["notes"]) == 2
        assert parsed["curves"]["raw_power_db"][0] is None
