"""Tests for the offline pipeline and block framing."""

import numpy as np
import pytest

from conftest import BLOCK, STEP, TEST_SR, n_samples_for_blocks, tone
from notescope.core.parameters import CoreParameters, GlideParameters
from notescope.core.pitch import PrecomputedPitchTracker
from notescope.core.stream import BlockStream
from notescope.errors import ConfigurationError
from notescope.pipeline import NoteAnalysis, NotePipeline


def burst_pitch():
    return np.concatenate([np.full(100, -1.0), np.full(150, 440.0)])


@pytest.fixture
def pipeline():
    return NotePipeline(
        TEST_SR,
        CoreParameters(normalise=False),
        pitch_tracker=PrecomputedPitchTracker(burst_pitch()),
    )


class TestBlockStream:
    def test_block_count(self):
        stream = BlockStream(np.zeros(n_samples_for_blocks(10)), TEST_SR)
        assert len(stream) == 10
        assert len(list(stream)) == 10

    def test_short_signal_has_no_blocks(self):
        stream = BlockStream(np.zeros(BLOCK - 1), TEST_SR)
        assert len(stream) == 0
        assert list(stream) == []

    def test_blocks_and_timestamps(self):
        signal = np.arange(n_samples_for_blocks(3), dtype=np.float32)
        blocks = list(BlockStream(signal, TEST_SR))
        for i, (block, timestamp) in enumerate(blocks):
            assert len(block) == BLOCK
            assert block[0] == i * STEP
            assert timestamp == pytest.approx(i * STEP / TEST_SR)

    def test_rejects_multichannel(self):
        with pytest.raises(ConfigurationError):
            BlockStream(np.zeros((2, 4096)), TEST_SR)

    def test_rejects_step_larger_than_block(self):
        with pytest.raises(ConfigurationError):
            BlockStream(np.zeros(4096), TEST_SR, block_size=256, step_size=512)


class TestNotePipeline:
    def test_analysis_shape(self, pipeline, tone_burst_signal):
        analysis = pipeline.process(tone_burst_signal)

        assert isinstance(analysis, NoteAnalysis)
        assert analysis.n_steps == 250
        for curve in (
            analysis.step_times,
            analysis.pitch_hz,
            analysis.pitch_semis,
            analysis.raw_power_db,
            analysis.smoothed_power_db,
        ):
            assert len(curve) == analysis.n_steps
        assert analysis.duration == pytest.approx(len(tone_burst_signal) / TEST_SR)
        assert analysis.normalisation_gain == 1.0

    def test_step_times_are_evenly_spaced(self, pipeline, tone_burst_signal):
        analysis = pipeline.process(tone_burst_signal)
        hop = STEP / TEST_SR
        assert np.allclose(np.diff(analysis.step_times), hop)
        # Each step is timed at the centre of its block
        assert analysis.step_times[0] == pytest.approx((BLOCK // 2) / TEST_SR)

    def test_tone_start_is_a_note(self, pipeline, tone_burst_signal):
        analysis = pipeline.process(tone_burst_signal)
        assert any(80 <= onset <= 115 for onset in analysis.onset_offsets)
        assert analysis.n_notes == len(analysis.onset_offsets)

    def test_offsets_follow_onsets(self, pipeline, tone_burst_signal):
        analysis = pipeline.process(tone_burst_signal)
        for onset, (offset, _) in analysis.onset_offsets.items():
            assert onset < offset <= analysis.n_steps
            assert onset in analysis.onsets

    def test_glides_belong_to_onsets(self, pipeline, tone_burst_signal):
        analysis = pipeline.process(tone_burst_signal)
        assert set(analysis.glides) <= set(analysis.onset_offsets)

    def test_reuse_gives_identical_results(self, pipeline, tone_burst_signal):
        first = pipeline.process(tone_burst_signal)
        second = pipeline.process(tone_burst_signal)
        assert first.onset_offsets == second.onset_offsets
        assert np.array_equal(first.raw_power_db, second.raw_power_db)

    def test_glide_parameters_derived_from_core(self, pipeline):
        expected = GlideParameters.from_core(CoreParameters(normalise=False), TEST_SR)
        assert pipeline.glide_parameters == expected

    def test_explicit_glide_parameters_are_kept(self):
        glide = GlideParameters(duration_threshold_steps=4)
        pipeline = NotePipeline(
            TEST_SR,
            CoreParameters(normalise=False),
            glide_parameters=glide,
            pitch_tracker=PrecomputedPitchTracker([]),
        )
        assert pipeline.glide_parameters is glide

    def test_normalised_run_reports_gain(self):
        signal = np.zeros(n_samples_for_blocks(250), dtype=np.float32)
        signal[100 * STEP:] = tone(len(signal) - 100 * STEP, 440.0, amp=0.25)
        pipeline = NotePipeline(
            TEST_SR,
            CoreParameters(normalise=True),
            pitch_tracker=PrecomputedPitchTracker(burst_pitch()),
        )
        analysis = pipeline.process(signal)
        assert analysis.normalisation_gain == pytest.approx(4.0, rel=1e-3)
        assert analysis.n_steps == 250

    def test_invalid_parameters_rejected_at_construction(self):
        with pytest.raises(ConfigurationError):
            NotePipeline(TEST_SR, CoreParameters(step_size=4096, block_size=2048))
