"""
Glide (portamento) extraction.

A glide is a run of hops in which the pitch keeps moving the same way in
small steps until it reaches the note it is heading for. Glides are found
on the pitch track alone and then attached to the nearest onset of the
note timeline.
"""

import bisect
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import numpy as np

from notescope.core.parameters import DEFAULT_GLIDE_PARAMETERS, GlideParameters, hz_to_pitch
from notescope.core.polisher import following_median, mean_filter

logger = logging.getLogger(__name__)

SMOOTHING_LENGTH = 5


@dataclass(frozen=True)
class GlideExtent:
    """First and last hop of a glide, both inclusive."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass
class _Assignment:
    extent: GlideExtent
    provisional: bool


class GlideExtractor:
    """
    Detects glides and maps each onset to at most one of them.

    A run of candidate hops is tracked with two latches, one for a hop
    larger than the minimum hop difference and one for straying at least
    the minimum pitch threshold from the median of the pitch that
    follows. A run ends on a direction change, a hop over the maximum
    difference, a missing pitch, or once the pitch has come back to its
    reference median after straying from it. Runs that lasted long
    enough, fired both latches and drifted far enough overall are glides.
    """

    def __init__(self, parameters: GlideParameters = DEFAULT_GLIDE_PARAMETERS):
        parameters.validate()
        self.parameters = parameters

    def extract_hz(
        self,
        pitch_hz: np.ndarray,
        onset_offsets: Mapping[int, object],
    ) -> dict[int, GlideExtent]:
        """
        Find glides in a Hz track (<= 0 unvoiced) and map them to onsets.

        Args:
            pitch_hz: Pitch per step, as produced by the pitch tracker.
            onset_offsets: Mapping keyed by onset step; values are unused.

        Returns:
            Onset step -> glide extent, in onset order.
        """
        hz = np.asarray(pitch_hz, dtype=float)
        voiced = hz > 0.0
        semis = np.zeros(len(hz), dtype=float)
        prev = 0.0
        for i in range(len(hz)):
            if voiced[i]:
                prev = hz_to_pitch(hz[i])
            semis[i] = prev
        return self.extract_semis(semis, voiced, onset_offsets)

    def extract_semis(
        self,
        pitch_semis: np.ndarray,
        voiced: np.ndarray,
        onset_offsets: Mapping[int, object],
    ) -> dict[int, GlideExtent]:
        """Same as ``extract_hz`` for a semitone track plus voicing flags."""
        glides = self.find_glides(pitch_semis, voiced)
        return self.assign_to_onsets(glides, sorted(onset_offsets))

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def find_glides(self, pitch_semis: np.ndarray, voiced: np.ndarray) -> list[GlideExtent]:
        """All accepted glides in ascending order, ignoring onsets."""
        p = self.parameters
        pitch = np.asarray(pitch_semis, dtype=float)
        voiced = np.asarray(voiced, dtype=bool)
        n = len(pitch)
        if p.use_smoothing:
            pitch = mean_filter(pitch, SMOOTHING_LENGTH)

        # Only defined where a whole window follows the step.
        reference = following_median(pitch, p.median_filter_length_steps)

        min_pitch = p.minimum_pitch_threshold_cents / 100.0
        min_hop = p.minimum_hop_difference_cents / 100.0
        max_hop = p.maximum_hop_difference_cents / 100.0

        glides: list[GlideExtent] = []
        start: Optional[int] = None
        hop_latch = False
        median_latch = False
        prev_delta = 0.0

        def close(end: int) -> None:
            length = end - start + 1
            drift = abs(pitch[end] - pitch[start])
            if (length >= p.duration_threshold_steps and hop_latch and median_latch
                    and drift >= min_pitch):
                glides.append(GlideExtent(start, end))
                logger.debug("glide %d-%d accepted (drift %.3f semis)", start, end, drift)
            else:
                logger.debug(
                    "candidate %d-%d rejected: length %d, hop latch %s, median latch %s, "
                    "drift %.3f semis",
                    start, end, length, hop_latch, median_latch, drift,
                )

        for i in range(1, n):
            is_candidate = False
            delta = 0.0
            if voiced[i] and voiced[i - 1]:
                delta = pitch[i] - pitch[i - 1]
                same_direction = (delta > 0.0 and prev_delta > 0.0) or (
                    delta < 0.0 and prev_delta < 0.0
                )
                is_candidate = same_direction and abs(delta) <= max_hop
                prev_delta = delta
            else:
                prev_delta = 0.0

            has_reference = i < len(reference)
            distance = abs(pitch[i] - reference[i]) if has_reference else 0.0

            if is_candidate and start is not None and median_latch and has_reference:
                if distance < min_pitch:
                    # Back at the target note
                    close(i - 1)
                    start = None
                    continue

            if not is_candidate:
                if start is not None:
                    close(i - 1)
                    start = None
                continue

            if start is None:
                start = i
                hop_latch = False
                median_latch = False
            if abs(delta) > min_hop:
                hop_latch = True
            if has_reference and distance >= min_pitch:
                median_latch = True

        if start is not None:
            close(n - 1)

        return glides

    # ------------------------------------------------------------------
    # Onset assignment
    # ------------------------------------------------------------------

    def assign_to_onsets(
        self,
        glides: list[GlideExtent],
        onsets: list[int],
    ) -> dict[int, GlideExtent]:
        """
        Attach each glide to one onset.

        Glides arrive in ascending order and never overlap. An onset inside
        a glide takes it definitively. Otherwise the nearest onset within
        the proximity threshold takes it provisionally, and a provisional
        choice gives way to a later glide that ends before the onset, or to
        one after the onset that is both longer and closer.
        """
        proximity = self.parameters.onset_proximity_threshold_steps
        assigned: dict[int, _Assignment] = {}

        for glide in glides:
            start, end = glide.start, glide.end

            i = bisect.bisect_left(onsets, start)
            if i < len(onsets) and onsets[i] <= end:
                onset = onsets[i]
                logger.debug("glide %d-%d contains onset %d", start, end, onset)
                assigned[onset] = _Assignment(glide, provisional=False)
                continue

            best_onset = None
            min_dist = proximity + 1
            j = bisect.bisect_left(onsets, start - proximity)
            while j < len(onsets) and onsets[j] <= end + proximity:
                onset = onsets[j]
                dist = min(abs(start - onset), abs(end - onset))
                if dist < min_dist:
                    min_dist = dist
                    best_onset = onset
                j += 1

            if best_onset is None:
                logger.debug("glide %d-%d has no onset in range, ignored", start, end)
                continue

            existing = assigned.get(best_onset)
            if existing is None:
                logger.debug("glide %d-%d provisionally attached to %d", start, end, best_onset)
                assigned[best_onset] = _Assignment(glide, provisional=True)
            elif existing.provisional:
                prior = existing.extent
                if best_onset > end:
                    # Later glide before the onset is necessarily closer.
                    logger.debug("glide %d-%d replaces %d-%d at %d",
                                 start, end, prior.start, prior.end, best_onset)
                    assigned[best_onset] = _Assignment(glide, provisional=True)
                elif best_onset > prior.end:
                    if (end - start > prior.end - prior.start
                            and min_dist < best_onset - prior.end):
                        logger.debug("glide %d-%d is longer and closer than %d-%d at %d",
                                     start, end, prior.start, prior.end, best_onset)
                        assigned[best_onset] = _Assignment(glide, provisional=False)
                    else:
                        logger.debug("glide %d-%d loses to %d-%d at %d",
                                     start, end, prior.start, prior.end, best_onset)

        return {onset: assigned[onset].extent for onset in sorted(assigned)}
