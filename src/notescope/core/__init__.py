"""Core note-structure analysis modules."""

from notescope.core.analyzer import CoreFeatures
from notescope.core.glide import GlideExtractor
from notescope.core.power import PowerMeter
from notescope.core.spectral import SpectralRiseTracker

__all__ = ["CoreFeatures", "GlideExtractor", "PowerMeter", "SpectralRiseTracker"]
