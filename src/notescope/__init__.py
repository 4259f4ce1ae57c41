"""Note onset, offset and glide extraction for monophonic audio."""

from notescope.core.analyzer import CoreFeatures, OffsetType, OnsetType
from notescope.core.glide import GlideExtractor
from notescope.core.parameters import CoreParameters, GlideParameters
from notescope.io.exporter import NoteManifestExporter
from notescope.pipeline import NotePipeline

__version__ = "0.1.0"
__all__ = [
    "CoreFeatures",
    "OnsetType",
    "OffsetType",
    "GlideExtractor",
    "CoreParameters",
    "GlideParameters",
    "NoteManifestExporter",
    "NotePipeline",
]
