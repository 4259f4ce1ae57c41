"""Serialization of analysis results."""

from notescope.io.exporter import NoteManifestExporter

__all__ = ["NoteManifestExporter"]
