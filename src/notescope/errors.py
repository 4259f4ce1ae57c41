"""
Exception types raised by the note-structure engine.

Configuration problems and call-order mistakes are kept apart so callers
can tell a bad parameter set from a programming error.
"""


class ConfigurationError(ValueError):
    """Parameters are out of range or inconsistent with one another."""


class ProtocolError(RuntimeError):
    """A method was called out of its permitted lifecycle order."""
