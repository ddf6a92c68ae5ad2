"""Errors raised by the per-speaker recording pipeline.

Every error is scoped to a single speaker. The registry catches them at the
speaker boundary, so they never reach sibling speakers or abort a guild stop.
"""


class RecordingError(Exception):
    """Base class for recording pipeline failures."""


class SubscriptionError(RecordingError):
    """The live audio source could not be established or failed while capturing."""


class DecodeError(RecordingError):
    """A compressed audio frame could not be decoded."""


class WriteError(RecordingError):
    """The staging file could not be written, flushed, or closed."""


class TranscodeError(RecordingError):
    """The external codec tool failed to produce the output file."""
