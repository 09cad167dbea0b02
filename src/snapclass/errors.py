"""Exception hierarchy for the classification pipeline.

Every error carries a ``user_message``: the single line shown to the user
when the error is recovered at the session, route, or display boundary.
"""

from __future__ import annotations


class SnapClassError(Exception):
    """Base class for all recoverable pipeline errors."""

    default_message = "Something went wrong"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def user_message(self) -> str:
        return str(self)


class DecodeError(SnapClassError):
    """The image stream could not be opened or decoded."""

    default_message = "Cannot decode the selected image"


class ClassifierFailure(SnapClassError):
    """The classifier reported an error for a request."""

    default_message = "Classification failed"

    @property
    def user_message(self) -> str:
        return f"Error: {self}"


class EmptyResultError(SnapClassError):
    """The classifier returned zero categories."""

    default_message = "No results found"


class NoImageSelectedError(SnapClassError):
    """Analysis was requested before any image was picked."""

    default_message = "Please select an image first"


class NotReadyError(SnapClassError):
    """A presentation payload was requested before a completed analysis."""

    default_message = "The classification result is not ready yet"


class MalformedPayloadError(SnapClassError):
    """A transferred result could not be reconstructed."""

    default_message = "Unable to display the classification result."
