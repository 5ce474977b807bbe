"""Error kinds raised by the model adapters, the downloader and the listener."""

from __future__ import annotations

from pathlib import Path


class WaicoError(Exception):
    """Base class for all waico errors."""


class NotFoundError(WaicoError, FileNotFoundError):
    """A model artifact, or a required file inside it, is missing."""

    def __init__(self, message: str, missing: str | None = None, where: Path | None = None):
        super().__init__(message)
        self.missing = missing
        self.where = where

    def __str__(self) -> str:
        return self.args[0]


class NotInitializedError(WaicoError, RuntimeError):
    """A model was used before ``initialize()`` (or after ``dispose()``)."""


class PermissionDenied(WaicoError, PermissionError):
    """Microphone access was refused."""


class InferenceError(WaicoError, RuntimeError):
    """The native model failed while decoding or generating."""


class DownloadError(WaicoError):
    """A model artifact could not be downloaded."""


class ListenerStateError(WaicoError, RuntimeError):
    """A listener operation was called from a state that does not allow it."""


class MaxTokensExceededError(WaicoError):
    """The chat history plus the new prompt do not fit the context window."""
