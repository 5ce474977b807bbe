"""Resolved on-disk locations of the downloaded models."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict

from waico.errors import NotFoundError
from waico.models.artifacts import ModelKind


class DownloadedModelPaths(BaseModel):
    """Built once after all downloads complete; read-only afterwards.

    Transcription-only runs never fetch the TTS and chat artifacts, so
    those two may be unset.
    """

    model_config = ConfigDict(frozen=True)

    stt: Path
    vad: Path
    tts: Path | None = None
    chat: Path | None = None

    def for_kind(self, kind: ModelKind) -> Path:
        path = getattr(self, kind.value)
        if path is None:
            raise NotFoundError(f"No {kind.value} model was downloaded", missing=kind.value)
        return path
