"""Model registry: the one owner of every loaded model.

Replaces process-wide singletons: the app builds one registry, hands the
adapters to whoever needs them, and disposes everything on exit.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from waico.chat.model import ChatModel
from waico.config import Settings
from waico.models.artifacts import ModelKind, resolve_model_artifact
from waico.models.paths import DownloadedModelPaths
from waico.voice.stt import SttModel
from waico.voice.tts import TtsModel, kokoro_lang_for_voice

logger = logging.getLogger(__name__)

ALL_KINDS = (ModelKind.CHAT, ModelKind.TTS, ModelKind.STT, ModelKind.VAD)


class ModelRegistry:
    def __init__(self, stt: SttModel, tts: TtsModel, chat: ChatModel, tts_lang: str = "en-us"):
        self.stt = stt
        self.tts = tts
        self.chat = chat
        self.tts_lang = tts_lang
        self.vad_model_path: Path | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> ModelRegistry:
        tts_lang = (
            kokoro_lang_for_voice(settings.tts_voice)
            if settings.voice_model_type == "premium"
            else settings.language
        )
        return cls(
            stt=SttModel(
                num_threads=settings.num_threads, provider=settings.provider, debug=settings.debug
            ),
            tts=TtsModel(
                model_type=settings.voice_model_type,
                num_threads=settings.num_threads,
                provider=settings.provider,
                debug=settings.debug,
            ),
            chat=ChatModel(
                max_new_tokens=settings.chat_max_new_tokens,
                temperature=settings.chat_temperature,
                top_k=settings.chat_top_k,
                top_p=settings.chat_top_p,
            ),
            tts_lang=tts_lang,
        )

    def initialize_all(
        self, paths: DownloadedModelPaths, kinds: Iterable[ModelKind] = ALL_KINDS
    ) -> None:
        """Load the requested kinds. The first failure propagates."""
        for kind in kinds:
            path = paths.for_kind(kind)
            logger.info("Initializing %s model from %s", kind.value, path)
            if kind is ModelKind.STT:
                self.stt.initialize(path)
            elif kind is ModelKind.TTS:
                self.tts.initialize(path, lang=self.tts_lang)
            elif kind is ModelKind.CHAT:
                self.chat.initialize(path)
            elif kind is ModelKind.VAD:
                # The VAD is built per listener; only the file is resolved here
                self.vad_model_path = resolve_model_artifact(path)

    def dispose_all(self) -> None:
        """Release every model. Safe to call repeatedly."""
        self.stt.dispose()
        self.tts.dispose()
        self.chat.dispose()
        self.vad_model_path = None

    def __enter__(self) -> ModelRegistry:
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose_all()
