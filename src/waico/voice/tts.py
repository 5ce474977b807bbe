"""Text-to-speech: sherpa-onnx Kokoro (premium) or Piper/VITS (lite)."""

from __future__ import annotations

import asyncio
import io
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

import numpy as np
import soundfile

from waico.errors import InferenceError, NotInitializedError
from waico.models.artifacts import TTS_KOKORO, TTS_PIPER, require_files, resolve_model_artifact

logger = logging.getLogger(__name__)

VoiceModelType = Literal["premium", "lite"]


# Regex patterns for sanitizing text before TTS ingestion.
# Strip emoji and markdown so the synthesizer gets clean prose.
_EMOJI_RE = re.compile(
    "["
    "\U0001f600-\U0001f64f"  # emoticons
    "\U0001f300-\U0001f5ff"  # symbols & pictographs
    "\U0001f680-\U0001f6ff"  # transport & map
    "\U0001f1e0-\U0001f1ff"  # flags
    "\U0001f900-\U0001f9ff"  # supplemental symbols
    "\U0001fa00-\U0001fa6f"  # chess symbols
    "\U0001fa70-\U0001faff"  # symbols extended-A
    "\U00002702-\U000027b0"  # dingbats
    "\U0000fe00-\U0000fe0f"  # variation selectors
    "\U0000200d"  # zero-width joiner
    "]+",
    flags=re.UNICODE,
)
_MARKDOWN_RE = re.compile(r"(\*{1,2}|_{1,2}|`{1,3}|~{2}|^#{1,6}\s*)", flags=re.MULTILINE)


def sanitize_for_tts(text: str) -> str:
    """Strip emoji and markdown formatting so the synthesizer gets clean text."""
    text = _EMOJI_RE.sub("", text)
    text = _MARKDOWN_RE.sub("", text)
    return text.strip()


# Kokoro voice names are <lang><gender>_<name>; the first letter picks the language.
KOKORO_LANG_CODES = {
    "a": "en-us",
    "b": "en-gb",
    "e": "es",
    "f": "fr-fr",
    "h": "hi",
    "i": "it",
    "p": "pt-br",
    "j": "ja",
    "z": "zh",
}

KOKORO_VOICES = {
    name: sid
    for sid, name in enumerate(
        [
            "af_alloy", "af_aoede", "af_bella", "af_heart", "af_jessica", "af_kore",
            "af_nicole", "af_nova", "af_river", "af_sarah", "af_sky", "am_adam",
            "am_echo", "am_eric", "am_fenrir", "am_liam", "am_michael", "am_onyx",
            "am_puck", "am_santa", "bf_alice", "bf_emma", "bf_isabella", "bf_lily",
            "bm_daniel", "bm_fable", "bm_george", "bm_lewis", "ef_dora", "em_alex",
            "ff_siwis", "hf_alpha", "hf_beta", "hm_omega", "hm_psi", "if_sara",
            "im_nicola", "jf_alpha", "jf_gongitsune", "jf_nezumi", "jf_tebukuro",
            "jm_kumo", "pf_dora", "pm_alex", "pm_santa", "zf_xiaobei", "zf_xiaoni",
            "zf_xiaoxiao", "zf_xiaoyi", "zm_yunjian", "zm_yunxi", "zm_yunxia",
            "zm_yunyang",
        ]
    )
}


def kokoro_lang_for_voice(voice: str) -> str:
    try:
        return KOKORO_LANG_CODES[voice[0]]
    except (IndexError, KeyError):
        raise ValueError(f"Cannot derive a language from voice {voice!r}") from None


@dataclass
class TtsResult:
    samples: np.ndarray  # float32 in [-1, 1]
    sample_rate: int

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0

    def to_int16_pcm(self) -> np.ndarray:
        """Clamp to [-1, 1] and scale to 16-bit PCM."""
        clamped = np.clip(np.asarray(self.samples, dtype=np.float32), -1.0, 1.0)
        return np.round(clamped * 32767).astype(np.int16)

    def to_wav(self) -> bytes:
        """Encode as a mono 16-bit WAV file."""
        buf = io.BytesIO()
        soundfile.write(buf, self.to_int16_pcm(), self.sample_rate, format="WAV", subtype="PCM_16")
        return buf.getvalue()


class TTSProvider(Protocol):
    """Protocol for text-to-speech providers."""

    def generate_speech(self, text: str, voice: str, speed: float = 1.0) -> TtsResult: ...


class TtsModel:
    """Offline TTS loaded once and reused.

    ``premium`` expects a Kokoro model directory, ``lite`` a Piper (VITS)
    one. Lite models carry a single speaker, so the voice name is ignored.
    """

    def __init__(
        self,
        model_type: VoiceModelType = "premium",
        num_threads: int = 1,
        provider: str = "cpu",
        debug: bool = False,
    ):
        self.model_type = model_type
        self._num_threads = num_threads
        self._provider = provider
        self._debug = debug
        self._tts = None
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._tts is not None

    def initialize(self, model_path: str | Path, lang: str = "en-us") -> None:
        with self._lock:
            if self._tts is not None:
                logger.info("TtsModel already initialized, skipping.")
                return

            model_dir = resolve_model_artifact(model_path)
            spec = TTS_KOKORO if self.model_type == "premium" else TTS_PIPER
            files = require_files(model_dir, spec)

            import sherpa_onnx

            if self.model_type == "premium":
                model_config = sherpa_onnx.OfflineTtsModelConfig(
                    kokoro=sherpa_onnx.OfflineTtsKokoroModelConfig(
                        model=str(files["model.onnx"]),
                        voices=str(files["voices.bin"]),
                        tokens=str(files["tokens.txt"]),
                        data_dir=str(files["espeak-ng-data"]),
                        dict_dir=str(files["dict"]),
                        lang=lang,
                    ),
                    num_threads=self._num_threads,
                    provider=self._provider,
                    debug=self._debug,
                )
            else:
                model_config = sherpa_onnx.OfflineTtsModelConfig(
                    vits=sherpa_onnx.OfflineTtsVitsModelConfig(
                        model=str(files["model.onnx"]),
                        tokens=str(files["tokens.txt"]),
                        data_dir=str(files["espeak-ng-data"]),
                    ),
                    num_threads=self._num_threads,
                    provider=self._provider,
                    debug=self._debug,
                )

            logger.info("Loading %s TTS model from %s", self.model_type, model_dir)
            self._tts = sherpa_onnx.OfflineTts(sherpa_onnx.OfflineTtsConfig(model=model_config))
            logger.info("TTS model initialized")

    def dispose(self) -> None:
        with self._lock:
            if self._tts is None:
                return
            self._tts = None
        logger.info("TTS model disposed")

    def speaker_id(self, voice: str) -> int:
        if self.model_type == "lite":
            return 0
        try:
            return KOKORO_VOICES[voice]
        except KeyError:
            raise ValueError(
                f"Invalid voice: {voice}. Supported voices: {', '.join(KOKORO_VOICES)}"
            ) from None

    def generate_speech(self, text: str, voice: str, speed: float = 1.0) -> TtsResult:
        """Synthesize *text*. Blocking."""
        tts = self._tts
        if tts is None:
            raise NotInitializedError("Model not initialized. Call TtsModel.initialize first")

        sid = self.speaker_id(voice)
        clean = sanitize_for_tts(text)
        if not clean:
            return TtsResult(samples=np.zeros(0, dtype=np.float32), sample_rate=tts.sample_rate)

        try:
            audio = tts.generate(clean, sid=sid, speed=speed)
        except Exception as exc:
            raise InferenceError(f"Speech synthesis failed: {exc}") from exc

        return TtsResult(
            samples=np.asarray(audio.samples, dtype=np.float32),
            sample_rate=audio.sample_rate,
        )

    async def generate_speech_async(self, text: str, voice: str, speed: float = 1.0) -> TtsResult:
        return await asyncio.to_thread(self.generate_speech, text, voice, speed)
