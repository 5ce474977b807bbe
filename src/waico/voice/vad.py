"""Utterance segmentation: turns a continuous sample stream into utterances.

Two policies:

- ``SileroVadSegmenter``: neural VAD from sherpa-onnx. An utterance ends
  after ``min_silence_duration`` of non-speech; blips shorter than
  ``min_speech_duration`` are dropped; anything longer than
  ``max_speech_duration`` is cut.
- ``EnergyVadSegmenter``: RMS energy threshold per chunk. Speech starts on
  the first loud chunk and ends after ``silence_duration`` of quiet chunks
  or ``max_record_seconds`` of audio. No model file needed.

Segmenters are fed from a single thread and are not thread-safe.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import numpy as np

from waico.config import Settings
from waico.models.artifacts import resolve_model_artifact

logger = logging.getLogger(__name__)


class SpeechSegmenter(Protocol):
    @property
    def is_speech_detected(self) -> bool: ...

    def accept(self, samples: np.ndarray) -> list[np.ndarray]:
        """Feed samples; return the utterances completed by them."""
        ...

    def flush(self) -> list[np.ndarray]:
        """End of input: return whatever utterance is still buffered."""
        ...

    def close(self) -> None: ...


class SileroVadSegmenter:
    def __init__(
        self,
        model_path: str | Path,
        sample_rate: int = 16_000,
        min_silence_duration: float = 0.6,
        min_speech_duration: float = 0.2,
        window_size: int = 512,
        max_speech_duration: float = 60.0,
        num_threads: int = 1,
        debug: bool = False,
    ):
        import sherpa_onnx

        model_file = resolve_model_artifact(model_path)

        config = sherpa_onnx.VadModelConfig()
        config.silero_vad.model = str(model_file)
        config.silero_vad.min_silence_duration = min_silence_duration
        config.silero_vad.min_speech_duration = min_speech_duration
        config.silero_vad.window_size = window_size
        config.silero_vad.max_speech_duration = max_speech_duration
        config.sample_rate = sample_rate
        config.num_threads = num_threads
        config.debug = debug

        self._window_size = window_size
        self._pending = np.zeros(0, dtype=np.float32)
        self._vad = sherpa_onnx.VoiceActivityDetector(
            config, buffer_size_in_seconds=max_speech_duration
        )
        logger.info("Silero VAD ready (%s)", model_file.name)

    @property
    def is_speech_detected(self) -> bool:
        return self._vad is not None and self._vad.is_speech_detected()

    def accept(self, samples: np.ndarray) -> list[np.ndarray]:
        if self._vad is None:
            return []
        # Silero consumes fixed-size windows; keep the remainder for next time
        self._pending = np.concatenate([self._pending, np.asarray(samples, dtype=np.float32)])
        while len(self._pending) >= self._window_size:
            self._vad.accept_waveform(self._pending[: self._window_size])
            self._pending = self._pending[self._window_size :]
        return self._drain()

    def flush(self) -> list[np.ndarray]:
        if self._vad is None:
            return []
        self._vad.flush()
        self._pending = np.zeros(0, dtype=np.float32)
        return self._drain()

    def _drain(self) -> list[np.ndarray]:
        # Segments popped together belong to the same chunk of input; the
        # listener gets them as one utterance.
        parts = []
        while not self._vad.empty():
            parts.append(np.asarray(self._vad.front.samples, dtype=np.float32))
            self._vad.pop()
        return [np.concatenate(parts)] if parts else []

    def close(self) -> None:
        self._vad = None
        self._pending = np.zeros(0, dtype=np.float32)


class EnergyVadSegmenter:
    def __init__(
        self,
        sample_rate: int = 16_000,
        silence_threshold: float = 0.008,
        silence_duration: float = 1.5,
        max_record_seconds: float = 30.0,
    ):
        self._sample_rate = sample_rate
        self._silence_threshold = silence_threshold
        self._silence_samples_needed = int(silence_duration * sample_rate)
        self._max_samples = int(max_record_seconds * sample_rate)
        self._chunks: list[np.ndarray] = []
        self._recorded = 0
        self._silent_samples = 0
        self._has_speech = False

    @property
    def is_speech_detected(self) -> bool:
        return self._has_speech

    def accept(self, samples: np.ndarray) -> list[np.ndarray]:
        chunk = np.asarray(samples, dtype=np.float32).reshape(-1)
        if chunk.size == 0:
            return []
        rms = float(np.sqrt(np.mean(chunk**2)))

        if rms > self._silence_threshold:
            self._has_speech = True
            self._silent_samples = 0
        elif self._has_speech:
            self._silent_samples += chunk.size
        else:
            # No speech yet, keep waiting
            return []

        self._chunks.append(chunk)
        self._recorded += chunk.size

        if self._silent_samples >= self._silence_samples_needed:
            logger.debug("Silence detected, closing utterance")
            return self._emit()
        if self._recorded >= self._max_samples:
            logger.debug("Max utterance length reached")
            return self._emit()
        return []

    def flush(self) -> list[np.ndarray]:
        if not self._has_speech:
            return []
        return self._emit()

    def _emit(self) -> list[np.ndarray]:
        utterance = np.concatenate(self._chunks)
        self._chunks = []
        self._recorded = 0
        self._silent_samples = 0
        self._has_speech = False
        return [utterance]

    def close(self) -> None:
        self._chunks = []
        self._recorded = 0
        self._has_speech = False


def create_segmenter(settings: Settings, vad_model_path: str | Path | None = None) -> SpeechSegmenter:
    """Build the segmenter selected by ``settings.segmenter``."""
    if settings.segmenter == "energy":
        return EnergyVadSegmenter(
            sample_rate=settings.sample_rate,
            silence_threshold=settings.energy_silence_threshold,
            silence_duration=settings.energy_silence_duration,
            max_record_seconds=settings.energy_max_record_seconds,
        )
    if vad_model_path is None:
        raise ValueError("The silero segmenter needs a VAD model path")
    return SileroVadSegmenter(
        vad_model_path,
        sample_rate=settings.sample_rate,
        min_silence_duration=settings.vad_min_silence_duration,
        min_speech_duration=settings.vad_min_speech_duration,
        window_size=settings.vad_window_size,
        max_speech_duration=settings.vad_max_speech_duration,
        num_threads=settings.num_threads,
        debug=settings.debug,
    )
