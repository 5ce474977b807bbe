"""Speech-to-text: sherpa-onnx offline transducer (Parakeet TDT).

Loading the recognizer takes seconds, so it is built once per
``SttModel`` and reused for every utterance. Each ``transcribe`` call gets
its own decoding stream, which is what lets several threads share one
loaded recognizer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from pathlib import Path
from typing import Iterator, Protocol

import numpy as np

from waico.errors import InferenceError, NotInitializedError
from waico.models.artifacts import STT_TRANSDUCER, require_files, resolve_model_artifact

logger = logging.getLogger(__name__)


class STTProvider(Protocol):
    """Protocol for speech-to-text providers."""

    def transcribe(self, samples: np.ndarray, sample_rate: int) -> str: ...


class SttModel:
    """Owns the native recognizer for the app lifetime.

    ``initialize()`` is guarded by a lock so concurrent callers trigger a
    single native load; later calls are no-ops.
    """

    def __init__(
        self,
        num_threads: int = 1,
        provider: str = "cpu",
        model_type: str = "nemo_transducer",
        debug: bool = False,
    ):
        self._num_threads = num_threads
        self._provider = provider
        self._model_type = model_type
        self._debug = debug
        self._recognizer = None
        self._lock = threading.Lock()
        self._open_streams = 0

    @property
    def is_initialized(self) -> bool:
        return self._recognizer is not None

    @property
    def open_streams(self) -> int:
        """Decoding streams currently alive; zero between calls."""
        with self._lock:
            return self._open_streams

    def initialize(self, model_path: str | Path) -> None:
        """Build the recognizer from a model directory or ``.tar.*`` archive."""
        with self._lock:
            if self._recognizer is not None:
                logger.info("SttModel already initialized, skipping.")
                return

            model_dir = resolve_model_artifact(model_path)
            files = require_files(model_dir, STT_TRANSDUCER)

            import sherpa_onnx

            logger.info("Loading STT model from %s (provider=%s)", model_dir, self._provider)
            self._recognizer = sherpa_onnx.OfflineRecognizer.from_transducer(
                encoder=str(files["encoder.*.onnx"]),
                decoder=str(files["decoder.*.onnx"]),
                joiner=str(files["joiner.*.onnx"]),
                tokens=str(files["tokens.txt"]),
                model_type=self._model_type,
                num_threads=self._num_threads,
                provider=self._provider,
                debug=self._debug,
            )
            logger.info("STT model initialized")

    def dispose(self) -> None:
        """Drop the recognizer. Safe to call when nothing is loaded."""
        with self._lock:
            if self._recognizer is None:
                return
            self._recognizer = None
        logger.info("STT model disposed")

    @contextlib.contextmanager
    def _decoding_stream(self, recognizer) -> Iterator:
        stream = recognizer.create_stream()
        with self._lock:
            self._open_streams += 1
        try:
            yield stream
        finally:
            with self._lock:
                self._open_streams -= 1
            del stream

    def transcribe(self, samples: np.ndarray, sample_rate: int) -> str:
        """Transcribe one utterance. Blocking; returns "" when nothing was said."""
        recognizer = self._recognizer
        if recognizer is None:
            raise NotInitializedError("Model not initialized. Call SttModel.initialize first")
        if sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {sample_rate}")

        audio = np.asarray(samples, dtype=np.float32)
        if audio.ndim > 1:
            audio = audio.mean(axis=1)

        try:
            with self._decoding_stream(recognizer) as stream:
                stream.accept_waveform(sample_rate, audio)
                recognizer.decode_stream(stream)
                text = stream.result.text
        except Exception as exc:
            raise InferenceError(f"Transcription failed: {exc}") from exc

        return text.strip()

    async def transcribe_async(self, samples: np.ndarray, sample_rate: int) -> str:
        """Run ``transcribe`` on a worker thread."""
        return await asyncio.to_thread(self.transcribe, samples, sample_rate)
