"""Chat model: local causal LM via Hugging Face transformers.

Loaded once from an extracted model directory and shared by every
``ChatSession``. Generation runs on a background thread and streams
decoded text back through a ``TextIteratorStreamer``.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Iterator

from waico.errors import InferenceError, NotInitializedError
from waico.models.artifacts import CHAT_HF, require_files, resolve_model_artifact

logger = logging.getLogger(__name__)

Message = dict[str, str]


class ChatModel:
    def __init__(
        self,
        max_new_tokens: int = 512,
        temperature: float = 1.0,
        top_k: int = 64,
        top_p: float = 0.95,
    ):
        self._max_new_tokens = max_new_tokens
        self._temperature = temperature
        self._top_k = top_k
        self._top_p = top_p
        self._model = None
        self._tokenizer = None
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._model is not None

    def initialize(self, model_path: str | Path) -> None:
        """Load model and tokenizer. float16 on GPU, float32 on CPU."""
        with self._lock:
            if self._model is not None:
                logger.info("ChatModel already initialized, skipping.")
                return

            model_dir = resolve_model_artifact(model_path)
            require_files(model_dir, CHAT_HF)

            import torch
            from transformers import AutoModelForCausalLM, AutoTokenizer

            if torch.cuda.is_available():
                device_map, dtype = "auto", torch.float16
                logger.info("Loading chat model in float16 (GPU)")
            else:
                device_map, dtype = "cpu", torch.float32
                logger.info("No GPU detected, loading chat model in float32 on CPU")

            self._tokenizer = AutoTokenizer.from_pretrained(model_dir)
            self._model = AutoModelForCausalLM.from_pretrained(
                model_dir, torch_dtype=dtype, device_map=device_map
            )
            logger.info("Chat model loaded on device: %s", self._model.device)

    def dispose(self) -> None:
        """Free model and tokenizer, clear CUDA cache."""
        with self._lock:
            if self._model is None:
                return
            self._model = None
            self._tokenizer = None

        import torch

        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        logger.info("Chat model disposed")

    def _require(self):
        model, tokenizer = self._model, self._tokenizer
        if model is None or tokenizer is None:
            raise NotInitializedError("Model not initialized. Call ChatModel.initialize first")
        return model, tokenizer

    def count_tokens(self, text: str) -> int:
        _, tokenizer = self._require()
        return len(tokenizer.encode(text, add_special_tokens=False))

    def stream(self, messages: list[Message]) -> Iterator[str]:
        """Yield reply text chunks for a chat-formatted conversation."""
        model, tokenizer = self._require()

        from transformers import TextIteratorStreamer

        inputs = tokenizer.apply_chat_template(
            messages,
            add_generation_prompt=True,
            return_tensors="pt",
            return_dict=True,
        ).to(model.device)
        streamer = TextIteratorStreamer(tokenizer, skip_prompt=True, skip_special_tokens=True)
        errors: list[BaseException] = []

        def _generate():
            try:
                model.generate(
                    **inputs,
                    streamer=streamer,
                    max_new_tokens=self._max_new_tokens,
                    do_sample=self._temperature > 0,
                    temperature=self._temperature,
                    top_k=self._top_k,
                    top_p=self._top_p,
                )
            except Exception as exc:
                errors.append(exc)
                # Unblock the consumer; generate() never reached the end marker
                streamer.end()

        thread = threading.Thread(target=_generate, daemon=True)
        thread.start()
        try:
            for chunk in streamer:
                if chunk:
                    yield chunk
        finally:
            thread.join()

        if errors:
            raise InferenceError(f"Failed to generate response: {errors[0]}") from errors[0]

    def generate(self, messages: list[Message]) -> str:
        """One-shot generation, no history."""
        return "".join(self.stream(messages)).strip()
