"""Shared fixtures: stand-in native modules (sherpa_onnx, torch, transformers) and on-disk model layouts."""
import queue
import shutil
import sys
import tarfile
import threading
import types
from pathlib import Path

import numpy as np
import pytest

from waico.config import Settings


class FakeResult:
    def __init__(self):
        self.text = ""


class FakeStream:
    def __init__(self):
        self.samples = None
        self.sample_rate = None
        self.result = FakeResult()

    def accept_waveform(self, sample_rate, samples):
        self.sample_rate = sample_rate
        self.samples = samples


class FakeRecognizer:
    """Returns ``text`` for audible input and "" for silence."""

    loads = 0
    load_lock = threading.Lock()

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.text = " hello world "
        self.fail = False
        self.fail_create = False

    @classmethod
    def from_transducer(cls, **kwargs):
        with cls.load_lock:
            cls.loads += 1
        return cls(**kwargs)

    def create_stream(self):
        if self.fail_create:
            raise RuntimeError("cannot create stream")
        return FakeStream()

    def decode_stream(self, stream):
        if self.fail:
            raise RuntimeError("decoder exploded")
        if stream.samples is not None and np.abs(stream.samples).max(initial=0.0) > 1e-3:
            stream.result.text = self.text


class FakeOfflineTts:
    sample_rate = 24_000

    def __init__(self, config):
        self.config = config
        self.fail = False
        self.calls = []

    def generate(self, text, sid=0, speed=1.0):
        if self.fail:
            raise RuntimeError("synthesis exploded")
        self.calls.append((text, sid, speed))
        return types.SimpleNamespace(
            samples=[0.25] * (len(text) * 10), sample_rate=self.sample_rate
        )


class FakeVadModelConfig:
    def __init__(self):
        self.silero_vad = types.SimpleNamespace()
        self.sample_rate = 16_000
        self.num_threads = 1
        self.debug = False


class FakeVoiceActivityDetector:
    """Loud windows are speech; the first quiet window after speech ends a segment."""

    def __init__(self, config, buffer_size_in_seconds=60):
        self.config = config
        self.buffer_size_in_seconds = buffer_size_in_seconds
        self.windows = []
        self._current = []
        self._segments = []

    def accept_waveform(self, samples):
        samples = np.asarray(samples, dtype=np.float32)
        self.windows.append(len(samples))
        if np.abs(samples).max(initial=0.0) > 0.1:
            self._current.append(samples)
        elif self._current:
            self._segments.append(np.concatenate(self._current))
            self._current = []

    def is_speech_detected(self):
        return bool(self._current)

    def empty(self):
        return not self._segments

    @property
    def front(self):
        return types.SimpleNamespace(start=0, samples=self._segments[0].tolist())

    def pop(self):
        self._segments.pop(0)

    def flush(self):
        if self._current:
            self._segments.append(np.concatenate(self._current))
            self._current = []


@pytest.fixture
def fake_sherpa(monkeypatch):
    """Install a stand-in ``sherpa_onnx`` so adapters load without native models."""
    module = types.ModuleType("sherpa_onnx")
    FakeRecognizer.loads = 0
    module.OfflineRecognizer = FakeRecognizer
    module.OfflineTts = FakeOfflineTts
    module.OfflineTtsConfig = lambda **kwargs: types.SimpleNamespace(**kwargs)
    module.OfflineTtsModelConfig = lambda **kwargs: types.SimpleNamespace(**kwargs)
    module.OfflineTtsKokoroModelConfig = lambda **kwargs: types.SimpleNamespace(**kwargs)
    module.OfflineTtsVitsModelConfig = lambda **kwargs: types.SimpleNamespace(**kwargs)
    module.VadModelConfig = FakeVadModelConfig
    module.VoiceActivityDetector = FakeVoiceActivityDetector
    monkeypatch.setitem(sys.modules, "sherpa_onnx", module)
    return module


class FakeInputs(dict):
    def to(self, device):
        self.device = device
        return self


class FakeTokenizer:
    def encode(self, text, add_special_tokens=True):
        return text.split()

    def apply_chat_template(self, messages, **kwargs):
        self.last_messages = messages
        return FakeInputs(input_ids=[[1, 2, 3]])


class FakeCausalLM:
    """Pushes ``chunks`` through the streamer; ``fail_after`` chunks it raises instead."""

    chunks = ["Hello", " there", "."]
    fail_after = None

    def __init__(self, dtype, device_map):
        self.dtype = dtype
        self.device_map = device_map
        self.device = "cuda:0" if device_map == "auto" else "cpu"
        self.generate_kwargs = None

    def generate(self, streamer, **kwargs):
        self.generate_kwargs = kwargs
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("CUDA out of memory")
            streamer.on_finalized_text(chunk)
        streamer.end()


class FakeStreamer:
    def __init__(self, tokenizer, skip_prompt=False, **kwargs):
        self._queue = queue.Queue()

    def on_finalized_text(self, text, stream_end=False):
        self._queue.put(text)
        if stream_end:
            self.end()

    def end(self):
        self._queue.put(None)

    def __iter__(self):
        while True:
            text = self._queue.get(timeout=5)
            if text is None:
                return
            yield text


@pytest.fixture
def fake_transformers(monkeypatch):
    """Install stand-in ``torch`` and ``transformers`` modules; CPU unless ``cuda.available``."""
    torch = types.ModuleType("torch")
    torch.float16, torch.float32 = "float16", "float32"
    torch.cuda = types.SimpleNamespace(available=False, cache_clears=0)
    torch.cuda.is_available = lambda: torch.cuda.available

    def empty_cache():
        torch.cuda.cache_clears += 1

    torch.cuda.empty_cache = empty_cache

    transformers = types.ModuleType("transformers")
    transformers.loaded = []

    def load_model(model_dir, torch_dtype, device_map):
        model = FakeCausalLM(torch_dtype, device_map)
        transformers.loaded.append(model)
        return model

    transformers.AutoTokenizer = types.SimpleNamespace(from_pretrained=lambda model_dir: FakeTokenizer())
    transformers.AutoModelForCausalLM = types.SimpleNamespace(from_pretrained=load_model)
    transformers.TextIteratorStreamer = FakeStreamer
    monkeypatch.setitem(sys.modules, "torch", torch)
    monkeypatch.setitem(sys.modules, "transformers", transformers)
    return torch, transformers


@pytest.fixture
def chat_model_dir(tmp_path):
    return _touch(tmp_path / "gemma", ["config.json"])


def _touch(root: Path, names):
    root.mkdir(parents=True, exist_ok=True)
    for name in names:
        path = root / name
        if name in ("espeak-ng-data", "dict"):
            path.mkdir(exist_ok=True)
        else:
            path.write_bytes(b"\0")
    return root


@pytest.fixture
def stt_model_dir(tmp_path):
    return _touch(
        tmp_path / "parakeet",
        [
            "encoder.int8.onnx",
            "decoder.int8.onnx",
            "joiner.int8.onnx",
            "tokens.txt",
        ],
    )


@pytest.fixture
def kokoro_model_dir(tmp_path):
    return _touch(
        tmp_path / "kokoro-v1_0",
        ["model.onnx", "voices.bin", "tokens.txt", "espeak-ng-data", "dict"],
    )


@pytest.fixture
def piper_model_dir(tmp_path):
    return _touch(tmp_path / "piper-en", ["model.onnx", "tokens.txt", "espeak-ng-data"])


@pytest.fixture
def make_archive(tmp_path):
    """Pack a model directory into ``<name>.tar.gz`` and remove the directory."""

    def _make(model_dir: Path, suffix: str = ".tar.gz") -> Path:
        mode = {".tar.gz": "w:gz", ".tar.bz2": "w:bz2", ".tar.xz": "w:xz"}[suffix]
        archive = model_dir.with_name(model_dir.name + suffix)
        with tarfile.open(archive, mode) as tar:
            tar.add(model_dir, arcname=model_dir.name)
        shutil.rmtree(model_dir)
        return archive

    return _make


@pytest.fixture
def test_settings(tmp_path):
    return Settings(WAICO_HOME=tmp_path / "home")


def speech(seconds: float, sample_rate: int = 16_000, amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(round(seconds * sample_rate)) / sample_rate
    return (amplitude * np.sin(2 * np.pi * 220 * t)).astype(np.float32)


def silence(seconds: float, sample_rate: int = 16_000) -> np.ndarray:
    return np.zeros(round(seconds * sample_rate), dtype=np.float32)
