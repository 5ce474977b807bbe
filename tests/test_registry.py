import pytest

from conftest import FakeRecognizer, speech
from waico.errors import NotFoundError, NotInitializedError
from waico.models.artifacts import ModelKind
from waico.models.paths import DownloadedModelPaths
from waico.models.registry import ModelRegistry


@pytest.fixture
def paths(tmp_path, stt_model_dir, kokoro_model_dir):
    vad = tmp_path / "silero_vad.onnx"
    vad.write_bytes(b"\0")
    return DownloadedModelPaths(
        stt=stt_model_dir, vad=vad, tts=kokoro_model_dir, chat=tmp_path / "missing-chat"
    )


def test_from_settings_premium(test_settings):
    settings = test_settings.model_copy(update={"tts_voice": "bf_emma", "num_threads": 4})
    registry = ModelRegistry.from_settings(settings)
    assert registry.tts_lang == "en-gb"
    assert registry.tts.model_type == "premium"
    assert registry.stt._num_threads == 4


def test_from_settings_lite_uses_language(test_settings):
    settings = test_settings.model_copy(update={"voice_model_type": "lite", "language": "fr"})
    registry = ModelRegistry.from_settings(settings)
    assert registry.tts_lang == "fr"
    assert registry.tts.model_type == "lite"


def test_initialize_selected_kinds(fake_sherpa, test_settings, paths):
    registry = ModelRegistry.from_settings(test_settings)
    registry.initialize_all(paths, [ModelKind.STT, ModelKind.VAD, ModelKind.TTS])

    assert registry.stt.is_initialized
    assert registry.tts.is_initialized
    assert not registry.chat.is_initialized
    assert registry.vad_model_path == paths.vad
    assert registry.stt.transcribe(speech(0.2), 16_000) == "hello world"


def test_failure_propagates(fake_sherpa, test_settings, paths):
    registry = ModelRegistry.from_settings(test_settings)
    with pytest.raises(NotFoundError):
        registry.initialize_all(paths, [ModelKind.STT, ModelKind.CHAT])
    # Models loaded before the failure stay loaded until dispose_all
    assert registry.stt.is_initialized
    registry.dispose_all()


def test_models_are_shared_not_reloaded(fake_sherpa, test_settings, paths):
    registry = ModelRegistry.from_settings(test_settings)
    registry.initialize_all(paths, [ModelKind.STT])
    registry.initialize_all(paths, [ModelKind.STT])
    assert FakeRecognizer.loads == 1


def test_context_manager_disposes(fake_sherpa, test_settings, paths):
    with ModelRegistry.from_settings(test_settings) as registry:
        registry.initialize_all(paths, [ModelKind.STT, ModelKind.TTS, ModelKind.VAD])

    assert not registry.stt.is_initialized
    assert not registry.tts.is_initialized
    assert registry.vad_model_path is None
    with pytest.raises(NotInitializedError):
        registry.stt.transcribe(speech(0.2), 16_000)

    # Second dispose is harmless
    registry.dispose_all()
