"""Main entry point: downloads and loads the models, then listens.

Default mode prints every transcribed utterance. With
``VOICE_CHAT_ENABLED=true`` each utterance is answered by the chat model
and spoken back.

Shutdown flow:
- Ctrl+C -> asyncio.run cancels async_main -> finally disposes the
  listener and every model.
"""

from __future__ import annotations

import asyncio

import httpx
from dotenv import load_dotenv

from waico import config
from waico.chat.session import ChatSession
from waico.config import Settings
from waico.logger import log, setup_logging
from waico.models.artifacts import ModelKind
from waico.models.download import HttpDownloader, download_models, plan_downloads
from waico.models.registry import ModelRegistry
from waico.resources import get_dotenv_paths, get_models_dir
from waico.voice.listener import SpeechListener
from waico.voice.microphone import SoundDeviceMicrophone
from waico.voice.pipeline import SoundDevicePlayer, VoiceChatPipeline
from waico.voice.vad import create_segmenter


def _download(settings: Settings, client: httpx.Client | None = None):
    items = plan_downloads(settings)
    if not settings.voice_chat_enabled:
        # Transcription only: no need for the chat and TTS archives
        items = {k: v for k, v in items.items() if k in (ModelKind.STT, ModelKind.VAD)}

    def _progress(item, fraction):
        log("DEBUG", f"Downloading {item.display_name}", {"progress": round(fraction, 3)})

    downloader = HttpDownloader(get_models_dir(settings), client=client, on_progress=_progress)
    try:
        for item in items.values():
            log("INFO", f"Fetching {item.display_name}", {"url": item.url})
        return download_models(downloader, items)
    finally:
        downloader.close()


def _build_listener(settings: Settings, registry: ModelRegistry) -> SpeechListener:
    return SpeechListener(
        stt=registry.stt,
        microphone=SoundDeviceMicrophone(sample_rate=settings.sample_rate),
        segmenter=create_segmenter(settings, registry.vad_model_path),
        queue_size=settings.listener_queue_size,
        backpressure=settings.listener_backpressure,
    )


async def async_main(settings: Settings) -> None:
    paths = await asyncio.to_thread(_download, settings)

    registry = ModelRegistry.from_settings(settings)
    kinds = [ModelKind.STT, ModelKind.VAD]
    if settings.voice_chat_enabled:
        kinds += [ModelKind.TTS, ModelKind.CHAT]

    listener: SpeechListener | None = None
    pipeline: VoiceChatPipeline | None = None
    try:
        log("INFO", "Loading models", {"kinds": [k.value for k in kinds]})
        await asyncio.to_thread(registry.initialize_all, paths, kinds)

        listener = _build_listener(settings, registry)

        if settings.voice_chat_enabled:
            session = ChatSession(
                registry.chat,
                max_tokens=settings.chat_max_tokens,
                reserved_tokens=settings.chat_reserved_tokens,
            )
            pipeline = VoiceChatPipeline(
                listener,
                session,
                registry.tts,
                SoundDevicePlayer(),
                voice=settings.tts_voice,
                speed=settings.tts_speed,
            )
            await pipeline.start_chat()
            print("Voice chat ready. Speak (Ctrl+C to quit).\n")
        else:
            await listener.initialize()
            await listener.listen(lambda text: print(f"You: {text}"))
            print("Listening. Speak (Ctrl+C to quit).\n")

        # Run until cancelled
        await asyncio.Event().wait()
    finally:
        if pipeline is not None:
            await pipeline.end_chat()
        elif listener is not None:
            await listener.dispose()
        registry.dispose_all()
        log("INFO", "All models disposed")


def main():
    base_settings = config.settings
    for dotenv_path in get_dotenv_paths(base_settings):
        load_dotenv(dotenv_path, override=True)
    # Re-read now that .env values are in the environment
    settings = Settings()
    setup_logging(settings.log_level)

    try:
        asyncio.run(async_main(settings))
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
