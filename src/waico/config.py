from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_MODELS_BASE_URL = "https://huggingface.co/sitatech/waico-models/resolve/main"


class Settings(BaseSettings):
    # Waico home directory (~/.waico)
    waico_home: Path = Field(
        default=Path.home() / ".waico", validation_alias="WAICO_HOME"
    )

    # Model downloads. A local server can stand in for Hugging Face during development.
    models_download_base_url: str = Field(
        default=DEFAULT_MODELS_BASE_URL, validation_alias="MODELS_DOWNLOAD_BASE_URL"
    )
    stt_model_file: str = Field(default="parakeet-tdt-0.6b-v2-int8.tar.gz")
    vad_model_file: str = Field(default="silero_vad.onnx")
    chat_model_file: str = Field(default="gemma-3-1b-it.tar.gz")

    # Voice
    voice_model_type: Literal["premium", "lite"] = Field(default="premium")
    language: str = Field(default="en")
    tts_voice: str = Field(default="af_heart")
    tts_speed: float = Field(default=1.0)

    # Native inference
    num_threads: int = Field(default=1)
    provider: str = Field(default="cpu")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Audio capture + segmentation
    sample_rate: int = Field(default=16_000)
    segmenter: Literal["silero", "energy"] = Field(default="silero")
    vad_min_silence_duration: float = Field(default=0.6)
    vad_min_speech_duration: float = Field(default=0.2)
    vad_window_size: int = Field(default=512)
    vad_max_speech_duration: float = Field(default=60.0)
    energy_silence_threshold: float = Field(default=0.008)
    energy_silence_duration: float = Field(default=1.5)
    energy_max_record_seconds: float = Field(default=30.0)

    # Listener channel between segmentation and transcription
    listener_queue_size: int = Field(default=8)
    listener_backpressure: Literal["drop_oldest", "block"] = Field(default="drop_oldest")

    # Chat model
    chat_max_tokens: int = Field(default=4096)
    chat_reserved_tokens: int = Field(default=300)
    chat_max_new_tokens: int = Field(default=512)
    chat_temperature: float = Field(default=1.0)
    chat_top_k: int = Field(default=64)
    chat_top_p: float = Field(default=0.95)

    # Run the full voice chat loop instead of printing transcriptions
    voice_chat_enabled: bool = Field(default=False)

    @property
    def waico_home_resolved(self) -> Path:
        """Resolve waico_home, expanding ~ to user home directory."""
        return self.waico_home.expanduser()

    @property
    def models_dir(self) -> Path:
        return self.waico_home_resolved / "ai_models"


# Global settings instance
settings = Settings()
