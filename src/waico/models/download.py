"""Model downloads: what to fetch, and an HTTP downloader to fetch it.

The voice model type and app language decide which TTS archive is
needed; the rest of the set is fixed. Any object with a
``download(item) -> Path`` method can stand in for ``HttpDownloader``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Protocol

import httpx

from waico.config import Settings
from waico.errors import DownloadError
from waico.logger import log
from waico.models.artifacts import ModelKind, archive_target_dir, is_archive
from waico.models.paths import DownloadedModelPaths

DOWNLOAD_RETRIES = 3
_CHUNK_SIZE = 1024 * 1024

# Lite TTS archive per app language: (file name, display name)
_LITE_TTS_MODELS = {
    "de": ("piper-de-mls.tar.gz", "Piper TTS DE"),
    "es": ("piper-es-mx_ald.tar.gz", "Piper TTS ES"),
    "fr": ("piper-fr-mls.tar.gz", "Piper TTS FR"),
}
_DEFAULT_LITE_TTS_MODEL = ("piper-en-hfc-female.tar.gz", "Piper TTS EN")


@dataclass(frozen=True)
class DownloadItem:
    url: str
    file_name: str
    display_name: str

    @classmethod
    def from_base_url(cls, base_url: str, file_name: str, display_name: str | None = None) -> DownloadItem:
        return cls(
            url=f"{base_url.rstrip('/')}/{file_name}",
            file_name=file_name,
            display_name=display_name or file_name,
        )


class Downloader(Protocol):
    """Fetches one item and returns the local file path once complete."""

    def download(self, item: DownloadItem) -> Path: ...


def lite_tts_model_for_language(language: str) -> tuple[str, str]:
    return _LITE_TTS_MODELS.get(language, _DEFAULT_LITE_TTS_MODEL)


def plan_downloads(settings: Settings) -> dict[ModelKind, DownloadItem]:
    """Return the artifact to download for every model kind."""
    base_url = settings.models_download_base_url
    items = {
        ModelKind.STT: DownloadItem.from_base_url(base_url, settings.stt_model_file, "Parakeet STT"),
        ModelKind.VAD: DownloadItem.from_base_url(base_url, settings.vad_model_file, "Silero VAD"),
        ModelKind.CHAT: DownloadItem.from_base_url(base_url, settings.chat_model_file, "Chat model"),
    }
    if settings.voice_model_type == "premium":
        items[ModelKind.TTS] = DownloadItem.from_base_url(base_url, "kokoro-v1_0.tar.gz", "Kokoro TTS")
    else:
        file_name, display_name = lite_tts_model_for_language(settings.language)
        items[ModelKind.TTS] = DownloadItem.from_base_url(base_url, file_name, display_name)
    return items


class HttpDownloader:
    """Streams artifacts into *target_dir* with httpx.

    Files already present are not fetched again. Partial downloads go to a
    ``.part`` file that is renamed once complete.
    """

    def __init__(
        self,
        target_dir: Path,
        client: httpx.Client | None = None,
        retries: int = DOWNLOAD_RETRIES,
        retry_delay: float = 2.0,
        on_progress: Callable[[DownloadItem, float], None] | None = None,
    ):
        self.target_dir = target_dir
        self._client = client or httpx.Client(
            follow_redirects=True, timeout=httpx.Timeout(30.0, read=300.0)
        )
        self._retries = retries
        self._retry_delay = retry_delay
        self._on_progress = on_progress

    def download(self, item: DownloadItem) -> Path:
        target = self.target_dir / item.file_name
        if target.exists() or (is_archive(target) and archive_target_dir(target).is_dir()):
            # Archives are deleted once extracted; the model directory stands in for them
            log("INFO", f"{item.display_name} already downloaded", {"path": str(target)})
            return target

        self.target_dir.mkdir(parents=True, exist_ok=True)
        last_error: Exception | None = None
        for attempt in range(1, self._retries + 1):
            try:
                self._fetch(item, target)
                log("INFO", f"{item.display_name} downloaded", {"path": str(target)})
                return target
            except httpx.HTTPError as exc:
                last_error = exc
                log(
                    "WARN",
                    f"Download of {item.display_name} failed",
                    {"attempt": attempt, "retries": self._retries, "error": str(exc)},
                )
                if attempt < self._retries:
                    time.sleep(self._retry_delay)

        raise DownloadError(
            f"Failed to download {item.display_name} from {item.url}: {last_error}"
        ) from last_error

    def _fetch(self, item: DownloadItem, target: Path) -> None:
        part = target.with_name(target.name + ".part")
        try:
            with self._client.stream("GET", item.url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length", 0))
                received = 0
                with open(part, "wb") as f:
                    for chunk in response.iter_bytes(_CHUNK_SIZE):
                        f.write(chunk)
                        received += len(chunk)
                        if self._on_progress and total:
                            self._on_progress(item, received / total)
            part.replace(target)
        finally:
            part.unlink(missing_ok=True)

    def close(self) -> None:
        self._client.close()


def download_models(
    downloader: Downloader, items: Mapping[ModelKind, DownloadItem]
) -> DownloadedModelPaths:
    """Download every planned item in order and record where each landed."""
    paths = {kind.value: downloader.download(item) for kind, item in items.items()}
    return DownloadedModelPaths(**paths)
