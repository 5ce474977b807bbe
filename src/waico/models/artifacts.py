"""Model artifact layout: archive extraction and required-file checks.

Artifacts arrive either as a ready directory, a single file (the Silero
VAD model) or a ``.tar.gz``/``.tar.bz2``/``.tar.xz`` archive that unpacks
into a sibling directory named after the archive.
"""

from __future__ import annotations

import enum
import logging
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

from waico.errors import NotFoundError

logger = logging.getLogger(__name__)

_ARCHIVE_SUFFIX_RE = re.compile(r"\.tar\.(gz|bz2|xz)$")


class ModelKind(enum.Enum):
    STT = "stt"
    VAD = "vad"
    TTS = "tts"
    CHAT = "chat"


@dataclass(frozen=True)
class ModelSpec:
    """Required layout of one model directory.

    ``required`` holds glob patterns relative to the model directory; a
    pattern may name a file or a sub-directory.
    """

    kind: ModelKind
    name: str
    required: tuple[str, ...]


STT_TRANSDUCER = ModelSpec(
    kind=ModelKind.STT,
    name="transducer",
    required=("encoder.*.onnx", "decoder.*.onnx", "joiner.*.onnx", "tokens.txt"),
)
TTS_KOKORO = ModelSpec(
    kind=ModelKind.TTS,
    name="kokoro",
    required=("model.onnx", "voices.bin", "tokens.txt", "espeak-ng-data", "dict"),
)
TTS_PIPER = ModelSpec(
    kind=ModelKind.TTS,
    name="piper",
    required=("model.onnx", "tokens.txt", "espeak-ng-data"),
)
CHAT_HF = ModelSpec(kind=ModelKind.CHAT, name="hf-causal-lm", required=("config.json",))


def is_archive(path: Path) -> bool:
    return bool(_ARCHIVE_SUFFIX_RE.search(path.name))


def archive_target_dir(archive_path: Path) -> Path:
    """``/models/foo.tar.gz`` -> ``/models/foo``."""
    return archive_path.with_name(_ARCHIVE_SUFFIX_RE.sub("", archive_path.name))


def extract_model_data(archive_path: Path) -> Path:
    """Extract *archive_path* next to itself and return the model directory.

    Skips extraction when the directory already exists (the archive is then
    left alone). The archive is unpacked into a hidden staging directory
    and only renamed into place once complete, so an interrupted run never
    leaves a half-filled model directory behind. After a successful
    extraction the archive is deleted; a corrupt archive is deleted too so
    the next start downloads it again.
    """
    model_dir = archive_target_dir(archive_path)
    if model_dir.is_dir():
        logger.debug("Model directory %s already extracted, skipping", model_dir)
        return model_dir

    if not archive_path.exists():
        raise NotFoundError(
            f"Model path not found: {archive_path}", missing=archive_path.name, where=archive_path.parent
        )

    logger.info("Extracting %s", archive_path.name)
    staging = Path(tempfile.mkdtemp(prefix=f".{model_dir.name}-", dir=archive_path.parent))
    try:
        try:
            with tarfile.open(archive_path, "r:*") as tar:
                tar.extractall(staging, filter="data")
        except (tarfile.TarError, EOFError):
            logger.error("Archive %s is corrupt, removing it", archive_path.name)
            archive_path.unlink()
            raise

        # The archive holds the top-level model directory
        extracted = staging / model_dir.name
        if not extracted.is_dir():
            raise NotFoundError(
                f"Archive {archive_path.name} did not contain {model_dir.name}/",
                missing=model_dir.name,
                where=archive_path.parent,
            )
        extracted.rename(model_dir)
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    archive_path.unlink()
    logger.info("Extracted %s, archive removed", model_dir)
    return model_dir


def resolve_model_artifact(model_path: str | Path) -> Path:
    """Turn a downloaded artifact path into something a model can load.

    Directories and plain files are returned as is; archives are extracted.
    """
    path = Path(model_path).expanduser()
    if path.is_dir():
        return path
    if is_archive(path):
        return extract_model_data(path)
    if path.is_file():
        return path
    raise NotFoundError(f"Model path not found: {path}", missing=path.name, where=path.parent)


def require_files(model_dir: Path, spec: ModelSpec) -> dict[str, Path]:
    """Resolve every required pattern of *spec* inside *model_dir*.

    Returns ``{pattern: path}``. Raises NotFoundError naming the first
    pattern with no match. Several matches resolve to the first in sorted
    order.
    """
    if not model_dir.is_dir():
        raise NotFoundError(
            f"Model directory not found: {model_dir}", missing=model_dir.name, where=model_dir.parent
        )

    resolved: dict[str, Path] = {}
    for pattern in spec.required:
        matches = sorted(model_dir.glob(pattern))
        if not matches:
            raise NotFoundError(
                f"{pattern} not found in {model_dir}", missing=pattern, where=model_dir
            )
        resolved[pattern] = matches[0]
    return resolved
