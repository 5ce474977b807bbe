"""Path resolution for the repo checkout and the user's data directory.

Repo paths resolve relative to the checkout root; downloaded models and
the ``.env`` override live under ``WAICO_HOME`` (``~/.waico``).
"""

from __future__ import annotations

from pathlib import Path

from waico.config import Settings


def get_base_dir() -> Path:
    """Return the repo root (three levels up from this file)."""
    return Path(__file__).resolve().parent.parent.parent


def get_dotenv_paths(settings: Settings) -> list[Path]:
    """``.env`` files to load, most specific last.

    Repo root first (development), then ``~/.waico/.env`` (user overrides).
    """
    return [get_base_dir() / ".env", settings.waico_home_resolved / ".env"]


def get_models_dir(settings: Settings) -> Path:
    """Directory downloaded model artifacts are stored in, created on demand."""
    models_dir = settings.models_dir
    models_dir.mkdir(parents=True, exist_ok=True)
    return models_dir
