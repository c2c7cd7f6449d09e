"""
Explicit dotenv loader.

Loads `.env` then `.env.local` (local overrides) from the repository root.

This must remain dependency-light and MUST NOT import `paper_perps.config.config`.
"""

from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv


def load_dotenv_files(*, repo_root: Path | None = None) -> None:
    """Load dotenv files for local usage."""
    root = repo_root or Path(__file__).resolve().parent.parent.parent
    env_path = root / ".env"
    env_local_path = root / ".env.local"

    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)

    if env_local_path.exists():
        load_dotenv(dotenv_path=env_local_path, override=True)
