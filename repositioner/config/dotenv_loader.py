"""
Explicit dotenv loader.

Rules:
- In production (`ENVIRONMENT=prod`): do not load `.env` / `.env.local`.
- Otherwise: load `.env` then `.env.local` (local overrides).

Must not import `repositioner.config.config`.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv


def _is_prod_env() -> bool:
    return str(os.getenv("ENVIRONMENT", "dev") or "dev").strip().lower() == "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> None:
    """
    Load dotenv files for local/dev usage. No-op in prod.
    """
    if _is_prod_env():
        return

    root = repo_root or Path(__file__).resolve().parent.parent.parent
    env_path = root / ".env"
    env_local_path = root / ".env.local"

    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)

    if env_local_path.exists():
        load_dotenv(dotenv_path=env_local_path, override=True)
