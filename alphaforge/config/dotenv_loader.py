"""
Loads ``.env`` files for local development before settings are built.

Files are applied in order; later files override earlier ones. Nothing is
loaded when ``ENVIRONMENT`` is ``prod`` (the default), so production relies
solely on the process environment.

Kept free of any ``alphaforge.config.config`` import to avoid a cycle.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv

# (filename, override existing variables)
DOTENV_FILES: Tuple[Tuple[str, bool], ...] = ((".env", False), (".env.local", True))


def dotenv_enabled() -> bool:
    environment = (os.getenv("ENVIRONMENT") or "prod").strip().lower()
    return environment != "prod"


def load_dotenv_files(*, repo_root: Path | None = None) -> List[Path]:
    """Load the dev dotenv files that exist under ``repo_root`` and return their paths."""
    if not dotenv_enabled():
        return []

    root = repo_root or Path(__file__).resolve().parents[2]
    loaded: List[Path] = []
    for filename, override in DOTENV_FILES:
        path = root / filename
        if path.is_file():
            load_dotenv(dotenv_path=path, override=override)
            loaded.append(path)
    return loaded
