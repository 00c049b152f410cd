# src/assetsync/env.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_LOADED = False


def load_dotenv_if_present(dotenv_path: Optional[str] = None) -> bool:
    """Load ASSETSYNC_* settings from a .env file, once per process.

    The file is the explicit argument, else $ASSETSYNC_DOTENV_PATH, else
    ./.env. Variables already exported in the environment win over the file,
    so an operator can override a checked-in .env per invocation.

    Returns True only when a file was found and read.
    """
    global _LOADED
    if _LOADED:
        return False
    _LOADED = True

    path = Path(dotenv_path or os.getenv("ASSETSYNC_DOTENV_PATH", ".env")).expanduser()
    if not path.is_file():
        return False

    load_dotenv(dotenv_path=str(path), override=False)
    return True
