"""Local .env loading for development entrypoints."""

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, independent of the working directory
DEFAULT_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"


def load_env_file(path: Optional[Path] = None) -> bool:
    """Populate os.environ from a .env file.

    WHAT:
        Reads `path` (default backend/.env). Variables already present in the
        environment keep their value.
    WHY:
        `start_api.py`, Alembic and the lazy DATABASE_URL lookup in
        database.py all run from a developer shell; deployed processes get
        their configuration injected and never have the file.

    Returns:
        True if a file was found and read
    """
    env_path = path or DEFAULT_ENV_PATH
    if not env_path.exists():
        logger.debug(f"[ENV] No .env file at {env_path}")
        return False

    load_dotenv(env_path, override=False)
    logger.info(f"[ENV] Loaded {env_path} (existing variables kept)")
    return True
