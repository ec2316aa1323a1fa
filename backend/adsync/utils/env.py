"""Environment helpers shared by the API and the refresh worker."""

import logging
import os
from typing import Dict, Iterable

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load a local .env into os.environ without overwriting existing variables.

    Returns True when a file was found.
    """
    from dotenv import load_dotenv

    loaded = load_dotenv(override=False)
    if loaded:
        logger.info("[ENV] Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("[ENV] No local .env file found")
    return loaded


def require_env(names: Iterable[str]) -> Dict[str, str]:
    """Return the values of mandatory variables or raise RuntimeError listing every missing one.

    WHY: The worker cannot do anything useful without its database and queue,
    so it should stop at startup rather than on the first job.
    """
    values = {name: os.getenv(name) for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise RuntimeError(f"Missing required environment variable(s): {', '.join(missing)}")
    return values
