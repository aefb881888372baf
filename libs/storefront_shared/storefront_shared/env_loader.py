import logging
import os
from functools import lru_cache
from typing import Dict, Iterable

logger = logging.getLogger("storefront.env")


def _candidates() -> Iterable[str]:
    yield os.getenv("STOREFRONT_ENV_FILE", "")
    yield "/etc/storefront/storefront.env"
    yield os.path.join("ops", "secrets", "storefront.secrets.env")


@lru_cache(maxsize=1)
def ensure_loaded() -> None:
    """Load the first central env file that exists, once per process.

    Looked up in order: ``$STOREFRONT_ENV_FILE``, ``/etc/storefront/storefront.env``,
    then ``ops/secrets/storefront.secrets.env`` under the working directory.
    """
    for path in _candidates():
        if path and os.path.isfile(path):
            load_env_file(path)
            return


def parse_env_lines(lines: Iterable[str]) -> Dict[str, str]:
    """``KEY=VALUE`` pairs from dotenv-style lines; comments and junk are skipped."""
    pairs: Dict[str, str] = {}
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        if key:
            pairs[key] = value.strip().strip("\"'")
    return pairs


def load_env_file(path: str) -> int:
    """Copy variables from ``path`` into ``os.environ`` without overriding; returns the count set."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            pairs = parse_env_lines(fh)
    except OSError as exc:
        logger.warning("Could not read env file %s: %s", path, exc)
        return 0
    fresh = {k: v for k, v in pairs.items() if k not in os.environ}
    os.environ.update(fresh)
    if fresh:
        logger.debug("Loaded %s variables from %s", len(fresh), path)
    return len(fresh)
