from __future__ import annotations

import re
from functools import lru_cache

from loguru import logger

from app.core.errors import HostNotFound

DEFAULT_DOMAIN_SUFFIX = "bk6bba-resources.com"


@lru_cache(maxsize=8)
def _host_pattern(domain_suffix: str) -> re.Pattern[str]:
    return re.compile(r"https://(line\d+w\." + re.escape(domain_suffix) + r")")


def discover_host(markup: str, domain_suffix: str = DEFAULT_DOMAIN_SUFFIX) -> str:
    """Return the first ``lineNNw.<suffix>`` feed host embedded in ``markup``."""

    match = _host_pattern(domain_suffix).search(markup or "")
    if match is None:
        raise HostNotFound(f"no line*w.{domain_suffix} host in page markup")
    host = match.group(1)
    logger.debug("Discovered feed host {}", host)
    return host
