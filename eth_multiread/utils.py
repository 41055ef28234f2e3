"""String, URL and logging helpers shared by the reader and the scripts."""

import logging
import os
from pathlib import Path
from urllib.parse import urlparse

import coloredlogs


logger = logging.getLogger(__name__)


#: Log line layout for both the terminal and the log file
LOG_FORMAT = "%(asctime)s %(name)-44s %(message)s"

#: Loggers that spam every JSON-RPC and HTTP request on DEBUG
NOISY_LOGGERS = (
    "web3.providers.HTTPProvider",
    "web3.RequestManager",
    "urllib3.connectionpool",
)


def sanitise_string(s: str, max_length: int | None = None) -> str:
    """Replace null characters some tokens carry in their name or symbol.

    PostgreSQL and many terminals choke on them.
    """
    fixed = s.replace("\x00", "\U0000FFFD")
    return fixed if max_length is None else fixed[:max_length]


def get_url_domain(url: str) -> str:
    """Redact URL so that only domain is displayed.

    Some services e.g. infura use path as an API key.
    """
    parsed = urlparse(url)
    if parsed.port in (80, 443, None):
        return parsed.hostname
    return f"{parsed.hostname}:{parsed.port}"


def setup_console_logging(
    default_log_level="warning",
    log_file: Path | None = None,
) -> logging.Logger:
    """Coloured terminal logging for scripts.

    The level comes from ``LOG_LEVEL`` environment variable.

    :param default_log_level:
        Used if ``LOG_LEVEL`` is not set.

    :param log_file:
        Also write to this file, at least on INFO level.
        The file is truncated.

    :return:
        Root logger
    """
    level_name = os.environ.get("LOG_LEVEL", default_log_level).upper()
    level = logging.getLevelName(level_name)
    assert type(level) == int, f"Unknown LOG_LEVEL {level_name}"

    date_fmt = "%H:%M:%S"
    coloredlogs.install(level=level, fmt=LOG_FORMAT, datefmt=date_fmt)

    root = logging.getLogger()

    if log_file:
        assert isinstance(log_file, Path), f"log_file must be a Path, got {log_file}"
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_level = min(logging.INFO, level)
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, date_fmt))
        root.setLevel(file_level)
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root
