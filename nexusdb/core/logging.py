from __future__ import annotations

import logging

from nexusdb.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; entry points call this, libraries never do.
    resolved = (level or get_settings().log_level).upper()
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    logging.getLogger("nexusdb").setLevel(resolved)
    # Keep SQL echo noise out of operator logs unless explicitly requested.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
