from __future__ import annotations

import logging

from dbkeeper.core.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once per process; reconcilers log through module loggers.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(level=resolved, format=LOG_FORMAT)
    logging.getLogger().setLevel(resolved)
    # Keep library chatter out of controller logs.
    for noisy in ("botocore", "boto3", "urllib3", "arq.jobs"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, logging.getLogger().level))
