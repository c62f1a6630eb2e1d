"""Logging and telemetry for the chat relay.

Emits structured log records to stdout and appends them to an append-only
log file for local review. Message content is never logged.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("chat_relay")


def setup_logging(log_file: Optional[str]) -> None:
    """Configure the relay logger with stdout and (optionally) file handlers.

    Args:
        log_file: Path to the append-only log file; empty disables it.
    """
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        # Stdout handler
        stdout_handler = logging.StreamHandler()
        stdout_handler.setLevel(logging.INFO)
        stdout_fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        stdout_handler.setFormatter(stdout_fmt)
        logger.addHandler(stdout_handler)

        if log_file:
            log_path = Path(log_file)
            os.makedirs(log_path.parent, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode="a")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(stdout_fmt)
            logger.addHandler(file_handler)


def log_request(
    *,
    client_key: str,
    outcome: str,
    status: Optional[int] = None,
    error: Optional[str] = None,
    request_id: Optional[str] = None,
    **extra: Any
) -> None:
    """Log a single request event as one JSON line.

    Args:
        client_key: The rate-limit key of the caller.
        outcome: Short outcome label (e.g. "streaming", "rate_limited").
        status: HTTP status returned to the client, if any.
        error: Error message if the request failed.
        request_id: Relay-assigned request ID.
        **extra: Additional JSON-serialisable fields (e.g. bytes_relayed).
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "client_key": client_key,
        "outcome": outcome,
    }

    if status is not None:
        record["status"] = status

    if error:
        record["error"] = error

    record.update(extra)

    level = logging.WARNING if status is not None and status >= 500 else logging.INFO
    logger.log(level, json.dumps(record))
