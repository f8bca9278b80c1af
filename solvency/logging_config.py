"""Structured logging configuration.

JSON formatter + TimedRotatingFileHandler for the control-plane log.
Telemetry records ride along on the log record (``record.telemetry``) so the
JSON file doubles as the append-only telemetry stream.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import uuid
from pathlib import Path

LOG_DIR = Path(__file__).resolve().parent.parent / "data" / "logs"


class JSONFormatter(logging.Formatter):
    """JSON structured log formatter with run_id and telemetry support."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "run_id": getattr(record, "run_id", ""),
        }
        telemetry = getattr(record, "telemetry", None)
        if telemetry is not None:
            data["telemetry"] = telemetry
        return json.dumps(data, ensure_ascii=False, default=str)


class RunIdFilter(logging.Filter):
    """Stamp every record with the run id returned by setup_logging()."""

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "run_id", ""):
            record.run_id = self.run_id
        return True


def setup_logging(
    structured: bool = False,
    log_dir: Path | str | None = None,
) -> str:
    """Configure root logger. Returns the run_id for this process.

    Args:
        structured: If True, use JSON format. Controlled by STRUCTURED_LOGGING env var.
        log_dir: Override log directory. Defaults to data/logs/.
    """
    run_id = uuid.uuid4().hex[:12]
    log_path = Path(log_dir) if log_dir else LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.INFO)

    # 既存ハンドラをクリア (重複防止)
    root.handlers.clear()
    run_filter = RunIdFilter(run_id)

    console = logging.StreamHandler()
    console.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    console.addFilter(run_filter)
    root.addHandler(console)

    # File handler (daily rotation, 30 days retention)
    use_structured = structured or os.environ.get("STRUCTURED_LOGGING", "").lower() in ("true", "1")
    file_handler = logging.handlers.TimedRotatingFileHandler(
        log_path / "solvency.log",
        when="midnight",
        backupCount=30,
        encoding="utf-8",
    )
    if use_structured:
        file_handler.setFormatter(JSONFormatter())
    else:
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
    file_handler.addFilter(run_filter)
    root.addHandler(file_handler)

    return run_id
