"""
Logging Utilities for inkrow

Module loggers use the standard ``logging`` package; configure_logging wires
the root handler from LoggingConfig. EventLogger keeps the pipeline audit
trail: a human-readable text log and a structured JSONL event log of row
status transitions and activations.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class LogLevel(str, Enum):
    """Log levels for the event logger."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """
    Configure root logging for the inkrow package.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file receiving the same records
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


class EventLogger:
    """
    File-based logger for pipeline events with structured JSONL support.

    Logs are written to:
    - {log_dir}/pipeline.log - Human-readable text log
    - {log_dir}/events.jsonl - Structured JSONL log
    """

    def __init__(self, log_dir: Path, min_level: LogLevel = LogLevel.INFO):
        """
        Initialize event logger.

        Args:
            log_dir: Directory for log files
            min_level: Minimum log level to write
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.min_level = min_level

        self.text_log = self.log_dir / "pipeline.log"
        self.json_log = self.log_dir / "events.jsonl"

    def _should_log(self, level: LogLevel) -> bool:
        levels = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARNING, LogLevel.ERROR]
        return levels.index(level) >= levels.index(self.min_level)

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).isoformat()

    def log_text(self, line: str, level: LogLevel = LogLevel.INFO):
        """Append a timestamped line to the text log."""
        if not self._should_log(level):
            return
        with self.text_log.open("a", encoding="utf-8") as f:
            f.write(f"[{self._timestamp()}] [{level.value}] {line}\n")

    def log_jsonl(self, event_type: str, data: Dict[str, Any], level: LogLevel = LogLevel.INFO):
        """
        Append structured JSONL event to the events log.

        Args:
            event_type: Type of event (e.g., "row_status", "activation")
            data: Event data dictionary
            level: Log level
        """
        if not self._should_log(level):
            return

        event = {
            "timestamp": self._timestamp(),
            "level": level.value,
            "type": event_type,
            "data": data,
        }
        with self.json_log.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event, default=str) + "\n")

    def log_row_status(self, row_id: str, field_name: str, old: str, new: str,
                       error_message: Optional[str] = None):
        """Record a row status transition in both logs."""
        level = LogLevel.ERROR if new == "error" else LogLevel.INFO
        line = f"ROW={row_id} {field_name.upper()}={old}->{new}"
        if error_message:
            line += f' ERROR="{error_message}"'
        self.log_text(line, level)

        data = {"rowId": row_id, "field": field_name, "from": old, "to": new}
        if error_message:
            data["errorMessage"] = error_message
        self.log_jsonl("row_status", data, level)

    def log_activation(self, row_id: str, previous_row_id: Optional[str] = None):
        """Record an active row change."""
        self.log_text(f"ACTIVATE={row_id} PREVIOUS={previous_row_id or '-'}")
        self.log_jsonl("activation", {"rowId": row_id, "previousRowId": previous_row_id})

    def read_events(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read back JSONL events, optionally filtered by type."""
        if not self.json_log.exists():
            return []
        events = []
        with self.json_log.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                event = json.loads(line)
                if event_type is None or event.get("type") == event_type:
                    events.append(event)
        return events
