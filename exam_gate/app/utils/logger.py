"""
Exam Gate - Logging Utilities

Structured JSON logging and the hash-chained verification audit trail.
"""

import hashlib
import logging
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from logging.handlers import RotatingFileHandler

logger = logging.getLogger(__name__)

# Evidence keys that could carry biometric values
BIOMETRIC_KEYS = frozenset({"descriptor", "face_descriptor", "faceDescriptor", "encoding"})

GENESIS_HASH = "0" * 16


class JSONFormatter(logging.Formatter):
    """One JSON object per log line"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def _scrub(evidence: Optional[dict]) -> Optional[dict]:
    if evidence is None:
        return None
    return {
        key: "<redacted>" if key in BIOMETRIC_KEYS else value
        for key, value in evidence.items()
    }


class AuditLogger:
    """
    Append-only audit trail for verification attempts, exam session
    transitions, eligibility checks and enrollment.

    Each event carries a sequence number and the hash of the previous event,
    so a removed or edited line breaks the chain. The chain continues from
    the last event already in the file. Biometric evidence keys are redacted
    before writing.
    """

    def __init__(self, log_file: Path):
        self.log_file = log_file
        self.logger = logging.getLogger(f"audit.{log_file}")
        self.logger.propagate = False
        self._sequence = 0
        self._last_hash = GENESIS_HASH

        log_file.parent.mkdir(parents=True, exist_ok=True)
        self._resume_chain()

        if not self.logger.handlers:
            handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
            )
            # Audit lines are already JSON events
            handler.setFormatter(logging.Formatter("%(message)s"))
            self.logger.addHandler(handler)
        self.logger.setLevel(logging.INFO)

    def _resume_chain(self):
        if not self.log_file.exists():
            return
        for line in reversed(self.log_file.read_text().splitlines()):
            if not line.strip():
                continue
            try:
                last = json.loads(line)
            except ValueError:
                logger.warning(
                    f"Audit trail {self.log_file} ends with a non-JSON line; chain restarts"
                )
                return
            self._sequence = int(last.get("seq") or 0)
            self._last_hash = last.get("hash") or GENESIS_HASH
            return

    def log_event(
        self,
        action: str,
        entity: str,
        entity_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        evidence: Optional[dict] = None,
    ) -> dict:
        """Append an audit event and return it with its chain fields"""
        self._sequence += 1
        event = {
            "seq": self._sequence,
            "action": action,
            "entity": entity,
            "entity_id": entity_id,
            "actor_id": actor_id,
            "evidence": _scrub(evidence),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "prev_hash": self._last_hash,
        }

        event_json = json.dumps(event, sort_keys=True, default=str)
        event["hash"] = hashlib.sha256(event_json.encode()).hexdigest()[:16]
        self._last_hash = event["hash"]

        self.logger.info(json.dumps(event, default=str))
        return event


def verify_chain(events: List[dict], anchor: Optional[str] = GENESIS_HASH) -> bool:
    """
    Check that audit events link up and their hashes match their content.

    Args:
        events: Decoded audit events in file order
        anchor: Expected prev_hash of the first event; None accepts whatever
            the first event links to (a rotated file)
    """
    if not events:
        return True
    previous = events[0].get("prev_hash") if anchor is None else anchor
    for event in events:
        body = {k: v for k, v in event.items() if k != "hash"}
        if body.get("prev_hash") != previous:
            return False
        expected = hashlib.sha256(
            json.dumps(body, sort_keys=True, default=str).encode()
        ).hexdigest()[:16]
        if event.get("hash") != expected:
            return False
        previous = expected
    return True


# Handlers installed by setup_logging, replaced on re-initialization
_installed_handlers: List[logging.Handler] = []


def setup_logging(log_file: Path, debug: bool = False):
    """
    Configure application logging.

    Safe to call again (e.g. after the data directory changes): handlers
    from the previous call are removed first.

    Args:
        log_file: Path to main log file
        debug: Enable debug level logging
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()
    root_logger.setLevel(level)

    # Console handler (human readable)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S"
    ))

    # File handler (JSON structured)
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=20 * 1024 * 1024,  # 20MB
        backupCount=5,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JSONFormatter())

    for handler in (console_handler, file_handler):
        root_logger.addHandler(handler)
        _installed_handlers.append(handler)

    # Third-party request chatter
    for name in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"Logging initialized. File: {log_file}, Debug: {debug}")


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create the global audit logger"""
    global _audit_logger
    if _audit_logger is None:
        from exam_gate.app.config import get_config
        _audit_logger = AuditLogger(get_config().audit_file)
    return _audit_logger
