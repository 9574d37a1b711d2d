"""Webhook audit log: JSON Lines with size rotation and a SHA-256 hash chain.

Each line carries ``prev_hash``, the SHA-256 of the previous raw line, so that
deleting or editing a line breaks the chain. Detail keys that name credential
material are redacted before anything touches disk.
"""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass
from pathlib import Path

from src.config import GatewayConfig
from src.models import AuditEvent, AuditEventType, RiskLevel

_REDACTED = "[redacted]"
_SENSITIVE_MARKERS = ("secret", "token", "signature", "authorization", "password")


@dataclass
class ChainValidationResult:
    valid: bool
    broken_at_line: int | None = None


def validate_audit_chain(log_path: Path) -> ChainValidationResult:
    """Check that every line's prev_hash matches the line before it."""
    text = log_path.read_text().strip()
    if not text:
        return ChainValidationResult(valid=True)

    lines = text.split("\n")
    previous: str | None = None
    for number, line in enumerate(lines, start=1):
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            return ChainValidationResult(valid=False, broken_at_line=number)
        expected = None if previous is None else hashlib.sha256(previous.encode()).hexdigest()
        if entry.get("prev_hash") != expected:
            return ChainValidationResult(valid=False, broken_at_line=number)
        previous = line

    return ChainValidationResult(valid=True)


def redact(details: dict[str, object]) -> dict[str, object]:
    """Replace values whose keys look like credentials; recurses into dicts."""
    clean: dict[str, object] = {}
    for key, value in details.items():
        if any(marker in key.lower() for marker in _SENSITIVE_MARKERS):
            clean[key] = _REDACTED
        elif isinstance(value, dict):
            clean[key] = redact(value)
        else:
            clean[key] = value
    return clean


class AuditLogger:
    """Append-only audit sink shared by all request handlers in a process."""

    def __init__(
        self,
        log_path: str,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
    ) -> None:
        self.log_path = Path(log_path)
        self._max_bytes = max_bytes
        self._backup_count = backup_count
        self._lock = threading.Lock()
        self._last_line: str | None = None
        if self.log_path.exists() and self.log_path.stat().st_size > 0:
            text = self.log_path.read_text().strip()
            if text:
                self._last_line = text.split("\n")[-1]

    @classmethod
    def from_config(cls, config: GatewayConfig) -> AuditLogger:
        return cls(
            log_path=config.audit_log_path,
            max_bytes=config.audit_log_max_bytes,
            backup_count=config.audit_log_backup_count,
        )

    def record(
        self,
        event_type: AuditEventType,
        action: str,
        result: str,
        risk_level: RiskLevel = RiskLevel.INFO,
        source_ip: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        self.log(AuditEvent(
            event_type=event_type,
            action=action,
            result=result,
            risk_level=risk_level,
            source_ip=source_ip,
            details=details,
        ))

    def log(self, event: AuditEvent) -> None:
        data = json.loads(event.model_dump_json())
        if data.get("details"):
            data["details"] = redact(data["details"])

        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            # Each file is its own chain; a rotated-in file starts from None.
            if self._rotate_if_needed():
                self._last_line = None
            data["prev_hash"] = (
                hashlib.sha256(self._last_line.encode()).hexdigest()
                if self._last_line is not None else None
            )
            line = json.dumps(data, separators=(",", ":"))
            with open(self.log_path, "a") as f:
                f.write(line + "\n")
            self._last_line = line

    def _rotate_if_needed(self) -> bool:
        if not self.log_path.exists() or self.log_path.stat().st_size < self._max_bytes:
            return False

        def backup(index: int) -> Path:
            return self.log_path.with_name(f"{self.log_path.name}.{index}")

        backup(self._backup_count).unlink(missing_ok=True)
        for index in range(self._backup_count - 1, 0, -1):
            if backup(index).exists():
                backup(index).rename(backup(index + 1))
        self.log_path.rename(backup(1))
        return True
