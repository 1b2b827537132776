"""
Audit trail for batch executions and rejections.

One JSONL line per AuditEvent. Events are numbered from 0 and chained: the
HMAC of an event covers its sequence number, the hash of the event before
it, the principal and nonce it concerns, and the remaining fields. Walking
the file re-derives every link, so an edited, dropped or reordered line
surfaces as AuditChainError instead of a silently different history.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import EngineConfig
from .errors import AuditChainError
from .events import CallExecuted, ExecutionRecord
from .storage import ensure_private_dir, ensure_private_file, exclusive_lock


AUDIT_KEY_ENV = "BATCHCALL_AUDIT_HMAC_KEY"


class EventType(str, Enum):
    PRINCIPAL_ACTIVATED = "principal_activated"
    CALL_EXECUTED = "call_executed"
    BATCH_EXECUTED = "batch_executed"
    BATCH_REVERTED = "batch_reverted"
    SIGNATURE_REJECTED = "signature_rejected"
    NOT_AUTHORIZED = "not_authorized"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    seq: int
    event_type: str
    timestamp: float
    principal: Optional[str] = None
    caller: Optional[str] = None
    target: Optional[str] = None
    value: Optional[str] = None
    nonce: Optional[int] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: str = ""
    event_hash: str = ""

    def body(self) -> dict[str, Any]:
        return {
            k: v
            for k, v in asdict(self).items()
            if v is not None and k not in ("prev_hash", "event_hash")
        }

    def to_json(self) -> str:
        return json.dumps(
            {**self.body(), "prev_hash": self.prev_hash, "event_hash": self.event_hash},
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, line: str) -> AuditEvent:
        return cls(**json.loads(line))


@dataclass(frozen=True)
class ChainHead:
    """Where the verified chain currently ends."""

    length: int = 0
    event_hash: str = ""


def _load_key(key_path: Path) -> bytes:
    override = os.getenv(AUDIT_KEY_ENV)
    if override:
        return override.encode()
    stored = key_path.read_bytes().strip()
    if stored:
        return stored
    key = secrets.token_hex(32).encode()
    key_path.write_bytes(key)
    return key


class AuditTrail:
    """Tamper-evident append-only audit log of one host state."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        defaults = EngineConfig()
        self.path = path or defaults.audit_path
        self.key_path = key_path or defaults.audit_key_path

        for private in (self.path, self.key_path):
            ensure_private_dir(private.parent)
            ensure_private_file(private)

        self._lock_path = self.path.parent / f".{self.path.name}.lock"
        self._key = _load_key(self.key_path)
        self._append_lock = threading.Lock()
        with exclusive_lock(self._lock_path):
            self._sync_head()

    def _link(self, event: AuditEvent) -> str:
        nonce = "" if event.nonce is None else str(event.nonce)
        body = json.dumps(event.body(), sort_keys=True, separators=(",", ":"))
        message = "|".join(
            [str(event.seq), event.prev_hash, (event.principal or "").lower(), nonce, body]
        )
        return hmac.new(self._key, message.encode(), hashlib.sha256).hexdigest()

    def _walk(self) -> Iterator[AuditEvent]:
        head = ChainHead()
        with open(self.path, "r") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    event = AuditEvent.from_json(line)
                except (TypeError, ValueError) as exc:
                    raise AuditChainError(lineno, f"unreadable entry ({exc})") from exc
                if event.seq != head.length or event.prev_hash != head.event_hash:
                    raise AuditChainError(lineno, "entry out of sequence")
                if not hmac.compare_digest(self._link(event), event.event_hash):
                    raise AuditChainError(lineno, "event hash mismatch")
                head = ChainHead(head.length + 1, event.event_hash)
                yield event

    def verify(self) -> ChainHead:
        """Walk the whole file and return the verified head of the chain."""
        head = ChainHead()
        for event in self._walk():
            head = ChainHead(event.seq + 1, event.event_hash)
        return head

    def _sync_head(self) -> None:
        # New events only extend a verified chain.
        self._head = self.verify()
        self._size = self.path.stat().st_size

    def log(
        self,
        event_type: EventType,
        principal: Optional[str] = None,
        caller: Optional[str] = None,
        target: Optional[str] = None,
        value: Optional[int] = None,
        nonce: Optional[int] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        with self._append_lock, exclusive_lock(self._lock_path):
            if self.path.stat().st_size != self._size:
                self._sync_head()
            event = AuditEvent(
                seq=self._head.length,
                event_type=event_type.value,
                timestamp=time.time(),
                principal=principal,
                caller=caller,
                target=target,
                # uint256 values do not survive JSON consumers as numbers
                value=None if value is None else str(value),
                nonce=nonce,
                success=success,
                reason=reason,
                details=details,
                prev_hash=self._head.event_hash,
            )
            event.event_hash = self._link(event)

            with open(self.path, "a") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
                self._size = os.fstat(f.fileno()).st_size

            self._head = ChainHead(event.seq + 1, event.event_hash)
        return event

    def log_record(self, record: ExecutionRecord, principal: str) -> AuditEvent:
        """Append a committed execution record."""
        if isinstance(record, CallExecuted):
            return self.log(
                EventType.CALL_EXECUTED,
                principal=principal,
                caller=record.sender,
                target=record.target,
                value=record.value,
                details={"payload": "0x" + record.payload.hex()},
            )
        return self.log(
            EventType.BATCH_EXECUTED,
            principal=principal,
            nonce=record.nonce,
            details={"calls": [call.to_dict() for call in record.calls]},
        )

    def read_events(
        self,
        principal: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verified events, oldest first, optionally filtered."""
        wanted = principal.lower() if principal else None
        events = [
            event
            for event in self._walk()
            if (wanted is None or (event.principal or "").lower() == wanted)
            and (event_type is None or event.event_type == event_type.value)
        ]
        return events[-limit:] if limit > 0 else []
