"""
Batch dispatcher for a single principal.

Sponsored flow:
1. Build the digest over the ledger's current nonce and the encoded batch
2. Recover the signer and require it to be the principal
3. Advance the nonce
4. Dispatch every call in order
5. Emit BatchExecuted, commit, then publish records

Steps 1-5 run in one unit of work, so a rejected signature or a failing call
leaves the host state (nonce included) exactly as it was. The direct flow is
steps 4-5 without the completion record, for the principal itself.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import partial
from typing import Any, Iterable, Optional

from eth_utils import to_canonical_address

from .audit import AuditTrail, EventType
from .calls import Call, normalize_address
from .config import EngineConfig
from .digest import batch_digest
from .errors import (
    BatchCallError,
    NotAuthorizedError,
    OperationFailedError,
    ReentrancyError,
    SignatureError,
)
from .events import BatchExecuted, CallExecuted, ExecutionRecord, RecordEmitter
from .ledger import NonceLedger
from .signing import SignatureLike, verify_principal
from .state import HostState
from .targets import Host

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionReceipt:
    """Outcome of a committed batch."""

    principal: str
    caller: str
    sponsored: bool
    calls: tuple[Call, ...]
    results: tuple[bytes, ...]
    records: tuple[ExecutionRecord, ...]
    nonce: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "principal": self.principal,
            "caller": self.caller,
            "sponsored": self.sponsored,
            "nonce": self.nonce,
            "calls": [call.to_dict() for call in self.calls],
            "results": ["0x" + result.hex() for result in self.results],
            "records": [record.to_dict() for record in self.records],
        }


class BatchCallEngine:
    """
    Executes batches on behalf of one principal.

    Two entry points share one state machine: `execute_as_principal` for the
    principal itself, and `execute_with_signature` for any sponsor holding a
    signature from the principal over (current nonce, batch).
    """

    def __init__(
        self,
        principal: str,
        state: HostState,
        host: Optional[Host] = None,
        audit: Optional[AuditTrail] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        self.principal = normalize_address(principal)
        self.state = state
        self.host = host or Host(state)
        self.audit = audit
        self.ledger = NonceLedger(state, self.principal)
        self.records = RecordEmitter()
        # Per thread: a batch on another thread is concurrent, not re-entrant.
        self._local = threading.local()

        if not self.ledger.is_activated:
            self.ledger.activate()
            if self.audit is not None:
                self.audit.log(EventType.PRINCIPAL_ACTIVATED, principal=self.principal, nonce=0)

    def current_nonce(self) -> int:
        return self.ledger.current()

    def digest_for(self, calls: Iterable[Call], nonce: Optional[int] = None) -> bytes:
        """Digest the principal must sign for `calls` (default: next nonce)."""
        return batch_digest(
            self.current_nonce() if nonce is None else nonce,
            tuple(calls),
            framed=self.config.framed_encoding,
        )

    def execute_as_principal(self, caller: str, calls: Iterable[Call]) -> ExecutionReceipt:
        """Run a batch for the principal itself. No signature, no nonce."""
        caller = normalize_address(caller)
        calls = tuple(calls)
        self._check_reentrancy()
        if to_canonical_address(caller) != to_canonical_address(self.principal):
            error = NotAuthorizedError(caller, self.principal)
            logger.warning("Direct execution refused for %s: %s", self.principal, error)
            self._audit_failure(EventType.NOT_AUTHORIZED, caller, str(error))
            raise error
        return self._run(caller, calls, signature=None)

    def execute_with_signature(
        self,
        caller: str,
        calls: Iterable[Call],
        signature: SignatureLike,
    ) -> ExecutionReceipt:
        """Run a batch submitted by a sponsor with the principal's signature."""
        caller = normalize_address(caller)
        calls = tuple(calls)
        self._check_reentrancy()
        return self._run(caller, calls, signature=signature)

    @property
    def _dispatch_depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def _check_reentrancy(self) -> None:
        if self._dispatch_depth and not self.config.allow_reentrancy:
            raise ReentrancyError(f"Batch already dispatching for {self.principal}")

    def _run(
        self,
        caller: str,
        calls: tuple[Call, ...],
        signature: Optional[SignatureLike],
    ) -> ExecutionReceipt:
        sponsored = signature is not None
        nonce: Optional[int] = None
        self._local.depth = self._dispatch_depth + 1
        try:
            with self.state.unit_of_work():
                if sponsored:
                    nonce = self._authorize(calls, signature)
                records, results = self._dispatch(caller, calls)
                if sponsored:
                    records.append(BatchExecuted(nonce=nonce, calls=calls))
                self.state.on_commit(partial(self._publish, tuple(records)))
        except SignatureError as exc:
            logger.warning("Signature rejected for %s (caller %s): %s", self.principal, caller, exc)
            self._audit_failure(EventType.SIGNATURE_REJECTED, caller, str(exc))
            raise
        except OperationFailedError as exc:
            logger.warning(
                "Batch reverted for %s at call %d of %d: %s",
                self.principal, exc.index, len(calls), exc.reason,
            )
            self._audit_failure(
                EventType.BATCH_REVERTED,
                caller,
                exc.reason,
                details={"index": exc.index, "sponsored": sponsored},
            )
            raise
        finally:
            self._local.depth -= 1

        logger.info(
            "Executed %s batch of %d calls for %s (caller %s, nonce %s)",
            "sponsored" if sponsored else "direct",
            len(calls), self.principal, caller, nonce,
        )
        return ExecutionReceipt(
            principal=self.principal,
            caller=caller,
            sponsored=sponsored,
            calls=calls,
            results=tuple(results),
            records=tuple(records),
            nonce=nonce,
        )

    def _authorize(self, calls: tuple[Call, ...], signature: SignatureLike) -> int:
        nonce = self.ledger.current()
        digest = batch_digest(nonce, calls, framed=self.config.framed_encoding)
        verify_principal(digest, signature, self.principal)
        # Consumed before dispatch: nested calls see the next nonce.
        return self.ledger.advance()

    def _dispatch(
        self,
        caller: str,
        calls: tuple[Call, ...],
    ) -> tuple[list[ExecutionRecord], list[bytes]]:
        records: list[ExecutionRecord] = []
        results: list[bytes] = []
        for index, call in enumerate(calls):
            try:
                result = self.host.call(self.principal, call.target, call.value, call.payload)
            except BatchCallError as exc:
                raise OperationFailedError(index, call, str(exc), cause=exc) from exc
            results.append(result)
            records.append(
                CallExecuted(
                    sender=caller,
                    target=call.target,
                    value=call.value,
                    payload=call.payload,
                )
            )
        return records, results

    def _publish(self, records: tuple[ExecutionRecord, ...]) -> None:
        for record in records:
            self.records.publish(record)
            if self.audit is None:
                continue
            try:
                self.audit.log_record(record, self.principal)
            except Exception:
                logger.exception(
                    "Failed to audit committed %s for %s", type(record).__name__, self.principal
                )

    def _audit_failure(
        self,
        event_type: EventType,
        caller: str,
        reason: str,
        details: Optional[dict] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.log(
            event_type,
            principal=self.principal,
            caller=caller,
            nonce=self.ledger.current(),
            success=False,
            reason=reason,
            details=details,
        )
