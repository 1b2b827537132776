"""
batchcall — Delegated batch execution for a single account.

A principal signs (nonce, batch) once; any sponsor can then submit the batch:
Sign → Verify → Consume nonce → Execute atomically → Record.
"""

__version__ = "0.1.0"

from .calls import Call, encode_calls, encode_calls_framed, load_calls, normalize_address
from .digest import batch_digest, eth_signed_digest, signable_message
from .signing import recover_signer, sign_batch, verify_principal
from .ledger import NonceLedger
from .state import HostState
from .targets import CallContext, ExampleToken, Host, Target
from .events import BatchExecuted, CallExecuted, RecordEmitter
from .engine import BatchCallEngine, ExecutionReceipt
from .audit import AuditTrail, EventType
from .config import EngineConfig
from .errors import (
    AuditChainError,
    BatchCallError,
    InvalidSignatureError,
    MalformedSignatureError,
    NotAuthorizedError,
    OperationFailedError,
    ReentrancyError,
    TargetReverted,
)

__all__ = [
    "Call", "encode_calls", "encode_calls_framed", "load_calls", "normalize_address",
    "batch_digest", "eth_signed_digest", "signable_message",
    "recover_signer", "sign_batch", "verify_principal",
    "NonceLedger", "HostState", "CallContext", "ExampleToken", "Host", "Target",
    "BatchExecuted", "CallExecuted", "RecordEmitter",
    "BatchCallEngine", "ExecutionReceipt", "AuditTrail", "EventType", "EngineConfig",
    "AuditChainError", "BatchCallError", "InvalidSignatureError", "MalformedSignatureError",
    "NotAuthorizedError", "OperationFailedError", "ReentrancyError", "TargetReverted",
]
