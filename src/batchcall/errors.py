"""
batchcall error types.

Specific exceptions for each way a batch can be refused or aborted, so
callers can tell a rejected signature from a reverted operation.
"""

from __future__ import annotations

from typing import Any, Optional


class BatchCallError(Exception):
    """Base error for all batchcall operations."""
    pass


# Authorization errors
class AuthorizationError(BatchCallError):
    """Base error for calls refused before any state is touched."""
    pass


class NotAuthorizedError(AuthorizationError):
    """Direct execution attempted by someone other than the principal."""
    def __init__(self, caller: str, principal: str):
        self.caller = caller
        self.principal = principal
        super().__init__(f"Caller {caller} is not the principal {principal}")


class SignatureError(AuthorizationError):
    """Base error for sponsored-execution signature failures."""
    pass


class MalformedSignatureError(SignatureError):
    """Signature is not a structurally valid secp256k1 (r, s, v) triplet."""
    pass


class InvalidSignatureError(SignatureError):
    """Signature recovers to an identity other than the principal."""
    def __init__(self, recovered: str, principal: str):
        self.recovered = recovered
        self.principal = principal
        super().__init__(f"Invalid signature: recovered {recovered}, expected {principal}")


# Execution errors
class ExecutionError(BatchCallError):
    """Base error for failures while operations are dispatched."""
    pass


class TargetReverted(ExecutionError):
    """Raised by a target to reject an invocation."""
    def __init__(self, reason: str = "reverted", data: bytes = b""):
        self.reason = reason
        self.data = data
        super().__init__(reason)


class InsufficientBalanceError(ExecutionError):
    """Native value transfer exceeds the sender's balance."""
    def __init__(self, address: str, balance: int, amount: int):
        self.address = address
        self.balance = balance
        self.amount = amount
        super().__init__(f"{address} has balance {balance}, cannot send {amount}")


class ReentrancyError(ExecutionError):
    """Engine entry point invoked while a batch is already dispatching."""
    pass


class OperationFailedError(ExecutionError):
    """An operation in the batch failed; the whole batch was rolled back."""
    def __init__(self, index: int, call: Any, reason: str, cause: Optional[BaseException] = None):
        self.index = index
        self.call = call
        self.reason = reason
        self.cause = cause
        super().__init__(f"Call {index} to {getattr(call, 'target', '?')} reverted: {reason}")


# State errors
class StateError(BatchCallError):
    """Host state was used outside its contract."""
    pass


# Audit errors
class AuditChainError(BatchCallError):
    """The audit trail no longer verifies; the line it breaks at is kept."""
    def __init__(self, line: int, problem: str):
        self.line = line
        self.problem = problem
        super().__init__(f"Audit chain broken at line {line}: {problem}")
