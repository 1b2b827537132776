"""
Operation targets and the host that routes calls to them.

A target is anything the dispatcher can invoke with call data. Targets read
and write host state only through the CallContext they are given, so their
effects share the batch's unit of work and roll back with it. Targets reject
an invocation by raising TargetReverted.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from .calls import UINT256_MAX, normalize_address
from .errors import StateError, TargetReverted
from .state import HostState

logger = logging.getLogger(__name__)


@dataclass
class CallContext:
    """What a target sees about the invocation it is serving."""

    host: Host
    sender: str
    address: str
    value: int

    @property
    def state(self) -> HostState:
        return self.host.state


class Target(Protocol):
    def invoke(self, ctx: CallContext, payload: bytes) -> bytes: ...


class ExampleToken:
    """Minimal fungible token: open mint, transfer, balanceOf."""

    KIND = "example-token"

    MINT = function_signature_to_4byte_selector("mint(address,uint256)")
    TRANSFER = function_signature_to_4byte_selector("transfer(address,uint256)")
    BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")

    TOTAL_SUPPLY_SLOT = "totalSupply"

    @classmethod
    def encode_mint(cls, to: str, amount: int) -> bytes:
        return cls.MINT + encode(["address", "uint256"], [normalize_address(to), amount])

    @classmethod
    def encode_transfer(cls, to: str, amount: int) -> bytes:
        return cls.TRANSFER + encode(["address", "uint256"], [normalize_address(to), amount])

    @classmethod
    def encode_balance_of(cls, holder: str) -> bytes:
        return cls.BALANCE_OF + encode(["address"], [normalize_address(holder)])

    @staticmethod
    def balance_slot(holder: str) -> str:
        return "balance:" + keccak(hexstr=normalize_address(holder)).hex()

    @classmethod
    def balance_of(cls, state: HostState, token: str, holder: str) -> int:
        return state.get_slot(token, cls.balance_slot(holder))

    def invoke(self, ctx: CallContext, payload: bytes) -> bytes:
        if ctx.value:
            raise TargetReverted("ExampleToken does not accept native value")
        if len(payload) < 4:
            raise TargetReverted("Missing function selector")
        selector, args = payload[:4], payload[4:]
        try:
            if selector == self.MINT:
                to, amount = decode(["address", "uint256"], args)
                self._mint(ctx, to, amount)
                return b""
            if selector == self.TRANSFER:
                to, amount = decode(["address", "uint256"], args)
                self._transfer(ctx, ctx.sender, to, amount)
                return encode(["bool"], [True])
            if selector == self.BALANCE_OF:
                (holder,) = decode(["address"], args)
                return encode(["uint256"], [self.balance_of(ctx.state, ctx.address, holder)])
        except DecodingError as exc:
            raise TargetReverted(f"Malformed call data: {exc}") from exc
        raise TargetReverted(f"Unknown selector 0x{selector.hex()}")

    def _mint(self, ctx: CallContext, to: str, amount: int) -> None:
        supply = ctx.state.get_slot(ctx.address, self.TOTAL_SUPPLY_SLOT)
        if supply + amount > UINT256_MAX:
            raise TargetReverted("Total supply overflow")
        slot = self.balance_slot(to)
        ctx.state.set_slot(ctx.address, self.TOTAL_SUPPLY_SLOT, supply + amount)
        ctx.state.set_slot(ctx.address, slot, ctx.state.get_slot(ctx.address, slot) + amount)

    def _transfer(self, ctx: CallContext, sender: str, to: str, amount: int) -> None:
        sender_slot = self.balance_slot(sender)
        balance = ctx.state.get_slot(ctx.address, sender_slot)
        if amount > balance:
            raise TargetReverted(
                f"ERC20InsufficientBalance({normalize_address(sender)}, {balance}, {amount})"
            )
        ctx.state.set_slot(ctx.address, sender_slot, balance - amount)
        recipient_slot = self.balance_slot(to)
        ctx.state.set_slot(
            ctx.address,
            recipient_slot,
            ctx.state.get_slot(ctx.address, recipient_slot) + amount,
        )


TARGET_KINDS: dict[str, Callable[[], Target]] = {
    ExampleToken.KIND: ExampleToken,
}


class Host:
    """Routes operations to native transfers and registered targets."""

    def __init__(self, state: HostState):
        self.state = state
        self._targets: dict[str, Target] = {}

    def register(self, address: str, target: Target) -> str:
        """Attach an in-process target to an address."""
        normalized = normalize_address(address)
        self._targets[normalized] = target
        return normalized

    def deploy(self, kind: str, address: Optional[str] = None) -> str:
        """Persist a target of a known kind so later processes resolve it too."""
        if kind not in TARGET_KINDS:
            raise ValueError(f"Unknown target kind: {kind}")
        normalized = (
            normalize_address(address)
            if address
            else to_checksum_address(secrets.token_bytes(20))
        )
        with self.state.unit_of_work():
            if self.state.code_kind(normalized) is not None:
                raise StateError(f"Code already deployed at {normalized}")
            self.state.set_code_kind(normalized, kind)
        logger.info("Deployed %s at %s", kind, normalized)
        return normalized

    def target_at(self, address: str) -> Optional[Target]:
        normalized = normalize_address(address)
        target = self._targets.get(normalized)
        if target is not None:
            return target
        kind = self.state.code_kind(normalized)
        if kind is None:
            return None
        target = TARGET_KINDS[kind]()
        self._targets[normalized] = target
        return target

    def call(self, sender: str, target: str, value: int, payload: bytes) -> bytes:
        """Move `value` from sender to target, then run the target's code if any."""
        if not self.state.in_unit_of_work:
            raise StateError("Host calls require an open unit of work")
        sender = normalize_address(sender)
        target = normalize_address(target)
        self.state.transfer(sender, target, value)
        code = self.target_at(target)
        if code is None:
            return b""
        return code.invoke(CallContext(host=self, sender=sender, address=target, value=value), payload)
