"""
Operations and their deterministic batch encoding.

A Call is one unit of work: send `value` native units to `target` and,
if the target runs code, invoke it with `payload`. A batch is an ordered
sequence of calls; its packed encoding is what the principal signs over.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence, Union

from eth_abi.packed import encode_packed
from eth_utils import decode_hex, to_checksum_address


UINT256_MAX = 2**256 - 1

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX_RE = re.compile(r"^(0x)?[a-fA-F0-9]*$")

AddressLike = Union[str, bytes]


def normalize_address(address: AddressLike) -> str:
    """Return the EIP-55 checksummed form of a 20-byte address."""
    if isinstance(address, (bytes, bytearray)):
        if len(address) != 20:
            raise ValueError(f"Address must be 20 bytes, got {len(address)}")
        return to_checksum_address(bytes(address))
    candidate = str(address).strip()
    if candidate.startswith("0X"):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid Ethereum address: {address}")
    return to_checksum_address(candidate.lower())


def parse_uint256(value: Any, field_name: str = "value") -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an unsigned integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().lower().startswith("0x"):
        parsed = int(value.strip(), 16)
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise ValueError(f"{field_name} must be an unsigned integer")
    if parsed < 0 or parsed > UINT256_MAX:
        raise ValueError(f"{field_name} out of uint256 range: {parsed}")
    return parsed


def parse_payload(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        candidate = value.strip()
        if not _HEX_RE.match(candidate) or len(candidate.removeprefix("0x")) % 2:
            raise ValueError("payload must be an even-length hex string")
        return decode_hex(candidate) if candidate.removeprefix("0x") else b""
    raise ValueError(f"payload must be bytes or hex, got {type(value).__name__}")


@dataclass(frozen=True)
class Call:
    """A single operation inside a batch."""

    target: str
    value: int = 0
    payload: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "target", normalize_address(self.target))
        object.__setattr__(self, "value", parse_uint256(self.value))
        object.__setattr__(self, "payload", parse_payload(self.payload))

    def to_dict(self) -> dict[str, str]:
        return {
            "target": self.target,
            "value": str(self.value),
            "payload": "0x" + self.payload.hex(),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Call:
        return cls(
            target=d["target"],
            value=parse_uint256(d.get("value", 0)),
            payload=parse_payload(d.get("payload", b"")),
        )


def encode_calls(calls: Sequence[Call]) -> bytes:
    """Packed encoding: target(20) || value(32) || payload, per call, in order.

    Not self-framing; a payload boundary is only recoverable when the payload
    lengths are known to both signer and caller.
    """
    return b"".join(
        encode_packed(["address", "uint256", "bytes"], [call.target, call.value, call.payload])
        for call in calls
    )


def encode_calls_framed(calls: Sequence[Call]) -> bytes:
    """Like encode_calls, with a 32-byte payload length before each payload."""
    return b"".join(
        encode_packed(
            ["address", "uint256", "uint256", "bytes"],
            [call.target, call.value, len(call.payload), call.payload],
        )
        for call in calls
    )


def calls_from_json(raw: Any) -> tuple[Call, ...]:
    if isinstance(raw, Mapping):
        raw = raw.get("calls")
    if not isinstance(raw, list):
        raise ValueError("Batch must be a JSON list of calls or an object with a 'calls' list")
    return tuple(Call.from_dict(item) for item in raw)


def load_calls(path: Path) -> tuple[Call, ...]:
    """Read a batch from a JSON file."""
    with open(path, encoding="utf-8") as f:
        return calls_from_json(json.load(f))


def dump_calls(calls: Iterable[Call], path: Path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump([call.to_dict() for call in calls], f, indent=2)
