"""
Authorization digests for sponsored batches.

digest = keccak256(uint256 nonce || encoded calls). The principal signs the
EIP-191 "Ethereum Signed Message" wrapping of that digest, so a batch digest
can never be confused with a transaction or typed-data signature.
"""

from __future__ import annotations

from typing import Sequence

from eth_abi.packed import encode_packed
from eth_account.messages import SignableMessage, encode_defunct
from eth_utils import keccak

from .calls import UINT256_MAX, Call, encode_calls, encode_calls_framed


def batch_digest(nonce: int, calls: Sequence[Call], *, framed: bool = False) -> bytes:
    """Digest binding the nonce about to be consumed to the encoded batch."""
    if isinstance(nonce, bool) or not isinstance(nonce, int):
        raise ValueError("nonce must be an integer")
    if nonce < 0 or nonce > UINT256_MAX:
        raise ValueError(f"nonce out of uint256 range: {nonce}")
    encoded = encode_calls_framed(calls) if framed else encode_calls(calls)
    return keccak(encode_packed(["uint256", "bytes"], [nonce, encoded]))


def signable_message(digest: bytes) -> SignableMessage:
    if len(digest) != 32:
        raise ValueError(f"digest must be 32 bytes, got {len(digest)}")
    return encode_defunct(primitive=digest)


def eth_signed_digest(digest: bytes) -> bytes:
    """The 32-byte hash actually signed for a batch digest."""
    signable = signable_message(digest)
    return keccak(b"\x19" + signable.version + signable.header + signable.body)
