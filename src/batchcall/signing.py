"""
Batch signing and signer recovery.

Signatures are 65-byte secp256k1 `r || s || v` values with v in {27, 28}.
Recovery rejects the malleable upper-half `s` form so that one authorization
has exactly one accepted encoding.
"""

from __future__ import annotations

from typing import Sequence, Union

from eth_account import Account
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import to_canonical_address

from .calls import Call, normalize_address, parse_payload
from .digest import batch_digest, signable_message
from .errors import InvalidSignatureError, MalformedSignatureError


SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_HALF_N = SECP256K1_N // 2
SIGNATURE_LENGTH = 65

SignatureLike = Union[bytes, bytearray, str]


def normalize_signature(signature: SignatureLike) -> bytes:
    try:
        raw = parse_payload(signature)
    except ValueError as exc:
        raise MalformedSignatureError(f"Signature is not bytes or hex: {exc}") from exc
    if len(raw) != SIGNATURE_LENGTH:
        raise MalformedSignatureError(
            f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(raw)}"
        )
    return raw


def split_signature(signature: SignatureLike) -> tuple[int, int, int]:
    """Return (v, r, s) after structural checks."""
    raw = normalize_signature(signature)
    r = int.from_bytes(raw[0:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v not in (27, 28):
        raise MalformedSignatureError(f"Signature v must be 27 or 28, got {v}")
    if not 0 < r < SECP256K1_N:
        raise MalformedSignatureError("Signature r out of range")
    if not 0 < s <= SECP256K1_HALF_N:
        raise MalformedSignatureError("Signature s out of range (upper-half s is malleable)")
    return v, r, s


def recover_signer(digest: bytes, signature: SignatureLike) -> str:
    """Recover the checksummed address that signed `digest`."""
    v, r, s = split_signature(signature)
    try:
        return Account.recover_message(signable_message(digest), vrs=(v, r, s))
    except (BadSignature, ValidationError, ValueError) as exc:
        raise MalformedSignatureError(f"Signature does not recover a public key: {exc}") from exc


def verify_principal(digest: bytes, signature: SignatureLike, principal: str) -> str:
    """Recover the signer and require it to be `principal`. Touches no state."""
    recovered = recover_signer(digest, signature)
    if to_canonical_address(recovered) != to_canonical_address(normalize_address(principal)):
        raise InvalidSignatureError(recovered, normalize_address(principal))
    return recovered


def sign_batch(
    private_key: Union[str, bytes],
    nonce: int,
    calls: Sequence[Call],
    *,
    framed: bool = False,
) -> bytes:
    """Sign a batch for the given nonce with the principal's key."""
    digest = batch_digest(nonce, calls, framed=framed)
    signed = Account.sign_message(signable_message(digest), private_key=private_key)
    return bytes(signed.signature)
