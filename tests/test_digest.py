"""Tests for authorization digests."""

import pytest
from eth_utils import keccak

from batchcall.calls import Call, encode_calls, encode_calls_framed
from batchcall.digest import batch_digest, eth_signed_digest, signable_message


TARGET = "0x1234567890123456789012345678901234567890"


def test_digest_is_keccak_of_nonce_and_encoded_calls():
    calls = [Call(TARGET, 1, b"\x01")]
    expected = keccak((3).to_bytes(32, "big") + encode_calls(calls))
    assert batch_digest(3, calls) == expected


def test_digest_is_deterministic():
    calls = [Call(TARGET, 1), Call(TARGET, 2, b"\xff")]
    assert batch_digest(0, calls) == batch_digest(0, list(calls))


def test_digest_binds_nonce():
    calls = [Call(TARGET, 1)]
    assert batch_digest(0, calls) != batch_digest(1, calls)


def test_framed_digest_uses_framed_encoding():
    calls = [Call(TARGET, 1, b"\x01\x02")]
    expected = keccak((0).to_bytes(32, "big") + encode_calls_framed(calls))
    assert batch_digest(0, calls, framed=True) == expected
    assert batch_digest(0, calls, framed=True) != batch_digest(0, calls)


def test_empty_batch_digest_covers_nonce_only():
    assert batch_digest(5, []) == keccak((5).to_bytes(32, "big"))


@pytest.mark.parametrize("nonce", [-1, 2**256, True])
def test_rejects_bad_nonce(nonce):
    with pytest.raises(ValueError):
        batch_digest(nonce, [])


def test_eth_signed_digest_uses_eip191_prefix():
    digest = batch_digest(0, [Call(TARGET, 1)])
    assert eth_signed_digest(digest) == keccak(b"\x19Ethereum Signed Message:\n32" + digest)


def test_signable_message_requires_32_bytes():
    with pytest.raises(ValueError, match="32 bytes"):
        signable_message(b"\x00" * 31)
