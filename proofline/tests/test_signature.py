"""Tests for order signatures and fast-store index keys."""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest

from proofline.core.signature import OrderSigner, canonicalize

ASSET = "0x" + "aa" * 20
SENDER = "0x" + "11" * 20
RECIPIENT = "0x" + "22" * 20


def _fields(**overrides) -> dict:
    fields = {
        "chain_id": 97,
        "recipient": RECIPIENT,
        "sender": SENDER,
        "asset": ASSET,
        "amount": 1_000_000,
    }
    fields.update(overrides)
    return fields


class TestCanonicalize:
    def test_key_order_and_types(self) -> None:
        raw = canonicalize(**_fields(), timestamp=1700000000)
        assert list(json.loads(raw)) == ["chainId", "to", "from", "asset", "amount", "timestamp"]
        assert json.loads(raw)["amount"] == "1000000"
        assert json.loads(raw)["chainId"] == 97
        assert " " not in raw

    def test_base_form_has_no_timestamp(self) -> None:
        assert "timestamp" not in json.loads(canonicalize(**_fields()))

    def test_addresses_lowercased(self) -> None:
        checksummed = canonicalize(**_fields(asset=ASSET.replace("aa", "AA")))
        assert checksummed == canonicalize(**_fields())


class TestOrderSigner:
    def test_requires_secrets(self) -> None:
        with pytest.raises(ValueError):
            OrderSigner("", "index-secret-1")

    def test_sign_is_hmac_sha512(self, signer: OrderSigner) -> None:
        message = canonicalize(**_fields(), timestamp=1)
        expected = hmac.new(b"test-signature-secret", message.encode(), hashlib.sha512).hexdigest()
        assert signer.sign(**_fields(), timestamp=1) == expected
        assert len(expected) == 128

    def test_verify_roundtrip(self, signer: OrderSigner) -> None:
        signature = signer.sign(**_fields(), timestamp=5)
        assert signer.verify(signature, **_fields(), timestamp=5)
        assert signer.verify(signature.upper(), **_fields(), timestamp=5)

    def test_verify_rejects_tampered_amount(self, signer: OrderSigner) -> None:
        signature = signer.sign(**_fields(), timestamp=5)
        assert not signer.verify(signature, **_fields(amount=1_000_001), timestamp=5)

    @pytest.mark.parametrize("signature", ["sigé", "", "zz" * 64, "ab" * 63])
    def test_verify_rejects_malformed_signature(self, signer: OrderSigner, signature: str) -> None:
        assert signer.verify(signature, **_fields(), timestamp=5) is False

    def test_verify_rejects_other_secret(self, signer: OrderSigner) -> None:
        forged = OrderSigner("another-signature-secret", "test-index-secret").sign(**_fields(), timestamp=5)
        assert not signer.verify(forged, **_fields(), timestamp=5)

    def test_base_key_ignores_timestamp(self, signer: OrderSigner) -> None:
        base = signer.base_key(**_fields())
        assert base == signer.base_key(**_fields())
        assert signer.unique_key(**_fields(), timestamp=1) != signer.unique_key(**_fields(), timestamp=2)

    def test_keys_use_index_secret(self, signer: OrderSigner) -> None:
        other = OrderSigner("test-signature-secret", "other-index-secret")
        assert signer.base_key(**_fields()) != other.base_key(**_fields())
        message = canonicalize(**_fields())
        expected = hmac.new(b"test-index-secret", message.encode(), hashlib.sha256).hexdigest()
        assert signer.base_key(**_fields()) == expected

    def test_different_amount_different_base_key(self, signer: OrderSigner) -> None:
        assert signer.base_key(**_fields()) != signer.base_key(**_fields(amount=2))
