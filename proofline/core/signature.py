"""Order signatures and fast-store index keys.

All three derive from one canonical JSON form of the order fields:

- base key:   HMAC-SHA256(index secret, {chainId, to, from, asset, amount})
- unique key: HMAC-SHA256(index secret, base fields + timestamp)
- signature:  HMAC-SHA512(signature secret, base fields + timestamp)

Addresses are lower-cased before hashing, so the keys do not depend on
checksum casing.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any


def canonicalize(
    *,
    chain_id: int,
    recipient: str,
    sender: str,
    asset: str,
    amount: int | str,
    timestamp: int | None = None,
) -> str:
    """Compact JSON with a fixed key order. ``timestamp=None`` yields the base form."""
    payload: dict[str, Any] = {
        "chainId": int(chain_id),
        "to": recipient.lower(),
        "from": sender.lower(),
        "asset": asset.lower(),
        "amount": str(int(amount)),
    }
    if timestamp is not None:
        payload["timestamp"] = int(timestamp)
    return json.dumps(payload, separators=(",", ":"))


class OrderSigner:
    """Computes signatures and index keys with the configured HMAC secrets."""

    def __init__(self, signature_secret: str, index_secret: str) -> None:
        if not signature_secret or not index_secret:
            raise ValueError("Both HMAC secrets are required")
        self._signature_secret = signature_secret.encode()
        self._index_secret = index_secret.encode()

    def sign(
        self,
        *,
        chain_id: int,
        recipient: str,
        sender: str,
        asset: str,
        amount: int | str,
        timestamp: int,
    ) -> str:
        """Order signature as a hex string."""
        message = canonicalize(
            chain_id=chain_id,
            recipient=recipient,
            sender=sender,
            asset=asset,
            amount=amount,
            timestamp=timestamp,
        )
        return hmac.new(self._signature_secret, message.encode(), hashlib.sha512).hexdigest()

    def verify(self, signature: str, **fields: Any) -> bool:
        """Constant-time comparison of ``signature`` with the recomputed one.

        Any string is accepted; one that is not the expected hex tag
        (including non-ASCII input) simply does not verify.
        """
        expected = self.sign(**fields)
        return hmac.compare_digest(expected.encode(), signature.lower().encode())

    def base_key(
        self,
        *,
        chain_id: int,
        recipient: str,
        sender: str,
        asset: str,
        amount: int | str,
    ) -> str:
        message = canonicalize(
            chain_id=chain_id, recipient=recipient, sender=sender, asset=asset, amount=amount
        )
        return hmac.new(self._index_secret, message.encode(), hashlib.sha256).hexdigest()

    def unique_key(
        self,
        *,
        chain_id: int,
        recipient: str,
        sender: str,
        asset: str,
        amount: int | str,
        timestamp: int,
    ) -> str:
        message = canonicalize(
            chain_id=chain_id,
            recipient=recipient,
            sender=sender,
            asset=asset,
            amount=amount,
            timestamp=timestamp,
        )
        return hmac.new(self._index_secret, message.encode(), hashlib.sha256).hexdigest()
