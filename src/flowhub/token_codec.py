"""Summary: Credential encoding utilities for stored account connections.

Importance: Keeps OAuth credential snapshots obscured when stored in SQLite.
Alternatives: Use a dedicated secrets manager or strong encryption library.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any


class TokenCodec:
    """Summary: Reversible credential obfuscation keyed on the deployment secret.

    Importance: Account rows never hold a readable access or refresh token.
    Alternatives: Use a proper encryption library with key management.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret.encode("utf-8")

    def encode(self, plaintext: str) -> str:
        masked = self._mask(plaintext.encode("utf-8"))
        return base64.urlsafe_b64encode(masked).decode("ascii")

    def decode(self, payload: str) -> str:
        return self._mask(base64.urlsafe_b64decode(payload.encode("ascii"))).decode("utf-8")

    def encode_mapping(self, payload: dict[str, Any]) -> str:
        """Summary: Encode a credential snapshot mapping as obfuscated JSON.

        Importance: Stores access token, refresh token, and expiry as one column.
        Alternatives: Store each token field in its own encoded column.
        """

        return self.encode(json.dumps(payload, sort_keys=True))

    def decode_mapping(self, payload: str) -> dict[str, Any]:
        return json.loads(self.decode(payload))

    def _mask(self, data: bytes) -> bytes:
        # XOR is its own inverse, so one helper serves both directions.
        stream = _keystream(self._secret, len(data))
        return bytes(left ^ right for left, right in zip(data, stream))


def _keystream(secret: bytes, length: int) -> bytes:
    """Summary: Derive a deterministic keystream from SHA-256 counter blocks.

    Importance: Keeps encoding reversible without external dependencies.
    Alternatives: Use a proper stream cipher.
    """

    blocks = (length + 31) // 32
    stream = b"".join(
        hashlib.sha256(secret + index.to_bytes(4, "big")).digest() for index in range(blocks)
    )
    return stream[:length]
