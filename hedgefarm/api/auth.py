"""
Backpack API Authentication.

Implements ED25519 request signing for Backpack private endpoints.

The signing key itself is never held here: the caller unlocks it from the
credential vault for the duration of one request and passes in the signer.

Usage:
    auth = BackpackAuth(api_key="...")
    with vault.unlock(wallet_id) as signer:
        headers = auth.sign_request("orderExecute", params, signer)
"""

import base64
import time
from typing import Any, Dict, Optional, Protocol


class Signer(Protocol):
    """Anything that can produce an ED25519 signature."""

    def sign(self, message: bytes) -> bytes:
        ...


def build_signing_payload(
    instruction: str,
    params: Optional[Dict[str, Any]],
    timestamp: int,
    window: int,
) -> str:
    """
    Build the string Backpack expects to be signed.

    Format: instruction=<name>&<params sorted by key>&timestamp=<ms>&window=<ms>
    Booleans are lowercased to match the JSON body.
    """
    parts = [f"instruction={instruction}"]
    for key in sorted(params or {}):
        value = params[key]
        if isinstance(value, bool):
            value = str(value).lower()
        parts.append(f"{key}={value}")
    parts.append(f"timestamp={timestamp}")
    parts.append(f"window={window}")
    return "&".join(parts)


class BackpackAuth:
    """
    Authentication handler for Backpack private API.

    Each request carries:
    1. X-API-Key: base64 public key of the wallet
    2. X-Timestamp: milliseconds since epoch
    3. X-Window: validity window in milliseconds
    4. X-Signature: base64 ED25519 signature of the signing payload

    Timestamps are kept strictly increasing per wallet.
    """

    def __init__(self, api_key: str, window_ms: int = 5000):
        """
        Initialize authentication handler.

        Args:
            api_key: Backpack API key (base64 public key)
            window_ms: Request validity window
        """
        if not api_key:
            raise ValueError("API key is required")
        self._api_key = api_key
        self._window_ms = window_ms
        self._last_timestamp = 0

    @property
    def api_key(self) -> str:
        return self._api_key

    def generate_timestamp(self) -> int:
        timestamp = int(time.time() * 1000)
        if timestamp <= self._last_timestamp:
            timestamp = self._last_timestamp + 1
        self._last_timestamp = timestamp
        return timestamp

    def sign_request(
        self,
        instruction: str,
        params: Optional[Dict[str, Any]],
        signer: Signer,
        timestamp: Optional[int] = None,
    ) -> Dict[str, str]:
        """
        Sign a request for a Backpack private endpoint.

        Args:
            instruction: Backpack instruction name (e.g. "orderExecute")
            params: Request parameters (query or body)
            signer: Unlocked signing key
            timestamp: Optional explicit timestamp (generated if not provided)

        Returns:
            Headers dict
        """
        if timestamp is None:
            timestamp = self.generate_timestamp()

        payload = build_signing_payload(instruction, params, timestamp, self._window_ms)
        signature = signer.sign(payload.encode("utf-8"))

        return {
            "X-API-Key": self._api_key,
            "X-Signature": base64.b64encode(signature).decode("utf-8"),
            "X-Timestamp": str(timestamp),
            "X-Window": str(self._window_ms),
        }
