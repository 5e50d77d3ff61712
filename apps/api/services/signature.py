"""HMAC-SHA256 webhook signing and verification.

Signed payload format: ``HMAC(secret, timestamp + "." + raw_body)`` with the
timestamp in unix milliseconds. Signatures are emitted as base64.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from config import settings
from services.errors import AuthError


SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_TYPE_HEADER = "X-Event-Type"

_DIGEST_SIZE = hashlib.sha256().digest_size


class SignatureError(AuthError):
    code = "INVALID_SIGNATURE"


class MissingSignatureError(SignatureError):
    code = "MISSING_SIGNATURE"


class InvalidTimestampError(SignatureError):
    code = "INVALID_TIMESTAMP"


class ReplayWindowError(SignatureError):
    code = "REPLAY_WINDOW_EXCEEDED"


class InvalidSignatureError(SignatureError):
    code = "INVALID_SIGNATURE"


@dataclass(frozen=True)
class SignedPayload:
    signature: str
    timestamp: str


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def _digest(raw_body: Union[str, bytes], timestamp: str, secret: str) -> bytes:
    message = _to_bytes(timestamp) + b"." + _to_bytes(raw_body)
    return hmac.new(_to_bytes(secret), message, hashlib.sha256).digest()


def _now_ms() -> int:
    return int(time.time() * 1000)


def sign_payload(raw_body: Union[str, bytes], secret: str, now_ms: Optional[int] = None) -> SignedPayload:
    """Sign an outbound body. Always emits the canonical base64 encoding."""
    timestamp = str(now_ms if now_ms is not None else _now_ms())
    signature = base64.b64encode(_digest(raw_body, timestamp, secret)).decode("ascii")
    return SignedPayload(signature=signature, timestamp=timestamp)


def _decode_base64(signature: str) -> Optional[bytes]:
    try:
        decoded = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        return None
    return decoded if len(decoded) == _DIGEST_SIZE else None


def _decode_hex(signature: str) -> Optional[bytes]:
    if len(signature) != _DIGEST_SIZE * 2:
        return None
    try:
        return bytes.fromhex(signature)
    except ValueError:
        return None


# Compatibility shim: one partner signs with hex digests. The canonical
# encoding is base64 and is always tried first.
_SIGNATURE_DECODERS: Tuple[Callable[[str], Optional[bytes]], ...] = (_decode_base64, _decode_hex)


def decode_signature(signature: str) -> Optional[bytes]:
    """Return the raw digest carried by ``signature`` or None if undecodable."""
    for decoder in _SIGNATURE_DECODERS:
        digest = decoder(signature)
        if digest is not None:
            return digest
    return None


def verify_signature(
    raw_body: Union[str, bytes],
    signature: Optional[str],
    timestamp: Optional[str],
    secret: str,
    now_ms: Optional[int] = None,
    replay_window_seconds: Optional[int] = None,
) -> None:
    """Verify a signed body, raising a ``SignatureError`` subclass on failure."""
    sig = (signature or "").strip()
    ts = (timestamp or "").strip()
    if not sig or not ts:
        raise MissingSignatureError(f"Missing {SIGNATURE_HEADER} or {TIMESTAMP_HEADER} header")

    try:
        timestamp_ms = int(ts)
    except ValueError as exc:
        raise InvalidTimestampError("Invalid timestamp format") from exc

    window_seconds = (
        replay_window_seconds if replay_window_seconds is not None else settings.WEBHOOK_REPLAY_WINDOW_SECONDS
    )
    current_ms = now_ms if now_ms is not None else _now_ms()
    if abs(current_ms - timestamp_ms) > window_seconds * 1000:
        raise ReplayWindowError("Timestamp outside replay window")

    expected = _digest(raw_body, ts, secret)
    provided = decode_signature(sig)
    if provided is None or not hmac.compare_digest(provided, expected):
        raise InvalidSignatureError("Invalid signature")
