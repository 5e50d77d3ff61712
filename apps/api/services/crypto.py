"""
Secret encryption/decryption using Fernet symmetric encryption.
"""

import base64
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings


def _get_fernet(key: Optional[str] = None) -> Fernet:
    """Get Fernet instance from an encryption key (defaults to ENCRYPTION_KEY)."""
    key = key or settings.ENCRYPTION_KEY

    # If key is not 32 bytes, derive a key using PBKDF2
    if len(key) != 32:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"metered_billing_engine_salt",
            iterations=100000,
        )
        derived = base64.urlsafe_b64encode(kdf.derive(key.encode()))
    else:
        derived = base64.urlsafe_b64encode(key.encode())

    return Fernet(derived)


def encrypt_secret(secret: str) -> str:
    """
    Encrypt a secret (e.g. a client webhook signing secret) for storage.

    Args:
        secret: Plain text secret

    Returns:
        Base64-encoded encrypted secret
    """
    fernet = _get_fernet()
    return fernet.encrypt(secret.encode()).decode()


def decrypt_secret(encrypted_secret: str) -> str:
    """
    Decrypt a stored secret.

    Args:
        encrypted_secret: Base64-encoded encrypted secret

    Returns:
        Plain text secret
    """
    fernet = _get_fernet()
    return fernet.decrypt(encrypted_secret.encode()).decode()


def decrypt_json_envelope(ciphertext: str, key: str) -> Dict[str, Any]:
    """Decrypt an encrypted JSON document. Raises ValueError on bad input."""
    try:
        plaintext = _get_fernet(key).decrypt(ciphertext.encode())
    except InvalidToken as exc:
        raise ValueError("Unable to decrypt payload") from exc
    payload = json.loads(plaintext.decode())
    if not isinstance(payload, dict):
        raise ValueError("Decrypted payload is not a JSON object")
    return payload


def encrypt_json_envelope(payload: Dict[str, Any], key: str) -> str:
    return _get_fernet(key).encrypt(json.dumps(payload).encode()).decode()
