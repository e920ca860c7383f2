"""Hybrid encryption of session field groups.

Each non-empty group is JSON-serialized and sealed with a fresh AES-256-GCM
key; that key is then wrapped with the recipient's RSA public key using
OAEP/SHA-256. The GCM tag is appended to the ciphertext, the layout Web
Crypto produces, so browsers can decrypt with ``crypto.subtle`` directly.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sessionhub.models import EncryptedPayload, PublicKey

logger = logging.getLogger("sessionhub.encryption")

AES_KEY_BYTES = 32
NONCE_BYTES = 12
FORMAT_VERSION = 1
MIN_PUBLIC_KEY_LENGTH = 100

FIELD_GROUPS = ("interactions", "todo_snapshots", "plans", "sub_sessions", "attachment_urls")


class PublicKeySource(Protocol):
    def get_public_key(self) -> PublicKey | None: ...


def _load_public_key(public_key_b64: str) -> rsa.RSAPublicKey:
    key = serialization.load_der_public_key(base64.b64decode(public_key_b64))
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError(f"Expected an RSA public key, got {type(key).__name__}")
    return key


def is_valid_public_key(public_key_b64: str | None) -> bool:
    """Basic sanity check: long enough and parses as an RSA SPKI key."""
    if not public_key_b64 or len(public_key_b64) < MIN_PUBLIC_KEY_LENGTH:
        return False
    try:
        _load_public_key(public_key_b64)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        logger.warning("Invalid public key format: %s", e)
        return False
    return True


def encrypt_content(plaintext: str, public_key_b64: str) -> EncryptedPayload:
    key = AESGCM.generate_key(bit_length=AES_KEY_BYTES * 8)
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)

    wrapped_key = _load_public_key(public_key_b64).encrypt(
        key,
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        ),
    )

    return EncryptedPayload(
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        wrapped_key=base64.b64encode(wrapped_key).decode("ascii"),
        iv=base64.b64encode(nonce).decode("ascii"),
        version=FORMAT_VERSION,
    )


@dataclass
class EncryptionResult:
    """Outcome of one encryption attempt.

    ``fields`` maps a group name to its serialized EncryptedPayload and is
    empty for plaintext results.
    """

    status: str  # "encrypted" | "plaintext"
    key_version: int = 0
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def encrypted(self) -> bool:
        return self.status == "encrypted"


class SessionEncryptor:
    """Encrypts field groups with the caller's public key, or falls back to plaintext.

    Confidentiality is best-effort: a missing key, an invalid key or any
    encryption error yields a plaintext result and bumps ``downgrades``
    (missing key excepted, that is the normal unencrypted setup).
    """

    def __init__(self, key_source: PublicKeySource):
        self.key_source = key_source
        self.downgrades = 0

    def encrypt(self, groups: dict[str, list[Any]]) -> EncryptionResult:
        try:
            key = self.key_source.get_public_key()
        except Exception as e:
            self.downgrades += 1
            logger.warning("Could not fetch encryption key, sending plaintext: %s", e)
            return EncryptionResult(status="plaintext")

        if key is None or not key.public_key:
            logger.debug("No encryption key configured, sending plaintext")
            return EncryptionResult(status="plaintext")
        if not is_valid_public_key(key.public_key):
            self.downgrades += 1
            logger.warning("Encryption key failed validation, sending plaintext")
            return EncryptionResult(status="plaintext")

        try:
            fields = {
                name: json.dumps(encrypt_content(json.dumps(values), key.public_key).to_wire())
                for name, values in groups.items()
                if name in FIELD_GROUPS and values
            }
        except Exception as e:
            self.downgrades += 1
            logger.warning("Failed to encrypt session data, sending plaintext: %s", e)
            return EncryptionResult(status="plaintext")

        logger.info("Session data encrypted (key version %d)", key.key_version)
        return EncryptionResult(status="encrypted", key_version=key.key_version, fields=fields)
