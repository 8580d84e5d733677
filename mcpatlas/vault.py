"""Symmetric encryption for short-lived runtime secrets.

Tokens look like ``v1:<nonce>:<tag>:<ciphertext>`` with each part urlsafe
base64. The AES-256 key is derived once, with HKDF-SHA256, from the
operator-provided CREDENTIALS_ENCRYPTION_KEY.
"""
from __future__ import annotations

import base64
import binascii
import json
import os
from contextlib import contextmanager

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from mcpatlas.errors import ConfigError, VaultError

TOKEN_VERSION = "v1"
NONCE_SIZE = 12
TAG_SIZE = 16
_HKDF_INFO = b"mcpatlas credential vault v1"


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    return base64.urlsafe_b64decode(text.encode("ascii"))


def derive_key(secret: str) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=_HKDF_INFO,
    ).derive(secret.encode("utf-8"))


class CredentialVault:
    def __init__(self, key: str | None):
        if not key:
            raise ConfigError("CREDENTIALS_ENCRYPTION_KEY is not set")
        self._aead = AESGCM(derive_key(key))

    @classmethod
    def from_settings(cls, settings) -> "CredentialVault":
        return cls(settings.require_encryption_key())

    def encrypt(self, secrets: dict[str, str]) -> str:
        nonce = os.urandom(NONCE_SIZE)
        plaintext = json.dumps(secrets, sort_keys=True).encode("utf-8")
        sealed = self._aead.encrypt(nonce, plaintext, TOKEN_VERSION.encode("ascii"))
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return ":".join([TOKEN_VERSION, _b64(nonce), _b64(tag), _b64(ciphertext)])

    def decrypt(self, token: str) -> dict[str, str]:
        """Raises VaultError on tampering, a wrong key or a malformed token."""
        try:
            version, nonce_b64, tag_b64, ct_b64 = token.split(":")
        except (AttributeError, ValueError):
            raise VaultError("Malformed credential token") from None
        if version != TOKEN_VERSION:
            raise VaultError(f"Unsupported credential token version: {version[:8]}")
        try:
            nonce, tag, ciphertext = _unb64(nonce_b64), _unb64(tag_b64), _unb64(ct_b64)
        except (binascii.Error, ValueError):
            raise VaultError("Malformed credential token") from None
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise VaultError("Malformed credential token")

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, version.encode("ascii"))
        except InvalidTag:
            raise VaultError("Credential token failed authentication") from None

        try:
            secrets = json.loads(plaintext.decode("utf-8"))
        except ValueError:
            raise VaultError("Credential token payload is not valid") from None
        if not isinstance(secrets, dict):
            raise VaultError("Credential token payload is not valid")
        return secrets


@contextmanager
def secret_scope(secrets: dict | None):
    """Yield the secrets dict and wipe it when the block exits, however it exits."""
    held = secrets if secrets is not None else {}
    try:
        yield held
    finally:
        held.clear()
