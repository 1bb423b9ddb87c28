"""Authenticated encryption for per-connection secrets.

Envelope layout (before URL-safe base64):

    version (1 byte) | nonce (12 bytes) | ciphertext || GCM tag (16 bytes)

The version byte is also fed to GCM as associated data, so changing it is
detected like any other tamper.
"""

from __future__ import annotations

import base64
import binascii
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import ConfigError, CredentialIntegrityError
from .models import ConnectionCredentials, EncryptedCredentials

ENVELOPE_VERSION = 1
NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32
KEY_ENV_VAR = "SQLASK_VAULT_KEY"

_CREDENTIAL_FIELDS = ("host", "port", "database", "username", "password", "connection_string")


class CredentialVault:
    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise ConfigError(f"Vault key must be {KEY_BYTES} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        version = bytes([ENVELOPE_VERSION])
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), version)
        return base64.urlsafe_b64encode(version + nonce + sealed).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        try:
            raw = base64.urlsafe_b64decode(envelope.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise CredentialIntegrityError("Envelope is not valid base64") from exc
        if len(raw) < 1 + NONCE_BYTES + TAG_BYTES:
            raise CredentialIntegrityError("Envelope is truncated")
        version = raw[:1]
        if version[0] != ENVELOPE_VERSION:
            raise CredentialIntegrityError(f"Unsupported envelope version {version[0]}")
        nonce = raw[1 : 1 + NONCE_BYTES]
        sealed = raw[1 + NONCE_BYTES :]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, version)
        except InvalidTag as exc:
            raise CredentialIntegrityError("Envelope failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialIntegrityError("Envelope plaintext is not UTF-8") from exc

    def encrypt_credentials(self, creds: ConnectionCredentials) -> EncryptedCredentials:
        if creds.connection_string:
            return EncryptedCredentials(connection_string_encrypted=self.encrypt(creds.connection_string))
        sealed = {}
        for field in _CREDENTIAL_FIELDS[:-1]:
            value = getattr(creds, field)
            if value is not None and value != "":
                sealed[f"{field}_encrypted"] = self.encrypt(str(value))
        return EncryptedCredentials(**sealed)

    def decrypt_credentials(self, sealed: EncryptedCredentials) -> ConnectionCredentials:
        values = {}
        for field in _CREDENTIAL_FIELDS:
            envelope: Optional[str] = getattr(sealed, f"{field}_encrypted")
            if envelope:
                values[field] = self.decrypt(envelope)
        if "port" in values:
            try:
                values["port"] = int(values["port"])
            except ValueError as exc:
                raise CredentialIntegrityError("Stored port is not an integer") from exc
        try:
            return ConnectionCredentials(**values)
        except ValueError as exc:
            raise CredentialIntegrityError("Stored credentials are incomplete") from exc


def generate_key() -> str:
    return base64.b64encode(secrets.token_bytes(KEY_BYTES)).decode("ascii")


def vault_from_env(env_var: str = KEY_ENV_VAR) -> CredentialVault:
    encoded = os.environ.get(env_var, "")
    if not encoded:
        raise ConfigError(f"{env_var} environment variable not set")
    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigError(f"{env_var} is not valid base64") from exc
    return CredentialVault(key)


__all__ = ["CredentialVault", "ENVELOPE_VERSION", "generate_key", "vault_from_env"]
