from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
import hashlib
import logging
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sitenotify.core.config import Settings, get_settings
from sitenotify.core.errors import ContentIntegrityError


logger = logging.getLogger(__name__)

_NONCE_BYTES = 12


def decode_key_material(value: str) -> bytes:
    """Decode base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("key material must be base64 or hex") from exc


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"))


def content_hash(*, notification_type: str, priority: str, title: str, message: str) -> str:
    # Fingerprint the rendered content so tampering with sealed blobs is detectable.
    return hashlib.sha256(f"{notification_type}:{priority}:{title}:{message}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SealedText:
    # Ciphertext is the only form in which notification text is stored or passed around.
    nonce: str
    cipher_text: str
    key_id: str

    def to_json(self) -> dict[str, str]:
        return {"nonce": self.nonce, "cipher_text": self.cipher_text, "key_id": self.key_id}

    @classmethod
    def from_json(cls, raw: dict[str, Any]) -> "SealedText":
        try:
            return cls(nonce=str(raw["nonce"]), cipher_text=str(raw["cipher_text"]), key_id=str(raw["key_id"]))
        except (KeyError, TypeError) as exc:
            raise ContentIntegrityError("sealed content is malformed") from exc


@dataclass(frozen=True)
class NotificationContent:
    # Plaintext exists only at the render boundary and never appears in reprs or logs.
    title: str = field(repr=False)
    message: str = field(repr=False)


class ContentCipher:
    def __init__(self, key: bytes, *, key_id: str) -> None:
        if len(key) not in (16, 24, 32):
            raise ValueError("content key must be 128, 192 or 256 bits")
        self._aead = AESGCM(key)
        self._key_id = key_id

    @property
    def key_id(self) -> str:
        return self._key_id

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ContentCipher":
        settings = settings or get_settings()
        if settings.notify_content_key:
            key = decode_key_material(settings.notify_content_key)
        else:
            # Local runs only: derive a stable key so restarts can still read stored rows.
            logger.warning("notify_content_key_missing using derived development key")
            key = hashlib.sha256(f"{settings.app_name}:dev-content-key".encode("utf-8")).digest()
        key_id = hashlib.sha256(key).hexdigest()[:12]
        return cls(key, key_id=key_id)

    def seal(self, plaintext: str, *, aad: str) -> SealedText:
        nonce = os.urandom(_NONCE_BYTES)
        cipher_text = self._aead.encrypt(nonce, plaintext.encode("utf-8"), aad.encode("utf-8"))
        return SealedText(nonce=b64encode_bytes(nonce), cipher_text=b64encode_bytes(cipher_text), key_id=self._key_id)

    def open(self, sealed: SealedText, *, aad: str) -> str:
        if sealed.key_id != self._key_id:
            raise ContentIntegrityError(f"content sealed with unknown key {sealed.key_id}")
        try:
            plaintext = self._aead.decrypt(
                b64decode_str(sealed.nonce),
                b64decode_str(sealed.cipher_text),
                aad.encode("utf-8"),
            )
        except (InvalidTag, binascii.Error, ValueError) as exc:
            raise ContentIntegrityError("sealed content failed authentication") from exc
        return plaintext.decode("utf-8")

    def seal_content(self, content: NotificationContent, *, notification_id: str) -> tuple[SealedText, SealedText]:
        # Bind each field to its notification so blobs cannot be swapped between rows.
        return (
            self.seal(content.title, aad=f"{notification_id}:title"),
            self.seal(content.message, aad=f"{notification_id}:message"),
        )

    def open_content(
        self,
        *,
        notification_id: str,
        title: SealedText,
        message: SealedText,
    ) -> NotificationContent:
        return NotificationContent(
            title=self.open(title, aad=f"{notification_id}:title"),
            message=self.open(message, aad=f"{notification_id}:message"),
        )
