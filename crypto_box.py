# -*- coding: utf-8 -*-
"""Field-level authenticated encryption for sensitive ledger attributes.

Every sealed value is AES-256-GCM encrypted under a key derived with
HKDF-SHA256 from the master secret and a random per-value salt, so sealing
the same plaintext twice yields unrelated ciphertexts. Because of that,
equality lookups never compare ciphertexts: :meth:`CryptoBox.lookup_key`
produces a deterministic keyed digest (HMAC-SHA256 under a separately
derived subkey) that can be stored and indexed next to the sealed value.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from core.errors import IntegrityError
from logging_utils import build_log_extra
from metrics import record_integrity_failure
from utils.sanitize import sanitize as sanitize_text
from utils.sanitize import sanitize_value

log = logging.getLogger(__name__)

_KEY_BYTES = 32
_IV_BYTES = 12
_MIN_IV_BYTES = 8
_MAX_IV_BYTES = 128
_SALT_BYTES = 16
_TAG_BYTES = 16
_MIN_SECRET_LENGTH = 16

_FIELD_INFO = b"lime-ledger/field-key"
_LOOKUP_INFO = b"lime-ledger/lookup-key"


@dataclass(frozen=True)
class SealedValue:
    """Ciphertext, IV and authentication tag (plus optional salt), hex encoded."""

    ciphertext: str
    iv: str
    tag: str
    salt: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        payload = {"ciphertext": self.ciphertext, "iv": self.iv, "tag": self.tag}
        if self.salt is not None:
            payload["salt"] = self.salt
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SealedValue":
        try:
            salt = data.get("salt")
            return cls(
                ciphertext=str(data["ciphertext"]),
                iv=str(data["iv"]),
                tag=str(data["tag"]),
                salt=str(salt) if salt is not None else None,
            )
        except (KeyError, TypeError, AttributeError) as exc:
            raise IntegrityError("sealed value is malformed") from exc


SealedLike = Union[SealedValue, Mapping[str, Any]]


def _unhex(value: str, *, name: str) -> bytes:
    try:
        return binascii.unhexlify(value)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise IntegrityError(f"sealed value has an invalid {name}") from exc


class CryptoBox:
    """Seal and open opaque strings with integrity verification."""

    def __init__(self, master_secret: str, *, per_value_salt: bool = True) -> None:
        secret = (master_secret or "").strip()
        if len(secret) < _MIN_SECRET_LENGTH:
            raise ValueError(
                f"master secret must be at least {_MIN_SECRET_LENGTH} characters long"
            )
        self._master = secret.encode("utf-8")
        self._per_value_salt = bool(per_value_salt)
        self._shared_key = None if self._per_value_salt else self._derive(None, _FIELD_INFO)
        self._lookup_key = self._derive(None, _LOOKUP_INFO)

    sanitize = staticmethod(sanitize_text)

    def _derive(self, salt: Optional[bytes], info: bytes) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=_KEY_BYTES,
            salt=salt,
            info=info,
        )
        return hkdf.derive(self._master)

    def _field_key(self, salt: Optional[bytes]) -> bytes:
        if salt is None:
            if self._shared_key is None:
                self._shared_key = self._derive(None, _FIELD_INFO)
            return self._shared_key
        return self._derive(salt, _FIELD_INFO)

    @staticmethod
    def _aad(context: Optional[str]) -> Optional[bytes]:
        if not context:
            return None
        return context.encode("utf-8")

    # ------------------------------------------------------------------
    #   Single values
    # ------------------------------------------------------------------
    def seal(self, plaintext: str, *, context: Optional[str] = None) -> SealedValue:
        if not isinstance(plaintext, str):
            raise TypeError("plaintext must be a str")
        salt = os.urandom(_SALT_BYTES) if self._per_value_salt else None
        iv = os.urandom(_IV_BYTES)
        sealed = AESGCM(self._field_key(salt)).encrypt(
            iv, plaintext.encode("utf-8"), self._aad(context)
        )
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return SealedValue(
            ciphertext=ciphertext.hex(),
            iv=iv.hex(),
            tag=tag.hex(),
            salt=salt.hex() if salt is not None else None,
        )

    def open(self, sealed: SealedLike, *, context: Optional[str] = None) -> str:
        value = sealed if isinstance(sealed, SealedValue) else SealedValue.from_dict(sealed)
        ciphertext = _unhex(value.ciphertext, name="ciphertext")
        iv = _unhex(value.iv, name="iv")
        tag = _unhex(value.tag, name="tag")
        salt = _unhex(value.salt, name="salt") if value.salt is not None else None
        if len(tag) != _TAG_BYTES or not _MIN_IV_BYTES <= len(iv) <= _MAX_IV_BYTES:
            raise IntegrityError("sealed value has an invalid iv or tag length")
        try:
            plaintext = AESGCM(self._field_key(salt)).decrypt(
                iv, ciphertext + tag, self._aad(context)
            )
        except InvalidTag as exc:
            raise IntegrityError("authentication tag mismatch") from exc
        except ValueError as exc:
            raise IntegrityError("sealed value was rejected by the cipher") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:  # pragma: no cover - authenticated data
            raise IntegrityError("sealed value is not valid UTF-8") from exc

    def lookup_key(self, value: str) -> str:
        """Deterministic, keyed digest used to index sealed values."""

        normalized = str(value or "").strip().upper()
        return hmac.new(self._lookup_key, normalized.encode("utf-8"), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    #   Documents
    # ------------------------------------------------------------------
    def seal_fields(
        self, data: Mapping[str, Any], sensitive: Iterable[str]
    ) -> Tuple[Dict[str, Any], Dict[str, Dict[str, str]]]:
        """Split ``data`` into sanitised regular fields and sealed sensitive fields."""

        names = set(sensitive)
        regular: Dict[str, Any] = {}
        sealed: Dict[str, Dict[str, str]] = {}
        for key, value in data.items():
            if key in names:
                sealed[key] = self.seal(json.dumps(value, sort_keys=True), context=key).to_dict()
            else:
                regular[key] = sanitize_value(value)
        return regular, sealed

    def open_fields(
        self, sealed: Mapping[str, Any], sensitive: Iterable[str]
    ) -> Dict[str, Any]:
        """Open every sensitive field; a field that fails verification becomes ``None``."""

        opened: Dict[str, Any] = {}
        for field in sensitive:
            envelope = sealed.get(field)
            if not envelope:
                continue
            try:
                text = self.open(envelope, context=field)
            except IntegrityError:
                log.error("crypto.integrity_failed", **build_log_extra(field=field))
                record_integrity_failure(field)
                opened[field] = None
                continue
            try:
                opened[field] = json.loads(text)
            except ValueError:
                opened[field] = text
        return opened


__all__ = ["CryptoBox", "SealedValue"]
