"""
Secret codec for note bodies, stored passwords and one-time codes.

Values are sealed with a key derived from the owner's account identifier, so
anyone holding both the identifier and the ciphertext can open them. The codec
obfuscates data at rest in the shared database; it is not meant to protect
against the database operator.

Current format::

    v1:<urlsafe-b64(iterations:uint32be | salt:16 | nonce:12 | ciphertext+tag)>

Values written by the previous client (OpenSSL ``Salted__`` containers keyed
through EVP_BytesToKey) are still accepted by :func:`unseal`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from django.conf import settings

from vault.exceptions import CryptoError, DecryptionError

_VERSION_PREFIX = 'v1:'
_SALT_SIZE = 16
_NONCE_SIZE = 12
_KEY_SIZE = 32
_HEADER = struct.Struct('>I')
_MIN_ITERATIONS = 1
_MAX_ITERATIONS = 5_000_000
DEFAULT_ITERATIONS = 200_000

_LEGACY_MAGIC = b'Salted__'
_LEGACY_SALT_SIZE = 8
_LEGACY_IV_SIZE = 16


def key_material_for(user) -> str:
    """Return the key material bound to ``user``: its stable identifier."""
    return str(user.pk)


def _iterations() -> int:
    return int(getattr(settings, 'VAULT_CODEC_ITERATIONS', DEFAULT_ITERATIONS))


def _derive_key(key_material: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=_KEY_SIZE, salt=salt, iterations=iterations)
    return kdf.derive(key_material.encode('utf-8'))


def _require_text(value, name: str) -> None:
    if not isinstance(value, str):
        raise CryptoError(f'{name} must be a string', recoverable=False)


def seal(plaintext: str, key_material: str) -> str:
    """Encrypt ``plaintext`` with a key derived from ``key_material``."""
    _require_text(plaintext, 'plaintext')
    _require_text(key_material, 'key_material')

    iterations = _iterations()
    salt = os.urandom(_SALT_SIZE)
    nonce = os.urandom(_NONCE_SIZE)
    key = _derive_key(key_material, salt, iterations)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode('utf-8'), None)
    payload = _HEADER.pack(iterations) + salt + nonce + ciphertext
    return f"{_VERSION_PREFIX}{base64.urlsafe_b64encode(payload).decode('ascii')}"


def unseal(ciphertext: str, key_material: str) -> str:
    """
    Decrypt a value produced by :func:`seal` (or by the legacy client).

    Raises:
        DecryptionError: the key does not match, or the value is corrupted or
            not a ciphertext at all.
    """
    _require_text(key_material, 'key_material')
    if not isinstance(ciphertext, str) or not ciphertext:
        raise DecryptionError('Ciphertext is empty or not a string')

    if ciphertext.startswith(_VERSION_PREFIX):
        return _unseal_current(ciphertext[len(_VERSION_PREFIX):], key_material)
    return _unseal_legacy(ciphertext, key_material)


def reseal(ciphertext: str, key_material: str) -> str:
    """Re-encrypt any accepted ciphertext in the current format."""
    return seal(unseal(ciphertext, key_material), key_material)


def is_legacy_ciphertext(value: str) -> bool:
    return bool(value) and not value.startswith(_VERSION_PREFIX)


def _decode_utf8(data: bytes) -> str:
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError as exc:
        raise DecryptionError('Decrypted payload is not valid text') from exc


def _unseal_current(encoded: str, key_material: str) -> str:
    try:
        payload = base64.urlsafe_b64decode(encoded.encode('ascii'))
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError('Ciphertext is not valid base64') from exc

    minimum = _HEADER.size + _SALT_SIZE + _NONCE_SIZE + 16
    if len(payload) < minimum:
        raise DecryptionError('Ciphertext is truncated')

    (iterations,) = _HEADER.unpack_from(payload)
    if not _MIN_ITERATIONS <= iterations <= _MAX_ITERATIONS:
        raise DecryptionError('Ciphertext header is invalid')

    offset = _HEADER.size
    salt = payload[offset:offset + _SALT_SIZE]
    offset += _SALT_SIZE
    nonce = payload[offset:offset + _NONCE_SIZE]
    body = payload[offset + _NONCE_SIZE:]

    key = _derive_key(key_material, salt, iterations)
    try:
        plaintext = AESGCM(key).decrypt(nonce, body, None)
    except InvalidTag as exc:
        raise DecryptionError('Authentication failed - wrong key or tampered data') from exc
    return _decode_utf8(plaintext)


def _evp_bytes_to_key(password: bytes, salt: bytes, key_len: int = _KEY_SIZE, iv_len: int = _LEGACY_IV_SIZE):
    """OpenSSL EVP_BytesToKey with MD5 and a single round."""
    derived = b''
    block = b''
    while len(derived) < key_len + iv_len:
        block = hashlib.md5(block + password + salt).digest()
        derived += block
    return derived[:key_len], derived[key_len:key_len + iv_len]


def _unseal_legacy(encoded: str, key_material: str) -> str:
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError('Ciphertext is not valid base64') from exc

    header_size = len(_LEGACY_MAGIC) + _LEGACY_SALT_SIZE
    if not raw.startswith(_LEGACY_MAGIC) or len(raw) <= header_size:
        raise DecryptionError('Unrecognised ciphertext format')

    salt = raw[len(_LEGACY_MAGIC):header_size]
    body = raw[header_size:]
    if len(body) % 16:
        raise DecryptionError('Ciphertext is truncated')

    key, iv = _evp_bytes_to_key(key_material.encode('utf-8'), salt)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(body) + decryptor.finalize()

    unpadder = padding.PKCS7(128).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise DecryptionError('Invalid padding - wrong key or corrupted data') from exc
    return _decode_utf8(plaintext)
