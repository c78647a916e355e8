"""
Passphrase-based AES field encryption.

Produces and consumes the OpenSSL "salted" format that CryptoJS emits
for ``CryptoJS.AES.encrypt(text, passphrase)``, so values written here
can be read by the web front end and vice versa.

Wire format (before base64):

    b"Salted__" | salt (8 bytes) | AES-256-CBC ciphertext (PKCS#7)

Key and IV come from EVP_BytesToKey with MD5 and a single iteration.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import secrets

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import CryptoError, FormatError


SALT_MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16


def derive_key(
    passphrase: bytes,
    salt: bytes,
    key_len: int = KEY_SIZE,
    iv_len: int = IV_SIZE,
) -> tuple[bytes, bytes]:
    """Derive key and IV the way OpenSSL's EVP_BytesToKey does (MD5, 1 round).

    ``D_i = MD5(D_{i-1} || passphrase || salt)`` with ``D_0`` empty; the
    blocks are concatenated until ``key_len + iv_len`` bytes are available.

    Args:
        passphrase: Raw passphrase bytes.
        salt: 8-byte salt.
        key_len: Key length in bytes.
        iv_len: IV length in bytes.

    Returns:
        (key, iv) tuple.
    """
    total = key_len + iv_len
    material = b""
    block = b""
    while len(material) < total:
        block = hashlib.md5(block + passphrase + salt).digest()
        material += block
    return material[:key_len], material[key_len:total]


def encrypt(plaintext: str, passphrase: str) -> str:
    """Encrypt text into a base64 salted cipher blob.

    A fresh random salt is drawn for every call.

    Args:
        plaintext: Text to encrypt.
        passphrase: Shared passphrase.

    Returns:
        Base64 text of ``Salted__ + salt + ciphertext``.
    """
    salt = secrets.token_bytes(SALT_SIZE)
    key, iv = derive_key(passphrase.encode("utf-8"), salt)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return base64.b64encode(SALT_MAGIC + salt + ciphertext).decode("ascii")


def decrypt(blob: str, passphrase: str) -> str:
    """Decrypt a base64 salted cipher blob.

    Args:
        blob: Base64 text produced by :func:`encrypt` or CryptoJS.
        passphrase: Shared passphrase.

    Returns:
        The decrypted text.

    Raises:
        FormatError: If the blob is not base64 or lacks the ``Salted__`` prefix.
        CryptoError: If the padding or text encoding is invalid.
    """
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FormatError(f"Cipher blob is not valid base64: {exc}") from exc

    if raw[: len(SALT_MAGIC)] != SALT_MAGIC:
        raise FormatError("Unsupported encryption format")

    salt = raw[len(SALT_MAGIC) : len(SALT_MAGIC) + SALT_SIZE]
    ciphertext = raw[len(SALT_MAGIC) + SALT_SIZE :]
    if len(salt) != SALT_SIZE:
        raise FormatError("Cipher blob is truncated")

    key, iv = derive_key(passphrase.encode("utf-8"), salt)

    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as exc:
        raise CryptoError("Unable to decrypt value") from exc
