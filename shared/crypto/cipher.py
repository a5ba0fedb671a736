from __future__ import annotations
import base64
import hashlib
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

_IV_SIZE = 16


def _b64url_nopad(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_to_bytes(s: str) -> bytes:
    pad = "=" * ((4 - (len(s) % 4)) % 4)
    return base64.urlsafe_b64decode(s + pad)


def derive_key(secret_key: str) -> bytes:
    """AES-256 key from the shared secret (SHA-256 digest)."""
    return hashlib.sha256(secret_key.encode("utf-8")).digest()


def cipher_message(plaintext: str, secret_key: str) -> str:
    """
    Encrypt ``plaintext`` under ``secret_key`` with AES-256-CBC.

    Returns base64url (no padding) of ``iv || ciphertext``. A fresh IV is drawn
    per call, so two tokens for the same input differ.
    """
    iv = os.urandom(_IV_SIZE)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(derive_key(secret_key)), modes.CBC(iv)).encryptor()
    ct = encryptor.update(padded) + encryptor.finalize()
    return _b64url_nopad(iv + ct)


def decipher_message(token: str, secret_key: str) -> str:
    """Inverse of :func:`cipher_message`. Raises ``ValueError`` on a bad token or key."""
    raw = b64url_to_bytes(token)
    if len(raw) < 2 * _IV_SIZE or len(raw) % _IV_SIZE:
        raise ValueError("token has invalid length")
    iv, ct = raw[:_IV_SIZE], raw[_IV_SIZE:]
    decryptor = Cipher(algorithms.AES(derive_key(secret_key)), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ct) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    data = unpadder.update(padded) + unpadder.finalize()
    return data.decode("utf-8")
