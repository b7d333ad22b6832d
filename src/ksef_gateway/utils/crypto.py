"""
Cryptographic helpers for KSeF batch packages and number validation.

Provides the hybrid encryption material sent with an export request or a
batch session (AES-256 key wrapped with the gateway's RSA key), AES-256-CBC
package encryption and decryption, SHA-256 digests and the CRC-8 used in
KSeF numbers.

Requires: cryptography>=41.0.0
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass, field

from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.padding import MGF1, OAEP
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

AES_KEY_SIZE = 32
AES_IV_SIZE = 16

CRC8_POLYNOMIAL = 0x31
CRC8_INIT = 0x00


@dataclass(frozen=True)
class EncryptionMaterial:
    """Per-retrieval symmetric key, IV and their wire encodings."""

    symmetric_key: bytes = field(repr=False)
    iv: bytes = field(repr=False)
    wrapped_key: str
    iv_base64: str


def load_rsa_public_key(public_key_pem: str | bytes) -> rsa.RSAPublicKey:
    """Load the gateway's RSA public key from PEM."""
    if isinstance(public_key_pem, str):
        public_key_pem = public_key_pem.encode("ascii")
    key = serialization.load_pem_public_key(public_key_pem)
    if not isinstance(key, rsa.RSAPublicKey):
        raise TypeError("Expected an RSA public key")
    return key


def generate_encryption_material(public_key_pem: str | bytes) -> EncryptionMaterial:
    """
    Generate a fresh AES-256 key and IV and wrap the key for the gateway.

    The key is wrapped with RSA-OAEP (MGF1/SHA-256, SHA-256 digest). Every
    call draws new random bytes; material must not be reused across
    retrieval sessions.

    Args:
        public_key_pem: PEM-encoded RSA public key of the target environment

    Returns:
        EncryptionMaterial with raw key/IV and their Base64 wire forms
    """
    public_key = load_rsa_public_key(public_key_pem)

    symmetric_key = secrets.token_bytes(AES_KEY_SIZE)
    iv = secrets.token_bytes(AES_IV_SIZE)

    wrapped = public_key.encrypt(
        symmetric_key,
        OAEP(
            mgf=MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        ),
    )

    return EncryptionMaterial(
        symmetric_key=symmetric_key,
        iv=iv,
        wrapped_key=base64.b64encode(wrapped).decode("ascii"),
        iv_base64=base64.b64encode(iv).decode("ascii"),
    )


def _check_key_iv(key: bytes, iv: bytes) -> None:
    if len(key) != AES_KEY_SIZE:
        raise ValueError(f"AES-256 key must be {AES_KEY_SIZE} bytes, got {len(key)}")
    if len(iv) != AES_IV_SIZE:
        raise ValueError(f"AES IV must be {AES_IV_SIZE} bytes, got {len(iv)}")


def encrypt_aes256_cbc(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    """Encrypt with AES-256-CBC and PKCS#7 padding."""
    _check_key_iv(key, iv)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt_aes256_cbc(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    """
    Decrypt AES-256-CBC data and strip PKCS#7 padding.

    Raises:
        ValueError: ciphertext is not block aligned or the padding is invalid
    """
    _check_key_iv(key, iv)
    block_bytes = algorithms.AES.block_size // 8
    if not ciphertext or len(ciphertext) % block_bytes:
        raise ValueError(
            f"Ciphertext length {len(ciphertext)} is not a positive multiple of {block_bytes}"
        )
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    # PKCS7.finalize raises ValueError("Invalid padding bytes.") on corruption
    return unpadder.update(padded) + unpadder.finalize()


def _as_bytes(data: str | bytes) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def sha256_hex(data: str | bytes) -> str:
    """SHA-256 digest as lowercase hex."""
    return hashlib.sha256(_as_bytes(data)).hexdigest()


def sha256_base64(data: str | bytes) -> str:
    """SHA-256 digest as standard padded Base64."""
    return base64.b64encode(hashlib.sha256(_as_bytes(data)).digest()).decode("ascii")


def sha256_base64url(data: str | bytes) -> str:
    """SHA-256 digest as unpadded URL-safe Base64."""
    digest = hashlib.sha256(_as_bytes(data)).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def crc8_maxim(data: str | bytes) -> int:
    """
    CRC-8 with polynomial 0x31, init 0x00, no reflection, no final XOR.

    Only used to validate gateway-assigned numbers, never to mint them.
    """
    crc = CRC8_INIT
    for byte in _as_bytes(data):
        crc ^= byte
        for _ in range(8):
            if crc & 0x80:
                crc = ((crc << 1) ^ CRC8_POLYNOMIAL) & 0xFF
            else:
                crc = (crc << 1) & 0xFF
    return crc
