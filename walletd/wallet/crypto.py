"""AES-256-GCM encryption boundary for wallet files.

A password is stretched with PBKDF2-HMAC-SHA512 into 64 bytes of key
material. The first half is the AES key; the second half only ever feeds the
password checksum, so the checksum stored on disk reveals nothing about the
cipher key.
"""

import hashlib
import hmac

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes

KDF_NAME = "pbkdf2-sha512"
DEFAULT_ITERATIONS = 100_000
MAX_ITERATIONS = 10_000_000
SALT_SIZE = 16
NONCE_SIZE = 16
TAG_SIZE = 16
CIPHER_KEY_SIZE = 32


def new_salt() -> bytes:
    return get_random_bytes(SALT_SIZE)


def derive_key(password: str, salt: bytes, iterations: int = DEFAULT_ITERATIONS) -> bytearray:
    """Derive 64 bytes of key material from a password.

    Returned as a ``bytearray`` so callers can :func:`wipe` it.
    """
    material = hashlib.pbkdf2_hmac(
        "sha512",
        password.encode("utf-8"),
        salt,
        iterations,
        dklen=2 * CIPHER_KEY_SIZE,
    )
    return bytearray(material)


def checksum(key: bytearray) -> str:
    """Password verifier stored next to the ciphertext."""
    return hashlib.sha256(bytes(key[CIPHER_KEY_SIZE:])).hexdigest()


def verify(key: bytearray, expected: str) -> bool:
    return hmac.compare_digest(checksum(key), expected)


def encrypt(plaintext: bytes, key: bytearray) -> bytes:
    """Encrypt with a fresh nonce; returns ``nonce || tag || ciphertext``."""
    cipher = AES.new(
        bytes(key[:CIPHER_KEY_SIZE]), AES.MODE_GCM, nonce=get_random_bytes(NONCE_SIZE)
    )
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return cipher.nonce + tag + ciphertext


def decrypt(blob: bytes, key: bytearray) -> bytearray:
    """Decrypt a blob produced by :func:`encrypt`.

    Raises:
        ValueError: If the blob is truncated or fails authentication.
    """
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise ValueError("Ciphertext is truncated")

    nonce = blob[:NONCE_SIZE]
    tag = blob[NONCE_SIZE : NONCE_SIZE + TAG_SIZE]
    ciphertext = blob[NONCE_SIZE + TAG_SIZE :]

    cipher = AES.new(bytes(key[:CIPHER_KEY_SIZE]), AES.MODE_GCM, nonce=nonce)
    try:
        return bytearray(cipher.decrypt_and_verify(ciphertext, tag))
    except ValueError as e:
        raise ValueError("Ciphertext failed authentication") from e


def wipe(buffer: bytearray) -> None:
    """Zero a key buffer in place."""
    for i in range(len(buffer)):
        buffer[i] = 0
