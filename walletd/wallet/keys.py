"""secp256k1 keys and their text encodings.

Private keys travel as WIF strings (base58 of ``0x80 || secret || checksum``).
Public keys and signatures use the chain's base58 formats, both checksummed
with RIPEMD-160:

    public key: ``{prefix}`` + base58(compressed_point || ripemd160(point)[:4])
    signature:  ``SIG_K1_`` + base58(compact_sig || ripemd160(sig + b"K1")[:4])

Raw secrets are held in a ``bytearray`` so that :meth:`PrivateKey.wipe` can
zero them in place when a wallet locks.
"""

import hashlib

import base58
from Crypto.Hash import RIPEMD160
from eth_account import Account
from eth_keys import keys

from walletd.exceptions import InvalidKeyFormat

WIF_VERSION = 0x80
DEFAULT_PUBLIC_KEY_PREFIX = "BTHB"
SIGNATURE_PREFIX = "SIG_K1_"

SECRET_SIZE = 32
COMPRESSED_POINT_SIZE = 33
COMPACT_SIGNATURE_SIZE = 65

# Compact signature header: 27 + 4 (compressed point) + recovery id
_COMPACT_HEADER_BASE = 31


def _sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _ripemd160(data: bytes) -> bytes:
    return RIPEMD160.new(data).digest()


def _b58decode(text: str) -> bytes:
    try:
        return base58.b58decode(text)
    except ValueError as e:
        raise InvalidKeyFormat("Invalid base58 encoding") from e


def encode_public_key(point: bytes, prefix: str = DEFAULT_PUBLIC_KEY_PREFIX) -> str:
    """Encode a compressed secp256k1 point as a public key string."""
    checksum = _ripemd160(point)[:4]
    return prefix + base58.b58encode(point + checksum).decode("ascii")


def decode_public_key(text: str, prefix: str = DEFAULT_PUBLIC_KEY_PREFIX) -> bytes:
    """Decode a public key string back into its compressed point.

    Raises:
        InvalidKeyFormat: If the prefix, length or checksum is wrong.
    """
    if not isinstance(text, str) or not text.startswith(prefix):
        raise InvalidKeyFormat(f"Public key must start with {prefix!r}")

    raw = _b58decode(text[len(prefix):])
    if len(raw) != COMPRESSED_POINT_SIZE + 4:
        raise InvalidKeyFormat("Public key has wrong length")

    point, checksum = raw[:-4], raw[-4:]
    if _ripemd160(point)[:4] != checksum:
        raise InvalidKeyFormat("Public key checksum mismatch")

    try:
        keys.PublicKey.from_compressed_bytes(point)
    except Exception as e:
        raise InvalidKeyFormat("Public key is not a valid curve point") from e

    return point


def encode_signature(compact: bytes) -> str:
    """Encode a 65-byte compact signature."""
    checksum = _ripemd160(compact + b"K1")[:4]
    return SIGNATURE_PREFIX + base58.b58encode(compact + checksum).decode("ascii")


def decode_signature(text: str) -> bytes:
    """Decode a signature string into its 65-byte compact form."""
    if not text.startswith(SIGNATURE_PREFIX):
        raise InvalidKeyFormat(f"Signature must start with {SIGNATURE_PREFIX!r}")

    raw = _b58decode(text[len(SIGNATURE_PREFIX):])
    if len(raw) != COMPACT_SIGNATURE_SIZE + 4:
        raise InvalidKeyFormat("Signature has wrong length")

    compact, checksum = raw[:-4], raw[-4:]
    if _ripemd160(compact + b"K1")[:4] != checksum:
        raise InvalidKeyFormat("Signature checksum mismatch")
    return compact


def recover_public_key(
    digest: bytes, signature: str, prefix: str = DEFAULT_PUBLIC_KEY_PREFIX
) -> str:
    """Recover the public key string that produced ``signature`` over ``digest``."""
    compact = decode_signature(signature)
    recovery_id = compact[0] - _COMPACT_HEADER_BASE
    r = int.from_bytes(compact[1:33], "big")
    s = int.from_bytes(compact[33:65], "big")

    try:
        sig = keys.Signature(vrs=(recovery_id, r, s))
        public = sig.recover_public_key_from_msg_hash(digest)
    except Exception as e:
        raise InvalidKeyFormat("Signature does not recover to a public key") from e

    return encode_public_key(public.to_compressed_bytes(), prefix)


class PrivateKey:
    """A secp256k1 private key whose secret can be zeroed in place."""

    __slots__ = ("_secret",)

    def __init__(self, secret: bytes | bytearray) -> None:
        if len(secret) != SECRET_SIZE:
            raise InvalidKeyFormat("Private key must be 32 bytes")
        if not any(secret):
            raise InvalidKeyFormat("Private key must not be zero")
        try:
            keys.PrivateKey(bytes(secret))
        except Exception as e:
            raise InvalidKeyFormat("Private key is out of range for secp256k1") from e
        self._secret = bytearray(secret)

    @classmethod
    def generate(cls) -> "PrivateKey":
        """Create a fresh random key."""
        account = Account.create()
        return cls(bytes(account.key))

    @classmethod
    def from_wif(cls, wif: str) -> "PrivateKey":
        """Parse a WIF encoded private key.

        Accepts both the plain form and the compressed-point form that carries a
        trailing ``0x01`` flag byte.

        Raises:
            InvalidKeyFormat: If the string is not a valid WIF key.
        """
        raw = _b58decode(wif.strip())
        if len(raw) not in (1 + SECRET_SIZE + 4, 1 + SECRET_SIZE + 1 + 4):
            raise InvalidKeyFormat("WIF key has wrong length")

        payload, checksum = raw[:-4], raw[-4:]
        if _sha256d(payload)[:4] != checksum:
            raise InvalidKeyFormat("WIF key checksum mismatch")
        if payload[0] != WIF_VERSION:
            raise InvalidKeyFormat("WIF key has wrong version byte")
        if len(payload) == 1 + SECRET_SIZE + 1 and payload[-1] != 0x01:
            raise InvalidKeyFormat("WIF key has wrong compression flag")

        return cls(payload[1 : 1 + SECRET_SIZE])

    @property
    def is_wiped(self) -> bool:
        return not any(self._secret)

    def to_wif(self) -> str:
        """Encode as WIF (plain form, no compression flag)."""
        payload = bytes([WIF_VERSION]) + bytes(self._secret)
        return base58.b58encode(payload + _sha256d(payload)[:4]).decode("ascii")

    def public_key(self, prefix: str = DEFAULT_PUBLIC_KEY_PREFIX) -> str:
        """Derive the public key string."""
        point = self._key_obj().public_key.to_compressed_bytes()
        return encode_public_key(point, prefix)

    def sign(self, digest: bytes) -> str:
        """Sign a 32-byte digest, returning a ``SIG_K1_`` string.

        Signing is deterministic (RFC 6979): the same key and digest always
        produce the same signature.
        """
        sig = self._key_obj().sign_msg_hash(digest)
        compact = (
            bytes([_COMPACT_HEADER_BASE + sig.v])
            + sig.r.to_bytes(32, "big")
            + sig.s.to_bytes(32, "big")
        )
        return encode_signature(compact)

    def wipe(self) -> None:
        """Overwrite the secret with zeros."""
        for i in range(len(self._secret)):
            self._secret[i] = 0

    def _key_obj(self) -> keys.PrivateKey:
        if self.is_wiped:
            raise ValueError("Private key has been wiped")
        return keys.PrivateKey(bytes(self._secret))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self._secret == other._secret

    def __repr__(self) -> str:
        return "PrivateKey(<redacted>)"
