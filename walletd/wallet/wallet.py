"""A single password-encrypted keyring backed by one ``{name}.wallet`` file.

The file is a small JSON document:

    {
      "version": 1,
      "kdf": {"name": "pbkdf2-sha512", "salt": "<b64>", "iterations": 100000},
      "checksum": "<hex>",
      "cipher_keys": "<b64 nonce || tag || ciphertext>"
    }

``cipher_keys`` decrypts to a JSON object mapping public keys to WIF private
keys. Nothing in the file is readable without the password.
"""

import base64
import binascii
import contextlib
import json
import os
import re
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from loguru import logger

from walletd.exceptions import (
    InvalidKeyFormat,
    InvalidPassword,
    KeyNotFound,
    WalletAlreadyExists,
    WalletCorrupt,
    WalletLocked,
    WalletNotFound,
    WalletStorageError,
)
from walletd.wallet import crypto
from walletd.wallet.keys import DEFAULT_PUBLIC_KEY_PREFIX, PrivateKey

FILE_VERSION = 1
WALLET_EXTENSION = ".wallet"
PASSWORD_PREFIX = "PW"

_CHECKSUM_RE = re.compile(r"[0-9a-f]{64}")


class Wallet:
    """One named keyring with a Locked/Unlocked state machine.

    While locked only the encrypted blob and the password checksum are held in
    memory. Unlocking materializes ``public_key -> PrivateKey``; locking zeroes
    every secret and drops the mapping.

    Usage:
        wallet = Wallet("default", Path("wallets/default.wallet"))
        password = wallet.create()
        public_key = wallet.import_key("5KQwrPbwdL6PhXujxW37FSSQZ1JiwsST4cqQzDeyXtP79zkvFD3")
        wallet.lock()
        wallet.unlock(password)
    """

    def __init__(
        self,
        name: str,
        path: Path,
        public_key_prefix: str = DEFAULT_PUBLIC_KEY_PREFIX,
        kdf_iterations: int = crypto.DEFAULT_ITERATIONS,
    ) -> None:
        """Initialize an unloaded wallet.

        Args:
            name: Wallet name, also the file stem.
            path: Location of the wallet file.
            public_key_prefix: Prefix used when encoding public keys.
            kdf_iterations: PBKDF2 iterations for newly created files.
                Opened files keep the count they were written with.
        """
        self._name = name
        self._path = path
        self._prefix = public_key_prefix
        self._iterations = kdf_iterations

        self._salt: bytes | None = None
        self._checksum: str | None = None
        self._cipher_keys: bytes | None = None

        self._key: bytearray | None = None
        self._keyring: dict[str, PrivateKey] | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_locked(self) -> bool:
        return self._keyring is None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create(self) -> str:
        """Create a new empty wallet file and leave the wallet unlocked.

        Returns:
            The generated plaintext password. It is not stored anywhere, so the
            caller must keep it to unlock the wallet later.

        Raises:
            WalletAlreadyExists: If the wallet file already exists.
            WalletStorageError: If the file cannot be written.
        """
        if self._path.exists():
            raise WalletAlreadyExists(self._name)

        seed = PrivateKey.generate()
        password = PASSWORD_PREFIX + seed.to_wif()
        seed.wipe()

        self._salt = crypto.new_salt()
        key = crypto.derive_key(password, self._salt, self._iterations)
        self._checksum = crypto.checksum(key)

        try:
            self._persist({}, key)
        except WalletStorageError:
            crypto.wipe(key)
            self._salt = None
            self._checksum = None
            raise

        self._key = key
        self._keyring = {}

        logger.info("Created wallet: {} ({})", self._name, self._path)
        return password

    def open(self) -> None:
        """Load the encrypted wallet file without decrypting it.

        Raises:
            WalletNotFound: If the file is missing or unreadable.
            WalletCorrupt: If the file content is not a valid wallet document.
        """
        try:
            raw = self._path.read_bytes()
        except OSError as e:
            raise WalletNotFound(
                self._name, f"Unable to open wallet file: {self._path}"
            ) from e

        try:
            document: dict[str, Any] = json.loads(raw)
            if document["version"] != FILE_VERSION:
                raise WalletCorrupt(
                    f"Unsupported wallet file version in {self._path}: {document['version']}"
                )
            kdf = document["kdf"]
            if kdf["name"] != crypto.KDF_NAME:
                raise WalletCorrupt(f"Unsupported key derivation in {self._path}: {kdf['name']}")
            salt = base64.b64decode(kdf["salt"], validate=True)
            iterations = kdf["iterations"]
            checksum = document["checksum"]
            if not salt:
                raise WalletCorrupt(f"Wallet file has an empty salt: {self._path}")
            if (
                not isinstance(iterations, int)
                or isinstance(iterations, bool)
                or not 1 <= iterations <= crypto.MAX_ITERATIONS
            ):
                raise WalletCorrupt(f"Invalid key derivation iterations in {self._path}")
            if not isinstance(checksum, str) or not _CHECKSUM_RE.fullmatch(checksum):
                raise WalletCorrupt(f"Invalid password checksum in {self._path}")
            cipher_keys = base64.b64decode(document["cipher_keys"], validate=True)
        except WalletCorrupt:
            raise
        except (ValueError, KeyError, TypeError, binascii.Error) as e:
            raise WalletCorrupt(f"Invalid wallet file: {self._path}") from e

        self.lock()
        self._salt = salt
        self._iterations = iterations
        self._checksum = checksum
        self._cipher_keys = cipher_keys

        logger.info("Opened wallet: {}", self._name)

    # =========================================================================
    # Lock state
    # =========================================================================

    def check_password(self, password: str) -> bool:
        """Check a password against the stored checksum without decrypting."""
        self._require_loaded()
        candidate = crypto.derive_key(password, self._salt, self._iterations)
        try:
            return crypto.verify(candidate, self._checksum)
        finally:
            crypto.wipe(candidate)

    def unlock(self, password: str) -> None:
        """Decrypt the keyring into memory.

        Unlocking an already unlocked wallet with its own password is a no-op.

        Raises:
            InvalidPassword: If the password does not match. The wallet state
                is left as it was.
            WalletCorrupt: If the password matches but the keyring does not
                decrypt or parse.
        """
        self._require_loaded()
        candidate = crypto.derive_key(password, self._salt, self._iterations)

        if not crypto.verify(candidate, self._checksum):
            crypto.wipe(candidate)
            logger.warning("Rejected password for wallet: {}", self._name)
            raise InvalidPassword(self._name)

        if not self.is_locked:
            crypto.wipe(candidate)
            return

        try:
            keyring = self._decrypt_keyring(candidate)
        except WalletCorrupt:
            crypto.wipe(candidate)
            raise

        self._key = candidate
        self._keyring = keyring
        logger.info("Unlocked wallet: {} ({} keys)", self._name, len(keyring))

    def lock(self) -> None:
        """Zero and discard the in-memory keyring. No-op if already locked."""
        if self._keyring is None:
            return

        for private_key in self._keyring.values():
            private_key.wipe()
        self._keyring.clear()
        self._keyring = None

        if self._key is not None:
            crypto.wipe(self._key)
            self._key = None

        logger.info("Locked wallet: {}", self._name)

    # =========================================================================
    # Keyring
    # =========================================================================

    def import_key(self, wif_private_key: str) -> str:
        """Add a WIF private key to the keyring and persist it.

        Importing a key that is already present changes nothing.

        Returns:
            The public key of the imported private key.

        Raises:
            WalletLocked: If the wallet is locked.
            InvalidKeyFormat: If the WIF string does not parse.
        """
        keyring = self._require_unlocked()
        private_key = PrivateKey.from_wif(wif_private_key)
        public_key = private_key.public_key(self._prefix)

        if public_key in keyring:
            private_key.wipe()
            logger.debug("Key already present in wallet {}: {}", self._name, public_key)
            return public_key

        self._add_key(public_key, private_key)
        logger.info("Imported key into wallet {}: {}", self._name, public_key)
        return public_key

    def create_key(self) -> str:
        """Generate a new private key inside the wallet.

        Returns:
            The public key of the new private key.
        """
        self._require_unlocked()
        private_key = PrivateKey.generate()
        public_key = private_key.public_key(self._prefix)
        self._add_key(public_key, private_key)
        logger.info("Created key in wallet {}: {}", self._name, public_key)
        return public_key

    def remove_key(self, password: str, public_key: str) -> None:
        """Remove a key after re-checking the wallet password.

        Raises:
            WalletLocked: If the wallet is locked.
            InvalidPassword: If the password does not match.
            KeyNotFound: If the key is not in this wallet.
        """
        keyring = self._require_unlocked()
        if not self.check_password(password):
            logger.warning("Rejected password for wallet: {}", self._name)
            raise InvalidPassword(self._name)
        if public_key not in keyring:
            raise KeyNotFound(public_key)

        updated = {k: v for k, v in keyring.items() if k != public_key}
        self._persist(updated, self._key)
        removed = keyring.pop(public_key)
        removed.wipe()
        logger.info("Removed key from wallet {}: {}", self._name, public_key)

    def public_keys(self) -> set[str]:
        """Snapshot of the public keys in the keyring."""
        return set(self._require_unlocked())

    def key_pairs(self) -> dict[str, str]:
        """Snapshot of the keyring as ``public_key -> WIF private key``."""
        return {
            public_key: private_key.to_wif()
            for public_key, private_key in self._require_unlocked().items()
        }

    def try_sign(self, digest: bytes, requested_public_keys: Iterable[str]) -> dict[str, str]:
        """Sign ``digest`` with every requested key this wallet holds.

        Keys the wallet does not hold are left out of the result.

        Returns:
            Mapping of public key to signature string.
        """
        keyring = self._require_unlocked()
        return {
            public_key: keyring[public_key].sign(digest)
            for public_key in requested_public_keys
            if public_key in keyring
        }

    # =========================================================================
    # Internals
    # =========================================================================

    def _require_loaded(self) -> None:
        if self._checksum is None or self._salt is None:
            raise WalletNotFound(self._name, f"Wallet has not been opened: {self._name}")

    def _require_unlocked(self) -> dict[str, PrivateKey]:
        if self._keyring is None:
            raise WalletLocked(self._name)
        return self._keyring

    def _add_key(self, public_key: str, private_key: PrivateKey) -> None:
        keyring = self._require_unlocked()
        updated = dict(keyring)
        updated[public_key] = private_key
        try:
            self._persist(updated, self._key)
        except WalletStorageError:
            private_key.wipe()
            raise
        keyring[public_key] = private_key

    def _decrypt_keyring(self, key: bytearray) -> dict[str, PrivateKey]:
        try:
            plaintext = crypto.decrypt(self._cipher_keys, key)
        except ValueError as e:
            raise WalletCorrupt(f"Wallet keyring failed to decrypt: {self._name}") from e

        keyring: dict[str, PrivateKey] = {}
        try:
            stored: dict[str, str] = json.loads(plaintext.decode("utf-8"))
            for public_key, wif in stored.items():
                private_key = PrivateKey.from_wif(wif)
                if private_key.public_key(self._prefix) != public_key:
                    private_key.wipe()
                    raise WalletCorrupt(f"Wallet keyring has a mismatched key pair: {self._name}")
                keyring[public_key] = private_key
        except (ValueError, TypeError, AttributeError, InvalidKeyFormat) as e:
            for private_key in keyring.values():
                private_key.wipe()
            raise WalletCorrupt(f"Wallet keyring is malformed: {self._name}") from e
        except WalletCorrupt:
            for private_key in keyring.values():
                private_key.wipe()
            raise
        finally:
            crypto.wipe(plaintext)

        return keyring

    def _persist(self, keyring: dict[str, PrivateKey], key: bytearray) -> None:
        """Encrypt ``keyring`` and replace the wallet file in one step.

        ``self._cipher_keys`` only changes once the new file is in place.
        """
        plaintext = json.dumps(
            {public_key: private_key.to_wif() for public_key, private_key in keyring.items()},
            sort_keys=True,
        ).encode("utf-8")
        cipher_keys = crypto.encrypt(plaintext, key)

        document = {
            "version": FILE_VERSION,
            "kdf": {
                "name": crypto.KDF_NAME,
                "salt": base64.b64encode(self._salt).decode("ascii"),
                "iterations": self._iterations,
            },
            "checksum": self._checksum,
            "cipher_keys": base64.b64encode(cipher_keys).decode("ascii"),
        }
        _write_atomic(self._path, json.dumps(document, indent=2).encode("utf-8"))
        self._cipher_keys = cipher_keys

    def __repr__(self) -> str:
        state = "locked" if self.is_locked else "unlocked"
        return f"Wallet(name={self._name!r}, {state})"


def _write_atomic(path: Path, data: bytes) -> None:
    """Write ``data`` to a temporary sibling file, then rename it over ``path``."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    except OSError as e:
        raise WalletStorageError(f"Unable to write wallet file: {path}") from e

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise WalletStorageError(f"Unable to write wallet file: {path}") from e
