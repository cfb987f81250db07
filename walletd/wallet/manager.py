"""Multi-wallet management with inactivity locking and transaction signing.

Every wallet is an independent encrypted keyring stored as
``{wallet_dir}/{name}.wallet``. The manager tracks the wallets opened in this
process, locks all of them after a configurable period without activity, and
merges the keys of every unlocked wallet when signing.
"""

import atexit
import functools
import re
import threading
import time
from collections.abc import Callable, Iterable
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

from loguru import logger

from walletd.exceptions import (
    InvalidDigest,
    InvalidKeyFormat,
    InvalidWalletName,
    KeyNotFound,
    MissingSigningKey,
    WalletAlreadyExists,
    WalletLocked,
    WalletNotFound,
)
from walletd.models import SignedTransaction
from walletd.wallet import crypto
from walletd.wallet.keys import DEFAULT_PUBLIC_KEY_PREFIX, PrivateKey, decode_public_key
from walletd.wallet.wallet import WALLET_EXTENSION, Wallet

_F = TypeVar("_F", bound=Callable[..., Any])

_WALLET_NAME_RE = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


def _activity(method: _F) -> _F:
    """Run ``method`` inside the manager mutex, after the timeout check.

    Every call counts as activity, including calls that end up raising.
    """

    @functools.wraps(method)
    def wrapper(self: "WalletManager", *args: Any, **kwargs: Any) -> Any:
        with self._mutex:
            self._check_timeout()
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class WalletManager:
    """Manages named wallets and signs with the keys of unlocked ones.

    Wallets are listed, aggregated and searched in name order. When the same
    public key is unlocked in two wallets, ``list_keys`` reports the private
    key from the last one and ``sign_transaction`` uses the first one.

    Usage:
        manager = WalletManager(Path("data/wallets"), timeout=900)

        password = manager.create("default")
        manager.import_key("default", "5KQwrPbwdL6PhXujxW37FSSQZ1JiwsST4cqQzDeyXtP79zkvFD3")

        # Later, in another process
        manager.open("default")
        manager.unlock("default", password)
        signed = manager.sign_transaction(txn, manager.get_public_keys(), chain_id)
    """

    DEFAULT_WALLET_DIR = Path(".")
    UNLOCKED_MARKER = " *"

    def __init__(
        self,
        wallet_dir: Path | None = None,
        timeout: float | timedelta | None = None,
        chain_signing_key: str | None = None,
        public_key_prefix: str = DEFAULT_PUBLIC_KEY_PREFIX,
        kdf_iterations: int = crypto.DEFAULT_ITERATIONS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize wallet manager.

        Args:
            wallet_dir: Directory holding ``.wallet`` files.
                       Defaults to the current directory.
            timeout: Seconds of inactivity before all wallets lock.
                     None never locks.
            chain_signing_key: Optional WIF key that can sign regardless of
                               wallet lock state when explicitly requested.
            public_key_prefix: Prefix for encoded public keys.
            kdf_iterations: PBKDF2 iterations for newly created wallets.
            clock: Monotonic time source in seconds.
        """
        self._wallet_dir = wallet_dir or self.DEFAULT_WALLET_DIR
        self._prefix = public_key_prefix
        self._kdf_iterations = kdf_iterations
        self._clock = clock
        self._mutex = threading.RLock()

        self._wallets: dict[str, Wallet] = {}
        self._timeout: float | None = None
        self._last_activity = clock()

        self._chain_key: PrivateKey | None = None
        self._chain_public_key: str | None = None

        self.set_timeout(timeout)
        self.set_chain_signing_key(chain_signing_key)

        atexit.register(self.close)

    @classmethod
    def from_settings(cls, settings: Any) -> "WalletManager":
        """Build a manager from :class:`walletd.config.Settings`."""
        signing_key = settings.chain.signing_key
        return cls(
            wallet_dir=settings.wallet.dir,
            timeout=settings.wallet.timeout,
            chain_signing_key=signing_key.get_secret_value() if signing_key else None,
            public_key_prefix=settings.chain.public_key_prefix,
            kdf_iterations=settings.wallet.kdf_iterations,
        )

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def wallet_dir(self) -> Path:
        """Get the wallet storage directory."""
        with self._mutex:
            return self._wallet_dir

    def set_dir(self, path: Path | str) -> None:
        """Set the directory for wallet files opened or created from now on."""
        with self._mutex:
            self._wallet_dir = Path(path)

    def set_timeout(self, timeout: float | timedelta | None) -> None:
        """Set the inactivity timeout and restart the countdown from now.

        An already expired timeout still locks every wallet first.

        Args:
            timeout: Seconds (or a timedelta) of inactivity before lock_all().
                     None disables auto-locking.
        """
        if isinstance(timeout, timedelta):
            timeout = timeout.total_seconds()
        if timeout is not None and timeout <= 0:
            raise ValueError("Timeout must be positive")

        with self._mutex:
            self._check_timeout()
            self._timeout = timeout
            self._touch()
            logger.debug("Wallet timeout set to {}", timeout)

    def get_timeout(self) -> float | None:
        """Get the inactivity timeout in seconds (None when disabled)."""
        with self._mutex:
            return self._timeout

    def set_chain_signing_key(self, wif_key: str | None) -> None:
        """Configure the chain signing key, or remove it with None.

        Raises:
            InvalidKeyFormat: If the WIF string does not parse.
        """
        new_key = PrivateKey.from_wif(wif_key) if wif_key else None
        with self._mutex:
            if self._chain_key is not None:
                self._chain_key.wipe()
            self._chain_key = new_key
            self._chain_public_key = new_key.public_key(self._prefix) if new_key else None

    @property
    def chain_public_key(self) -> str | None:
        """Public key of the chain signing key, if configured."""
        with self._mutex:
            return self._chain_public_key

    # =========================================================================
    # Wallet registry
    # =========================================================================

    @_activity
    def create(self, name: str) -> str:
        """Create a new wallet in ``{wallet_dir}/{name}.wallet``.

        The new wallet is unlocked after creation.

        Returns:
            Plaintext password needed to unlock the wallet. It cannot be
            recovered, so the caller must keep it.

        Raises:
            InvalidWalletName: If the name cannot be used as a file name.
            WalletAlreadyExists: If the wallet is tracked or its file exists.
        """
        wallet = self._new_wallet(name)
        if name in self._wallets or wallet.path.exists():
            raise WalletAlreadyExists(name)

        password = wallet.create()
        self._wallets[name] = wallet
        return password

    @_activity
    def open(self, name: str) -> None:
        """Open an existing wallet file. The wallet stays locked.

        Raises:
            InvalidWalletName: If the name cannot be used as a file name.
            WalletAlreadyExists: If the wallet is already open.
            WalletNotFound: If the wallet file is missing or unreadable.
            WalletCorrupt: If the wallet file is invalid.
        """
        wallet = self._new_wallet(name)
        if name in self._wallets:
            raise WalletAlreadyExists(name)

        wallet.open()
        self._wallets[name] = wallet

    @_activity
    def list_wallets(self) -> list[str]:
        """List wallet names, with " *" appended to unlocked ones."""
        return [
            name if wallet.is_locked else name + self.UNLOCKED_MARKER
            for name, wallet in self._sorted_wallets()
        ]

    # =========================================================================
    # Lock state
    # =========================================================================

    @_activity
    def lock_all(self) -> None:
        """Lock every wallet."""
        self._lock_all()

    @_activity
    def lock(self, name: str) -> None:
        """Lock a wallet. No-op if it is already locked.

        Raises:
            WalletNotFound: If the wallet is not open.
        """
        self._get(name).lock()

    @_activity
    def unlock(self, name: str, password: str) -> None:
        """Unlock a wallet until lock(), timeout or shutdown.

        Raises:
            WalletNotFound: If the wallet is not open.
            InvalidPassword: If the password is wrong.
        """
        self._get(name).unlock(password)

    # =========================================================================
    # Keys
    # =========================================================================

    @_activity
    def import_key(self, name: str, wif_key: str) -> str:
        """Import a WIF private key into an unlocked wallet.

        Returns:
            The public key of the imported key.

        Raises:
            WalletNotFound: If the wallet is not open.
            WalletLocked: If the wallet is locked.
            InvalidKeyFormat: If the WIF string does not parse.
        """
        return self._get(name).import_key(wif_key)

    @_activity
    def create_key(self, name: str) -> str:
        """Generate a new key in an unlocked wallet and return its public key."""
        return self._get(name).create_key()

    @_activity
    def remove_key(self, name: str, password: str, public_key: str) -> None:
        """Remove a key from an unlocked wallet, confirming its password."""
        self._get(name).remove_key(password, public_key)

    @_activity
    def list_keys(self) -> dict[str, str]:
        """Private keys (WIF) of all unlocked wallets, keyed by public key.

        Raises:
            WalletLocked: If no wallet is unlocked.
        """
        keys: dict[str, str] = {}
        for wallet in self._unlocked_wallets():
            keys.update(wallet.key_pairs())
        return keys

    @_activity
    def get_public_keys(self) -> set[str]:
        """Public keys of all unlocked wallets.

        Raises:
            WalletLocked: If no wallet is unlocked.
        """
        keys: set[str] = set()
        for wallet in self._unlocked_wallets():
            keys |= wallet.public_keys()
        return keys

    # =========================================================================
    # Signing
    # =========================================================================

    @_activity
    def sign_transaction(
        self,
        txn: SignedTransaction,
        required_public_keys: Iterable[str],
        chain_id: str | bytes,
    ) -> SignedTransaction:
        """Sign a transaction with the private keys behind ``required_public_keys``.

        Args:
            txn: Transaction to sign.
            required_public_keys: Public keys that must all sign.
            chain_id: Chain the signatures are bound to (32 bytes, hex or raw).

        Returns:
            A copy of ``txn`` with one signature per required key appended,
            in the order the keys were given.

        Raises:
            InvalidChainId: If the chain id is malformed.
            InvalidKeyFormat: If a required key is not a valid public key.
            MissingSigningKey: If any required key is not available. Nothing
                is signed in that case.
        """
        if isinstance(required_public_keys, str):
            raise InvalidKeyFormat("Required public keys must be a collection, not one string")
        required = list(dict.fromkeys(required_public_keys))
        for public_key in required:
            decode_public_key(public_key, self._prefix)
        digest = txn.sig_digest(chain_id)

        signatures: dict[str, str] = {}
        for wallet in self._sorted_unlocked():
            remaining = [key for key in required if key not in signatures]
            if not remaining:
                break
            for public_key, signature in wallet.try_sign(digest, remaining).items():
                signatures.setdefault(public_key, signature)

        if (
            self._chain_key is not None
            and self._chain_public_key in required
            and self._chain_public_key not in signatures
        ):
            signatures[self._chain_public_key] = self._chain_key.sign(digest)

        missing = set(required) - set(signatures)
        if missing:
            logger.warning("Cannot sign transaction, {} key(s) unavailable", len(missing))
            raise MissingSigningKey(missing)

        logger.debug("Signed transaction with {} key(s)", len(required))
        return txn.with_signatures([signatures[key] for key in required])

    @_activity
    def sign_digest(self, digest: bytes | str, public_key: str) -> str:
        """Sign a raw 32-byte digest with one key.

        Raises:
            InvalidDigest: If the digest is not 32 bytes.
            KeyNotFound: If no unlocked wallet holds the key.
        """
        if isinstance(digest, str):
            try:
                digest = bytes.fromhex(digest)
            except ValueError as e:
                raise InvalidDigest("Digest is not valid hex") from e
        if len(digest) != 32:
            raise InvalidDigest(f"Digest must be 32 bytes, got {len(digest)}")

        for wallet in self._sorted_unlocked():
            signatures = wallet.try_sign(digest, [public_key])
            if public_key in signatures:
                return signatures[public_key]

        if self._chain_key is not None and public_key == self._chain_public_key:
            return self._chain_key.sign(digest)

        raise KeyNotFound(public_key)

    # =========================================================================
    # Shutdown
    # =========================================================================

    def close(self) -> None:
        """Lock every wallet and wipe the chain signing key."""
        with self._mutex:
            self._lock_all()
            if self._chain_key is not None:
                self._chain_key.wipe()
                self._chain_key = None
                self._chain_public_key = None
        atexit.unregister(self.close)

    def __enter__(self) -> "WalletManager":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # =========================================================================
    # Internals
    # =========================================================================

    def _check_timeout(self) -> None:
        """Lock everything if the inactivity timeout passed, then reset it."""
        now = self._clock()
        if self._timeout is not None and now - self._last_activity > self._timeout:
            logger.warning("Wallet inactivity timeout reached, locking all wallets")
            self._lock_all()
        self._touch(now)

    def _touch(self, now: float | None = None) -> None:
        if now is None:
            now = self._clock()
        self._last_activity = max(self._last_activity, now)

    def _lock_all(self) -> None:
        for wallet in self._wallets.values():
            wallet.lock()

    def _new_wallet(self, name: str) -> Wallet:
        if not _WALLET_NAME_RE.fullmatch(name):
            raise InvalidWalletName(f"Invalid wallet name: {name!r}")
        return Wallet(
            name,
            self._wallet_dir / f"{name}{WALLET_EXTENSION}",
            public_key_prefix=self._prefix,
            kdf_iterations=self._kdf_iterations,
        )

    def _get(self, name: str) -> Wallet:
        wallet = self._wallets.get(name)
        if wallet is None:
            raise WalletNotFound(name)
        return wallet

    def _sorted_wallets(self) -> list[tuple[str, Wallet]]:
        return sorted(self._wallets.items())

    def _sorted_unlocked(self) -> list[Wallet]:
        return [wallet for _, wallet in self._sorted_wallets() if not wallet.is_locked]

    def _unlocked_wallets(self) -> list[Wallet]:
        unlocked = self._sorted_unlocked()
        if not unlocked:
            raise WalletLocked()
        return unlocked
