"""Custom exceptions for the walletd key custody service."""


class WalletError(Exception):
    """Base exception for wallet-related errors."""

    pass


# =============================================================================
# Wallet Registry Exceptions
# =============================================================================


class WalletNotFound(WalletError):
    """Raised when a wallet name is not tracked or its file is missing."""

    def __init__(self, name: str, message: str | None = None) -> None:
        super().__init__(message or f"Wallet not found: {name}")
        self.name = name


class WalletAlreadyExists(WalletError):
    """Raised when creating or opening a wallet that is already present."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Wallet already exists: {name}")
        self.name = name


class InvalidWalletName(WalletError):
    """Raised when a wallet name cannot be used as a file stem."""

    pass


class WalletCorrupt(WalletError):
    """Raised when a stored wallet file cannot be parsed or decrypted."""

    pass


# =============================================================================
# Keyring Exceptions
# =============================================================================


class InvalidPassword(WalletError):
    """Raised when a password does not match the wallet's verifier.

    The message never contains the attempted password.
    """

    def __init__(self, name: str) -> None:
        super().__init__(f"Invalid password for wallet: {name}")
        self.name = name


class WalletLocked(WalletError):
    """Raised when keyring access is attempted on a locked wallet.

    Also raised in aggregate form when no wallet at all is unlocked.
    """

    def __init__(self, name: str | None = None) -> None:
        if name is None:
            super().__init__("No unlocked wallets")
        else:
            super().__init__(f"Wallet is locked: {name}")
        self.name = name


class InvalidKeyFormat(WalletError):
    """Raised when a WIF private key or public key string fails to parse."""

    pass


class KeyNotFound(WalletError):
    """Raised when a public key is not held by any usable wallet."""

    def __init__(self, public_key: str) -> None:
        super().__init__(f"Key not found in unlocked wallets: {public_key}")
        self.public_key = public_key


# =============================================================================
# Signing Exceptions
# =============================================================================


class MissingSigningKey(WalletError):
    """Raised when the unlocked wallets cannot sign for every requested key.

    Attributes:
        missing: Public keys for which no signature could be produced.
    """

    def __init__(self, missing: set[str]) -> None:
        self.missing = frozenset(missing)
        super().__init__(
            "Public keys not available in unlocked wallets: "
            + ", ".join(sorted(self.missing))
        )


class InvalidChainId(WalletError):
    """Raised when a chain id is not 32 bytes of hex."""

    pass


class InvalidDigest(WalletError):
    """Raised when a digest to sign is not exactly 32 bytes."""

    pass


class WalletStorageError(WalletError):
    """Raised when a wallet file cannot be written."""

    pass
