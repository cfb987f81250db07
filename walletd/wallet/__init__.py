"""Wallet management module.

Provides encrypted per-wallet keyrings and the manager that aggregates them.
"""

from walletd.wallet.keys import PrivateKey
from walletd.wallet.manager import WalletManager
from walletd.wallet.wallet import Wallet

__all__ = ["PrivateKey", "Wallet", "WalletManager"]
