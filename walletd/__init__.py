"""walletd: multi-wallet key custody and transaction signing."""
