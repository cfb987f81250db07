"""Shared fixtures for wallet tests."""

from pathlib import Path

import pytest

from walletd.wallet import WalletManager

# Low iteration count keeps key derivation fast in tests
TEST_KDF_ITERATIONS = 1_000


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(tmp_path: Path, clock: FakeClock) -> WalletManager:
    """Wallet manager over a temporary directory with a fake clock."""
    wallet_manager = WalletManager(
        tmp_path, kdf_iterations=TEST_KDF_ITERATIONS, clock=clock
    )
    yield wallet_manager
    wallet_manager.close()
