"""Tests for wallet manager."""

import hashlib
import threading
from datetime import timedelta
from pathlib import Path

import pytest

from walletd.exceptions import (
    InvalidChainId,
    InvalidDigest,
    InvalidKeyFormat,
    InvalidPassword,
    InvalidWalletName,
    KeyNotFound,
    MissingSigningKey,
    WalletAlreadyExists,
    WalletLocked,
    WalletNotFound,
)
from walletd.models import SignedTransaction
from walletd.wallet import PrivateKey, WalletManager
from walletd.wallet.keys import recover_public_key

from conftest import TEST_KDF_ITERATIONS, FakeClock

DEV_WIF = "5KQwrPbwdL6PhXujxW37FSSQZ1JiwsST4cqQzDeyXtP79zkvFD3"
EXAMPLE_WIF = "5HueCGU8rMjxEXxiPuD5BDku4MkFqeZyd4dZ1jvhTVqvbTLvyTJ"
CHAIN_ID = "cf057bbfb72640471fd910bcb67639c22df9f92470936cddc1ade0e2f2e7dc4f"
OTHER_CHAIN_ID = "aca376f206b8fc25a6ed44dbdc66547c36c6c33e3a119ffbeaef943642f0e906"

K1 = PrivateKey.from_wif(DEV_WIF).public_key()
K2 = PrivateKey.from_wif(EXAMPLE_WIF).public_key()


def _txn() -> SignedTransaction:
    return SignedTransaction(
        expiration="2026-01-01T00:00:00",
        ref_block_num=42,
        ref_block_prefix=123456,
        actions=[{"account": "token", "name": "transfer", "data": "00ff"}],
    )


@pytest.fixture
def two_wallets(manager: WalletManager) -> dict[str, str]:
    """Wallets "a" holding K1 and "b" holding K2, both unlocked."""
    passwords = {"a": manager.create("a"), "b": manager.create("b")}
    manager.import_key("a", DEV_WIF)
    manager.import_key("b", EXAMPLE_WIF)
    return passwords


class TestWalletManagerRegistry:
    """Tests for create/open/list."""

    def test_create_wallet(self, manager: WalletManager, tmp_path: Path) -> None:
        """Creating writes {name}.wallet and leaves it unlocked."""
        password = manager.create("test_wallet")

        assert password.startswith("PW")
        assert (tmp_path / "test_wallet.wallet").exists()
        assert manager.list_wallets() == ["test_wallet *"]

    def test_create_twice(self, manager: WalletManager) -> None:
        """The second create fails and the first wallet is unaffected."""
        manager.create("w")
        manager.import_key("w", DEV_WIF)

        with pytest.raises(WalletAlreadyExists):
            manager.create("w")

        assert manager.list_keys() == {K1: DEV_WIF}

    def test_create_over_existing_file(self, manager: WalletManager, tmp_path: Path) -> None:
        """An untracked wallet whose file exists cannot be recreated."""
        manager.create("w")

        other = WalletManager(tmp_path, kdf_iterations=TEST_KDF_ITERATIONS)
        with pytest.raises(WalletAlreadyExists):
            other.create("w")
        other.close()

    @pytest.mark.parametrize("name", ["", "../escape", "a/b", ".hidden", "space name"])
    def test_invalid_names(self, manager: WalletManager, name: str) -> None:
        """Names must be plain file stems."""
        with pytest.raises(InvalidWalletName):
            manager.create(name)

    def test_open_starts_locked(self, manager: WalletManager, tmp_path: Path) -> None:
        """Opening in a new manager registers the wallet locked."""
        manager.create("w")

        other = WalletManager(tmp_path, kdf_iterations=TEST_KDF_ITERATIONS)
        other.open("w")
        assert other.list_wallets() == ["w"]
        other.close()

    def test_open_tracked(self, manager: WalletManager) -> None:
        """Opening an already tracked wallet fails."""
        manager.create("w")
        with pytest.raises(WalletAlreadyExists):
            manager.open("w")

    def test_open_missing(self, manager: WalletManager) -> None:
        """Opening without a file raises WalletNotFound."""
        with pytest.raises(WalletNotFound):
            manager.open("nope")
        assert manager.list_wallets() == []

    def test_list_wallets_sorted_with_marker(self, manager: WalletManager) -> None:
        """Wallets are listed by name with " *" on unlocked ones."""
        manager.create("zeta")
        manager.create("alpha")
        manager.lock("zeta")

        assert manager.list_wallets() == ["alpha *", "zeta"]

    def test_set_dir(self, manager: WalletManager, tmp_path: Path) -> None:
        """New wallets go to the configured directory."""
        target = tmp_path / "elsewhere"
        manager.set_dir(target)
        manager.create("w")

        assert manager.wallet_dir == target
        assert (target / "w.wallet").exists()


class TestWalletManagerLocking:
    """Tests for lock/unlock delegation."""

    def test_unlock_round_trip(self, manager: WalletManager) -> None:
        """Locking then unlocking restores the keys."""
        password = manager.create("w")
        manager.import_key("w", DEV_WIF)
        manager.lock("w")

        with pytest.raises(WalletLocked):
            manager.list_keys()

        manager.unlock("w", password)
        assert manager.list_keys() == {K1: DEV_WIF}

    def test_unlock_wrong_password(self, manager: WalletManager) -> None:
        """Wrong passwords propagate InvalidPassword."""
        manager.create("w")
        manager.lock("w")

        with pytest.raises(InvalidPassword):
            manager.unlock("w", "wrong")
        assert manager.list_wallets() == ["w"]

    def test_unknown_wallet(self, manager: WalletManager) -> None:
        """Operations on untracked names raise WalletNotFound."""
        with pytest.raises(WalletNotFound):
            manager.lock("missing")
        with pytest.raises(WalletNotFound):
            manager.unlock("missing", "pw")
        with pytest.raises(WalletNotFound):
            manager.import_key("missing", DEV_WIF)

    def test_lock_all(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """lock_all locks every wallet."""
        manager.lock_all()
        assert manager.list_wallets() == ["a", "b"]

    def test_lock_all_empty(self, manager: WalletManager) -> None:
        """lock_all succeeds with no wallets."""
        manager.lock_all()

    def test_lock_already_locked(self, manager: WalletManager) -> None:
        """Locking a locked wallet is a no-op."""
        manager.create("w")
        manager.lock("w")
        manager.lock("w")
        assert manager.list_wallets() == ["w"]

    def test_import_locked(self, manager: WalletManager) -> None:
        """Importing into a locked wallet propagates WalletLocked."""
        manager.create("w")
        manager.lock("w")
        with pytest.raises(WalletLocked):
            manager.import_key("w", DEV_WIF)

    def test_import_invalid(self, manager: WalletManager) -> None:
        """Invalid WIF propagates InvalidKeyFormat."""
        manager.create("w")
        with pytest.raises(InvalidKeyFormat):
            manager.import_key("w", "garbage")


class TestWalletManagerAggregation:
    """Tests for list_keys/get_public_keys."""

    def test_both_unlocked(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """Keys of all unlocked wallets are merged."""
        assert manager.get_public_keys() == {K1, K2}
        assert manager.list_keys() == {K1: DEV_WIF, K2: EXAMPLE_WIF}

    def test_one_unlocked(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """Locked wallets are skipped."""
        manager.lock("b")
        assert manager.get_public_keys() == {K1}

    def test_none_unlocked(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """With nothing unlocked the aggregate error is raised."""
        manager.lock_all()
        with pytest.raises(WalletLocked, match="No unlocked wallets"):
            manager.get_public_keys()
        with pytest.raises(WalletLocked, match="No unlocked wallets"):
            manager.list_keys()

    def test_duplicate_key_collapses(self, manager: WalletManager) -> None:
        """A key held by two wallets is reported once."""
        manager.create("a")
        manager.create("b")
        manager.import_key("a", DEV_WIF)
        manager.import_key("b", DEV_WIF)

        assert manager.list_keys() == {K1: DEV_WIF}

    def test_create_and_remove_key(self, manager: WalletManager) -> None:
        """Generated keys show up and removed keys disappear."""
        password = manager.create("w")
        public_key = manager.create_key("w")
        assert manager.get_public_keys() == {public_key}

        manager.remove_key("w", password, public_key)
        assert manager.get_public_keys() == set()


class TestWalletManagerSigning:
    """Tests for sign_transaction and sign_digest."""

    def test_sign_with_two_wallets(
        self, manager: WalletManager, two_wallets: dict[str, str]
    ) -> None:
        """Each required key contributes one signature, in request order."""
        txn = _txn()
        signed = manager.sign_transaction(txn, [K2, K1], CHAIN_ID)

        digest = txn.sig_digest(CHAIN_ID)
        assert len(signed.signatures) == 2
        assert recover_public_key(digest, signed.signatures[0]) == K2
        assert recover_public_key(digest, signed.signatures[1]) == K1
        assert txn.signatures == ()

    def test_missing_key(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """A key held only by a locked wallet is reported missing."""
        manager.lock("b")

        with pytest.raises(MissingSigningKey) as exc_info:
            manager.sign_transaction(_txn(), {K1, K2}, CHAIN_ID)

        assert exc_info.value.missing == {K2}
        assert K2 in str(exc_info.value)

    def test_no_wallets_unlocked(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """Nothing unlocked means every requested key is missing."""
        manager.lock_all()
        with pytest.raises(MissingSigningKey) as exc_info:
            manager.sign_transaction(_txn(), [K1], CHAIN_ID)
        assert exc_info.value.missing == {K1}

    def test_chain_binding(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """The same transaction signs differently on different chains."""
        txn = _txn()
        on_main = manager.sign_transaction(txn, [K1], CHAIN_ID)
        on_other = manager.sign_transaction(txn, [K1], OTHER_CHAIN_ID)

        assert on_main.signatures != on_other.signatures

    def test_invalid_chain_id(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """Malformed chain ids are rejected."""
        with pytest.raises(InvalidChainId):
            manager.sign_transaction(_txn(), [K1], "abc")

    def test_duplicate_key_signs_once(self, manager: WalletManager) -> None:
        """A key unlocked in two wallets yields one signature."""
        manager.create("a")
        manager.create("b")
        manager.import_key("a", DEV_WIF)
        manager.import_key("b", DEV_WIF)

        signed = manager.sign_transaction(_txn(), [K1, K1], CHAIN_ID)
        assert len(signed.signatures) == 1

    def test_appends_to_existing_signatures(
        self, manager: WalletManager, two_wallets: dict[str, str]
    ) -> None:
        """Signatures already on the transaction are kept."""
        first = manager.sign_transaction(_txn(), [K1], CHAIN_ID)
        second = manager.sign_transaction(first, [K2], CHAIN_ID)

        assert second.signatures[0] == first.signatures[0]
        assert len(second.signatures) == 2

    def test_chain_signing_key(self, tmp_path: Path, clock: FakeClock) -> None:
        """The chain key signs without any unlocked wallet when requested."""
        with WalletManager(
            tmp_path,
            chain_signing_key=DEV_WIF,
            kdf_iterations=TEST_KDF_ITERATIONS,
            clock=clock,
        ) as manager:
            assert manager.chain_public_key == K1

            signed = manager.sign_transaction(_txn(), [K1], CHAIN_ID)
            assert len(signed.signatures) == 1

            with pytest.raises(MissingSigningKey):
                manager.sign_transaction(_txn(), [K2], CHAIN_ID)

    def test_chain_signing_key_cleared(self, manager: WalletManager) -> None:
        """Removing the chain key stops it from signing."""
        manager.set_chain_signing_key(DEV_WIF)
        manager.set_chain_signing_key(None)

        assert manager.chain_public_key is None
        with pytest.raises(MissingSigningKey):
            manager.sign_transaction(_txn(), [K1], CHAIN_ID)

    @pytest.mark.parametrize("keys", ["BTHBnot-a-key", ["garbage"], [K1, "EOS" + K1[4:]], [None]])
    def test_malformed_required_keys(
        self, manager: WalletManager, two_wallets: dict[str, str], keys: object
    ) -> None:
        """Required keys that do not decode are rejected before anything is signed."""
        with pytest.raises(InvalidKeyFormat):
            manager.sign_transaction(_txn(), keys, CHAIN_ID)

    def test_single_key_string_rejected(
        self, manager: WalletManager, two_wallets: dict[str, str]
    ) -> None:
        """A bare key string is not split into characters."""
        with pytest.raises(InvalidKeyFormat):
            manager.sign_transaction(_txn(), K1, CHAIN_ID)

    def test_sign_digest(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """Raw digests sign with the requested key."""
        digest = hashlib.sha256(b"payload").digest()

        signature = manager.sign_digest(digest, K2)
        assert recover_public_key(digest, signature) == K2
        assert manager.sign_digest(digest.hex(), K2) == signature

    def test_sign_digest_errors(self, manager: WalletManager, two_wallets: dict[str, str]) -> None:
        """Bad digests and unknown keys are rejected."""
        with pytest.raises(InvalidDigest):
            manager.sign_digest(b"short", K1)
        with pytest.raises(InvalidDigest):
            manager.sign_digest("zz", K1)

        manager.lock("a")
        with pytest.raises(KeyNotFound):
            manager.sign_digest(bytes(32), K1)


class TestWalletManagerTimeout:
    """Tests for inactivity locking."""

    def test_default_never_locks(self, manager: WalletManager, clock: FakeClock) -> None:
        """Without a timeout wallets stay unlocked."""
        manager.create("w")
        clock.advance(10_000_000)
        assert manager.list_wallets() == ["w *"]

    def test_timeout_locks_all(self, manager: WalletManager, clock: FakeClock) -> None:
        """After the timeout the next operation sees every wallet locked."""
        manager.set_timeout(1)
        manager.create("w")
        manager.import_key("w", DEV_WIF)

        clock.advance(2)

        with pytest.raises(WalletLocked):
            manager.get_public_keys()
        assert manager.list_wallets() == ["w"]

    def test_timeout_not_reached(self, manager: WalletManager, clock: FakeClock) -> None:
        """Activity within the timeout keeps wallets unlocked."""
        manager.set_timeout(10)
        manager.create("w")

        for _ in range(5):
            clock.advance(6)
            assert manager.list_wallets() == ["w *"]

    def test_same_call_can_unlock(self, manager: WalletManager, clock: FakeClock) -> None:
        """An unlock issued after the timeout leaves the wallet unlocked."""
        manager.set_timeout(1)
        password = manager.create("w")
        clock.advance(5)

        manager.unlock("w", password)
        assert manager.list_wallets() == ["w *"]

    def test_failed_call_counts_as_activity(
        self, manager: WalletManager, clock: FakeClock
    ) -> None:
        """A failing operation still resets the inactivity clock."""
        manager.set_timeout(10)
        manager.create("w")

        clock.advance(6)
        with pytest.raises(WalletNotFound):
            manager.unlock("missing", "pw")
        clock.advance(6)

        assert manager.list_wallets() == ["w *"]

    def test_shortened_timeout_applies_now(
        self, manager: WalletManager, clock: FakeClock
    ) -> None:
        """set_timeout counts from the moment it is called."""
        manager.create("w")
        clock.advance(100)

        manager.set_timeout(timedelta(seconds=5))
        assert manager.get_timeout() == 5

        clock.advance(3)
        assert manager.list_wallets() == ["w *"]
        clock.advance(6)
        assert manager.list_wallets() == ["w"]

    def test_set_timeout_after_expiry_locks(
        self, manager: WalletManager, clock: FakeClock
    ) -> None:
        """Changing an already expired timeout locks before restarting the countdown."""
        manager.set_timeout(1)
        manager.create("w")
        clock.advance(5)

        manager.set_timeout(100)

        assert manager.list_wallets() == ["w"]
        assert manager.get_timeout() == 100

    def test_set_timeout_before_expiry_keeps_unlocked(
        self, manager: WalletManager, clock: FakeClock
    ) -> None:
        """Changing a timeout that has not expired leaves wallets unlocked."""
        manager.set_timeout(10)
        manager.create("w")
        clock.advance(5)

        manager.set_timeout(None)
        clock.advance(1_000)

        assert manager.list_wallets() == ["w *"]

    def test_invalid_timeout(self, manager: WalletManager) -> None:
        """Zero or negative timeouts are rejected."""
        with pytest.raises(ValueError):
            manager.set_timeout(0)

    def test_chain_key_survives_timeout(self, manager: WalletManager, clock: FakeClock) -> None:
        """The chain key does not depend on wallet lock state."""
        manager.set_chain_signing_key(DEV_WIF)
        manager.set_timeout(1)
        clock.advance(5)

        signed = manager.sign_transaction(_txn(), [K1], CHAIN_ID)
        assert len(signed.signatures) == 1


class TestWalletManagerShutdown:
    """Tests for close and context management."""

    def test_close_wipes_keys(self, tmp_path: Path) -> None:
        """Closing locks wallets and zeroes held keys."""
        manager = WalletManager(tmp_path, kdf_iterations=TEST_KDF_ITERATIONS)
        manager.create("w")
        manager.import_key("w", DEV_WIF)
        held = list(manager._wallets["w"]._keyring.values())

        manager.close()

        assert manager.list_wallets() == ["w"]
        assert all(private_key.is_wiped for private_key in held)

    def test_context_manager(self, tmp_path: Path) -> None:
        """Leaving the context locks everything."""
        with WalletManager(tmp_path, kdf_iterations=TEST_KDF_ITERATIONS) as manager:
            manager.create("w")
        assert manager.list_wallets() == ["w"]


class TestWalletManagerConcurrency:
    """Tests for serialized access from several threads."""

    def test_concurrent_imports(self, manager: WalletManager) -> None:
        """Concurrent imports into one wallet all land."""
        manager.create("w")
        wifs = [PrivateKey.generate().to_wif() for _ in range(8)]
        errors: list[Exception] = []

        def worker(wif: str) -> None:
            try:
                manager.import_key("w", wif)
            except Exception as e:  # pragma: no cover - surfaced by the assert
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(wif,)) for wif in wifs]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(manager.get_public_keys()) == 8

    def test_sign_and_lock_interleave(
        self, manager: WalletManager, two_wallets: dict[str, str]
    ) -> None:
        """Signing racing lock_all either succeeds fully or reports missing keys."""
        outcomes: list[str] = []

        def signer() -> None:
            for _ in range(20):
                try:
                    signed = manager.sign_transaction(_txn(), [K1, K2], CHAIN_ID)
                    assert len(signed.signatures) == 2
                    outcomes.append("signed")
                except MissingSigningKey:
                    outcomes.append("missing")

        def locker() -> None:
            for _ in range(20):
                manager.lock_all()
                manager.unlock("a", two_wallets["a"])
                manager.unlock("b", two_wallets["b"])

        threads = [threading.Thread(target=signer), threading.Thread(target=locker)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(outcomes) == 20

    def test_accessors_wait_for_mutex(self, manager: WalletManager) -> None:
        """Configuration reads block while another thread holds the manager."""
        results: list[object] = []

        def reader() -> None:
            results.append(manager.get_timeout())
            results.append(manager.wallet_dir)
            results.append(manager.chain_public_key)

        with manager._mutex:
            thread = threading.Thread(target=reader)
            thread.start()
            thread.join(timeout=0.2)
            assert thread.is_alive()
            assert results == []

        thread.join()
        assert results == [None, manager.wallet_dir, None]


class TestNoPlaintextPersistence:
    """Tests that nothing secret reaches the disk unencrypted."""

    def test_files_never_contain_secrets(self, manager: WalletManager, tmp_path: Path) -> None:
        """Passwords and private keys never appear in any persisted byte."""
        password = manager.create("w")
        manager.import_key("w", DEV_WIF)
        manager.import_key("w", EXAMPLE_WIF)
        generated = manager.create_key("w")
        generated_wif = manager.list_keys()[generated]
        manager.remove_key("w", password, K2)
        manager.lock("w")
        with pytest.raises(InvalidPassword):
            manager.unlock("w", "wrong-attempt")
        manager.unlock("w", password)

        fixtures = [password, DEV_WIF, EXAMPLE_WIF, generated_wif]
        secrets = [
            bytes(PrivateKey.from_wif(wif)._secret) for wif in (DEV_WIF, EXAMPLE_WIF, generated_wif)
        ]

        for path in tmp_path.rglob("*"):
            if not path.is_file():
                continue
            data = path.read_bytes()
            for text in fixtures:
                assert text.encode() not in data
            for secret in secrets:
                assert secret not in data
                assert secret.hex().encode() not in data
