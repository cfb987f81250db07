"""Command-line entry point for the walletd key custody service.

Each invocation is a single session: the named wallet is opened, unlocked if
the command needs keys, used, and locked again before the process exits.
"""

import argparse
import getpass
import sys
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from walletd.config import Settings, get_settings
from walletd.exceptions import WalletError
from walletd.models import SignedTransaction
from walletd.wallet import WalletManager
from walletd.wallet.wallet import WALLET_EXTENSION


def setup_logging(settings: Settings, level: str | None = None) -> None:
    """Configure loguru logging."""
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=level or settings.log.level,
    )
    if settings.log.file is not None:
        logger.add(
            settings.log.file,
            rotation="100 MB",
            retention="7 days",
            level="DEBUG",
        )


def _password(args: argparse.Namespace) -> str:
    if args.password is not None:
        return args.password
    return getpass.getpass(f"Password for wallet {args.name}: ")


def _open_unlocked(manager: WalletManager, args: argparse.Namespace) -> str:
    password = _password(args)
    manager.open(args.name)
    manager.unlock(args.name, password)
    return password


def cmd_create(manager: WalletManager, args: argparse.Namespace) -> None:
    password = manager.create(args.name)
    print(f'Created wallet "{args.name}"')
    print("Save this password. It is needed to unlock the wallet and cannot be recovered:")
    print(password)


def cmd_list(manager: WalletManager, args: argparse.Namespace) -> None:
    for path in sorted(manager.wallet_dir.glob(f"*{WALLET_EXTENSION}")):
        try:
            manager.open(path.stem)
        except WalletError as e:
            logger.warning("Skipping {}: {}", path.name, e)
    for entry in manager.list_wallets():
        print(entry)


def cmd_keys(manager: WalletManager, args: argparse.Namespace) -> None:
    _open_unlocked(manager, args)
    if args.private:
        for public_key, private_key in sorted(manager.list_keys().items()):
            print(public_key, private_key)
    else:
        for public_key in sorted(manager.get_public_keys()):
            print(public_key)


def cmd_import(manager: WalletManager, args: argparse.Namespace) -> None:
    _open_unlocked(manager, args)
    wif = args.wif or getpass.getpass("Private key (WIF): ")
    print(f"Imported key: {manager.import_key(args.name, wif)}")


def cmd_create_key(manager: WalletManager, args: argparse.Namespace) -> None:
    _open_unlocked(manager, args)
    print(f"Created key: {manager.create_key(args.name)}")


def cmd_remove_key(manager: WalletManager, args: argparse.Namespace) -> None:
    password = _open_unlocked(manager, args)
    manager.remove_key(args.name, password, args.key)
    print(f"Removed key: {args.key}")


def cmd_sign(manager: WalletManager, args: argparse.Namespace) -> None:
    _open_unlocked(manager, args)
    txn = SignedTransaction.model_validate_json(Path(args.txn).read_text())
    keys = args.key or sorted(manager.get_public_keys())
    signed = manager.sign_transaction(txn, keys, args.chain_id)
    print(signed.model_dump_json(indent=2))


COMMANDS = {
    "create": cmd_create,
    "list": cmd_list,
    "keys": cmd_keys,
    "import": cmd_import,
    "create-key": cmd_create_key,
    "remove-key": cmd_remove_key,
    "sign": cmd_sign,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="walletd - encrypted wallet and transaction signing tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--dir", type=Path, help="Wallet directory (default: WALLET_DIR or .)")
    parser.add_argument("--log-level", help="Log level for stderr (default: LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create a new wallet")
    create.add_argument("name")

    subparsers.add_parser("list", help="List wallets in the wallet directory")

    def add_unlock_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("name")
        sub.add_argument("--password", help="Wallet password (prompted if omitted)")

    keys = subparsers.add_parser("keys", help="List keys of a wallet")
    add_unlock_args(keys)
    keys.add_argument("--private", action="store_true", help="Also print WIF private keys")

    import_key = subparsers.add_parser("import", help="Import a WIF private key")
    add_unlock_args(import_key)
    import_key.add_argument("--wif", help="WIF private key (prompted if omitted)")

    create_key = subparsers.add_parser("create-key", help="Generate a key inside a wallet")
    add_unlock_args(create_key)

    remove_key = subparsers.add_parser("remove-key", help="Remove a key from a wallet")
    add_unlock_args(remove_key)
    remove_key.add_argument("--key", required=True, help="Public key to remove")

    sign = subparsers.add_parser("sign", help="Sign a transaction JSON file")
    add_unlock_args(sign)
    sign.add_argument("--chain-id", required=True, help="Chain id (64 hex characters)")
    sign.add_argument("--txn", required=True, help="Path to the transaction JSON")
    sign.add_argument(
        "--key",
        action="append",
        help="Public key that must sign (repeatable; default: every key in the wallet)",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run one wallet command and return the process exit code."""
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings, args.log_level)

    manager = WalletManager.from_settings(settings)
    if args.dir is not None:
        manager.set_dir(args.dir)

    with manager:
        try:
            COMMANDS[args.command](manager, args)
        except (WalletError, ValidationError, OSError) as e:
            logger.error("{}", e)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
