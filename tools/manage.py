#!/usr/bin/env python3
"""
hashstack Management CLI

Commands for managing the ledger:
- verify-chain: Verify ledger chain integrity
- show-chain: Print every block
- export-blocks: Export blocks to JSON
- set: Record a key assignment in the tracked mapping
- delete: Record a key removal in the tracked mapping
- state: Print the tracked mapping rebuilt from the chain
- health-check: Run store and chain health checks

The store is chosen from the environment (see hashstack.db.config).

Usage:
    python -m tools.manage <command> [options]

Examples:
    HASHSTACK_DB_PATH=./hashstack.db python -m tools.manage set owner '"alice"'
    HASHSTACK_DB_PATH=./hashstack.db python -m tools.manage state
    python -m tools.manage export-blocks -o chain.json
"""

import argparse
import json
import sys


def cmd_verify_chain(args):
    """Verify the integrity of the ledger chain."""
    from hashstack.core import ChainViolationError, GenesisViolationError, Ledger
    from hashstack.runtime import create_block_store

    store = create_block_store()
    try:
        print("Loading ledger...")
        ledger = Ledger.load_from_store(store, verify=False)
        print(f"Ledger loaded: {ledger.block_count} blocks")

        try:
            ledger.validate_block_chain()
        except (GenesisViolationError, ChainViolationError) as e:
            print(f"[FAIL] Chain integrity verification FAILED: {e}")
            return 1

        print("[OK] Chain integrity verified OK")
        latest = ledger.latest_block()
        if latest is not None:
            print(f"  Chain head: {latest.hash[:16]}...")
        return 0
    finally:
        store.close()


def cmd_show_chain(args):
    """Print every block, one per line."""
    from hashstack.runtime import ledger_session

    with ledger_session() as ledger:
        if ledger.block_count == 0:
            print("Ledger is empty.")
            return 0
        for block in ledger.blocks:
            print(block.canonical_string() if args.canonical else block.describe())
    return 0


def cmd_export_blocks(args):
    """Export all blocks to a JSON file."""
    from hashstack.runtime import ledger_session

    with ledger_session() as ledger:
        output_file = args.output or "ledger_export.json"
        with open(output_file, "w") as f:
            f.write(ledger.to_json())
        print(f"[OK] Exported {ledger.block_count} blocks to {output_file}")
    return 0


def _parse_value(raw: str):
    """Values are JSON; anything that does not parse is kept as a string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def cmd_set(args):
    """Assign a key in the tracked mapping."""
    from hashstack.core import ChangeTrackingStore
    from hashstack.runtime import ledger_session

    with ledger_session() as ledger:
        tracked = ChangeTrackingStore.from_ledger(ledger)
        block = tracked.set(args.key, _parse_value(args.value))
        print(f"[OK] Block #{block.index} mined (nonce {block.nonce})")
        print(f"  Hash: {block.hash}")
        print(f"  Patch: {block.data}")
    return 0


def cmd_delete(args):
    """Remove a key from the tracked mapping."""
    from hashstack.core import ChangeTrackingStore
    from hashstack.runtime import ledger_session

    with ledger_session() as ledger:
        tracked = ChangeTrackingStore.from_ledger(ledger)
        if args.key not in tracked:
            print(f"Error: key '{args.key}' is not set")
            return 1
        block = tracked.delete(args.key)
        print(f"[OK] Block #{block.index} mined (nonce {block.nonce})")
        print(f"  Patch: {block.data}")
    return 0


def cmd_state(args):
    """Print the tracked mapping rebuilt from the chain."""
    from hashstack.core import ChangeTrackingStore
    from hashstack.runtime import ledger_session

    with ledger_session() as ledger:
        tracked = ChangeTrackingStore.from_ledger(ledger)
        print(json.dumps(tracked.snapshot(), indent=2, sort_keys=True))
    return 0


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from hashstack.db.config import get_blockstore_driver
    from hashstack.observability import check_health
    from hashstack.runtime import ledger_session

    print("=== hashstack Health Check ===\n")
    print(f"Store driver: {get_blockstore_driver().value}")

    with ledger_session() as ledger:
        status = check_health(ledger=ledger, block_store=ledger.block_store)

    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {marker} {details}".rstrip())

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="hashstack Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser(
        "verify-chain",
        help="Verify ledger chain integrity"
    )

    p_show = subparsers.add_parser(
        "show-chain",
        help="Print every block"
    )
    p_show.add_argument(
        "--canonical",
        action="store_true",
        help="Print the canonical (hashed) string form instead of a summary"
    )

    p_export = subparsers.add_parser(
        "export-blocks",
        help="Export all blocks to JSON"
    )
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.json)")

    p_set = subparsers.add_parser(
        "set",
        help="Assign a key in the tracked mapping"
    )
    p_set.add_argument("key")
    p_set.add_argument("value", help="JSON value (bare text is stored as a string)")

    p_delete = subparsers.add_parser(
        "delete",
        help="Remove a key from the tracked mapping"
    )
    p_delete.add_argument("key")

    subparsers.add_parser(
        "state",
        help="Print the tracked mapping rebuilt from the chain"
    )

    subparsers.add_parser(
        "health-check",
        help="Run comprehensive health checks"
    )

    return parser


def main(argv=None):
    from hashstack.observability import setup_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()

    commands = {
        "verify-chain": cmd_verify_chain,
        "show-chain": cmd_show_chain,
        "export-blocks": cmd_export_blocks,
        "set": cmd_set,
        "delete": cmd_delete,
        "state": cmd_state,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
