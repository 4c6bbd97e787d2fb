"""
Demonstration: Ledgered Configuration Changes

This example records edits to a small service configuration in a
change-tracking store, then shows how the chain proves every edit and
how tampering with one block is caught.

Run with: python -m examples.demo_tracked_store
"""

import json

from hashstack.core import ChainViolationError, ChangeTrackingStore, Ledger


def main():
    print("=" * 60)
    print("hashstack - Ledgered Configuration Demonstration")
    print("=" * 60)
    print()

    ledger = Ledger(difficulty=2)
    config = ChangeTrackingStore(ledger)

    # ================================================================
    # STEP 1: RECORD EDITS
    # ================================================================
    print("=" * 60)
    print("STEP 1: RECORD EDITS")
    print("=" * 60)

    edits = [
        ("set", "service", {"name": "billing", "replicas": 2}),
        ("set", "owner", "alice"),
        ("set", "service", {"name": "billing", "replicas": 4}),
        ("update", None, {"owner": "bob", "paging": True}),
        ("delete", "paging", None),
    ]

    for action, key, value in edits:
        if action == "set":
            block = config.set(key, value)
        elif action == "update":
            block = config.update(value)
        else:
            block = config.delete(key)
        print(f"Block #{block.index} (nonce {block.nonce:>4}): {block.data}")

    print()
    print("Current state:")
    print(json.dumps(config.snapshot(), indent=2, sort_keys=True))
    print()

    # ================================================================
    # STEP 2: VERIFY AND REPLAY
    # ================================================================
    print("=" * 60)
    print("STEP 2: VERIFY AND REPLAY")
    print("=" * 60)

    ledger.validate_block_chain()
    print(f"Chain of {ledger.block_count} blocks verified")

    replayed = ChangeTrackingStore.replay(ledger.blocks)
    print(f"Replay matches live state: {replayed == config.snapshot()}")
    print()

    # ================================================================
    # STEP 3: TAMPER WITH HISTORY
    # ================================================================
    print("=" * 60)
    print("STEP 3: TAMPER WITH HISTORY")
    print("=" * 60)

    blocks = ledger.blocks
    blocks[1] = blocks[1].model_copy(update={"data": '[{"op":"add","path":"/owner","value":"mallory"}]'})
    forged = Ledger.load_from_blocks(blocks, verify=False)

    try:
        forged.validate_block_chain()
        print("Tampering went unnoticed (this should not happen)")
    except ChainViolationError as e:
        print(f"Tampering detected: {e}")

    print()
    print("=" * 60)
    print("DEMONSTRATION COMPLETE")
    print("=" * 60)


if __name__ == "__main__":
    main()
