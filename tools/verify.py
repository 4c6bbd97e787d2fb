#!/usr/bin/env python3
"""
hashstack Chain Export Verifier

A standalone tool to verify an exported chain (see `manage export-blocks`).
No store connection required - every hash is recomputed from the block fields.

Usage:
    python verify.py chain.json
    python verify.py chain.json --verbose
    python verify.py chain.json --json
    python verify.py chain.json --check-difficulty

Exit codes:
    0 - VERIFIED: All checks passed
    1 - TAMPERED: Hash or linkage mismatch
    3 - INVALID_FORMAT: Export structure invalid
"""

import argparse
import hashlib
import hmac
import json
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional


# ============================================================
# Result Types
# ============================================================

class VerificationResult(Enum):
    VERIFIED = "VERIFIED"
    TAMPERED = "TAMPERED"
    INVALID_FORMAT = "INVALID_FORMAT"


@dataclass
class VerificationReport:
    result: VerificationResult
    block_count: int
    checks_passed: list[str]
    checks_failed: list[str]
    warnings: list[str]
    details: dict[str, Any]


# ============================================================
# Hash Computation
# ============================================================

ABSENT_PREVIOUS_HASH = "undefined"
REQUIRED_FIELDS = ("index", "timestamp", "previous_hash", "data", "nonce", "hash")


def compute_block_hash(block: dict) -> str:
    """
    Recompute a block hash.

    MUST match hashstack/core/hasher.py exactly:
    SHA256(index + timestamp + (previous_hash or "undefined") + data + nonce)
    """
    previous_hash = block["previous_hash"] or ABSENT_PREVIOUS_HASH
    text = f"{block['index']}{block['timestamp']}{previous_hash}{block['data']}{block['nonce']}"
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def leading_zeros(block_hash: str) -> int:
    return len(block_hash) - len(block_hash.lstrip("0"))


# ============================================================
# Export Verifier
# ============================================================

class ChainVerifier:
    """Verifies an exported chain document."""

    def __init__(self, export: dict, verbose: bool = False, check_difficulty: bool = False):
        self.export = export
        self.verbose = verbose
        self.check_difficulty = check_difficulty
        self.checks_passed: list[str] = []
        self.checks_failed: list[str] = []
        self.warnings: list[str] = []
        self.details: dict[str, Any] = {}

    def log(self, msg: str):
        if self.verbose:
            print(f"  {msg}")

    def verify(self) -> VerificationReport:
        """Run all verification checks."""
        self.log("Checking export structure...")
        if not self._check_structure():
            return self._report(VerificationResult.INVALID_FORMAT)

        blocks = self.export["blocks"]
        if not blocks:
            self.warnings.append("Export contains no blocks")
            return self._report(VerificationResult.VERIFIED)

        self.log("Verifying genesis block...")
        if not self._verify_genesis(blocks[0]):
            return self._report(VerificationResult.TAMPERED)

        self.log(f"Verifying {len(blocks)} block hashes...")
        if not self._verify_hashes(blocks):
            return self._report(VerificationResult.TAMPERED)

        self.log("Verifying chain linkage...")
        if not self._verify_chain_linkage(blocks):
            return self._report(VerificationResult.TAMPERED)

        if self.check_difficulty:
            self.log("Verifying proof of work...")
            if not self._verify_difficulty(blocks):
                return self._report(VerificationResult.TAMPERED)

        self.details["head_hash"] = blocks[-1]["hash"]
        return self._report(VerificationResult.VERIFIED)

    def _check_structure(self) -> bool:
        if not isinstance(self.export, dict):
            self.checks_failed.append("Export must be a JSON object")
            return False

        blocks = self.export.get("blocks")
        if not isinstance(blocks, list):
            self.checks_failed.append("Missing or invalid 'blocks' list")
            return False

        difficulty = self.export.get("difficulty")
        if difficulty is None:
            self.warnings.append("No difficulty recorded in export")
        elif not isinstance(difficulty, int) or isinstance(difficulty, bool) or difficulty < 0:
            self.checks_failed.append(f"Invalid difficulty: {difficulty!r}")
            return False
        else:
            self.details["difficulty"] = difficulty

        for position, block in enumerate(blocks):
            if not isinstance(block, dict):
                self.checks_failed.append(f"Block at position {position} is not an object")
                return False
            missing = [field for field in REQUIRED_FIELDS if field not in block]
            if missing:
                self.checks_failed.append(
                    f"Block at position {position} missing fields: {', '.join(missing)}"
                )
                return False
            if not isinstance(block["hash"], str):
                self.checks_failed.append(f"Block at position {position} has no hash")
                return False

        self.checks_passed.append(f"Structure valid ({len(blocks)} blocks)")
        return True

    def _verify_genesis(self, genesis: dict) -> bool:
        if genesis["index"] != 0:
            self.checks_failed.append(f"Genesis block has index {genesis['index']}, expected 0")
            return False
        if genesis["previous_hash"]:
            self.checks_failed.append("Genesis block has a previous hash")
            return False
        self.checks_passed.append("Genesis block well-formed")
        return True

    def _verify_hashes(self, blocks: list[dict]) -> bool:
        all_valid = True
        for block in blocks:
            computed = compute_block_hash(block)
            if not hmac.compare_digest(computed.encode("utf-8"), block["hash"].encode("utf-8")):
                self.checks_failed.append(
                    f"Block {block['index']}: hash mismatch "
                    f"(stored {block['hash'][:16]}..., computed {computed[:16]}...)"
                )
                all_valid = False
            else:
                self.log(f"  Block {block['index']}: OK")

        if all_valid:
            self.checks_passed.append(f"All {len(blocks)} block hashes verified")
        return all_valid

    def _verify_chain_linkage(self, blocks: list[dict]) -> bool:
        for prev, block in zip(blocks, blocks[1:]):
            if block["index"] != prev["index"] + 1:
                self.checks_failed.append(
                    f"Block {block['index']}: index does not follow {prev['index']}"
                )
                return False
            if block["previous_hash"] != prev["hash"]:
                self.checks_failed.append(
                    f"Block {block['index']}: previous_hash does not match block {prev['index']}"
                )
                return False

        self.checks_passed.append("Chain linkage valid")
        return True

    def _verify_difficulty(self, blocks: list[dict]) -> bool:
        difficulty = self.export.get("difficulty") or 0
        short = [b["index"] for b in blocks if leading_zeros(b["hash"]) < difficulty]
        if short:
            self.checks_failed.append(
                f"Blocks below difficulty {difficulty}: {', '.join(map(str, short))}"
            )
            return False
        self.checks_passed.append(f"Proof of work meets difficulty {difficulty}")
        return True

    def _report(self, result: VerificationResult) -> VerificationReport:
        blocks = self.export.get("blocks") if isinstance(self.export, dict) else None
        return VerificationReport(
            result=result,
            block_count=len(blocks) if isinstance(blocks, list) else 0,
            checks_passed=self.checks_passed,
            checks_failed=self.checks_failed,
            warnings=self.warnings,
            details=self.details,
        )


# ============================================================
# CLI
# ============================================================

BANNERS = {
    VerificationResult.VERIFIED: "[VERIFIED] - All checks passed",
    VerificationResult.TAMPERED: "[TAMPERED] - Hash or linkage mismatch detected",
    VerificationResult.INVALID_FORMAT: "[INVALID_FORMAT] - Export structure invalid",
}

EXIT_CODES = {
    VerificationResult.VERIFIED: 0,
    VerificationResult.TAMPERED: 1,
    VerificationResult.INVALID_FORMAT: 3,
}


def print_report(report: VerificationReport, json_output: bool = False):
    """Print verification report."""

    if json_output:
        output = {
            "result": report.result.value,
            "block_count": report.block_count,
            "checks_passed": report.checks_passed,
            "checks_failed": report.checks_failed,
            "warnings": report.warnings,
            "details": report.details,
        }
        print(json.dumps(output, indent=2))
        return

    print("\n" + "=" * 60)
    print(f"  {BANNERS[report.result]}")
    print("=" * 60)

    print(f"\nBlocks: {report.block_count}")

    if report.checks_passed:
        print("\nPassed:")
        for check in report.checks_passed:
            print(f"  + {check}")

    if report.checks_failed:
        print("\nFailed:")
        for check in report.checks_failed:
            print(f"  - {check}")

    if report.warnings:
        print("\nWarnings:")
        for warning in report.warnings:
            print(f"  ! {warning}")

    print()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Verify an exported hashstack chain",
        epilog="Exit codes: 0=VERIFIED, 1=TAMPERED, 3=INVALID_FORMAT"
    )
    parser.add_argument(
        "export",
        type=str,
        help="Path to the exported chain JSON file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed verification progress"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON"
    )
    parser.add_argument(
        "--check-difficulty",
        action="store_true",
        help="Also require every hash to meet the recorded difficulty"
    )

    args = parser.parse_args(argv)

    export_path = Path(args.export)
    if not export_path.exists():
        print(f"ERROR: File not found: {export_path}")
        return 3

    try:
        with open(export_path, "r", encoding="utf-8") as f:
            export = json.load(f)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON: {e}")
        return 3
    except OSError as e:
        print(f"ERROR: Failed to read file: {e}")
        return 3

    verifier = ChainVerifier(export, verbose=args.verbose, check_difficulty=args.check_difficulty)
    report = verifier.verify()

    print_report(report, json_output=args.json)

    return EXIT_CODES[report.result]


if __name__ == "__main__":
    sys.exit(main())
