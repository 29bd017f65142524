#!/usr/bin/env python3
"""
Carbon Claims Management CLI

Commands for operating and debugging the marketplace client:
- generate-wallet: Generate a session wallet keypair
- resolve-window: Show how a raw issue time and voting period are read
- classify-error: Show how a raw ledger failure message is classified
- decode: Decode a claim or organisation handler document from JSON
- demo-snapshot: Dump the seeded in-memory claim handler as JSON
- health-check: Check the environment configuration

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage generate-wallet
    python -m tools.manage resolve-window --issued-at 1700000000000 --period 7
    python -m tools.manage classify-error "MoveAbort(MoveLocation { ... }, 2) in command 0"
    python -m tools.manage decode claims.json
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def cmd_generate_wallet(args):
    """Generate an Ed25519 keypair and its ledger address."""
    from carbonclaims.core import Wallet

    private_key, public_key = Wallet.generate_keypair()
    address = Wallet.derive_address(public_key)

    print("[OK] Session wallet generated")
    print(f"  Address: {address}")
    print(f"\n  Public key:")
    print(f"  {public_key}")
    print(f"\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set this environment variable:")
    print(f"  CARBONCLAIMS_WALLET_PRIVATE_KEY={private_key}")


def cmd_resolve_window(args):
    """Print the resolved voting window for raw ledger values."""
    from carbonclaims.core.timewindow import now_ms, resolve_window, voting_ends_at

    window = resolve_window(args.issued_at, args.period)
    if not window.valid:
        print("[FAIL] Window is invalid; the claim is treated as not active")
        return 1

    now = args.now if args.now is not None else now_ms()
    print(f"  Start (ms): {int(window.start_ms)}")
    print(f"  End (ms):   {int(window.end_ms)}")
    print(f"  Ends at:    {voting_ends_at(window).isoformat()}")
    print(f"  Now (ms):   {int(now)}")
    print(f"  Open:       {'yes' if window.contains(now) else 'no'}")
    return 0


def cmd_classify_error(args):
    """Classify a raw failure message."""
    from carbonclaims.core.ledger_client import abort_code, classify_failure, describe_failure

    reason = classify_failure(args.message)
    print(f"  Abort code: {abort_code(args.message)}")
    print(f"  Reason:     {reason.value}")
    print(f"  Message:    {describe_failure(args.message, reason)}")


def cmd_decode(args):
    """Decode a handler document (or event payload) read from a JSON file."""
    from carbonclaims.core.decoder import decode_claims, decode_organizations

    with open(args.file) as f:
        document = json.load(f)

    decode = decode_organizations if args.organizations else decode_claims
    result = decode(document)

    print(f"Shape: {result.shape}")
    print(f"Records: {len(result.records)}")
    for record in result.records:
        print(json.dumps(record.model_dump(mode="json"), indent=2))
    for diagnostic in result.diagnostics:
        print(f"[WARN] {diagnostic}")
    return 1 if result.malformed else 0


def cmd_demo_snapshot(args):
    """Seed an in-memory ledger and print its claim handler document."""
    from carbonclaims.config import MarketplaceConfig
    from carbonclaims.core import InMemoryLedgerClient

    config = MarketplaceConfig()
    ledger = InMemoryLedgerClient(config)
    ledger.seed_demo_data()
    object_id = config.organization_handler_id if args.organizations else config.claim_handler_id
    document = asyncio.run(ledger.get_object(object_id))

    output = json.dumps(document, indent=2)
    if args.output:
        with open(args.output, "w") as f:
            f.write(output)
        print(f"[OK] Wrote snapshot to {args.output}")
    else:
        print(output)


def cmd_health_check(args):
    """Check configuration without touching the ledger."""
    from carbonclaims.config import MarketplaceConfig
    from carbonclaims.core import Wallet

    print("=== Carbon Claims Health Check ===\n")

    print("Marketplace:")
    try:
        config = MarketplaceConfig.from_env()
    except ValueError as e:
        print(f"  Config: [FAIL] {e}")
        return 1
    print(f"  Package:        {config.package_id}")
    print(f"  Claim handler:  {config.claim_handler_id}")
    print(f"  Org handler:    {config.organization_handler_id}")
    print(f"  Lend handler:   {config.lend_request_handler_id}")
    print(f"  Polling:        {'every %ss' % config.poll_interval_seconds if config.poll_enabled else 'disabled'}")

    print("\nEnvironment:")
    private_key = os.environ.get("CARBONCLAIMS_WALLET_PRIVATE_KEY", "")
    if private_key:
        try:
            print(f"  Session wallet: [OK] {Wallet(private_key).address}")
        except (ValueError, TypeError) as e:
            print(f"  Session wallet: [FAIL] Invalid key - {e}")
            return 1
    else:
        print("  Session wallet: [WARN] Using ephemeral (development)")

    print("\n=== Health Check Complete ===")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Carbon Claims Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("generate-wallet", help="Generate a session wallet keypair")

    p_window = subparsers.add_parser("resolve-window", help="Resolve a raw voting window")
    p_window.add_argument("--issued-at", required=True, help="Raw issue time as stored on the ledger")
    p_window.add_argument("--period", required=True, help="Raw voting period as stored on the ledger")
    p_window.add_argument("--now", type=int, help="Current time in epoch ms (default: wall clock)")

    p_classify = subparsers.add_parser("classify-error", help="Classify a ledger failure message")
    p_classify.add_argument("message", help="Raw failure message")

    p_decode = subparsers.add_parser("decode", help="Decode a handler document from JSON")
    p_decode.add_argument("file", help="JSON file holding the document")
    p_decode.add_argument("--organizations", action="store_true", help="Decode organisations instead of claims")

    p_snapshot = subparsers.add_parser("demo-snapshot", help="Dump seeded in-memory handler JSON")
    p_snapshot.add_argument("--organizations", action="store_true", help="Dump the organisation handler")
    p_snapshot.add_argument("--output", "-o", help="Output file (default: stdout)")

    subparsers.add_parser("health-check", help="Check configuration")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "generate-wallet": cmd_generate_wallet,
        "resolve-window": cmd_resolve_window,
        "classify-error": cmd_classify_error,
        "decode": cmd_decode,
        "demo-snapshot": cmd_demo_snapshot,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
