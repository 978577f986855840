#!/usr/bin/env python3
"""
VaultIndex Management CLI

Commands for operating the indexer:
- init-schema: Create the PostgreSQL tables
- sync: Ingest until caught up with the chain (foreground)
- status: Show the head checkpoint and chain lag
- verify-store: Replay the journal and compare with the snapshot
- rollback: Undo committed batches back to a checkpoint
- export-entities: Export the materialized snapshot to JSON
- roles: Show the roles a DID currently holds
- health-check: Run comprehensive health checks

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-schema
    python -m tools.manage sync --until-block 1200000
    python -m tools.manage rollback --to 41
    python -m tools.manage export-entities --kind document -o documents.json
"""

import argparse
import json
import sys
from pathlib import Path

# Runnable as a script from a checkout
sys.path.insert(0, str(Path(__file__).parent.parent))


def _indexer():
    from vaultindex.core.scheduler import create_indexer
    return create_indexer()


def cmd_init_schema(args):
    """Create the entity store tables."""
    from vaultindex.db import PostgresEntityStore, create_entity_store

    store = create_entity_store()
    if not isinstance(store, PostgresEntityStore):
        print("In-memory entity store configured; nothing to initialize.")
        return 0

    store.initialize_schema()
    print("[OK] Schema initialized")
    return 0


def cmd_sync(args):
    """Run ingestion cycles until caught up."""
    from vaultindex.core.errors import IndexerError
    from vaultindex.db import EntityStoreError

    scheduler = _indexer()
    controller = scheduler.controller
    start = controller.store.get_checkpoint()
    print(f"Starting from checkpoint {start.sequence} (scanned block {start.scanned_block})")

    try:
        results = controller.sync(until_block=args.until_block, max_cycles=args.max_cycles)
    except (IndexerError, EntityStoreError) as e:
        print(f"[FAIL] Sync stopped: {e}")
        return 1
    finally:
        controller.close()

    committed = [r for r in results if r.committed]
    reorgs = [r for r in results if r.reorg is not None and r.reorg.rolled_back]
    head = controller.store.get_checkpoint()

    print(f"\n[OK] {len(committed)} batch(es) committed")
    print(f"  Events applied: {sum(r.applied for r in results)}")
    print(f"  Reducer warnings: {sum(len(r.warnings) for r in results)}")
    print(f"  Reorgs handled: {len(reorgs)}")
    print(f"  Head checkpoint: {head.sequence}")
    print(f"  Cursor: block {head.cursor_block}, log {head.cursor_log_index}")
    print(f"  Scanned block: {head.scanned_block}")
    return 0


def cmd_status(args):
    """Show the head checkpoint and lag behind the source."""
    from vaultindex.core.errors import SourceUnavailableError

    scheduler = _indexer()
    controller = scheduler.controller
    head = controller.store.get_checkpoint()

    print("=== Indexer Status ===\n")
    print(f"  Store: {type(controller.store).__name__}")
    print(f"  Checkpoint: {head.sequence}")
    print(f"  Cursor: block {head.cursor_block}, log {head.cursor_log_index}")
    print(f"  Scanned block: {head.scanned_block}")
    print(f"  Batch hash: {head.batch_hash[:16] + '...' if head.batch_hash else 'None'}")

    try:
        chain_head = controller.source.get_block_number()
        print(f"  Chain head: {chain_head}")
        print(f"  Lag: {chain_head - head.scanned_block} block(s)")
    except SourceUnavailableError as e:
        print(f"  Chain head: [WARN] unavailable - {e}")
    finally:
        controller.close()
    return 0


def cmd_verify_store(args):
    """Verify the checkpoint chain and journal against the snapshot."""
    from vaultindex.db import StoreCorruptionError, create_entity_store

    store = create_entity_store()
    print("Verifying entity store...")
    try:
        verified = store.verify_integrity()
    except StoreCorruptionError as e:
        print(f"[FAIL] Store integrity verification FAILED: {e}")
        return 1

    head = store.get_checkpoint()
    print(f"[OK] {verified} checkpoint(s) verified")
    if head.batch_hash:
        print(f"  Chain head: {head.batch_hash[:16]}...")
    return 0


def cmd_rollback(args):
    """Roll the store back to a checkpoint (-1 = genesis)."""
    from vaultindex.db import EntityStoreError, create_entity_store

    store = create_entity_store()
    head = store.get_checkpoint()
    if args.to >= head.sequence:
        print(f"Nothing to undo: head is checkpoint {head.sequence}")
        return 0

    if not args.yes:
        answer = input(f"Undo {head.sequence - args.to} batch(es)? [y/N] ")
        if answer.strip().lower() != "y":
            print("Aborted")
            return 1

    try:
        new_head = store.rollback_to(args.to)
    except EntityStoreError as e:
        print(f"[FAIL] Rollback failed: {e}")
        return 1

    print(f"[OK] Rolled back to checkpoint {new_head.sequence}")
    print(f"  Resuming after block {new_head.scanned_block}")
    return 0


def cmd_export_entities(args):
    """Export the materialized snapshot to a JSON file."""
    from vaultindex.db import create_entity_store
    from vaultindex.schemas.entities import EntityKind

    store = create_entity_store()
    kind = EntityKind(args.kind) if args.kind else None

    print("Loading entities...")
    entities = store.list_entities(kind)
    head = store.get_checkpoint()

    export_data = {
        "checkpoint": head.to_dict(),
        "entities": [
            {"kind": entity.kind.value, **entity.to_record()}
            for entity in entities
        ],
    }

    output_file = args.output or "entities_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(entities)} entities to {output_file}")
    return 0


def cmd_roles(args):
    """Print the roles a DID currently holds."""
    from vaultindex.core.abi import role_name
    from vaultindex.core.queries import IndexQueries
    from vaultindex.db import create_entity_store

    result = IndexQueries(create_entity_store()).list_active_roles(args.did)
    print(f"Roles for {args.did} (as of block {result.height.cursor_block}):")
    if not result.value:
        print("  (none)")
    for grant in result.value:
        print(f"  {role_name(grant.role)}  granted at {grant.granted_at}")
    return 0


def cmd_health_check(args):
    """Probe the store and the chain; exit 1 when anything is unhealthy."""
    from vaultindex.db.config import DatabaseConfig, EntityStoreDriver, get_entitystore_driver
    from vaultindex.observability import check_health

    print("=== VaultIndex Health Check ===\n")

    driver = get_entitystore_driver()
    print("Database:")
    if driver != EntityStoreDriver.MEMORY:
        config = DatabaseConfig.resolve()
        print(f"  Type: PostgreSQL ({driver.value})")
        print(f"  Host: {config.host}:{config.port}")
    else:
        print("  Type: In-Memory")

    scheduler = _indexer()
    controller = scheduler.controller
    try:
        status = check_health(
            store=controller.store,
            source=controller.source,
            verify_integrity=args.verify,
        )
    finally:
        controller.close()

    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {marker} {details}")

    print()
    return 0 if status.healthy else 1


def main():
    parser = argparse.ArgumentParser(
        description="VaultIndex Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-schema
    subparsers.add_parser(
        "init-schema",
        help="Create the PostgreSQL tables"
    )

    # sync
    p_sync = subparsers.add_parser(
        "sync",
        help="Ingest until caught up with the chain"
    )
    p_sync.add_argument("--until-block", type=int, help="Stop after this block")
    p_sync.add_argument("--max-cycles", type=int, help="Stop after this many cycles")

    # status
    subparsers.add_parser(
        "status",
        help="Show the head checkpoint and chain lag"
    )

    # verify-store
    subparsers.add_parser(
        "verify-store",
        help="Replay the journal and compare with the snapshot"
    )

    # rollback
    p_rollback = subparsers.add_parser(
        "rollback",
        help="Undo committed batches back to a checkpoint"
    )
    p_rollback.add_argument("--to", type=int, required=True, help="Checkpoint sequence (-1 = genesis)")
    p_rollback.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    # export-entities
    p_export = subparsers.add_parser(
        "export-entities",
        help="Export the materialized snapshot to JSON"
    )
    p_export.add_argument("--kind", help="Only this entity kind")
    p_export.add_argument("--output", "-o", help="Output file (default: entities_export.json)")

    # roles
    p_roles = subparsers.add_parser(
        "roles",
        help="Show the roles a DID currently holds"
    )
    p_roles.add_argument("--did", required=True)

    # health-check
    p_health = subparsers.add_parser(
        "health-check",
        help="Probe store, chain and (with --verify) journal integrity"
    )
    p_health.add_argument("--verify", action="store_true", help="Also verify store integrity")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-schema": cmd_init_schema,
        "sync": cmd_sync,
        "status": cmd_status,
        "verify-store": cmd_verify_store,
        "rollback": cmd_rollback,
        "export-entities": cmd_export_entities,
        "roles": cmd_roles,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
