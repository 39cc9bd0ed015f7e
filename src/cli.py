"""
ServiceHub CLI

Commands:
  serve          - Run the billing server
  inspect        - Show the persisted providers and subscribers
  verify-events  - Verify the persisted event journal
"""

import argparse
import json
import os
import sys


def cmd_serve(args):
    """Run the billing server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting ServiceHub on {host}:{port}")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def _load_engine(args):
    from billing.engine import BillingEngine
    from core.config import EngineConfig
    from core.events import EventJournal
    from crypto.signer import get_signer
    from persistence.database import Database
    from persistence.store import EngineStore

    database_url = args.database or os.environ.get("DATABASE_URL")
    if not database_url:
        print("Error: --database or DATABASE_URL required")
        sys.exit(1)

    signer = get_signer(private_key_b64=os.environ.get("SIGNING_KEY_B64"))
    engine = BillingEngine(config=EngineConfig.from_env(), journal=EventJournal(signer=signer))
    store = EngineStore(Database(database_url))
    found = store.restore(engine)
    return engine, found


def cmd_inspect(args):
    """Show the persisted providers and subscribers."""
    engine, found = _load_engine(args)
    if not found:
        print("No stored state")
        return

    if args.json:
        print(json.dumps(engine.export_state(), indent=2, sort_keys=True))
        return

    print("ServiceHub State")
    print("=" * 40)
    print(f"Implementation: {engine.upgrades.implementation_version}")
    print(f"Upgrades disabled: {'Yes' if engine.upgrades.disabled else 'No'}")
    print(f"Providers: {engine.provider_count}")
    for provider_id in engine.providers.list_ids():
        provider = engine.get_provider_state(provider_id)
        status = "active" if provider.is_active else "inactive"
        print(
            f"  #{provider.provider_id} owner={provider.owner} "
            f"fee/s={provider.fee_per_second} balance={provider.balance} "
            f"subscribers={len(provider.active_subscribers)} ({status})"
        )

    subscriber_ids = engine.subscribers.list_ids()
    print(f"Subscribers: {len(subscriber_ids)}")
    for subscriber_id in subscriber_ids:
        subscriber = engine.get_subscriber_state(subscriber_id)
        print(
            f"  #{subscriber.subscriber_id} owner={subscriber.owner} "
            f"balance={subscriber.balance} providers={list(subscriber.active_providers)}"
        )


def cmd_verify_events(args):
    """Verify the persisted event journal."""
    engine, _ = _load_engine(args)
    is_valid, error = engine.journal.verify_chain_integrity()

    print(f"Events: {len(engine.journal.events)}")
    print(f"Head: {engine.journal.head_hash}")
    if is_valid:
        print("Journal valid")
    else:
        print(f"Journal invalid: {error}")
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="ServiceHub - Subscription Billing Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # inspect
    inspect_parser = subparsers.add_parser("inspect", help="Show stored state")
    inspect_parser.add_argument("--database", help="sqlite:/// database URL")
    inspect_parser.add_argument("--json", action="store_true", help="Dump raw snapshot")

    # verify-events
    verify_parser = subparsers.add_parser("verify-events", help="Verify event journal")
    verify_parser.add_argument("--database", help="sqlite:/// database URL")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "inspect":
        cmd_inspect(args)
    elif args.command == "verify-events":
        cmd_verify_events(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
