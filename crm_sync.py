"""CRM ⇄ Digiforma sync — command-line entry point.

Usage:
  # Configure the API token and enable the integration
  python crm_sync.py configure --token <bearer-token> --enable

  # Check credentials against Digiforma
  python crm_sync.py test-connection

  # Run a sync pass (initial = privileged backfill of unlocked records)
  python crm_sync.py sync --mode normal --user admin@example.com

  # Review matching
  python crm_sync.py unmatched
  python crm_sync.py suggest <company-id> --limit 5
  python crm_sync.py fuzzy
  python crm_sync.py confirm <mapping-id> --user admin@example.com
  python crm_sync.py map <company-id> <institution-id> --user admin@example.com
  python crm_sync.py unmap <mapping-id>

  # Run history
  python crm_sync.py status
  python crm_sync.py history --limit 20

  # Training revenue and linked company for an institution
  python crm_sync.py revenue <institution-id>
  python crm_sync.py company <institution-id>
"""
import argparse
import asyncio
import json
import logging
import sys

from db.connection import dispose_engine
from db.models import SyncMode
from digiforma.exceptions import DigiformaError
from digiforma.service import DigiformaSyncService

logger = logging.getLogger(__name__)


def _print(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def run_sync(service: DigiformaSyncService, mode: str, user: str) -> dict:
    ack = await service.trigger_sync(mode=mode, triggered_by=user)
    print(f"Sync {ack['syncId']} started ({mode} mode)...")
    await service.wait_for_background_syncs()
    status = await service.get_sync_status()
    history = await service.get_sync_history(limit=1)
    latest = history["rows"][0] if history["rows"] else None
    return {"run": latest, "stats": status["stats"]}


async def run_command(args: argparse.Namespace) -> int:
    service = DigiformaSyncService()
    try:
        if args.command == "configure":
            enabled = None
            if args.enable:
                enabled = True
            elif args.disable:
                enabled = False
            result = await service.configure(
                bearer_token=args.token,
                is_enabled=enabled,
                api_url=args.api_url,
                sync_frequency=args.frequency,
            )
        elif args.command == "test-connection":
            result = await service.test_connection()
        elif args.command == "sync":
            result = await run_sync(service, args.mode, args.user)
        elif args.command == "status":
            result = await service.get_sync_status()
        elif args.command == "history":
            result = await service.get_sync_history(limit=args.limit, offset=args.offset)
        elif args.command == "unmatched":
            result = await service.get_unmatched_companies()
        elif args.command == "suggest":
            result = await service.get_suggested_matches(args.company_id, limit=args.limit)
        elif args.command == "map":
            result = await service.create_manual_mapping(
                args.company_id, args.institution_id, args.user, args.notes
            )
        elif args.command == "unmap":
            result = await service.delete_mapping(args.mapping_id)
        elif args.command == "fuzzy":
            result = await service.get_fuzzy_matches()
        elif args.command == "confirm":
            result = await service.confirm_mapping(args.mapping_id, args.user)
        elif args.command == "revenue":
            result = await service.get_institution_revenue(args.institution_id)
        elif args.command == "company":
            result = await service.get_institution_company(args.institution_id)
        else:
            raise ValueError(f"Unknown command: {args.command}")
    except (DigiformaError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        await dispose_engine()

    _print(result)
    return 0


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CRM ⇄ Digiforma synchronization")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    configure = sub.add_parser("configure", help="Store the API token and integration settings")
    configure.add_argument("--token", default=None, help="Digiforma bearer token (stored encrypted)")
    toggle = configure.add_mutually_exclusive_group()
    toggle.add_argument("--enable", action="store_true", help="Enable the integration")
    toggle.add_argument("--disable", action="store_true", help="Disable the integration")
    configure.add_argument("--api-url", default=None, help="GraphQL endpoint override")
    configure.add_argument(
        "--frequency", choices=("daily", "weekly", "monthly"), default=None,
        help="Scheduled sync frequency",
    )

    sub.add_parser("test-connection", help="Check the stored token against Digiforma")

    sync = sub.add_parser("sync", help="Run a synchronization pass and wait for it")
    sync.add_argument("--mode", choices=SyncMode.ALL, default=SyncMode.NORMAL)
    sync.add_argument("--user", default=None, help="Who triggered the sync")

    sub.add_parser("status", help="Last successful sync and link counts")

    history = sub.add_parser("history", help="Past sync runs, newest first")
    history.add_argument("--limit", type=int, default=20)
    history.add_argument("--offset", type=int, default=0)

    sub.add_parser("unmatched", help="Digiforma companies not linked to an institution")

    suggest = sub.add_parser("suggest", help="Ranked institution candidates for a company")
    suggest.add_argument("company_id")
    suggest.add_argument("--limit", type=int, default=5)

    mapping = sub.add_parser("map", help="Manually map a company to an institution")
    mapping.add_argument("company_id")
    mapping.add_argument("institution_id")
    mapping.add_argument("--user", required=True, help="Who confirms the mapping")
    mapping.add_argument("--notes", default=None)

    unmap = sub.add_parser("unmap", help="Delete a mapping and unlink the company")
    unmap.add_argument("mapping_id")

    sub.add_parser("fuzzy", help="Fuzzy matches awaiting review")

    confirm = sub.add_parser("confirm", help="Confirm a fuzzy match")
    confirm.add_argument("mapping_id")
    confirm.add_argument("--user", required=True)

    revenue = sub.add_parser("revenue", help="Training revenue for an institution")
    revenue.add_argument("institution_id")

    company = sub.add_parser("company", help="Digiforma company linked to an institution")
    company.add_argument("institution_id")

    return parser


def main() -> None:
    parser = _build_arg_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(run_command(args)))


if __name__ == "__main__":
    main()
