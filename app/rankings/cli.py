"""Command-line entrypoints for cron-driven refresh and maintenance."""
from __future__ import annotations

import argparse
import json
from typing import Sequence

from .config_validation import validate_runtime_config
from .error_codes import RankingsError
from .healthcheck import run_health_checks
from .quarantine import ErrorAction
from .service import RankingService
from .utils import ensure_dirs, setup_run_logger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Leaderboard harvester maintenance commands.")
    sub = parser.add_subparsers(dest="command", required=True)

    refresh_all = sub.add_parser("refresh-all", help="Refresh every configured scope.")
    refresh_all.add_argument(
        "--force",
        action="store_true",
        help="Skip cache and change detection for every scope.",
    )

    refresh = sub.add_parser("refresh", help="Refresh one scope.")
    refresh.add_argument("scope", help="Scope such as 'global' or 'EU/EU011'.")
    refresh.add_argument("--force", action="store_true")

    sub.add_parser("cleanup", help="Purge idle rate-limit buckets, old page dumps and quarantine overflow.")

    reprocess = sub.add_parser("reprocess", help="Run automatic repair over quarantined records.")
    reprocess.add_argument(
        "--action",
        default=ErrorAction.AUTO_FIX.value,
        choices=[action.value for action in ErrorAction],
    )

    sub.add_parser("health", help="Run health checks and exit non-zero when unhealthy.")
    return parser


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: Sequence[str] | None = None, *, service: RankingService | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    ensure_dirs()
    if args.command == "health":
        result = run_health_checks(entrypoint="cli")
        _print({"ok": result.ok, "checks": result.checks})
        return 0 if result.ok else 1

    validate_runtime_config("scheduler")
    service = service or RankingService.from_config()

    if args.command == "refresh-all":
        setup_run_logger("refresh")
        status = service.refresh_all(force_update=args.force)
        _print(status)
        return 0 if status.get("started") and not status.get("errors") else 1

    if args.command == "refresh":
        try:
            scope = service.registry.parse(args.scope)
            result = service.get_rankings(scope, force_refresh=args.force)
        except RankingsError as exc:
            _print(exc.to_dict())
            return 1
        _print(
            {
                "scope": result.snapshot.scope_id,
                "source": result.source,
                "records": len(result.snapshot),
                "pages": result.snapshot.page_count,
                "partial": result.snapshot.partial,
                "attempts": result.attempts,
            }
        )
        return 0

    if args.command == "cleanup":
        _print(service.cleanup())
        return 0

    if args.command == "reprocess":
        _print(service.reprocess_quarantine(args.action))
        return 0

    parser.error(f"Unknown command {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
