"""Command line front end for syncing and summarizing Destiny 2 Crucible activity.

Run examples:
    python main.py sync -m 4611686018429783292 -c 2305843009264966985 -p xbox
    python main.py stats -m 4611686018429783292 -c 2305843009264966985 -p xbox --period week --mode control
    python main.py stats -m 4611686018429783292 -p xbox -t
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from d2stats.aggregator import CrucibleStats, summarize
from d2stats.api_client import BungieAPIClient, BungieAPIError
from d2stats.enums import Mode, Platform, TimePeriod
from d2stats.settings import DEFAULT_DRAIN_SCOPE, DETAIL_BATCH_SIZE, DRAIN_SCOPES
from d2stats.store import ActivityStore, StoreError
from d2stats.sync import SyncEngine, SyncReport


def _safe_print(message: str) -> None:
    """Print with Unicode fallback for restricted terminal encodings."""
    try:
        print(message)
    except UnicodeEncodeError:
        print(message.replace("✅", "[OK]").replace("⚠️", "[WARN]"))



def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not an integer")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def _add_common_args(parser: argparse.ArgumentParser, character_required: bool = True) -> None:
    parser.add_argument("-m", "--member-id", required=True, help="Destiny 2 API member id")
    parser.add_argument(
        "-c", "--character-id", required=character_required, default=None,
        help="Destiny 2 API character id" if character_required
        else "Destiny 2 API character id (omit for all characters; alltime only)",
    )
    parser.add_argument(
        "-p", "--platform", required=True, type=Platform.from_name,
        help="Platform for the member id: xbox, playstation, steam, blizzard or stadia",
    )
    parser.add_argument("--db", default="", help="SQLite DB path (defaults to D2STATS_DB_PATH or data/d2stats.db)")
    # SUPPRESS keeps a top-level -v from being reset by the subcommand default
    parser.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Verbose logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync Destiny 2 Crucible activity history into a local store")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sync_parser = sub.add_parser("sync", help="Fetch new activities and store their stats")
    _add_common_args(sync_parser)
    sync_parser.add_argument(
        "--batch-size", type=_positive_int, default=DETAIL_BATCH_SIZE, help="Concurrent report requests",
    )
    sync_parser.add_argument(
        "--scope", choices=DRAIN_SCOPES, default=DEFAULT_DRAIN_SCOPE,
        help="Drain only this character's queue, or the whole queue",
    )
    sync_parser.add_argument(
        "--enqueue-chunk", type=_positive_int, default=None,
        help="Commit discovered ids in chunks of this size instead of one transaction",
    )

    stats_parser = sub.add_parser("stats", help="Summarize stored stats")
    _add_common_args(stats_parser, character_required=False)
    stats_parser.add_argument(
        "--period", type=TimePeriod.from_name, default=TimePeriod.ALLTIME,
        help="day, reset, week, month or alltime (default)",
    )
    stats_parser.add_argument("--mode", type=Mode.from_name, default=Mode.ALL_PVP, help="Crucible mode (default: all_pvp)")
    stats_parser.add_argument("-t", "--terse", action="store_true", help="One line output; errors are suppressed")
    return parser


def _check_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.command != "stats":
        return
    if args.character_id is None and args.period is not TimePeriod.ALLTIME:
        parser.error("-c/--character-id is required unless --period is alltime")
    if args.terse and args.verbose:
        parser.error("--terse cannot be combined with --verbose")


def _print_sync_report(report: SyncReport) -> None:
    _safe_print(f"✅ Resumed queue: {len(report.resumed.persisted)} stored")
    _safe_print(f"✅ New activities queued: {report.discovered}")
    _safe_print(f"✅ Stored: {len(report.drained.persisted)}")
    if report.pending_count:
        _safe_print(
            f"⚠️ {report.pending_count} activities still queued "
            f"({len(report.drained.deferred)} without data, {len(report.drained.failed)} failed)"
        )
    _safe_print(f"Latest stored activity: {report.high_water_mark or 'none'}")


def _print_stats(stats: CrucibleStats, mode: Mode, period: TimePeriod, character_id: Optional[str]) -> None:
    scope = f"character {character_id}" if character_id else "all characters"
    print(f"Displaying stats for {mode} ({period}), {scope}.")
    print(f"  Activities:   {stats.activities}")
    print(f"  Win %:        {stats.win_rate:.1f}")
    print(f"  Kills:        {stats.kills}")
    print(f"  Deaths:       {stats.deaths}")
    print(f"  Assists:      {stats.assists}")
    print(f"  K/D:          {stats.kills_deaths_ratio:.2f}")
    print(f"  KD/A:         {stats.kills_deaths_assists:.2f}")
    print(f"  Efficiency:   {stats.efficiency:.2f}")
    print(f"  Time played:  {stats.time_played_seconds / 3600:.1f}h")


def _print_stats_terse(stats: CrucibleStats) -> None:
    print(
        f"activities={stats.activities} wins={stats.wins} kills={stats.kills} "
        f"deaths={stats.deaths} assists={stats.assists} kd={stats.kills_deaths_ratio:.2f} "
        f"kda={stats.kills_deaths_assists:.2f} efficiency={stats.efficiency:.2f}"
    )


async def run_sync(args: argparse.Namespace, store: ActivityStore) -> SyncReport:
    engine = SyncEngine(
        store,
        BungieAPIClient(),
        batch_size=args.batch_size,
        drain_scope=args.scope,
        enqueue_chunk_size=args.enqueue_chunk,
    )
    return await engine.sync(args.member_id, args.character_id, args.platform)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _check_args(parser, args)
    terse = getattr(args, "terse", False)

    if terse:
        level = logging.CRITICAL
    else:
        level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        store = ActivityStore(args.db or None)
    except StoreError as exc:
        if not terse:
            print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        if args.command == "sync":
            _print_sync_report(asyncio.run(run_sync(args, store)))
        else:
            stats = summarize(store, args.member_id, args.character_id, args.platform, args.mode, args.period)
            if terse:
                _print_stats_terse(stats)
            else:
                _print_stats(stats, args.mode, args.period, args.character_id)
    except (StoreError, BungieAPIError) as exc:
        if not terse:
            print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
