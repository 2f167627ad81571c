#!/usr/bin/env python3
"""
Compute Grid Operator CLI

Commands for running and inspecting a grid:
- Create the schema
- Top up the task and canary pools
- Reap stale assignments and expire old tasks
- Inspect node trust and anomalies
- Run the offline integrity sweep
- Serve the HTTP API
"""

import argparse
import json
import sys

from computegrid.version import __version__


def get_service():
    """Build the service from the environment (lazy: keeps --help fast)."""
    from computegrid.config import GridConfig, configure_logging
    from computegrid.service import GridService

    config = GridConfig.from_env()
    configure_logging(config.log_level, config.log_file)
    return GridService(config)


def cmd_init_db(args):
    """Create all tables."""
    service = get_service()
    service.init_db()
    print("Schema ready.")
    return 0


def cmd_top_up(args):
    service = get_service()
    summary = service.top_up(min_tasks=args.min, min_canaries=args.canaries)
    print(f"Created {summary['tasks_created']} tasks and {summary['canaries_created']} canaries.")
    return 0


def cmd_reap(args):
    service = get_service()
    reaped = service.reaper.reap_stale()
    expired = service.reaper.expire_tasks()
    print(f"Timed out {reaped} stale assignments, expired {expired} tasks.")
    return 0


def cmd_integrity_check(args):
    """Print nodes flagged by the integrity sweep."""
    service = get_service()
    report = service.run_integrity_check()

    if args.json:
        print(json.dumps(report, indent=2))
        return 0

    print(f"\nChecked {report['checked_nodes']} nodes, flagged {report['flagged_nodes']}")
    if not report["flagged"]:
        return 0

    print(f"\n{'Device':<34} {'Trust':>7} {'Success':>8} {'Canary':>7}  {'Action':<8}")
    print("=" * 70)
    for node in report["flagged"]:
        print(
            f"{node['device_id'][:32]:<34} "
            f"{node['trust_score']:>7.1f} "
            f"{node['success_rate'] * 100:>7.0f}% "
            f"{node['canary_failures']:>7}  "
            f"{node['recommendation'].upper():<8}"
        )
    return 0


def cmd_anomalies(args):
    service = get_service()
    report = service.detect_anomalies(args.device_id)

    if args.json:
        print(json.dumps(report, indent=2))
        return 0

    print(f"\nAnomalies for {args.device_id} (confidence: {report['confidence']})")
    print("-" * 60)
    if not report["suspicious"]:
        print("  none")
    for anomaly in report["anomalies"]:
        detail = ", ".join(f"{k}={v}" for k, v in anomaly.items() if k != "type")
        print(f"  {anomaly['type']}: {detail}")
    stats = report["stats"]
    print(f"\n  Tasks in window: {stats.get('total_tasks', 0)}")
    if stats.get("success_rate") is not None:
        print(f"  Success rate:    {stats['success_rate'] * 100:.0f}%")
    if stats.get("avg_execution_time") is not None:
        print(f"  Avg exec time:   {stats['avg_execution_time']} ms")
    return 0


def cmd_trust(args):
    service = get_service()
    info = service.get_trust_info(args.device_id)

    if args.json:
        print(json.dumps(info, indent=2))
        return 0

    print(f"\n{'='*60}")
    print(f"  TRUST: {args.device_id}")
    print(f"{'='*60}")
    print(f"  Score:           {info['score']:.2f}" + ("  (BANNED)" if info["banned"] else ""))
    print(f"  Tasks:           {info['total_tasks']} "
          f"({info['successful_tasks']} ok / {info['failed_tasks']} failed)")
    print(f"  Canary failures: {info['canary_failures']}")
    if info["ban_reason"]:
        print(f"  Ban reason:      {info['ban_reason']}")
    if info["is_new"]:
        print("  (no history yet)")
    return 0


def cmd_stats(args):
    service = get_service()
    stats = service.queue_stats()

    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    print(f"\n{'Type':<16} {'Status':<12} {'Count':>7} {'Avg diff':>9}")
    print("=" * 48)
    for row in stats["tasks"]:
        avg = f"{row['avg_difficulty']:.2f}" if row["avg_difficulty"] is not None else "-"
        print(f"{row['task_type']:<16} {row['status']:<12} {row['count']:>7} {avg:>9}")
    canaries = ", ".join(f"{t}={n}" for t, n in sorted(stats["canaries"].items())) or "none"
    print(f"\nCanaries: {canaries}")
    return 0


def cmd_serve(args):
    from computegrid.app import serve
    from computegrid.config import GridConfig

    serve(GridConfig.from_env(), host=args.host, port=args.port)
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Compute Grid operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create tables and fill the pools
  computegrid init-db
  computegrid top-up --min 50 --canaries 10

  # Inspect a node
  computegrid trust 3f9a...
  computegrid anomalies 3f9a...

  # Start the API
  computegrid serve --port 8000
        """
    )

    parser.add_argument(
        "--version", action="version",
        version=f"Compute Grid CLI {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init-db", help="Create database tables")

    top_up_parser = subparsers.add_parser("top-up", help="Refill task and canary pools")
    top_up_parser.add_argument("--min", type=int, help="Pending tasks to keep per type")
    top_up_parser.add_argument("--canaries", type=int, help="Canaries to keep per type")

    subparsers.add_parser("reap", help="Time out stale assignments and expire old tasks")

    integrity_parser = subparsers.add_parser("integrity-check", help="Flag suspicious low-trust nodes")
    integrity_parser.add_argument("--json", action="store_true", help="Raw JSON output")

    anomalies_parser = subparsers.add_parser("anomalies", help="Anomaly report for one node")
    anomalies_parser.add_argument("device_id", type=str, help="Device ID")
    anomalies_parser.add_argument("--json", action="store_true", help="Raw JSON output")

    trust_parser = subparsers.add_parser("trust", help="Trust record for one node")
    trust_parser.add_argument("device_id", type=str, help="Device ID")
    trust_parser.add_argument("--json", action="store_true", help="Raw JSON output")

    stats_parser = subparsers.add_parser("stats", help="Queue statistics")
    stats_parser.add_argument("--json", action="store_true", help="Raw JSON output")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, help="Bind address (default: API_HOST)")
    serve_parser.add_argument("--port", type=int, help="Port (default: API_PORT)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    # Dispatch to command handler
    commands = {
        'init-db': cmd_init_db,
        'top-up': cmd_top_up,
        'reap': cmd_reap,
        'integrity-check': cmd_integrity_check,
        'anomalies': cmd_anomalies,
        'trust': cmd_trust,
        'stats': cmd_stats,
        'serve': cmd_serve,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
