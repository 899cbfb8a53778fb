#!/usr/bin/env python3
"""
Gold Loan Job Runner

Runs the scheduled batch jobs (payment reminders, admin notifications,
interest rate upgrades, gold return reminders) against the configured
storage, and reports job history and statistics.
"""

import argparse
import json
import sys

from gold_lending.config import get_config
from gold_lending.exceptions import LendingError
from gold_lending.jobs import ExecutionType, JobName
from gold_lending.logging_config import setup_logging
from gold_lending.system import LendingSystem


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gold loan servicing job runner")
    commands = parser.add_subparsers(dest="command", required=True)

    job = commands.add_parser("job", help="Run one job")
    job.add_argument("name", choices=[j.value for j in JobName])
    job.add_argument("--scheduled", action="store_true", help="Record as a scheduled execution")
    job.add_argument("--executed-by", default=None, help="User id recorded on the execution")

    daily = commands.add_parser("daily", help="Run every job as a scheduled execution")
    daily.add_argument("--executed-by", default=None)

    history = commands.add_parser("history", help="Show recent executions")
    history.add_argument("--job", choices=[j.value for j in JobName], default=None)
    history.add_argument("--limit", type=int, default=5)

    stats = commands.add_parser("stats", help="Show per-job statistics")
    stats.add_argument("--job", choices=[j.value for j in JobName], default=None)
    stats.add_argument("--days", type=int, default=30)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    system = LendingSystem(config)
    try:
        if args.command == "job":
            execution_type = ExecutionType.SCHEDULED if args.scheduled else ExecutionType.MANUAL
            output = system.run_job(args.name, execution_type, args.executed_by).to_dict()
        elif args.command == "daily":
            output = [e.to_dict() for e in system.run_daily_jobs(args.executed_by)]
        elif args.command == "history":
            output = [e.to_dict() for e in system.jobs.get_history(args.job, args.limit)]
        else:
            output = system.jobs.get_stats(args.job, args.days)
    except LendingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        system.close()

    print(json.dumps(output, indent=2, default=str))
    failed = [o for o in (output if isinstance(output, list) else [output]) if o.get("status") == "failed"]
    return 1 if args.command in ("job", "daily") and failed else 0


if __name__ == "__main__":
    sys.exit(main())
