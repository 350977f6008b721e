import argparse
import logging
import sys

from . import config as config_lib
from .errors import OrchestratorError
from .jobs.progress import estimate_remaining_seconds
from .jobs.sweeper import fail_stale_processing, sweep
from .orchestrator import open_orchestrator


def _add_db(parser):
    parser.add_argument("--db", type=str, help="Job database path (default: from config)")


def _print_job(job):
    print("\n" + "=" * 60)
    print(f"JOB {job.id}")
    print("=" * 60)
    print(f"Video:                {job.video_id}")
    print(f"Status:               {job.status.value}")
    print(f"Progress:             {job.overall_progress}%")
    print(f"Queue:                {job.queue_name.value} (priority {job.priority})")
    print(f"Retries:              {job.retry_count}/{job.max_retries}")
    for name, record in job.stages.items():
        line = f"  {name:<20}{record.status.value:<12}{record.progress:>3}%"
        if record.error:
            line += f"  ({record.error})"
        print(line)
    if job.error:
        print(f"Error:                [{job.error.code}] {job.error.message}")
    remaining = estimate_remaining_seconds(job)
    if remaining is not None:
        print(f"Est. remaining:       {remaining:.0f}s")
    print(f"Expires:              {job.expires_at.isoformat()}")
    print("=" * 60)


def _run(args, queue_parser):
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = config_lib.resolve_config(cli_dict)

    with open_orchestrator(config) as orch:
        coordinator = orch.coordinator

        if args.command == "create":
            options = {}
            if args.summary_type:
                options["summary_type"] = args.summary_type
            if args.language:
                options["language"] = args.language
            job = coordinator.create_job(args.video_id, options, priority=args.priority)
            print(f"Created job {job.id} for video {job.video_id}")

        elif args.command == "status":
            _print_job(coordinator.get_job(args.job_id))

        elif args.command == "list":
            jobs = coordinator.list_jobs(status=args.status, video_id=args.video_id)
            if not jobs:
                print("No jobs found")
            for job in jobs:
                print(
                    f"{job.id}  {job.video_id:<16} {job.status.value:<11} "
                    f"{job.overall_progress:>3}%  {job.created_at.isoformat()}"
                )

        elif args.command == "cancel":
            job = coordinator.cancel_job(args.job_id)
            print(f"Job {job.id} is {job.status.value}")

        elif args.command == "retry":
            job = coordinator.retry_job(args.job_id)
            print(f"Job {job.id} requeued (retry {job.retry_count}/{job.max_retries})")

        elif args.command == "advance":
            job = coordinator.advance_stage(
                args.job_id, args.stage, args.progress, args.stage_status
            )
            _print_job(job)

        elif args.command == "queue":
            if args.queue_command == "stats":
                stats = coordinator.queue_stats()
                print("\n" + "=" * 60)
                print("QUEUE STATUS")
                print("=" * 60)
                print(f"Pending:              {stats['pending']}")
                print(f"Processing:           {stats['processing']}")
                print(f"Completed:            {stats['completed']}")
                print(f"Failed:               {stats['failed']}")
                print(f"Cancelled:            {stats['cancelled']}")
                print(f"Total:                {stats['total']}")
                print("-" * 60)
                for queue_name, depth in stats["queues"].items():
                    print(f"{queue_name + ':':<22}{depth}")
                print("=" * 60)
            else:
                queue_parser.print_help()

        elif args.command == "sweep":
            timeout = config.sweeper.stale_timeout_s
            if timeout:
                failed = fail_stale_processing(coordinator, timeout)
                print(f"Failed {len(failed)} stale job(s)")
            print(f"Removed {sweep(coordinator)} expired job(s)")


def main():
    parser = argparse.ArgumentParser(
        prog="vidsum", description="Video processing job orchestrator"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", type=str, help="Extra YAML layered over config/local.yaml")
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CREATE
    create_parser = subparsers.add_parser("create", help="Create and dispatch a job")
    create_parser.add_argument("--video-id", required=True, help="Video to process")
    create_parser.add_argument("--priority", type=int, help="-10..10, higher runs sooner")
    create_parser.add_argument(
        "--summary-type", choices=["brief", "detailed", "bullet_points"], help="Summary style"
    )
    create_parser.add_argument("--language", type=str, help="Transcript language code")
    _add_db(create_parser)

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show one job")
    status_parser.add_argument("job_id")
    _add_db(status_parser)

    # LIST
    list_parser = subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument(
        "--status",
        choices=["pending", "processing", "completed", "failed", "cancelled"],
        help="Filter by status",
    )
    list_parser.add_argument("--video-id", help="Filter by video")
    _add_db(list_parser)

    # CANCEL / RETRY
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a pending or processing job")
    cancel_parser.add_argument("job_id")
    _add_db(cancel_parser)

    retry_parser = subparsers.add_parser("retry", help="Requeue a failed job")
    retry_parser.add_argument("job_id")
    _add_db(retry_parser)

    # ADVANCE
    advance_parser = subparsers.add_parser("advance", help="Report stage progress")
    advance_parser.add_argument("job_id")
    advance_parser.add_argument("stage", help="upload, transcription, summarization or cleanup")
    advance_parser.add_argument("progress", type=int, help="Stage progress 0..100")
    advance_parser.add_argument(
        "--stage-status", default="processing", help="pending, processing, completed or failed"
    )
    _add_db(advance_parser)

    # QUEUE subcommands
    queue_parser = subparsers.add_parser("queue", help="Inspect dispatcher queues")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    stats_parser = queue_subparsers.add_parser("stats", help="Show queue statistics")
    _add_db(stats_parser)

    # SWEEP
    sweep_parser = subparsers.add_parser("sweep", help="Remove expired jobs, fail stale ones")
    sweep_parser.add_argument(
        "--stale-timeout", type=int, help="Fail processing jobs without heartbeat for N seconds"
    )
    _add_db(sweep_parser)

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return

    try:
        _run(args, queue_parser)
    except OrchestratorError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
