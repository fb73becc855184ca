"""
Operator CLI: schema setup, crawl cycles, scheduling, workers and monitoring.
"""

import argparse
import sys

from tabulate import tabulate

from crawler.categories import resolve
from crawler.core import MIN_WORKERS, CrawlerError, StorageUnavailable, setup_logger

logger = setup_logger("crawler.cli")


def print_stats(stats):
    print("\n=== CRAWL SUMMARY ===")
    urls = stats["urls"]
    print(tabulate([[k, v] for k, v in urls.items()], headers=["URL status", "Count"], tablefmt="grid"))

    queue = stats["queue"]
    print(tabulate([[queue["total"], queue["locked"]]], headers=["Queue size", "Locked"], tablefmt="grid"))

    job_rows = [
        [name, c["total"], c["pending"], c["processing"], c["completed"], c["failed"]]
        for name, c in stats["jobs"].items()
    ]
    if job_rows:
        print(tabulate(job_rows, headers=["Category", "Jobs", "Pending", "Processing", "Completed", "Failed"],
                       tablefmt="grid"))

    policy = stats["policy"]
    print(tabulate([[k, v] for k, v in policy.items()], headers=["URL policy", "Count"], tablefmt="simple"))
    print(f"Memory: {stats['memory_mb']}MB")
    print("=====================\n")


def cmd_init_db(runtime, args):
    print("Schema ready.")


def cmd_crawl(runtime, args):
    categories = resolve(runtime.categories, args.category)
    admitted = runtime.cycle.trigger(categories, fresh=args.fresh)
    rows = [[name, count] for name, count in admitted.items()]
    print(tabulate(rows, headers=["Category", "Jobs admitted"], tablefmt="grid"))


def cmd_schedule(runtime, args):
    scheduler = runtime.scheduler
    if args.cleanup:
        print(f"Stale queue entries removed: {scheduler.cleanup_stale_queue()}")
        print(f"Expired cache entries removed: {runtime.storage.cache.purge_expired()}")
    if args.reprioritize:
        print(f"URLs reprioritized: {scheduler.reprioritize_all()}")
    print(f"URLs scheduled: {scheduler.schedule()}")


def cmd_work(runtime, args):
    from frontier.orchestrator import WorkerPool
    pool = WorkerPool(runtime.orchestrator, size=args.workers)
    stats = pool.run(max_seconds=args.max_seconds)
    rows = [[name, s["processed"], s["errors"]] for name, s in stats.items()]
    print(tabulate(rows, headers=["Worker", "Processed", "Errors"], tablefmt="grid"))


def cmd_monitor(runtime, args):
    from monitoring.stats import collect_stats
    print_stats(collect_stats(runtime.storage, runtime.categories))


def cmd_serve(runtime, args):
    from monitoring.app import create_app
    create_app(runtime.storage, runtime.categories).run(host=args.host, port=args.port)


def cmd_reset(runtime, args):
    if not args.force:
        print("Refusing to wipe crawl state without --force.")
        return 1
    runtime.storage.reset()
    print("All crawl state wiped.")


def build_parser():
    parser = argparse.ArgumentParser(prog="category-crawler", description="Category-aware web crawler")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema").set_defaults(func=cmd_init_db)

    crawl = sub.add_parser("crawl", help="Trigger a crawl cycle")
    crawl.add_argument("--category", default="all", help="Category id or 'all'")
    crawl.add_argument("--fresh", action="store_true", help="Wipe existing jobs and daily counters first")
    crawl.set_defaults(func=cmd_crawl)

    schedule = sub.add_parser("schedule", help="Move due URLs into the crawl queue")
    schedule.add_argument("--reprioritize", action="store_true", help="Recompute priority and next crawl for all URLs")
    schedule.add_argument("--cleanup", action="store_true", help="Drop stale queue locks and expired cache entries")
    schedule.set_defaults(func=cmd_schedule)

    work = sub.add_parser("work", help="Run crawl workers")
    work.add_argument("--workers", type=int, default=MIN_WORKERS)
    work.add_argument("--max-seconds", type=float, default=None, help="Stop dispatching after this many seconds")
    work.set_defaults(func=cmd_work)

    sub.add_parser("monitor", help="Print crawl statistics").set_defaults(func=cmd_monitor)

    serve = sub.add_parser("serve", help="Run the monitoring web app")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=5000)
    serve.set_defaults(func=cmd_serve)

    reset = sub.add_parser("reset", help="Wipe all crawl state")
    reset.add_argument("--force", action="store_true")
    reset.set_defaults(func=cmd_reset)

    return parser


def main(argv=None, runtime_factory=None):
    args = build_parser().parse_args(argv)

    if runtime_factory is None:
        from frontier.bootstrap import build_runtime
        runtime_factory = build_runtime

    try:
        runtime = runtime_factory()
    except StorageUnavailable as e:
        logger.error(f"[SYSTEM] Storage unavailable: {e}")
        return 1
    except CrawlerError as e:
        logger.error(f"[SYSTEM] Configuration error: {e}")
        return 2

    try:
        return args.func(runtime, args) or 0
    except CrawlerError as e:
        logger.error(f"[SYSTEM] {e}")
        return 2
    finally:
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
