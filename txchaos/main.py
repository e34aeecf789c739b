"""txchaos command line.

    txchaos [config.toml] --workload lost_update --isolation rc --threads 8

Exit status: 0 when no anomaly was observed, 1 when anomalies were
observed, 2 when workers failed with fatal errors, 3 on configuration
errors.
"""

import argparse
import logging
import sys
from typing import Optional, Tuple

from txchaos.config import ConfigurationError, Settings, load_settings
from txchaos.errors import TxChaosError
from txchaos.memory import InMemoryAccountRepository, InMemoryStore, generate_accounts
from txchaos.reporter import ConsoleReporter, Reporter
from txchaos.repository import AccountRepository
from txchaos.runner import RunResult, WorkloadRunner
from txchaos.scenarios import WorkloadType
from txchaos.store import Store
from txchaos.transaction import TransactionWrapper

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ANOMALIES = 1
EXIT_FAILURES = 2
EXIT_CONFIG = 3


def build_store(settings: Settings) -> Tuple[Store, AccountRepository]:
    """Create the store and repository named by settings.store.kind."""
    cfg = settings.store
    if cfg.kind == "postgres":
        from txchaos.postgres import PsycopgAccountRepository, PsycopgStore
        store = PsycopgStore(cfg.dsn, isolation=cfg.isolation)
        return store, PsycopgAccountRepository(store)

    accounts = generate_accounts(cfg.accounts, cfg.groups, cfg.initial_balance)
    store = InMemoryStore(
        isolation=cfg.isolation,
        accounts=accounts,
        lock_timeout_s=cfg.lock_timeout_s,
        statement_latency=cfg.statement_latency,
        seed=settings.seed,
    )
    logger.info(f"Seeded in-memory store with {len(accounts)} accounts "
                f"in {cfg.groups} groups")
    return store, InMemoryAccountRepository(store)


def print_configuration(settings: Settings, reporter: Reporter) -> None:
    workload_type = WorkloadType.parse(settings.workload)
    reporter.header("Configuration")
    reporter.print_left("Workload", workload_type.key)
    reporter.info(workload_type.note)
    reporter.print_left("Store", settings.store.kind)
    reporter.print_left("Isolation", settings.store.isolation.value)
    reporter.print_left("Lock mode", settings.lock_mode.value)
    reporter.print_left("Optimistic locking", f"{settings.optimistic_locking}")
    reporter.print_left("Threads", f"{settings.concurrency}")
    if settings.iterations is not None:
        reporter.print_left("Iterations", f"{settings.iterations}")
    else:
        reporter.print_left("Duration (s)", f"{settings.duration_s}")
    reporter.print_left("Read/write ratio", f"{settings.read_write_ratio}")
    reporter.print_left("Selection", f"{settings.selection}"
                        + (" (random)" if settings.random_selection else ""))


def exit_code(result: RunResult) -> int:
    if result.failed:
        return EXIT_FAILURES
    if result.anomalies > 0:
        return EXIT_ANOMALIES
    return EXIT_OK


def run(
    settings: Settings,
    reporter: Reporter,
    progress: bool = False,
    export_path: Optional[str] = None,
) -> int:
    """Run one workload end to end and return the process exit status."""
    print_configuration(settings, reporter)

    store, repository = build_store(settings)
    try:
        wrapper = TransactionWrapper(
            store,
            max_retries=settings.max_retries,
            backoff=settings.backoff,
            seed=settings.seed,
        )
        workload = WorkloadType.parse(settings.workload).create(settings, repository, wrapper)
        runner = WorkloadRunner(
            workload,
            concurrency=settings.concurrency,
            duration_s=settings.duration_s,
            iterations=settings.iterations,
            progress=progress,
        )
        result = runner.run(reporter)
    finally:
        store.close()

    result.stats.report(reporter)
    reporter.print_left("Iterations", f"{result.iterations}")
    reporter.print_left("Elapsed (s)", f"{result.elapsed_s:.2f}")
    if result.failed:
        reporter.header("Failures")
        for error in result.errors:
            reporter.error(error)

    if export_path is not None:
        if export_path.endswith(".csv"):
            result.stats.export_csv(export_path)
        else:
            result.stats.export_parquet(export_path)
        logger.info(f"Exported attempt latencies to {export_path}")

    return exit_code(result)


def cli():
    """CLI entry point for txchaos."""
    parser = argparse.ArgumentParser(
        description="Concurrency anomaly checker for transactional stores"
    )
    parser.add_argument(
        "config",
        nargs="?",
        default=None,
        help="Path to TOML configuration file (optional; flags override it)"
    )
    parser.add_argument("-w", "--workload", choices=WorkloadType.names(),
                        help="Anomaly scenario to run")
    parser.add_argument("--isolation",
                        help="Isolation level: rc, rr, 1sr (or full names)")
    parser.add_argument("--locking", dest="lock_mode",
                        help="Row lock for reads: none, for_share, for_update")
    parser.add_argument("--cas", action="store_const", const=True, default=None,
                        help="Use compare-and-swap (versioned) writes")
    parser.add_argument("--threads", type=int, help="Number of worker threads")
    parser.add_argument("--duration", type=float, help="Run duration in seconds")
    parser.add_argument("--iterations", type=int,
                        help="Total number of transactions (overrides --duration)")
    parser.add_argument("--selection", type=int, help="Number of target accounts")
    parser.add_argument("--random", action="store_const", const=True, default=None,
                        help="Select target accounts randomly")
    parser.add_argument("--ratio", type=float, help="Fraction of read transactions")
    parser.add_argument("--split", type=float, help="Split between the two write paths")
    parser.add_argument("--store", choices=["memory", "postgres"], help="Store to test")
    parser.add_argument("--dsn", help="PostgreSQL connection string")
    parser.add_argument("--latency", type=float,
                        help="In-memory store: fixed latency per statement (ms)")
    parser.add_argument("--seed", type=int, help="Random seed")
    parser.add_argument("--export", metavar="PATH",
                        help="Write attempt latencies to PATH (.parquet or .csv)")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress all logging except errors"
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable progress bar"
    )
    args = parser.parse_args()

    # Setup logging
    if args.quiet:
        logging.basicConfig(level=logging.ERROR, format='%(levelname)s: %(message)s')
    elif args.verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(message)s')

    overrides = {
        "workload.type": args.workload,
        "workload.selection": args.selection,
        "workload.random_selection": args.random,
        "workload.read_write_ratio": args.ratio,
        "workload.write_split": args.split,
        "workload.seed": args.seed,
        "locking.lock_mode": args.lock_mode,
        "locking.optimistic": args.cas,
        "runner.concurrency": args.threads,
        "runner.duration_s": args.duration,
        "runner.iterations": args.iterations,
        "store.kind": args.store,
        "store.isolation": args.isolation,
        "store.dsn": args.dsn,
        "store.statement_latency.value": args.latency,
    }

    try:
        settings = load_settings(args.config, overrides=overrides)
    except ConfigurationError as e:
        print("Configuration validation failed:")
        for error in e.errors:
            print(f"  ✗ {error}")
        sys.exit(EXIT_CONFIG)
    except OSError as e:
        print(f"Cannot read configuration: {e}")
        sys.exit(EXIT_CONFIG)

    show_progress = not args.no_progress and not args.verbose and not args.quiet
    try:
        status = run(settings, ConsoleReporter(), progress=show_progress, export_path=args.export)
    except ConfigurationError as e:
        print("Configuration validation failed:")
        for error in e.errors:
            print(f"  ✗ {error}")
        sys.exit(EXIT_CONFIG)
    except TxChaosError as e:
        logger.error(f"Run aborted: {e}", exc_info=args.verbose)
        sys.exit(EXIT_FAILURES)

    sys.exit(status)


if __name__ == "__main__":
    cli()
