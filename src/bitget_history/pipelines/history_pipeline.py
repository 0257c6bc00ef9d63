import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

from tqdm.contrib.logging import logging_redirect_tqdm

from bitget_history.core.errors import (
    BitgetHistoryError,
    ConfigurationError,
    OperationCancelled,
)
from bitget_history.core.models import DataKind, Market
from bitget_history.helpers.data_helper import default_range, parse_date
from bitget_history.jobs.history_download_job import ReconciliationLoop, RunSummary, load_config
from bitget_history.utils.logger import setup_logger

DEFAULT_CONFIG_PATH = Path("config") / "bitget_history.json"

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_INTERRUPTED = 130


# ---------------------------------------------------------------------------
# STAGE 1 — INIT
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bitget-history",
        description="Download Bitget historical trades/depth archives and load them into SQLite.",
    )
    parser.add_argument("-p", "--pair", default="BTCUSDT", help="Trading pair (default: BTCUSDT)")
    parser.add_argument("-t", "--type", dest="kind", required=True,
                        choices=[k.value for k in DataKind], help="Data type: trades or depth")
    parser.add_argument("-m", "--market", default=Market.ALL.value,
                        choices=[m.value for m in Market], help="Market: spot, futures or all (default: all)")
    parser.add_argument("-s", "--start", help="Start date YYYY-MM-DD (default: 1 year ago)")
    parser.add_argument("-e", "--end", help="End date YYYY-MM-DD (default: today)")
    parser.add_argument("-T", "--timeout", type=float, help="Proxy check timeout in seconds (default: 3)")
    parser.add_argument("-d", "--debug", action="store_true", help="Log every probe and file instead of progress bars")
    parser.add_argument("-X", "--skip-exists", action="store_true", help="Skip downloading if file exists locally")
    parser.add_argument("-S", "--skip-download", action="store_true",
                        help="Skip downloading and reimport existing local files")
    parser.add_argument("-r", "--repeat", action="store_true",
                        help="Repeat until all depth files are downloaded (with --skip-exists)")
    parser.add_argument("-R", "--recheck-exists", action="store_true",
                        help="Recheck existing non-empty archives and delete corrupt ones")
    parser.add_argument("-P", "--reuse-proxies", action="store_true",
                        help="Reuse the working proxy file instead of re-validating")
    parser.add_argument("-c", "--config", default=str(DEFAULT_CONFIG_PATH),
                        help=f"Config file (default: {DEFAULT_CONFIG_PATH})")
    return parser


def init(args: argparse.Namespace) -> tuple[dict, logging.Logger]:
    config = load_config(args.config)
    if args.timeout is not None:
        if args.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {args.timeout}")
        config["proxy"]["check_timeout"] = args.timeout

    log_path = Path(config["data_paths"]["log_path"]) / "bitget_history.log"
    if args.debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO)

    logger = setup_logger("bitget_history", log_path, level=log_level)
    logger.info("========== Bitget history download starting ==========")
    logger.info(f"Config loaded from: {args.config}")
    return config, logger


# ---------------------------------------------------------------------------
# STAGE 2 — DOWNLOAD AND LOAD
# ---------------------------------------------------------------------------

def run_job(config: dict, args: argparse.Namespace, logger: logging.Logger,
            cancel_event: threading.Event) -> RunSummary:
    default_start, today = default_range()
    start = parse_date(args.start) if args.start else default_start
    end = parse_date(args.end) if args.end else today
    logger.info(
        f"Pair: {args.pair.upper()} | Type: {args.kind} | Market: {args.market} | "
        f"Range: {start} .. {end}"
    )

    loop = ReconciliationLoop.from_config(config, show_progress=not args.debug, logger=logger)
    try:
        return loop.run(
            pair=args.pair,
            kind=args.kind,
            market=args.market,
            start=start,
            end=end,
            skip_locally_present=args.skip_exists,
            skip_download=args.skip_download,
            repeat=args.repeat,
            recheck=args.recheck_exists,
            reuse_proxies=args.reuse_proxies,
            cancel_event=cancel_event,
        )
    finally:
        loop.close()


# ---------------------------------------------------------------------------
# STAGE 3 — REPORT
# ---------------------------------------------------------------------------

def report(summary: RunSummary, logger: logging.Logger) -> int:
    for load in summary.loads:
        logger.info(
            f"[{load.group}] {load.files} files, inserted {load.inserted}, "
            f"skipped {load.skipped_rows}, corrupt removed {load.corrupt_removed}"
        )
    if summary.failed_urls:
        logger.warning(f"{len(summary.failed_urls)} files failed to download:")
        for url in summary.failed_urls:
            logger.warning(f"  {url}")
    if summary.failed_groups:
        logger.error(f"Database update failed for: {', '.join(summary.failed_groups)}")
        return EXIT_FATAL
    logger.info(f"Done: {summary.enumerated} archives, {summary.fetched} fetched, {summary.failure_count} failures")
    return EXIT_OK


# ---------------------------------------------------------------------------
# MAIN ENTRY POINT
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config, logger = init(args)
    except ConfigurationError as exc:
        print(f"bitget-history: {exc}", file=sys.stderr)
        return EXIT_FATAL

    cancel_event = threading.Event()
    try:
        with logging_redirect_tqdm(loggers=[logger]):
            summary = run_job(config, args, logger, cancel_event)
            return report(summary, logger)
    except KeyboardInterrupt:
        cancel_event.set()
        logger.warning("Interrupted by user")
        return EXIT_INTERRUPTED
    except OperationCancelled as exc:
        logger.warning(f"Cancelled: {exc}")
        return EXIT_INTERRUPTED
    except BitgetHistoryError as exc:
        logger.error(f"Fatal: {exc}")
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
