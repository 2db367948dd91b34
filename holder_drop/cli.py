import argparse
import logging
import signal
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from rich.logging import RichHandler

from . import __version__
from .config import AppConfig, load_config
from .context import RunContext
from .errors import HolderDropError
from .export import allocation_frame, history_frame, snapshot_frame, write_frame
from .models import DistributionMode, ResultStatus, to_raw_amount
from .scheduler import DistributionScheduler, cron_for
from .service import DistributionService
from .ui import ConsoleUI

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, log_dir: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [RichHandler(rich_tracebacks=True, show_path=verbose)]
    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path / "holder_drop.log", maxBytes=5 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        handlers.append(file_handler)

    logging.basicConfig(level=level, format='%(message)s', datefmt='[%X]', handlers=handlers, force=True)
    for noisy in ("urllib3", "requests", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _decimal(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if amount <= 0:
        raise argparse.ArgumentTypeError("amount must be positive")
    return amount


def _date(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value!r}")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="holder-drop",
                                     description="Snapshot token holders and distribute rewards to them.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", help="Extra .env file overriding the base configuration")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    snapshot_args = argparse.ArgumentParser(add_help=False)
    snapshot_args.add_argument("--mint", help="Token whose holders are snapshotted (default BASE_TOKEN)")
    snapshot_args.add_argument("--threshold", type=int, help="Minimum raw balance to qualify")
    snapshot_args.add_argument("--exclude", nargs="+", help="Addresses to leave out")
    snapshot_args.add_argument("--max-holders", type=int, help="Keep only the largest holders")
    snapshot_args.add_argument("--no-cache", action="store_true", help="Always fetch fresh balances")

    amount_args = argparse.ArgumentParser(add_help=False)
    amount_args.add_argument("--amount", type=_decimal, required=True, help="Total amount in token units")
    amount_args.add_argument("--mode", choices=[m.value for m in DistributionMode],
                             default=DistributionMode.PROPORTIONAL.value)
    amount_args.add_argument("--batch-size", type=int, help="Transfers per batch (default BATCH_SIZE)")

    sub = parser.add_subparsers(dest="command", required=True)

    collect = sub.add_parser("collect", parents=[snapshot_args], help="Snapshot current holders")
    collect.add_argument("--output", help="Write holders to a .csv or .json file")

    simulate = sub.add_parser("simulate", parents=[snapshot_args, amount_args],
                              help="Show the allocation and cost without sending")
    simulate.add_argument("--output", help="Write the allocation to a .csv or .json file")

    execute = sub.add_parser("execute", parents=[snapshot_args], help="Run or resume a distribution")
    execute.add_argument("--amount", type=_decimal, help="Total amount in token units")
    execute.add_argument("--mode", choices=[m.value for m in DistributionMode],
                         default=DistributionMode.PROPORTIONAL.value)
    execute.add_argument("--batch-size", type=int, help="Transfers per batch (default BATCH_SIZE)")
    execute.add_argument("--resume", metavar="REQUEST_ID", help="Resume a recorded request")
    execute.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")

    history = sub.add_parser("history", help="List recorded distributions")
    history.add_argument("--start", type=_date)
    history.add_argument("--end", type=_date)
    history.add_argument("--mint")
    history.add_argument("--status", choices=[s.value for s in ResultStatus])
    history.add_argument("--output", help="Write per-recipient results to a .csv or .json file")

    sub.add_parser("cache-clear", help="Delete cached snapshots")

    schedule = sub.add_parser("schedule", parents=[amount_args], help="Run distributions on a schedule")
    schedule.add_argument("--cron", help="Cron expression overriding SCHEDULE")
    return parser


def _snapshot_kwargs(args) -> dict:
    return {
        "mint": args.mint,
        "threshold": args.threshold,
        "excluded": args.exclude,
        "max_holders": args.max_holders,
        "use_cache": not args.no_cache,
    }


def cmd_collect(service: DistributionService, ui: ConsoleUI, args) -> int:
    snapshot = service.collect(**_snapshot_kwargs(args))
    decimals = service.gateway.get_token_decimals(snapshot.mint)
    ui.display_snapshot(snapshot, decimals)
    if args.output:
        write_frame(snapshot_frame(snapshot, decimals), args.output)
    return 0


def cmd_simulate(service: DistributionService, ui: ConsoleUI, args) -> int:
    snapshot = service.collect(**_snapshot_kwargs(args))
    mint = service.config.token.distribution_mint or snapshot.mint
    decimals = service.gateway.get_token_decimals(mint)
    raw_total = to_raw_amount(args.amount, decimals)
    mode = DistributionMode(args.mode)

    allocation = service.simulate(snapshot, raw_total, mode)
    report = service.simulate_report(snapshot, raw_total, mode, args.batch_size, decimals)
    ui.display_allocation(allocation, decimals)
    ui.display_simulation(report, decimals)
    if args.output:
        write_frame(allocation_frame(allocation, decimals), args.output)
    return 0


def cmd_execute(service: DistributionService, ui: ConsoleUI, args) -> int:
    if args.resume:
        record = service.ledger.get(args.resume)
        if record is None:
            ui.display_error(f"No recorded request {args.resume}")
            return 6
        request = record.request
    else:
        if args.amount is None:
            ui.display_error("--amount is required unless --resume is given")
            return 2
        snapshot = service.collect(**_snapshot_kwargs(args))
        request = service.prepare(snapshot, args.amount, DistributionMode(args.mode), args.batch_size)

    if service.config.dry_run:
        report = service.validate(request)
        for line in report.errors:
            ui.display_error(line)
        logger.info(f"Dry run: request {request.id} validated, nothing sent")
        return 0 if report.is_valid else 2

    if not args.yes and not ui.confirm_execution(request):
        logger.info("Distribution cancelled by user")
        return 1

    context = RunContext()

    def handle_signal(signum, frame):
        logger.warning("Interrupt received; stopping after the current batch")
        context.cancel()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        with ui.progress() as progress:
            task = progress.add_task("Distributing", total=len(request.entries))

            def on_update(result):
                if result.is_terminal:
                    progress.advance(task)
                    if result.status == ResultStatus.FAILED:
                        ui.display_result_line(result)

            record = service.execute(request, context=context, on_update=on_update)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    ui.display_record(record)
    if record.pending_count:
        return 1
    return 0 if record.failed_count == 0 else 5


def cmd_history(service: DistributionService, ui: ConsoleUI, args) -> int:
    status = ResultStatus(args.status) if args.status else None
    query = dict(start=args.start, end=args.end, mint=args.mint, status=status)
    ui.display_history(service.history(**query))
    if args.output:
        write_frame(history_frame(service.history(**query)), args.output)
    return 0


def cmd_cache_clear(service: DistributionService, ui: ConsoleUI, args) -> int:
    service.clear_cache()
    ui.console.print("[green]Snapshot cache cleared[/]")
    return 0


def cmd_schedule(service: DistributionService, ui: ConsoleUI, args) -> int:
    cron = cron_for(service.config.distribution.schedule, args.cron)
    scheduler = DistributionScheduler(service, args.amount, DistributionMode(args.mode))
    scheduler.start(cron)
    return 0


COMMANDS = {
    "collect": cmd_collect,
    "simulate": cmd_simulate,
    "execute": cmd_execute,
    "history": cmd_history,
    "cache-clear": cmd_cache_clear,
    "schedule": cmd_schedule,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    ui = ConsoleUI()
    try:
        config: AppConfig = load_config(args.env_file)
        setup_logging(args.debug or config.debug, config.log_dir)
        service = DistributionService.from_config(config)
        return COMMANDS[args.command](service, ui, args)
    except HolderDropError as e:
        logger.debug("Command failed", exc_info=True)
        ui.display_error(e.message)
        return e.exit_code
    except KeyboardInterrupt:
        ui.console.print("\n[yellow]Interrupted[/]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
