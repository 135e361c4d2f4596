"""
rental-batch -- command-line entry point for the billing engine.

Every job subcommand runs inside ``JobLedger.run()``, so each invocation
leaves one ``billing_jobs`` row behind.  ``reconcile-jobs`` is the
exception: it fails ``running`` rows that a crashed process left behind.
Work for a command happens in a single session that is committed (or
rolled back) before the job row is finalized.

Usage:
    rental-batch billing --dry-run
    rental-batch late-fees --rate 3
    rental-batch sync-indices --index icl
    rental-batch process-settlements --period 2024-11 --owner-id <uuid>
    rental-batch reconcile-jobs --type billing --older-than-minutes 120

Exit status: 0 on success (including runs with per-record failures), 1
when the run aborts or another run of the same type is in progress.
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from rental_kernel.db.engine import Database
from rental_kernel.domain.clock import Clock, SystemClock
from rental_kernel.domain.money import HUNDRED, to_decimal
from rental_kernel.domain.periods import parse_period, period_of, previous_period
from rental_kernel.exceptions import JobAlreadyRunningError, RentalBillingError
from rental_kernel.logging_config import configure_logging, get_logger

from rental_billing.domain.types import IndexType, JobType
from rental_billing.services import (
    AdjustmentCalculator,
    BillingOrchestrator,
    ExchangeRateResolver,
    IndexStore,
    InvoiceLedger,
    JobHandle,
    JobLedger,
    JobMetrics,
    ReportService,
    SettlementEngine,
    WithholdingCalculator,
)
from rental_billing.services.reports import REPORT_TYPES
from rental_config import EngineConfig, load_config
from rental_ingestion.adapters import BcbClient, BcraClient, DatosArClient
from rental_ingestion.services import IndexSyncService

logger = get_logger("batch.cli")


@dataclass
class CommandContext:
    args: argparse.Namespace
    config: EngineConfig
    session: Session
    clock: Clock
    job: JobHandle
    resources: ExitStack


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a YYYY-MM-DD date: {value!r}") from None


def _period(value: str) -> str:
    try:
        parse_period(value)
    except RentalBillingError:
        raise argparse.ArgumentTypeError(f"not a YYYY-MM period: {value!r}") from None
    return value


def _uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a UUID: {value!r}") from None


def _percentage(value: str) -> Decimal:
    try:
        rate = to_decimal(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}") from None
    if rate < 0:
        raise argparse.ArgumentTypeError("rate must not be negative")
    return rate


def _minutes(value: str) -> int:
    try:
        minutes = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a whole number: {value!r}") from None
    if minutes < 0:
        raise argparse.ArgumentTypeError("minutes must not be negative")
    return minutes


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rental-batch",
        description="Billing and settlement batch jobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", default=None, help="YAML configuration file.")
    parser.add_argument("--database-url", default=None, help="Overrides database.url.")
    parser.add_argument("--log", default=None, help="Append JSON log lines to this file.")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR.")

    commands = parser.add_subparsers(dest="command", required=True)

    billing = commands.add_parser("billing", help="Issue invoices for leases due today.")
    billing.add_argument("--dry-run", action="store_true")
    billing.add_argument("--lease-id", type=_uuid, default=None)
    billing.add_argument("--date", type=_iso_date, default=None, help="Billing date.")

    overdue = commands.add_parser("overdue", help="Mark past-due invoices as overdue.")
    overdue.add_argument("--dry-run", action="store_true")

    reminders = commands.add_parser("reminders", help="Send payment reminders.")
    reminders.add_argument("--dry-run", action="store_true")
    reminders.add_argument("--days-before", type=int, default=None)

    late_fees = commands.add_parser("late-fees", help="Apply late fees once per invoice.")
    late_fees.add_argument("--dry-run", action="store_true")
    late_fees.add_argument(
        "--rate", type=_percentage, default=None,
        help="Late fee percentage (default: configured billing.late_fee_rate).",
    )

    sync_indices = commands.add_parser("sync-indices", help="Fetch index series.")
    sync_indices.add_argument(
        "--index", choices=("icl", "igpm", "ipc", "all"), default="all",
    )

    commands.add_parser("sync-rates", help="Fetch exchange rates.")

    reports = commands.add_parser("reports", help="Generate an owner report.")
    reports.add_argument("--type", choices=REPORT_TYPES, default="monthly")
    reports.add_argument("--owner-id", type=_uuid, required=True)
    reports.add_argument("--month", type=_period, default=None, help="Default: current month.")
    reports.add_argument("--dry-run", action="store_true")

    settlements = commands.add_parser(
        "process-settlements", help="Calculate or pay out owner settlements.",
    )
    settlements.add_argument(
        "--period", type=_period, default=None, help="Default: previous month.",
    )
    settlements.add_argument("--owner-id", type=_uuid, default=None)
    settlements.add_argument("--dry-run", action="store_true")
    settlements.add_argument(
        "--process", action="store_true",
        help="Pay out every pending settlement regardless of --period.",
    )

    reconcile = commands.add_parser(
        "reconcile-jobs", help="Mark running jobs left by a crashed run as failed.",
    )
    reconcile.add_argument("--type", choices=sorted(COMMANDS), required=True)
    reconcile.add_argument(
        "--older-than-minutes", type=_minutes, default=60,
        help="Only rows started at least this long ago (default: 60).",
    )
    return parser


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def _bcra(ctx: CommandContext) -> BcraClient:
    sources = ctx.config.sources
    return ctx.resources.enter_context(
        BcraClient(
            base_url=sources.bcra_api_url,
            icl_variable_id=sources.bcra_icl_variable_id,
            timeout=sources.timeout_seconds,
            verify_tls=not sources.bcra_insecure_tls,
        )
    )


def _bcb(ctx: CommandContext) -> BcbClient:
    sources = ctx.config.sources
    return ctx.resources.enter_context(
        BcbClient(base_url=sources.bcb_api_url, timeout=sources.timeout_seconds)
    )


def _datos_ar(ctx: CommandContext) -> DatosArClient:
    sources = ctx.config.sources
    return ctx.resources.enter_context(
        DatosArClient(
            base_url=sources.datos_ar_api_url,
            ipc_series_id=sources.datos_ar_ipc_series_id,
            timeout=sources.timeout_seconds,
        )
    )


def _exchange_rates(ctx: CommandContext) -> ExchangeRateResolver:
    return ExchangeRateResolver(ctx.session, _bcra(ctx), _bcb(ctx), ctx.clock)


def _orchestrator(ctx: CommandContext) -> BillingOrchestrator:
    billing = ctx.config.billing
    return BillingOrchestrator(
        ctx.session,
        InvoiceLedger(ctx.session, ctx.clock),
        AdjustmentCalculator(IndexStore(ctx.session, ctx.clock), ctx.clock),
        _exchange_rates(ctx),
        WithholdingCalculator(ctx.session),
        clock=ctx.clock,
        base_currency=billing.base_currency,
        grace_days=billing.grace_days,
        late_fee_rate=billing.late_fee_rate,
    )


def _settlement_engine(ctx: CommandContext) -> SettlementEngine:
    return SettlementEngine(
        ctx.session,
        clock=ctx.clock,
        default_commission=ctx.config.settlements.default_commission_percentage,
        currency=ctx.config.settlements.currency,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_billing(ctx: CommandContext) -> None:
    result = _orchestrator(ctx).run_billing(
        billing_date=ctx.args.date,
        dry_run=ctx.args.dry_run,
        lease_id=ctx.args.lease_id,
    )
    ctx.job.record(
        total=result.processed_leases,
        processed=result.invoices_created,
        failed=result.invoices_failed,
    )
    for failure in result.errors:
        ctx.job.add_error(failure.lease_id, failure.error)
    print(
        f"billing: {result.processed_leases} leases, {result.invoices_created} invoices, "
        f"{result.invoices_failed} failed, total {result.total_amount}"
    )


def cmd_overdue(ctx: CommandContext) -> None:
    if ctx.args.dry_run:
        count = len(InvoiceLedger(ctx.session, ctx.clock).find_overdue())
        ctx.job.record(total=count, skipped=count)
        print(f"overdue (dry run): {count} invoices would be marked")
        return
    result = _orchestrator(ctx).process_overdue()
    ctx.job.record(total=result.processed, processed=result.marked_overdue)
    print(f"overdue: {result.marked_overdue} invoices marked")


def cmd_reminders(ctx: CommandContext) -> None:
    days_before = ctx.args.days_before
    if days_before is None:
        days_before = ctx.config.billing.reminder_days_before
    result = _orchestrator(ctx).send_reminders(
        days_before=days_before, dry_run=ctx.args.dry_run,
    )
    ctx.job.record(total=result.total, processed=result.sent, failed=result.failed)
    print(f"reminders: {result.sent} sent, {result.failed} failed of {result.total}")


def cmd_late_fees(ctx: CommandContext) -> None:
    rate = ctx.config.billing.late_fee_rate
    if ctx.args.rate is not None:
        rate = ctx.args.rate / HUNDRED
    if ctx.args.dry_run:
        count = len(InvoiceLedger(ctx.session, ctx.clock).find_late_fee_candidates())
        ctx.job.record(total=count, skipped=count)
        print(f"late-fees (dry run): {count} invoices eligible at rate {rate}")
        return
    result = _orchestrator(ctx).process_late_fees(rate=rate)
    ctx.job.record(
        total=result.processed,
        processed=result.fees_applied,
        skipped=result.processed - result.fees_applied,
    )
    print(f"late-fees: {result.fees_applied} applied, total {result.total_fees}")


def cmd_sync_indices(ctx: CommandContext) -> None:
    service = IndexSyncService(
        ctx.session, _bcra(ctx), _bcb(ctx), _datos_ar(ctx), ctx.clock,
    )
    if ctx.args.index == "all":
        results = service.sync_all()
    else:
        results = [service.sync(IndexType.parse(ctx.args.index))]

    for result in results:
        if result.error:
            ctx.job.record(failed=1)
            ctx.job.add_error(result.index_type.value, result.error)
        else:
            ctx.job.record(
                processed=result.records_processed, skipped=result.records_skipped,
            )
        print(
            f"{result.index_type.value}: {result.records_inserted} inserted, "
            f"{result.records_skipped} updated"
            + (f", error: {result.error}" if result.error else "")
        )
    ctx.job.record(total=ctx.job.records_processed + ctx.job.records_failed)


def cmd_sync_rates(ctx: CommandContext) -> None:
    result = _exchange_rates(ctx).sync_rates()
    ctx.job.record(
        total=result.processed + len(result.errors),
        processed=result.processed,
        failed=len(result.errors),
    )
    for error in result.errors:
        ctx.job.add_error(error.split(" ", 1)[0], error)
    print(f"sync-rates: {result.processed} processed, {result.inserted} inserted")


def cmd_reports(ctx: CommandContext) -> None:
    month = ctx.args.month or period_of(ctx.clock.today())
    service = ReportService(ctx.session, _settlement_engine(ctx))
    result = service.generate(
        ctx.args.type, ctx.args.owner_id, month, dry_run=ctx.args.dry_run,
    )
    if result.success:
        ctx.job.record(total=1, processed=1)
    else:
        ctx.job.record(total=1, failed=1)
        ctx.job.add_error(ctx.args.owner_id, result.error or "render failed")
    print(f"reports: {ctx.args.type} {month} {'ok' if result.success else result.error}")


def cmd_process_settlements(ctx: CommandContext) -> None:
    engine = _settlement_engine(ctx)
    args = ctx.args
    period = args.period or previous_period(ctx.clock.today())

    if args.owner_id is not None and not args.process:
        if args.dry_run:
            calculation = engine.calculate_settlement(args.owner_id, period)
            ctx.job.record(total=1, skipped=1)
            print(
                f"settlement (dry run) {period}: gross {calculation.gross_amount}, "
                f"net {calculation.net_amount}, scheduled {calculation.scheduled_date}"
            )
            return
        outcomes = [(None, engine.process_settlement(args.owner_id, period))]
    elif args.process:
        outcomes = engine.process_pending_settlements(dry_run=args.dry_run)
    else:
        outcomes = [
            (pending, engine.process_settlement(pending.owner_id, pending.period, args.dry_run))
            for pending in engine.get_pending_settlements()
            if pending.period == period
        ]

    succeeded = 0
    for pending, result in outcomes:
        if result.success:
            succeeded += 1
            continue
        owner_id = pending.owner_id if pending is not None else args.owner_id
        ctx.job.add_error(owner_id, result.error or "settlement failed")
    ctx.job.record(
        total=len(outcomes),
        processed=succeeded,
        failed=len(outcomes) - succeeded,
    )
    print(f"process-settlements: {succeeded} of {len(outcomes)} succeeded")


@dataclass(frozen=True)
class Command:
    job_type: JobType
    handler: Callable[[CommandContext], None]
    parameters: Callable[[argparse.Namespace], dict[str, Any]]


COMMANDS: dict[str, Command] = {
    "billing": Command(
        JobType.BILLING, cmd_billing,
        lambda a: {"date": a.date, "lease_id": a.lease_id},
    ),
    "overdue": Command(JobType.OVERDUE, cmd_overdue, lambda a: {}),
    "reminders": Command(
        JobType.REMINDERS, cmd_reminders, lambda a: {"days_before": a.days_before},
    ),
    "late-fees": Command(JobType.LATE_FEES, cmd_late_fees, lambda a: {"rate": a.rate}),
    "sync-indices": Command(
        JobType.SYNC_INDICES, cmd_sync_indices, lambda a: {"index": a.index},
    ),
    "sync-rates": Command(JobType.EXCHANGE_RATES, cmd_sync_rates, lambda a: {}),
    "reports": Command(
        JobType.REPORTS, cmd_reports,
        lambda a: {"type": a.type, "owner_id": a.owner_id, "month": a.month},
    ),
    "process-settlements": Command(
        JobType.PROCESS_SETTLEMENTS, cmd_process_settlements,
        lambda a: {"period": a.period, "owner_id": a.owner_id, "process": a.process},
    ),
}


def reconcile_jobs(ledger: JobLedger, args: argparse.Namespace) -> None:
    """Fail ``running`` rows left behind by a run whose process died."""
    job_type = COMMANDS[args.type].job_type
    marked = ledger.reconcile_stale(
        job_type, timedelta(minutes=args.older_than_minutes),
    )
    print(f"reconcile-jobs: {marked} stale {job_type.value} jobs marked failed")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None, clock: Clock | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, RentalBillingError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    configure_logging(
        level=(args.log_level or config.logging.level).upper(),
        log_file=args.log or config.logging.file,
    )

    clock = clock or SystemClock()
    database = Database.from_url(
        args.database_url or config.database.url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
    )
    dry_run = bool(getattr(args, "dry_run", False))

    try:
        database.create_tables()
        ledger = JobLedger(database, clock, metrics=JobMetrics.from_config(config.metrics))
        if args.command == "reconcile-jobs":
            reconcile_jobs(ledger, args)
            return 0
        command = COMMANDS[args.command]
        with ledger.run(command.job_type, command.parameters(args), dry_run) as job:
            with ExitStack() as resources, database.session_scope() as session:
                command.handler(
                    CommandContext(args, config, session, clock, job, resources)
                )
    except JobAlreadyRunningError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        logger.error(
            "command_failed",
            extra={"command": args.command, "error": str(exc)},
            exc_info=True,
        )
        print(f"ERROR: {args.command} failed: {exc}", file=sys.stderr)
        return 1
    finally:
        database.dispose()
    return 0
