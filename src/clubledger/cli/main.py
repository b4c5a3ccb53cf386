"""clubledger CLI: operator commands for the billing ledger.

Provides a ``clubledger`` command with subcommands for fee previews,
payment status and sync, guest passes, reconciliation, and scheduler
health.  Every subcommand supports a ``--json`` flag for
machine-parseable output.

``clubledger reconcile serve`` runs the reconciliation sweeps in the
foreground until interrupted.
"""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import click

from clubledger.cli.output import (
    format_error,
    format_fee_breakdown,
    format_guest_passes,
    format_health,
    format_payment_status,
    format_response,
    format_sweep_results,
)
from clubledger.config import LedgerSettings, get_stripe_config, load_settings
from clubledger.errors import ClubLedgerError
from clubledger.events import EventBus
from clubledger.fees import FeeBreakdownComputer, FeeRequest, ParticipantInput, ParticipantType
from clubledger.guest_passes import GuestPassAllocator
from clubledger.health import SchedulerHealthTracker
from clubledger.log_config import configure_logging
from clubledger.member_cache import MemberCache
from clubledger.members import MemberDirectory, normalize_email
from clubledger.payments.base import PaymentProcessor
from clubledger.payments.status_ledger import PaymentStatusLedger
from clubledger.payments.stripe_processor import StripeProcessor
from clubledger.persistence import ClubDB
from clubledger.reconciliation import ReconciliationScheduler
from clubledger.tiers import TierCatalog
from clubledger.usage import UsageLedgerReader

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class _Services:
    settings: LedgerSettings
    db: ClubDB
    events: EventBus
    directory: MemberDirectory
    allocator: GuestPassAllocator
    fees: FeeBreakdownComputer
    ledger: PaymentStatusLedger
    health: SchedulerHealthTracker


def _build_services(ctx: click.Context) -> _Services:
    cached = ctx.obj.get("services")
    if cached is not None:
        return cached

    config_path: Optional[Path] = ctx.obj.get("config_path")
    settings = load_settings(config_path=config_path)
    db = ClubDB(ctx.obj.get("db_path") or settings.db_path)
    events = EventBus()
    catalog = TierCatalog.from_settings(settings)
    cache = MemberCache(ttl_seconds=settings.cache_ttl_seconds, max_size=settings.cache_max_size)
    directory = MemberDirectory(db, catalog, cache)
    allocator = GuestPassAllocator(
        db,
        directory,
        default_allowance=settings.default_guest_passes,
        hold_ttl_hours=settings.hold_ttl_hours,
    )
    fees = FeeBreakdownComputer(
        db,
        directory,
        UsageLedgerReader(db),
        allocator,
        events=events,
        overage_rate_cents=settings.overage_rate_cents,
        overage_block_minutes=settings.overage_block_minutes,
        guest_fee_cents=settings.guest_fee_cents,
    )
    services = _Services(
        settings=settings,
        db=db,
        events=events,
        directory=directory,
        allocator=allocator,
        fees=fees,
        ledger=PaymentStatusLedger(db, events=events),
        health=SchedulerHealthTracker(db),
    )
    ctx.obj["services"] = services
    return services


def _make_processor(ctx: click.Context, settings: LedgerSettings) -> PaymentProcessor:
    processor = ctx.obj.get("processor")
    if processor is not None:
        return processor
    stripe_cfg = get_stripe_config(config_path=ctx.obj.get("config_path"))
    return StripeProcessor(
        stripe_cfg.get("secret_key"),
        max_network_retries=settings.stripe_max_network_retries,
    )


def _make_scheduler(ctx: click.Context, svc: _Services) -> ReconciliationScheduler:
    return ReconciliationScheduler(
        svc.db,
        _make_processor(ctx, svc.settings),
        svc.ledger,
        svc.health,
        allocator=svc.allocator,
        events=svc.events,
        interval_seconds=svc.settings.reconcile_interval_seconds,
        initial_delay_seconds=svc.settings.reconcile_initial_delay_seconds,
        batch_size=svc.settings.reconcile_batch_size,
    )


def _fail(exc: Exception, prefix: str, json_mode: bool) -> None:
    if isinstance(exc, ClubLedgerError):
        click.echo(format_error(f"{prefix}: {exc.message}", code=exc.code or "ERROR", json_mode=json_mode))
    else:
        logger.exception("%s", prefix)
        click.echo(format_error(f"{prefix}: {exc}", json_mode=json_mode))
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="CLUBLEDGER_CONFIG",
    help="Config file (default ~/.clubledger/config.yaml).",
)
@click.option(
    "--db",
    "db_path",
    default=None,
    envvar="CLUBLEDGER_DB_PATH",
    help="SQLite database path (default ~/.clubledger/ledger.db).",
)
@click.version_option(package_name="clubledger")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], db_path: Optional[str]) -> None:
    """clubledger: billing ledger for club bay bookings."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["db_path"] = db_path


# ---------------------------------------------------------------------------
# fees
# ---------------------------------------------------------------------------


@cli.group()
def fees() -> None:
    """Compute and persist booking fees."""


@fees.command("preview")
@click.option("--host", "host_email", required=True, help="Booking owner's email.")
@click.option("--date", "session_date", required=True, help="Session date (YYYY-MM-DD).")
@click.option("--duration", type=int, required=True, help="Session length in minutes.")
@click.option("--players", "declared", type=int, default=None, help="Declared player count.")
@click.option("--member", "members", multiple=True, help="Member email (repeatable).")
@click.option("--guest", "guests", multiple=True, help="Guest name (repeatable).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def fees_preview(
    ctx: click.Context,
    host_email: str,
    session_date: str,
    duration: int,
    declared: Optional[int],
    members: tuple[str, ...],
    guests: tuple[str, ...],
    json_mode: bool,
) -> None:
    """Preview fees for a booking that has not been saved."""
    try:
        svc = _build_services(ctx)
        host = normalize_email(host_email)
        owner = svc.directory.by_email(host)
        participants = [
            ParticipantInput(
                ParticipantType.OWNER,
                user_id=owner.id if owner else None,
                email=host,
                display_name=owner.display_name if owner else host,
            )
        ]
        for email in members:
            member = svc.directory.by_email(email)
            participants.append(
                ParticipantInput(
                    ParticipantType.MEMBER,
                    user_id=member.id if member else None,
                    email=normalize_email(email),
                    display_name=member.display_name if member else email,
                )
            )
        participants.extend(
            ParticipantInput(ParticipantType.GUEST, display_name=name) for name in guests
        )
        breakdown = svc.fees.compute(
            FeeRequest(
                session_date=session_date,
                session_duration=duration,
                host_email=host,
                participants=participants,
                declared_player_count=declared or len(participants),
            )
        )
        click.echo(format_fee_breakdown(breakdown.to_dict(), json_mode=json_mode))
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, "Failed to preview fees", json_mode)


@fees.command("recalc")
@click.argument("session_id", type=int)
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def fees_recalc(ctx: click.Context, session_id: int, json_mode: bool) -> None:
    """Recalculate and store the fees of a saved session."""
    try:
        svc = _build_services(ctx)
        breakdown = svc.fees.recalculate_session_fees(session_id, source="cli")
        click.echo(format_fee_breakdown(breakdown.to_dict(), json_mode=json_mode))
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, f"Failed to recalculate session {session_id}", json_mode)


# ---------------------------------------------------------------------------
# payments
# ---------------------------------------------------------------------------


@cli.group()
def payments() -> None:
    """Inspect and sync payment intents."""


@payments.command("status")
@click.argument("intent_id")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def payments_status(ctx: click.Context, intent_id: str, json_mode: bool) -> None:
    """Show a payment intent, its fee snapshot, and its audit trail."""
    try:
        svc = _build_services(ctx)
        intent = svc.db.get_payment_intent(intent_id)
        if intent is None:
            click.echo(format_error(f"Payment intent {intent_id} not found", code="NOT_FOUND", json_mode=json_mode))
            sys.exit(1)
        click.echo(
            format_payment_status(
                intent,
                svc.db.get_fee_snapshot(intent_id),
                svc.db.list_audit(intent_id),
                json_mode=json_mode,
            )
        )
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, "Failed to read payment status", json_mode)


@payments.command("sync")
@click.argument("intent_id")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def payments_sync(ctx: click.Context, intent_id: str, json_mode: bool) -> None:
    """Fetch an intent from Stripe and apply its status locally."""
    try:
        svc = _build_services(ctx)
        processor = _make_processor(ctx, svc.settings)
        remote = processor.retrieve_payment_intent(intent_id)
        result = svc.ledger.sync_from_processor(intent_id, remote.status, staff_email="cli")
        data: dict[str, Any] = {"payment_intent_id": intent_id, "status": remote.status, **result.to_dict()}
        click.echo(format_response("success", data=data, json_mode=json_mode))
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, f"Failed to sync {intent_id}", json_mode)


# ---------------------------------------------------------------------------
# passes
# ---------------------------------------------------------------------------


@cli.group()
def passes() -> None:
    """Guest-pass balances and holds."""


@passes.command("available")
@click.argument("email")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def passes_available(ctx: click.Context, email: str, json_mode: bool) -> None:
    """Show a member's guest-pass balance for this month."""
    try:
        svc = _build_services(ctx)
        balance = svc.allocator.balance(email)
        click.echo(format_guest_passes(balance.to_dict(), json_mode=json_mode))
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, "Failed to read guest passes", json_mode)


@passes.command("cleanup")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def passes_cleanup(ctx: click.Context, json_mode: bool) -> None:
    """Delete expired guest-pass holds."""
    try:
        svc = _build_services(ctx)
        removed = svc.allocator.cleanup_expired_holds()
        click.echo(format_response("success", data={"removed": removed}, json_mode=json_mode))
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, "Failed to clean up holds", json_mode)


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


@cli.group()
def reconcile() -> None:
    """Repair drift against the payment processor."""


@reconcile.command("run")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def reconcile_run(ctx: click.Context, json_mode: bool) -> None:
    """Run every reconciliation sweep once."""
    try:
        svc = _build_services(ctx)
        results = _make_scheduler(ctx, svc).run_all()
        click.echo(format_sweep_results(results, json_mode=json_mode))
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, "Reconciliation failed", json_mode)


@reconcile.command("serve")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def reconcile_serve(ctx: click.Context, json_mode: bool) -> None:
    """Run the reconciliation sweeps until interrupted."""
    try:
        configure_logging()
        svc = _build_services(ctx)
        scheduler = _make_scheduler(ctx, svc)
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, "Failed to start reconciliation", json_mode)
        return

    scheduler.start()
    click.echo(
        format_response(
            "success",
            data={
                "scheduler": "running",
                "interval_seconds": svc.settings.reconcile_interval_seconds,
                "initial_delay_seconds": svc.settings.reconcile_initial_delay_seconds,
            },
            json_mode=json_mode,
        )
    )
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()


# ---------------------------------------------------------------------------
# health
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def health(ctx: click.Context, json_mode: bool) -> None:
    """Show when each scheduler job last ran and whether it is failing."""
    try:
        svc = _build_services(ctx)
        click.echo(format_health(svc.health.summary(), json_mode=json_mode))
    except click.ClickException:
        raise
    except Exception as exc:
        _fail(exc, "Failed to read scheduler health", json_mode)


def main() -> None:
    """CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
