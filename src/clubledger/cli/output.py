"""Output formatting for the clubledger CLI.

Every formatter takes ``json_mode``.  With it set the result is the
``{status, data, error}`` JSON envelope that scripts parse; without it the
result is Rich markup rendered for the front-desk terminal.
"""

from __future__ import annotations

import json
from datetime import datetime
from io import StringIO
from typing import Any, Dict, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------


def format_cents(cents: Optional[int]) -> str:
    """Render integer cents as ``$25.00``."""
    if cents is None:
        return "N/A"
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:.2f}"


def format_timestamp(ts: Optional[float]) -> str:
    if ts is None:
        return "never"
    try:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")
    except (OSError, ValueError, TypeError):
        return str(ts)


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=True, width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


def _envelope(status: str, data: Any = None, error: Optional[Dict[str, Any]] = None) -> str:
    envelope: Dict[str, Any] = {"status": status}
    if data is not None:
        envelope["data"] = data
    if error is not None:
        envelope["error"] = error
    return json.dumps(envelope, indent=2, sort_keys=False, default=str)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: Optional[Dict[str, Any]] = None,
    error: Optional[Dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Render *data* or *error* for the chosen output mode."""
    if json_mode:
        return _envelope(status, data, error)

    if status == "error" and error:
        code = error.get("code", "UNKNOWN")
        msg = error.get("message", "An unknown error occurred.")
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{code}]: ", style="red")
        t.append(msg)
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        lines = [f"[bold]{k}:[/bold] {v}" for k, v in data.items()]
        return _render(Panel("\n".join(lines), border_style="green"))

    return f"Status: {status}"


def format_error(
    message: str,
    code: str = "ERROR",
    *,
    json_mode: bool = False,
) -> str:
    """Render a single error with its machine-readable *code*."""
    return format_response(
        "error",
        error={"code": code, "message": message},
        json_mode=json_mode,
    )


# ---------------------------------------------------------------------------
# Fee breakdown
# ---------------------------------------------------------------------------


def format_fee_breakdown(
    breakdown: Dict[str, Any],
    *,
    json_mode: bool = False,
) -> str:
    """Format a fee breakdown.

    Expects the dict from ``FeeBreakdown.to_dict()``.
    """
    if json_mode:
        return _envelope("success", breakdown)

    totals = breakdown.get("totals", {})
    meta = breakdown.get("metadata", {})

    table = Table(title="Fee Breakdown", border_style="blue")
    table.add_column("Participant", style="bold")
    table.add_column("Type")
    table.add_column("Tier")
    table.add_column("Minutes", justify="right")
    table.add_column("Billable", justify="right")
    table.add_column("Overage", justify="right")
    table.add_column("Guest fee", justify="right")
    table.add_column("Total", justify="right", style="bold")

    for item in breakdown.get("participants", []):
        guest_cell = format_cents(item.get("guest_cents"))
        if item.get("guest_pass_used"):
            guest_cell = "[green]pass[/green]"
        table.add_row(
            item.get("display_name") or str(item.get("participant_id") or "-"),
            item.get("participant_type", ""),
            item.get("tier_name") or "-",
            str(item.get("minutes_allocated", 0)),
            str(item.get("billable_minutes", 0)),
            format_cents(item.get("overage_cents")),
            guest_cell,
            format_cents(item.get("total_cents")),
        )

    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column("Key", style="bold cyan", no_wrap=True)
    summary.add_column("Value")
    summary.add_row("Overage", format_cents(totals.get("overage_cents")))
    summary.add_row("Guest fees", format_cents(totals.get("guest_cents")))
    summary.add_row("Total", f"[bold]{format_cents(totals.get('total_cents'))}[/bold]")
    summary.add_row(
        "Guest passes",
        f"{totals.get('guest_passes_used', 0)} used, "
        f"{totals.get('guest_passes_available', 0)} available",
    )
    summary.add_row(
        "Players",
        f"{meta.get('actual_player_count', 0)} of {meta.get('effective_player_count', 0)}",
    )

    return _render(table) + "\n" + _render(Panel(summary, title="Totals", border_style="green"))


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def format_payment_status(
    intent: Dict[str, Any],
    snapshot: Optional[Dict[str, Any]],
    audit: list[Dict[str, Any]],
    *,
    json_mode: bool = False,
) -> str:
    """Format a payment intent with its fee snapshot and audit trail."""
    if json_mode:
        return _envelope(
            "success",
            {"intent": intent, "snapshot": snapshot, "audit": audit},
        )

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Intent", intent.get("stripe_payment_intent_id", ""))
    table.add_row("Status", intent.get("status", "unknown"))
    table.add_row("Amount", format_cents(intent.get("amount_cents")))
    table.add_row("Booking", str(intent.get("booking_id") or "-"))
    if intent.get("failure_reason"):
        table.add_row("Reason", intent["failure_reason"])
    if snapshot is not None:
        color = {"paid": "green", "pending": "yellow", "refunded": "magenta",
                 "cancelled": "red"}.get(snapshot.get("status", ""), "white")
        table.add_row("Snapshot", f"[{color}]{snapshot.get('status')}[/{color}]")
        table.add_row("Snapshot total", format_cents(snapshot.get("total_cents")))
    else:
        table.add_row("Snapshot", "none")
    out = _render(Panel(table, title="Payment", border_style="blue"))

    if audit:
        log = Table(title="Audit", border_style="blue")
        log.add_column("When")
        log.add_column("Participant", justify="right")
        log.add_column("Action")
        log.add_column("Change")
        log.add_column("Amount", justify="right")
        log.add_column("By")
        for row in audit:
            log.add_row(
                format_timestamp(row.get("created_at")),
                str(row.get("participant_id") or "-"),
                row.get("action", ""),
                f"{row.get('previous_status')} → {row.get('new_status')}",
                format_cents(row.get("amount_affected")),
                row.get("staff_name") or row.get("staff_email") or "",
            )
        out += "\n" + _render(log)
    return out


# ---------------------------------------------------------------------------
# Guest passes
# ---------------------------------------------------------------------------


def format_guest_passes(
    balance: Dict[str, Any],
    *,
    json_mode: bool = False,
) -> str:
    """Format a guest-pass balance from ``GuestPassBalance.to_dict()``."""
    if json_mode:
        return _envelope("success", balance)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Member", balance.get("member_email", ""))
    table.add_row("Monthly allowance", str(balance.get("allowance", 0)))
    table.add_row("Used", str(balance.get("used", 0)))
    table.add_row("Held", str(balance.get("held", 0)))
    available = balance.get("available", 0)
    color = "green" if available else "red"
    table.add_row("Available", f"[{color}]{available}[/{color}]")
    return _render(Panel(table, title="Guest Passes", border_style="blue"))


# ---------------------------------------------------------------------------
# Reconciliation and health
# ---------------------------------------------------------------------------


def format_sweep_results(
    results: Dict[str, Dict[str, Any]],
    *,
    json_mode: bool = False,
) -> str:
    """Format the per-sweep summaries from ``ReconciliationScheduler.run_all()``."""
    if json_mode:
        return _envelope("success", results)

    table = Table(title="Reconciliation", border_style="blue")
    table.add_column("Sweep", style="bold")
    table.add_column("Result")
    for job, summary in results.items():
        if "error" in summary:
            table.add_row(job, f"[red]failed: {summary['error']}[/red]")
            continue
        cells = ", ".join(f"{k}={v}" for k, v in summary.items())
        if summary.get("errors"):
            cells = f"[yellow]{cells}[/yellow]"
        table.add_row(job, cells)
    return _render(table)


def format_health(
    summary: Dict[str, Dict[str, Any]],
    *,
    json_mode: bool = False,
) -> str:
    """Format ``SchedulerHealthTracker.summary()``."""
    if json_mode:
        return _envelope("success", {"jobs": summary, "count": len(summary)})

    if not summary:
        return _render(Panel("No scheduler runs recorded yet.", title="Health", border_style="yellow"))

    table = Table(title="Scheduler Health", border_style="blue")
    table.add_column("Job", style="bold")
    table.add_column("Healthy")
    table.add_column("Last run")
    table.add_column("Last success")
    table.add_column("Failures", justify="right")
    table.add_column("Last error")
    for job, info in summary.items():
        healthy = "[green]yes[/green]" if info.get("healthy") else "[red]no[/red]"
        table.add_row(
            job,
            healthy,
            format_timestamp(info.get("last_run_at")),
            format_timestamp(info.get("last_success_at")),
            str(info.get("failures", 0)),
            info.get("last_error") or "",
        )
    return _render(table)
