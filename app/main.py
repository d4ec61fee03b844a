"""
Calibrated Bookkeeping - command line interface.

Run with:
    python app/main.py balance <account-id>
    python app/main.py reconcile
    python app/main.py refresh-budgets
    python app/main.py issues --status open
    python app/main.py check-config

The storage backend comes from APP settings (STORAGE_BACKEND) unless
--backend is given.
"""

import asyncio
from datetime import date, datetime
from typing import Awaitable, Optional, TypeVar
from uuid import UUID

import typer

from bookkeeping.config import validate_all_settings
from bookkeeping.models.ledger import CheckStatus, IssueStatus, ensure_aware, utcnow
from bookkeeping.orchestrator import BookkeepingService, create_app_components
from bookkeeping.services.storage import NotFoundError, StorageError


T = TypeVar("T")

cli = typer.Typer(help="Reconstruct balances, reconcile calibrations and refresh budgets.")

_state: dict[str, Optional[str]] = {"backend": None}


def _service() -> BookkeepingService:
    return create_app_components(backend=_state["backend"])


def _run(service: BookkeepingService, operation: str, call: Awaitable[T]) -> T:
    """Run one service call; storage failures are audited and end the command."""
    try:
        return asyncio.run(call)
    except NotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    except StorageError as e:
        asyncio.run(service.audit_logger.log_storage_error(operation, str(e)))
        typer.echo(f"Storage error during {operation}: {e}", err=True)
        raise typer.Exit(code=2)


def _instant(value: Optional[str]) -> datetime:
    return ensure_aware(datetime.fromisoformat(value)) if value else utcnow()


@cli.callback()
def main(
    backend: Optional[str] = typer.Option(
        None, help="Storage backend: google_sheets or memory."
    ),
) -> None:
    _state["backend"] = backend


@cli.command()
def balance(
    account_id: UUID = typer.Argument(..., help="Account to reconstruct."),
    at: Optional[str] = typer.Option(None, help="ISO instant (default: now)."),
    project: bool = typer.Option(
        False, help="Project backwards from a later calibration when none precedes."
    ),
) -> None:
    """Show an account's balance and the anchor it was computed from."""
    service = _service()
    target = _instant(at)
    if project:
        report = _run(service, "project_balance", service.project_balance(account_id, target))
    else:
        report = _run(service, "explain_balance", service.explain_balance(account_id, target))

    typer.echo(f"Balance at {report.target.isoformat()}: {report.balance}")
    if report.anchor_calibration_id:
        typer.echo(
            f"  anchor: {report.anchor_balance} on {report.anchor_date.isoformat()} "
            f"({report.direction})"
        )
    else:
        typer.echo("  anchor: none (zero since the beginning of the ledger)")
    typer.echo(f"  inflows:  {report.inflow_total} ({report.inflow_count})")
    typer.echo(f"  outflows: {report.outflow_total} ({report.outflow_count})")


@cli.command()
def reconcile(
    account_ids: Optional[list[UUID]] = typer.Argument(
        None, help="Accounts to check (default: every active real account)."
    ),
    timeout: Optional[float] = typer.Option(None, help="Overall deadline in seconds."),
) -> None:
    """Check adjacent calibration pairs for drift."""
    service = _service()
    if account_ids:
        result = _run(
            service,
            "check_reconciliation_batch",
            service.check_reconciliation_batch(account_ids, timeout=timeout),
        )
    else:
        result = _run(service, "regenerate_issues", service.regenerate_issues())

    for detail in result.details:
        line = f"{detail.account_id}: {detail.status.value}"
        if detail.status == CheckStatus.CHECKED:
            line += f", {detail.pairs_checked} pairs, {detail.issues_found} issues"
        elif detail.status == CheckStatus.ERROR:
            line += f" at {detail.stage}: {detail.error}"
        typer.echo(line)

    typer.echo(
        f"{result.checked_accounts}/{result.total_accounts} checked, "
        f"{result.total_issues_found} issues, {len(result.failed_accounts)} failed"
    )
    if result.has_failures:
        raise typer.Exit(code=1)


@cli.command("refresh-budgets")
def refresh_budgets(
    today: Optional[str] = typer.Option(None, help="ISO date (default: today)."),
) -> None:
    """Expire finished plans, then recompute every budget period active on the given day."""
    service = _service()
    day = date.fromisoformat(today) if today else date.today()
    expired = _run(service, "expire_budget_plans", service.expire_budget_plans(day))
    if expired:
        typer.echo(f"{len(expired)} plans expired")
    result = _run(service, "refresh_budget_periods", service.refresh_budget_periods(day))

    for outcome in result.outcomes:
        if outcome.success:
            typer.echo(
                f"{outcome.record_id}: {outcome.actual_amount} -> "
                f"{outcome.indicator_status.value}"
            )
        else:
            typer.echo(f"{outcome.record_id}: failed at {outcome.stage}: {outcome.error}")

    typer.echo(f"{result.refreshed} refreshed, {result.failed} failed")
    if result.failed:
        raise typer.Exit(code=1)


@cli.command()
def issues(
    status: Optional[IssueStatus] = typer.Option(None, help="Filter by status."),
    account: Optional[UUID] = typer.Option(None, help="Filter by account."),
    resolve: Optional[UUID] = typer.Option(None, help="Mark this issue resolved."),
    ignore: Optional[UUID] = typer.Option(None, help="Mark this issue ignored."),
) -> None:
    """List reconciliation issues, or close one."""
    service = _service()
    if resolve:
        issue = _run(service, "resolve_issue", service.resolve_issue(resolve))
        typer.echo(f"{issue.id}: {issue.status.value}")
        return
    if ignore:
        issue = _run(service, "ignore_issue", service.ignore_issue(ignore))
        typer.echo(f"{issue.id}: {issue.status.value}")
        return

    found = _run(service, "list_issues", service.list_issues(status, account))
    if not found:
        typer.echo("No issues.")
        return
    for issue in found:
        typer.echo(
            f"{issue.id} [{issue.status.value}] account {issue.account_id} "
            f"{issue.period_start.date().isoformat()}..{issue.period_end.date().isoformat()} "
            f"expected {issue.expected_delta}, actual {issue.actual_delta}, diff {issue.diff}"
        )


@cli.command("check-config")
def check_config() -> None:
    """Report which settings groups load from the environment."""
    results = validate_all_settings()
    failed = False
    for name in ("ledger", "budget", "currency", "google_sheets", "app"):
        if results[name]:
            typer.echo(f"{name}: ok")
        else:
            failed = True
            typer.echo(f"{name}: {results[f'{name}_error']}")
    if failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
