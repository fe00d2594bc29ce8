"""Command line interface for the offboarding toolkit."""
from __future__ import annotations

import contextlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, NoReturn, Optional

import typer

from .calendar_cleanup import DEFAULT_QUERY_WINDOW_DAYS, cancel_future_meetings
from .config import AppConfig, ConfigurationError, load_config
from .exchange_client import ExchangeClientError
from .executor import OutcomeStatus
from .m365_client import M365ClientError
from .mirror import mirror_access
from .models import RunConfig
from .resolver import PrincipalNotFoundError
from .storage import TRANSCRIPT_FILE, create_output_folder
from .workflow import BackendConnectionError, connect_backends, run_offboarding

app = typer.Typer(help="Offboard, mirror, and clean up Microsoft 365 users.")

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

logger = logging.getLogger("m365_offboard")

# Errors that end a run; everything else is isolated per action and reported.
FATAL_ERRORS = (PrincipalNotFoundError, BackendConnectionError, M365ClientError, ExchangeClientError)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(level)


@contextlib.contextmanager
def _transcript(path: Path) -> Iterator[None]:
    """Mirror every log record of the run into ``path``."""

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    try:
        yield
    finally:
        logger.removeHandler(handler)
        handler.close()


def _abort(exc: Exception) -> NoReturn:
    logger.error("Aborting: %s", exc)
    typer.echo(f"Error: {exc}")
    raise typer.Exit(code=1)


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


@app.command("offboard")
def offboard(
    subject: str = typer.Argument(..., help="UPN, mail address, or object id of the departing user."),
    ticket: str = typer.Option(..., "--ticket", help="Ticket reference recorded in the artifacts."),
    convert_to_shared: bool = typer.Option(False, "--convert-to-shared", help="Convert the mailbox to Shared."),
    expiry_days: Optional[int] = typer.Option(
        None, "--expiry-days", min=0, help="Days until the shared mailbox expires (default from settings)."
    ),
    supervisor: Optional[str] = typer.Option(None, "--supervisor", help="Principal receiving mailbox access."),
    full_access: bool = typer.Option(True, "--full-access/--no-full-access", help="Grant the supervisor FullAccess."),
    send_as: bool = typer.Option(True, "--send-as/--no-send-as", help="Grant the supervisor SendAs."),
    remove_dls: bool = typer.Option(False, "--remove-dls", help="Remove static distribution list memberships."),
    remove_groups: bool = typer.Option(False, "--remove-groups", help="Remove static group memberships."),
    remove_delegations: bool = typer.Option(False, "--remove-delegations", help="Revoke mailbox delegations."),
    remove_licenses: bool = typer.Option(False, "--remove-licenses", help="Remove all assigned licenses."),
    block_sign_in: bool = typer.Option(False, "--block-sign-in", help="Block sign-in and revoke sessions."),
    backup_owner: Optional[str] = typer.Option(
        None, "--backup-owner", help="Principal added as owner of groups the user owns alone."
    ),
    ad_disable: bool = typer.Option(False, "--ad-disable", help="Disable the on-premises AD account."),
    ad_description: bool = typer.Option(False, "--ad-description", help="Stamp the AD description."),
    ad_move: bool = typer.Option(False, "--ad-move", help="Move the AD account to the holding OU."),
    apply: bool = typer.Option(False, "--apply", help="Make changes. Without it the run is a preview."),
    tenant_hint: Optional[str] = typer.Option(None, "--tenant-hint", help="Exchange organization override."),
    output_folder: Optional[Path] = typer.Option(None, "--output-folder", help="Artifact folder base."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Snapshot, plan, and (with --apply) offboard a user."""

    _configure_logging(verbose)
    config = _load_configuration(config_path)
    settings = config.offboarding

    try:
        run = RunConfig(
            subject=subject,
            ticket=ticket,
            apply=apply,
            convert_to_shared=convert_to_shared,
            shared_mailbox_expiry_days=(
                expiry_days if expiry_days is not None else settings.shared_mailbox_expiry_days
            ),
            supervisor=supervisor,
            grant_full_access=full_access,
            grant_send_as=send_as,
            remove_distribution_lists=remove_dls,
            remove_groups=remove_groups,
            remove_delegations=remove_delegations,
            remove_licenses=remove_licenses,
            block_sign_in=block_sign_in,
            backup_owner=backup_owner,
            ad_disable=ad_disable,
            ad_update_description=ad_description,
            ad_move=ad_move,
            tenant_hint=tenant_hint,
            output_folder=output_folder,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc))

    folder = create_output_folder(
        run.output_folder or settings.output_base, run.subject, datetime.now(timezone.utc)
    )
    with _transcript(folder / TRANSCRIPT_FILE):
        try:
            with connect_backends(config, run.tenant_hint, want_directory=run.wants_on_premises) as backends:
                result = run_offboarding(run, backends, folder, settings=settings, sync=config.sync)
        except FATAL_ERRORS as exc:
            _abort(exc)

    typer.echo(result.report)
    typer.echo(f"Artifacts written to {folder}")


@app.command("mirror")
def mirror(
    source: str = typer.Argument(..., help="User whose access is copied."),
    target: str = typer.Argument(..., help="User receiving the access."),
    apply: bool = typer.Option(False, "--apply", help="Make changes. Without it the run is a preview."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Mirror group memberships and mailbox delegations from SOURCE onto TARGET."""

    _configure_logging(verbose)
    config = _load_configuration(config_path)

    try:
        with connect_backends(config) as backends:
            result = mirror_access(backends.graph, backends.exchange, source, target, apply=apply)
    except FATAL_ERRORS as exc:
        _abort(exc)

    mode = "APPLY" if apply else "PREVIEW"
    typer.echo(f"{mode}: {result.source.principal_name} -> {result.target.principal_name}")
    if not result.plan:
        typer.echo("Nothing to mirror.")
    for item in result.plan:
        typer.echo(f"- [{item.area}] {item.description}")
    for outcome in result.outcomes:
        if outcome.status is not OutcomeStatus.OK:
            typer.echo(f"  ! {outcome.describe()}")
    for note in result.skipped:
        typer.echo(f"  ! not captured: {note}")


@app.command("cancel-meetings")
def cancel_meetings(
    subject: str = typer.Argument(..., help="User whose organised meetings are cancelled."),
    query_window_days: int = typer.Option(
        DEFAULT_QUERY_WINDOW_DAYS, "--query-window-days", help="How far ahead to look for meetings."
    ),
    preview_only: bool = typer.Option(False, "--preview-only", help="List meetings without cancelling."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Cancel future meetings organised by SUBJECT."""

    _configure_logging(verbose)
    config = _load_configuration(config_path)

    try:
        with connect_backends(config) as backends:
            result = cancel_future_meetings(
                backends.graph,
                backends.exchange,
                subject,
                query_window_days=query_window_days,
                preview_only=preview_only,
            )
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    except FATAL_ERRORS as exc:
        _abort(exc)

    verb = "would be cancelled" if preview_only else "cancelled"
    typer.echo(f"{len(result.events)} meeting(s) {verb} for {result.subject.principal_name}.")


def run():
    app()


if __name__ == "__main__":
    run()
