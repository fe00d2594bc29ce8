"""Offboarding run: resolve, snapshot, plan, apply, snapshot, report."""
from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple

from .ad_client import ADClient, DirectoryUnavailableError, ad_client
from .config import AppConfig, OffboardingConfig, SyncConfig
from .exchange_client import ExchangeClient, ExchangeClientError
from .executor import ApplyExecutor, ApplyResult
from .m365_client import M365Client, M365ClientError
from .models import PlanItem, PrincipalRef, RunConfig, Snapshot
from .plan import build_plan
from .report import render_report
from .resolver import resolve
from .snapshot import CaptureOptions, SnapshotCollector
from .storage import (
    TRANSCRIPT_FILE,
    WORK_NOTES_FILE,
    write_plan,
    write_snapshot,
    write_work_notes,
)

logger = logging.getLogger(__name__)


class BackendConnectionError(RuntimeError):
    """Raised when a required backend session cannot be established."""


@dataclass(frozen=True)
class Backends:
    graph: M365Client
    exchange: ExchangeClient
    directory: Optional[ADClient] = None


@dataclass(frozen=True)
class OffboardingResult:
    subject: PrincipalRef
    before: Snapshot
    plan: Tuple[PlanItem, ...]
    after: Snapshot
    report: str
    output_folder: Path
    apply_result: Optional[ApplyResult] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@contextlib.contextmanager
def connect_backends(
    config: AppConfig, tenant_hint: Optional[str] = None, want_directory: bool = False
) -> Iterator[Backends]:
    """Open the Graph and Exchange sessions (and AD when wanted) for one run.

    Graph and Exchange failures are fatal. An unreachable directory is
    logged and yields ``directory=None``.
    """

    exchange_config = config.exchange
    if tenant_hint:
        exchange_config = replace(exchange_config, organization=tenant_hint)

    with contextlib.ExitStack() as stack:
        try:
            graph = stack.enter_context(M365Client(config.m365))
            graph.connect()
            exchange = stack.enter_context(ExchangeClient(config.m365, exchange_config))
            exchange.connect()
        except (M365ClientError, ExchangeClientError, OSError) as exc:
            raise BackendConnectionError(f"Unable to connect to Microsoft 365: {exc}") from exc

        directory: Optional[ADClient] = None
        if want_directory:
            if config.ldap is None:
                logger.warning("On-premises actions requested but no LDAP server is configured")
            else:
                try:
                    directory = stack.enter_context(ad_client(config.ldap))
                except DirectoryUnavailableError as exc:
                    logger.warning("On-premises directory unavailable: %s", exc)
        yield Backends(graph=graph, exchange=exchange, directory=directory)


def run_offboarding(
    run: RunConfig,
    backends: Backends,
    output_folder: Path,
    settings: Optional[OffboardingConfig] = None,
    sync: Optional[SyncConfig] = None,
    clock: Callable[[], datetime] = _utc_now,
) -> OffboardingResult:
    """Execute one offboarding run and write its artifacts to ``output_folder``.

    Raises :class:`~m365_offboard.resolver.PrincipalNotFoundError` when the
    subject cannot be resolved; every later failure is isolated and reported.
    """

    settings = settings or OffboardingConfig()
    subject = resolve(backends.graph, run.subject)
    logger.info(
        "Offboarding %s (%s) for ticket %s in %s mode",
        subject.display_name,
        subject.principal_name,
        run.ticket,
        run.mode_label,
    )

    collector = SnapshotCollector(backends.graph, backends.exchange, backends.directory, clock=clock)
    options = CaptureOptions(
        include_on_premises=run.wants_on_premises,
        expiry_attribute=settings.expiry_attribute,
    )
    before = collector.capture(subject, options)
    artifacts = [path.name for path in write_snapshot(output_folder, "Before", before)]

    now = clock()
    plan = build_plan(
        before,
        run,
        now=now,
        expiry_attribute=settings.expiry_attribute,
        holding_ou=settings.holding_ou,
        sync_configured=bool(sync and sync.command),
    )
    artifacts.append(write_plan(output_folder, plan, run).name)
    for item in plan:
        logger.info("PLAN [%s] %s", item.area, item.description)

    apply_result: Optional[ApplyResult] = None
    if run.apply:
        executor = ApplyExecutor(
            backends.graph,
            backends.exchange,
            backends.directory,
            sync,
            expiry_attribute=settings.expiry_attribute,
            holding_ou=settings.holding_ou,
            now=now,
        )
        apply_result = executor.apply(plan, before, run)
    else:
        logger.info("Preview mode: no changes applied")

    after = collector.capture(subject, options)
    artifacts.extend(path.name for path in write_snapshot(output_folder, "After", after))

    artifacts.extend([WORK_NOTES_FILE, TRANSCRIPT_FILE])
    report = render_report(
        before,
        after,
        run,
        artifacts=[str(output_folder)] + artifacts,
        result=apply_result,
    )
    write_work_notes(output_folder, report)

    return OffboardingResult(
        subject=subject,
        before=before,
        plan=plan,
        after=after,
        report=report,
        output_folder=output_folder,
        apply_result=apply_result,
    )


__all__ = [
    "BackendConnectionError",
    "Backends",
    "OffboardingResult",
    "connect_backends",
    "run_offboarding",
]
