"""Cancel future meetings organised by a departing user."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .exchange_client import ExchangeClient
from .m365_client import M365Client
from .models import PrincipalRef
from .resolver import resolve


DEFAULT_QUERY_WINDOW_DAYS = 365
MAX_QUERY_WINDOW_DAYS = 1825

logger = logging.getLogger(__name__)


@dataclass
class CalendarCleanupResult:
    subject: PrincipalRef
    query_window_days: int
    preview_only: bool
    events: List[Dict[str, Any]] = field(default_factory=list)


def cancel_future_meetings(
    graph: M365Client,
    exchange: ExchangeClient,
    identity: str,
    query_window_days: int = DEFAULT_QUERY_WINDOW_DAYS,
    preview_only: bool = False,
) -> CalendarCleanupResult:
    if not 1 <= query_window_days <= MAX_QUERY_WINDOW_DAYS:
        raise ValueError(f"Query window must be between 1 and {MAX_QUERY_WINDOW_DAYS} days.")

    subject = resolve(graph, identity)
    logger.info(
        "%s meetings organised by %s in the next %s days",
        "Previewing" if preview_only else "Cancelling",
        subject.principal_name,
        query_window_days,
    )
    events = exchange.remove_calendar_events(subject.lookup, query_window_days, preview_only=preview_only)
    for event in events:
        logger.info(
            "  %s %s",
            event.get("StartTime") or event.get("Start") or "",
            event.get("Subject") or event.get("Identity") or "(no subject)",
        )
    return CalendarCleanupResult(
        subject=subject,
        query_window_days=query_window_days,
        preview_only=preview_only,
        events=events,
    )


__all__ = ["CalendarCleanupResult", "cancel_future_meetings"]
