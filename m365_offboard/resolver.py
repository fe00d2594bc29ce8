"""Resolve human-supplied identities to directory users."""
from __future__ import annotations

import logging

from .m365_client import M365Client, M365GraphError
from .models import PrincipalRef


USER_SELECT = "id,userPrincipalName,displayName,mail"

logger = logging.getLogger(__name__)


class PrincipalNotFoundError(LookupError):
    """Raised when no directory user matches an identity."""

    def __init__(self, identity: str) -> None:
        super().__init__(f"No directory user matches '{identity}'.")
        self.identity = identity


def resolve(graph: M365Client, identity: str) -> PrincipalRef:
    """Map a principal name, mail address, or object id to a :class:`PrincipalRef`.

    The object id / principal name lookup is tried first. If that fails the
    mail and principal name are matched by equality filter and the first hit
    wins; several hits are not reported as ambiguous.
    """

    cleaned = (identity or "").strip()
    if not cleaned:
        raise PrincipalNotFoundError(identity)

    try:
        return PrincipalRef.from_graph(graph.get_user(cleaned, select=USER_SELECT))
    except M365GraphError as exc:
        if not exc.is_not_found:
            raise
        logger.debug("Direct lookup of %s failed (%s); trying mail filter", cleaned, exc)

    match = graph.find_user(cleaned, select=USER_SELECT)
    if not match:
        raise PrincipalNotFoundError(cleaned)
    return PrincipalRef.from_graph(match)


__all__ = ["PrincipalNotFoundError", "resolve"]
