"""Apply an offboarding plan, isolating failures per unit of work."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .ad_client import ADClient
from .config import SyncConfig
from .exchange_client import ExchangeClient
from .m365_client import M365Client
from .models import (
    PLAN_AREA_ORDER,
    DelegationGrant,
    DelegationRight,
    PlanArea,
    PlanItem,
    PrincipalRef,
    RunConfig,
    Snapshot,
)
from .plan import format_ad_description, format_expiry_marker, sole_owned_groups
from .resolver import PrincipalNotFoundError, resolve
from .sync import trigger_directory_sync

logger = logging.getLogger(__name__)


class PreconditionUnmetError(RuntimeError):
    """Raised inside a unit of work whose prerequisite is missing; the unit is skipped."""


class OutcomeStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ActionOutcome:
    area: str
    action: str
    status: OutcomeStatus
    detail: str = ""

    def describe(self) -> str:
        suffix = f": {self.detail}" if self.detail else ""
        return f"[{self.area}] {self.action} - {self.status.value}{suffix}"


@dataclass
class ApplyResult:
    outcomes: List[ActionOutcome] = field(default_factory=list)

    @property
    def failures(self) -> List[ActionOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is OutcomeStatus.FAILED]

    @property
    def skipped(self) -> List[ActionOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is OutcomeStatus.SKIPPED]

    @property
    def succeeded(self) -> List[ActionOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is OutcomeStatus.OK]


def isolate(area: str, action: str, work: Callable[[], Any]) -> ActionOutcome:
    """Run one unit of work and turn its result or failure into an outcome."""

    try:
        work()
    except PreconditionUnmetError as exc:
        logger.warning("SKIPPED [%s] %s: %s", area, action, exc)
        return ActionOutcome(area, action, OutcomeStatus.SKIPPED, str(exc))
    except Exception as exc:
        logger.error("FAILED [%s] %s: %s", area, action, exc)
        return ActionOutcome(area, action, OutcomeStatus.FAILED, str(exc))
    logger.info("OK [%s] %s", area, action)
    return ActionOutcome(area, action, OutcomeStatus.OK)


def _skip(area: str, action: str, reason: str) -> ActionOutcome:
    logger.warning("SKIPPED [%s] %s: %s", area, action, reason)
    return ActionOutcome(area, action, OutcomeStatus.SKIPPED, reason)


class ApplyExecutor:
    """Performs the external mutations for an apply-mode run.

    Every collection is taken from the Before snapshot rather than
    re-queried, so changes made by others between capture and apply are not
    considered.
    """

    def __init__(
        self,
        graph: M365Client,
        exchange: ExchangeClient,
        directory: Optional[ADClient] = None,
        sync: Optional[SyncConfig] = None,
        *,
        expiry_attribute: str = "CustomAttribute15",
        holding_ou: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.graph = graph
        self.exchange = exchange
        self.directory = directory
        self.sync = sync
        self.expiry_attribute = expiry_attribute
        self.holding_ou = holding_ou
        self.now = now

    def apply(self, plan: Sequence[PlanItem], before: Snapshot, config: RunConfig) -> ApplyResult:
        now = self.now or datetime.now(timezone.utc)
        logger.info("Applying %s planned change(s) for %s", len(plan), before.subject.principal_name)
        handlers: Dict[str, Callable[[Snapshot, RunConfig, datetime], List[ActionOutcome]]] = {
            PlanArea.MAILBOX: self._mailbox,
            PlanArea.DISTRIBUTION_LISTS: self._distribution_lists,
            PlanArea.GROUPS: self._groups,
            PlanArea.DELEGATIONS: self._delegations,
            PlanArea.LICENSING: self._licensing,
            PlanArea.ENTRA: self._entra,
            PlanArea.ACTIVE_DIRECTORY: self._active_directory,
        }
        result = ApplyResult()
        for area in PLAN_AREA_ORDER:
            result.outcomes.extend(handlers[area](before, config, now))
        logger.info(
            "Apply finished: %s ok, %s failed, %s skipped",
            len(result.succeeded),
            len(result.failures),
            len(result.skipped),
        )
        return result

    # ------------------------------------------------------------------ #
    # Areas                                                              #
    # ------------------------------------------------------------------ #
    def _mailbox(self, before: Snapshot, config: RunConfig, now: datetime) -> List[ActionOutcome]:
        area = PlanArea.MAILBOX
        outcomes: List[ActionOutcome] = []
        mailbox = before.mailbox

        if config.convert_to_shared and mailbox is not None:
            if not mailbox.is_shared:
                outcomes.append(
                    isolate(area, "Convert mailbox to Shared", lambda: self.exchange.convert_to_shared(mailbox.identity))
                )
            marker = format_expiry_marker(now, config.shared_mailbox_expiry_days)
            outcomes.append(
                isolate(
                    area,
                    f"Stamp {self.expiry_attribute} = '{marker}'",
                    lambda: self.exchange.set_custom_attribute(mailbox.identity, self.expiry_attribute, marker),
                )
            )

        if config.supervisor:
            rights = []
            if config.grant_full_access:
                rights.append(DelegationRight.FULL_ACCESS)
            if config.grant_send_as:
                rights.append(DelegationRight.SEND_AS)
            if mailbox is None:
                outcomes.extend(
                    _skip(area, f"Grant {right.value} to {config.supervisor}", "subject has no mailbox")
                    for right in rights
                )
                return outcomes
            supervisor = self._resolve_dependency(config.supervisor)
            for right in rights:
                outcomes.append(
                    isolate(
                        area,
                        f"Grant {right.value} to {config.supervisor}",
                        lambda right=right: self._grant(mailbox.primary_smtp_address, right, supervisor),
                    )
                )
        return outcomes

    def _grant(self, identity: str, right: DelegationRight, supervisor: Optional[PrincipalRef]) -> None:
        if supervisor is None:
            raise PreconditionUnmetError("supervisor could not be resolved")
        if right is DelegationRight.FULL_ACCESS:
            self.exchange.add_full_access(identity, supervisor.lookup)
        elif right is DelegationRight.SEND_AS:
            self.exchange.add_send_as(identity, supervisor.lookup)
        else:
            raise ValueError(f"Unsupported supervisor right {right}")

    def _distribution_lists(self, before: Snapshot, config: RunConfig, now: datetime) -> List[ActionOutcome]:
        if not config.remove_distribution_lists:
            return []
        member = before.subject.lookup
        return [
            isolate(
                PlanArea.DISTRIBUTION_LISTS,
                f"Remove from distribution list {dl.display_name}",
                lambda dl=dl: self.exchange.remove_distribution_group_member(dl.identity, member),
            )
            for dl in before.static_distribution_lists
        ]

    def _groups(self, before: Snapshot, config: RunConfig, now: datetime) -> List[ActionOutcome]:
        area = PlanArea.GROUPS
        outcomes: List[ActionOutcome] = []
        orphaned = sole_owned_groups(before)
        if config.backup_owner and orphaned:
            backup = self._resolve_dependency(config.backup_owner)
            for group in orphaned:
                outcomes.append(
                    isolate(
                        area,
                        f"Add backup owner {config.backup_owner} to {group.display_name}",
                        lambda group=group: self._add_owner(backup, group.group_id),
                    )
                )

        if config.remove_groups:
            user_id = before.subject.directory_id
            for group in before.static_groups:
                outcomes.append(
                    isolate(
                        area,
                        f"Remove from group {group.display_name}",
                        lambda group=group: self.graph.remove_user_from_group(user_id, group.group_id),
                    )
                )
        return outcomes

    def _add_owner(self, backup: Optional[PrincipalRef], group_id: str) -> None:
        if backup is None:
            raise PreconditionUnmetError("backup owner could not be resolved")
        self.graph.add_group_owner(backup.directory_id, group_id)

    def _delegations(self, before: Snapshot, config: RunConfig, now: datetime) -> List[ActionOutcome]:
        if not config.remove_delegations:
            return []
        return [
            isolate(
                PlanArea.DELEGATIONS,
                f"Revoke {grant.right.value} on {grant.mailbox_address} from {grant.grantee_principal}",
                lambda grant=grant: self._revoke(grant),
            )
            for grant in before.delegations
        ]

    def _revoke(self, grant: DelegationGrant) -> None:
        revokers: Dict[DelegationRight, Callable[[str, str], None]] = {
            DelegationRight.FULL_ACCESS: self.exchange.remove_full_access,
            DelegationRight.SEND_AS: self.exchange.remove_send_as,
            DelegationRight.SEND_ON_BEHALF: self.exchange.remove_send_on_behalf,
        }
        revokers[grant.right](grant.mailbox_address, grant.grantee_principal)

    def _licensing(self, before: Snapshot, config: RunConfig, now: datetime) -> List[ActionOutcome]:
        if not config.remove_licenses or not before.licenses:
            return []
        sku_ids = [lic.sku_id for lic in before.licenses]
        return [
            isolate(
                PlanArea.LICENSING,
                f"Remove {len(sku_ids)} license(s)",
                lambda: self.graph.remove_licenses(before.subject.directory_id, sku_ids),
            )
        ]

    def _entra(self, before: Snapshot, config: RunConfig, now: datetime) -> List[ActionOutcome]:
        if not config.block_sign_in:
            return []
        user_id = before.subject.directory_id
        return [
            isolate(PlanArea.ENTRA, "Block sign-in", lambda: self.graph.block_sign_in(user_id)),
            isolate(PlanArea.ENTRA, "Revoke sign-in sessions", lambda: self.graph.revoke_sign_in_sessions(user_id)),
        ]

    def _active_directory(self, before: Snapshot, config: RunConfig, now: datetime) -> List[ActionOutcome]:
        area = PlanArea.ACTIVE_DIRECTORY
        if not config.wants_on_premises:
            return []
        state = before.directory_state
        directory = self.directory
        if state is None or directory is None:
            return [_skip(area, "On-premises actions", "on-premises directory state was not captured")]

        outcomes: List[ActionOutcome] = []
        if config.ad_disable:
            outcomes.append(isolate(area, "Disable account", lambda: directory.disable_user(state)))
        if config.ad_update_description:
            description = format_ad_description(now, config.ticket)
            outcomes.append(
                isolate(area, f"Set description '{description}'", lambda: directory.set_description(state, description))
            )
        if config.ad_move:
            holding_ou = self.holding_ou
            if holding_ou:
                outcomes.append(isolate(area, f"Move to {holding_ou}", lambda: directory.move_user(state, holding_ou)))
            else:
                outcomes.append(_skip(area, "Move to holding OU", "no holding OU configured"))

        changed = any(outcome.status is OutcomeStatus.OK for outcome in outcomes)
        if changed and self.sync is not None and self.sync.command:
            outcomes.append(isolate(area, "Start directory sync", lambda: trigger_directory_sync(self.sync)))
        return outcomes

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #
    def _resolve_dependency(self, identity: str) -> Optional[PrincipalRef]:
        try:
            return resolve(self.graph, identity)
        except PrincipalNotFoundError as exc:
            logger.warning("Unable to resolve %s: %s", identity, exc)
        except Exception as exc:
            logger.error("Lookup of %s failed: %s", identity, exc)
        return None


__all__ = [
    "ActionOutcome",
    "ApplyExecutor",
    "ApplyResult",
    "OutcomeStatus",
    "PreconditionUnmetError",
    "isolate",
]
