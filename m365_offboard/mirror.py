"""Copy one user's static memberships and mailbox delegations onto another."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from .exchange_client import ExchangeClient, is_self_grant
from .executor import ActionOutcome, isolate
from .m365_client import M365Client
from .models import DelegationGrant, DelegationRight, PlanArea, PlanItem, PrincipalRef
from .resolver import resolve
from .snapshot import CaptureOptions, SnapshotCollector

logger = logging.getLogger(__name__)


@dataclass
class MirrorResult:
    source: PrincipalRef
    target: PrincipalRef
    apply: bool
    plan: List[PlanItem] = field(default_factory=list)
    outcomes: List[ActionOutcome] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def held_delegations(
    exchange: ExchangeClient, principal: PrincipalRef, skipped: Optional[List[str]] = None
) -> Tuple[DelegationGrant, ...]:
    """Delegations ``principal`` holds on other people's mailboxes.

    Each right is enumerated separately; a failed enumeration is logged,
    noted in ``skipped`` and contributes no grants.
    """

    grants: Set[DelegationGrant] = set()
    who = principal.lookup

    def full_access() -> None:
        for mailbox in exchange.list_mailboxes():
            address = str(mailbox.get("PrimarySmtpAddress") or mailbox.get("Identity") or "")
            if not address or address.lower() == who.lower():
                continue
            try:
                permissions = exchange.get_mailbox_permissions(address, user=who)
            except Exception as exc:
                logger.warning("Skipping permission check on %s: %s", address, exc)
                continue
            for entry in permissions:
                rights = entry.get("AccessRights") or []
                if isinstance(rights, str):
                    rights = [rights]
                if entry.get("IsInherited") or entry.get("Deny") or "FullAccess" not in rights:
                    continue
                grants.add(DelegationGrant(address, DelegationRight.FULL_ACCESS, who))

    def send_as() -> None:
        for entry in exchange.get_recipient_permissions(trustee=who):
            identity = str(entry.get("Identity") or "")
            if not identity or entry.get("IsInherited") or is_self_grant(entry.get("Trustee")):
                continue
            grants.add(DelegationGrant(identity, DelegationRight.SEND_AS, who))

    def send_on_behalf() -> None:
        recipient = exchange.get_recipient(who)
        if not recipient or not recipient.get("DistinguishedName"):
            return
        for mailbox in exchange.find_send_on_behalf_mailboxes(str(recipient["DistinguishedName"])):
            address = str(mailbox.get("PrimarySmtpAddress") or mailbox.get("Identity"))
            grants.add(DelegationGrant(address, DelegationRight.SEND_ON_BEHALF, who))

    for right, enumerate_right in (
        (DelegationRight.FULL_ACCESS, full_access),
        (DelegationRight.SEND_AS, send_as),
        (DelegationRight.SEND_ON_BEHALF, send_on_behalf),
    ):
        try:
            enumerate_right()
        except Exception as exc:
            logger.warning(
                "Mirror: %s delegations unavailable for %s: %s", right.value, principal.principal_name, exc
            )
            if skipped is not None:
                skipped.append(f"{right.value} delegations of {principal.principal_name}: {exc}")

    return tuple(sorted(grants, key=lambda grant: grant.sort_key))


def mirror_access(
    graph: M365Client,
    exchange: ExchangeClient,
    source_identity: str,
    target_identity: str,
    apply: bool = False,
) -> MirrorResult:
    """Give ``target`` the static groups, DLs and delegations ``source`` has.

    Anything the target already has is left alone. Dynamic groups are never
    touched. Without ``apply`` only the plan is produced.
    """

    source = resolve(graph, source_identity)
    target = resolve(graph, target_identity)
    result = MirrorResult(source=source, target=target, apply=apply)
    logger.info(
        "Mirroring %s onto %s (%s)",
        source.principal_name,
        target.principal_name,
        "apply" if apply else "preview",
    )

    collector = SnapshotCollector(graph, exchange)
    source_snapshot = collector.capture(source, CaptureOptions())
    target_snapshot = collector.capture(target, CaptureOptions())

    actions: List[Tuple[PlanItem, Callable[[], object]]] = []

    existing_lists = {dl.identity.lower() for dl in target_snapshot.distribution_lists}
    for dl in source_snapshot.static_distribution_lists:
        if dl.identity.lower() in existing_lists:
            continue
        actions.append(
            (
                PlanItem(
                    PlanArea.DISTRIBUTION_LISTS,
                    f"Add {target.principal_name} to distribution list {dl.display_name}",
                ),
                lambda dl=dl: exchange.add_distribution_group_member(dl.identity, target.lookup),
            )
        )

    existing_groups = {group.group_id for group in target_snapshot.group_memberships}
    for group in source_snapshot.static_groups:
        if group.group_id in existing_groups:
            continue
        actions.append(
            (
                PlanItem(PlanArea.GROUPS, f"Add {target.principal_name} to group {group.display_name}"),
                lambda group=group: graph.add_user_to_group(target.directory_id, group.group_id),
            )
        )

    granters: Dict[DelegationRight, Callable[[str, str], None]] = {
        DelegationRight.FULL_ACCESS: exchange.add_full_access,
        DelegationRight.SEND_AS: exchange.add_send_as,
        DelegationRight.SEND_ON_BEHALF: exchange.add_send_on_behalf,
    }
    existing_grants = {
        (grant.mailbox_address.lower(), grant.right)
        for grant in held_delegations(exchange, target, result.skipped)
    }
    for grant in held_delegations(exchange, source, result.skipped):
        if (grant.mailbox_address.lower(), grant.right) in existing_grants:
            continue
        if grant.mailbox_address.lower() == target.lookup.lower():
            continue
        actions.append(
            (
                PlanItem(
                    PlanArea.DELEGATIONS,
                    f"Grant {grant.right.value} on {grant.mailbox_address} to {target.principal_name}",
                ),
                lambda grant=grant: granters[grant.right](grant.mailbox_address, target.lookup),
            )
        )

    for item, work in actions:
        result.plan.append(item)
        logger.info("PLAN [%s] %s", item.area, item.description)
        if apply:
            result.outcomes.append(isolate(item.area, item.description, work))

    if not apply:
        logger.info("Preview mode: %s change(s) not applied", len(result.plan))
    return result


__all__ = ["MirrorResult", "held_delegations", "mirror_access"]
