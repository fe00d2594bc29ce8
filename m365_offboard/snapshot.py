"""Point-in-time capture of a subject's access across Graph, Exchange and AD."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .ad_client import ADClient
from .exchange_client import ExchangeClient, flatten_identities, is_self_grant
from .m365_client import M365Client
from .models import (
    DelegationGrant,
    DelegationRight,
    DistributionListRef,
    ExternalDirectoryRef,
    GroupRef,
    LicenseRef,
    MailboxState,
    OwnedGroupRef,
    PrincipalRef,
    Snapshot,
)


T = TypeVar("T")

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _by_display_name(item: Any) -> Tuple[str, str]:
    return (item.display_name.casefold(), item.display_name)


def _access_rights(entry: Dict[str, Any]) -> List[str]:
    rights = entry.get("AccessRights") or []
    if isinstance(rights, str):
        rights = [part.strip() for part in rights.split(",")]
    return [str(right) for right in rights]


@dataclass(frozen=True)
class CaptureOptions:
    include_on_premises: bool = False
    expiry_attribute: str = "CustomAttribute15"


class SnapshotCollector:
    """Builds :class:`Snapshot` records.

    Each sub-query is isolated: a failure is logged, noted in
    ``Snapshot.skipped`` and leaves that field empty, while the remaining
    fields are still captured.
    """

    def __init__(
        self,
        graph: M365Client,
        exchange: ExchangeClient,
        directory: Optional[ADClient] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.graph = graph
        self.exchange = exchange
        self.directory = directory
        self.clock = clock

    def capture(self, subject: PrincipalRef, options: CaptureOptions) -> Snapshot:
        skipped: List[str] = []
        captured_at = self.clock()

        def isolated(label: str, query: Callable[[], T], default: T) -> T:
            try:
                return query()
            except Exception as exc:
                logger.warning("Snapshot: %s unavailable for %s: %s", label, subject.principal_name, exc)
                skipped.append(f"{label}: {exc}")
                return default

        mailbox = isolated("mailbox", lambda: self._mailbox(subject, options), None)
        groups = isolated("group memberships", lambda: self._group_memberships(subject, skipped), ())
        owned = isolated("owned groups", lambda: self._owned_groups(subject, skipped), ())
        delegations = isolated("delegations", lambda: self._delegations(subject), ())
        licenses = isolated("licenses", lambda: self._licenses(subject), ())
        distribution_lists = isolated("distribution lists", lambda: self._distribution_lists(subject), ())
        dynamic_lists = isolated("dynamic distribution lists", self._dynamic_distribution_lists, ())
        account_enabled = isolated("account state", lambda: self._account_enabled(subject), None)
        directory_state = self._directory_state(subject, options, skipped)

        snapshot = Snapshot(
            subject=subject,
            captured_at=captured_at,
            mailbox=mailbox,
            group_memberships=groups,
            owned_groups=owned,
            delegations=delegations,
            licenses=licenses,
            distribution_lists=distribution_lists,
            dynamic_distribution_lists=dynamic_lists,
            directory_state=directory_state,
            account_enabled=account_enabled,
            skipped=tuple(skipped),
        )
        logger.info(
            "Snapshot of %s: %s groups, %s owned, %s DLs, %s delegations, %s licenses, %s skipped",
            subject.principal_name,
            len(snapshot.group_memberships),
            len(snapshot.owned_groups),
            len(snapshot.distribution_lists),
            len(snapshot.delegations),
            len(snapshot.licenses),
            len(snapshot.skipped),
        )
        return snapshot

    # ------------------------------------------------------------------ #
    # Sub-queries                                                        #
    # ------------------------------------------------------------------ #
    def _mailbox(self, subject: PrincipalRef, options: CaptureOptions) -> Optional[MailboxState]:
        data = self.exchange.get_mailbox(subject.lookup)
        if not data:
            return None
        return MailboxState(
            identity=str(data.get("Identity") or subject.lookup),
            primary_smtp_address=str(data.get("PrimarySmtpAddress") or subject.lookup),
            recipient_type_details=str(data.get("RecipientTypeDetails") or ""),
            distinguished_name=data.get("DistinguishedName") or None,
            custom_attribute=data.get(options.expiry_attribute) or None,
        )

    def _group_memberships(self, subject: PrincipalRef, skipped: List[str]) -> Tuple[GroupRef, ...]:
        groups: List[GroupRef] = []
        for group_id in self.graph.get_user_groups(subject.directory_id):
            try:
                groups.append(GroupRef.from_graph(self.graph.get_group(group_id)))
            except Exception as exc:
                logger.warning("Snapshot: skipping group %s: %s", group_id, exc)
                skipped.append(f"group {group_id}: {exc}")
        return tuple(sorted(groups, key=_by_display_name))

    def _owned_groups(self, subject: PrincipalRef, skipped: List[str]) -> Tuple[OwnedGroupRef, ...]:
        owned: List[OwnedGroupRef] = []
        for group in self.graph.get_owned_groups(subject.directory_id):
            group_id = str(group.get("id") or "")
            if not group_id:
                continue
            try:
                count = self.graph.count_group_owners(group_id)
            except Exception as exc:
                logger.warning("Snapshot: skipping owned group %s: %s", group_id, exc)
                skipped.append(f"owned group {group_id}: {exc}")
                continue
            owned.append(
                OwnedGroupRef(
                    group_id=group_id,
                    display_name=str(group.get("displayName") or group_id),
                    current_owner_count=count,
                )
            )
        return tuple(sorted(owned, key=_by_display_name))

    def _delegations(self, subject: PrincipalRef) -> Tuple[DelegationGrant, ...]:
        mailbox = self.exchange.get_mailbox(subject.lookup)
        if not mailbox:
            return ()
        address = str(mailbox.get("PrimarySmtpAddress") or subject.lookup)
        grants: List[DelegationGrant] = []

        for entry in self.exchange.get_mailbox_permissions(address):
            grantee = str(entry.get("User") or "")
            if entry.get("IsInherited") or entry.get("Deny") or is_self_grant(grantee):
                continue
            if "FullAccess" in _access_rights(entry):
                grants.append(DelegationGrant(address, DelegationRight.FULL_ACCESS, grantee))

        for entry in self.exchange.get_recipient_permissions(identity=address):
            grantee = str(entry.get("Trustee") or "")
            if entry.get("IsInherited") or is_self_grant(grantee):
                continue
            if str(entry.get("AccessControlType") or "Allow") != "Allow":
                continue
            if "SendAs" in _access_rights(entry):
                grants.append(DelegationGrant(address, DelegationRight.SEND_AS, grantee))

        for grantee in flatten_identities(mailbox.get("GrantSendOnBehalfTo")):
            grants.append(DelegationGrant(address, DelegationRight.SEND_ON_BEHALF, grantee))

        return tuple(sorted(set(grants), key=lambda grant: grant.sort_key))

    def _licenses(self, subject: PrincipalRef) -> Tuple[LicenseRef, ...]:
        licenses = [
            LicenseRef(
                sku_id=str(detail.get("skuId")),
                sku_name=str(detail.get("skuPartNumber") or detail.get("skuId")),
                provisioned_service_plans=frozenset(
                    str(plan.get("servicePlanName"))
                    for plan in detail.get("servicePlans") or []
                    if plan.get("provisioningStatus") == "Success"
                ),
            )
            for detail in self.graph.get_user_license_details(subject.directory_id)
            if detail.get("skuId")
        ]
        return tuple(sorted(licenses, key=lambda lic: lic.sku_name.casefold()))

    def _distribution_lists(self, subject: PrincipalRef) -> Tuple[DistributionListRef, ...]:
        recipient = self.exchange.get_recipient(subject.lookup)
        if not recipient or not recipient.get("DistinguishedName"):
            return ()
        lists = [
            DistributionListRef(
                identity=str(entry.get("Identity") or entry.get("PrimarySmtpAddress")),
                display_name=str(entry.get("DisplayName") or entry.get("Identity")),
                mail_address=entry.get("PrimarySmtpAddress") or None,
                recipient_type=str(entry.get("RecipientTypeDetails") or "MailUniversalDistributionGroup"),
            )
            for entry in self.exchange.get_distribution_group_memberships(str(recipient["DistinguishedName"]))
        ]
        return tuple(sorted(lists, key=_by_display_name))

    def _dynamic_distribution_lists(self) -> Tuple[str, ...]:
        # Listed by name only; membership in a dynamic list is never evaluated.
        names = _names(self.exchange.list_dynamic_distribution_groups())
        return tuple(sorted(names, key=str.casefold))

    def _account_enabled(self, subject: PrincipalRef) -> Optional[bool]:
        value = self.graph.get_user(subject.directory_id, select="accountEnabled").get("accountEnabled")
        return None if value is None else bool(value)

    def _directory_state(
        self, subject: PrincipalRef, options: CaptureOptions, skipped: List[str]
    ) -> Optional[ExternalDirectoryRef]:
        if not options.include_on_premises:
            return None
        if self.directory is None:
            logger.warning("Snapshot: on-premises directory requested but not available")
            skipped.append("on-premises directory: integration not available")
            return None
        try:
            state = self.directory.find_user(subject.principal_name)
        except Exception as exc:
            logger.warning("Snapshot: on-premises lookup failed for %s: %s", subject.principal_name, exc)
            skipped.append(f"on-premises directory: {exc}")
            return None
        if state is None:
            skipped.append(f"on-premises directory: {subject.principal_name} not found")
        return state


def _names(entries: Iterable[Dict[str, Any]]) -> List[str]:
    return [str(entry.get("DisplayName") or entry.get("Name") or entry.get("Identity")) for entry in entries]


__all__ = ["CaptureOptions", "SnapshotCollector"]
