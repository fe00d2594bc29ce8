"""Data models for principals, access snapshots, and offboarding plans."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


SHARED_MAILBOX_TYPE = "SharedMailbox"


@dataclass(frozen=True)
class PrincipalRef:
    """A resolved directory user."""

    directory_id: str
    principal_name: str
    display_name: str
    mail_address: Optional[str] = None

    @property
    def lookup(self) -> str:
        """Identifier to hand to Exchange cmdlets."""
        return self.mail_address or self.principal_name

    @classmethod
    def from_graph(cls, data: Dict[str, Any]) -> "PrincipalRef":
        return cls(
            directory_id=str(data["id"]),
            principal_name=str(data.get("userPrincipalName") or ""),
            display_name=str(data.get("displayName") or ""),
            mail_address=data.get("mail") or None,
        )


@dataclass(frozen=True)
class MailboxState:
    identity: str
    primary_smtp_address: str
    recipient_type_details: str
    distinguished_name: Optional[str] = None
    custom_attribute: Optional[str] = None

    @property
    def is_shared(self) -> bool:
        return self.recipient_type_details == SHARED_MAILBOX_TYPE


@dataclass(frozen=True)
class GroupRef:
    """A directory group the subject is a direct member of."""

    group_id: str
    display_name: str
    mail_address: Optional[str] = None
    is_mail_enabled: bool = False
    is_security_group: bool = False
    is_unified_group: bool = False
    is_dynamic_membership: bool = False
    on_premises_synced: bool = False

    @property
    def is_distribution_list(self) -> bool:
        # Mail-enabled non-unified groups can only be edited through Exchange.
        return self.is_mail_enabled and not self.is_unified_group

    @property
    def is_graph_managed(self) -> bool:
        return not (self.is_dynamic_membership or self.is_distribution_list or self.on_premises_synced)

    @classmethod
    def from_graph(cls, data: Dict[str, Any]) -> "GroupRef":
        group_types = data.get("groupTypes") or []
        return cls(
            group_id=str(data["id"]),
            display_name=str(data.get("displayName") or data["id"]),
            mail_address=data.get("mail") or None,
            is_mail_enabled=bool(data.get("mailEnabled")),
            is_security_group=bool(data.get("securityEnabled")),
            is_unified_group="Unified" in group_types,
            is_dynamic_membership=bool(data.get("membershipRule")) or "DynamicMembership" in group_types,
            on_premises_synced=bool(data.get("onPremisesSyncEnabled")),
        )


@dataclass(frozen=True)
class DistributionListRef:
    identity: str
    display_name: str
    mail_address: Optional[str] = None
    recipient_type: str = "MailUniversalDistributionGroup"
    is_dynamic_membership: bool = False


@dataclass(frozen=True)
class OwnedGroupRef:
    group_id: str
    display_name: str
    current_owner_count: int


class DelegationRight(str, Enum):
    """Mailbox delegation kinds; the value is the label Exchange uses."""

    FULL_ACCESS = "FullAccess"
    SEND_AS = "SendAs"
    SEND_ON_BEHALF = "SendOnBehalf"


@dataclass(frozen=True)
class DelegationGrant:
    mailbox_address: str
    right: DelegationRight
    grantee_principal: str

    @property
    def sort_key(self) -> Tuple[str, str, str]:
        return (
            self.mailbox_address.casefold(),
            self.right.value,
            self.grantee_principal.casefold(),
        )


@dataclass(frozen=True)
class LicenseRef:
    sku_id: str
    sku_name: str
    provisioned_service_plans: frozenset = field(default_factory=frozenset)


@dataclass(frozen=True)
class ExternalDirectoryRef:
    """On-premises Active Directory state of the subject."""

    distinguished_name: str
    sam_account_name: Optional[str] = None
    enabled: Optional[bool] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class Snapshot:
    """Immutable point-in-time capture of a subject's access."""

    subject: PrincipalRef
    captured_at: datetime
    mailbox: Optional[MailboxState] = None
    group_memberships: Tuple[GroupRef, ...] = ()
    owned_groups: Tuple[OwnedGroupRef, ...] = ()
    delegations: Tuple[DelegationGrant, ...] = ()
    licenses: Tuple[LicenseRef, ...] = ()
    distribution_lists: Tuple[DistributionListRef, ...] = ()
    dynamic_distribution_lists: Tuple[str, ...] = ()
    directory_state: Optional[ExternalDirectoryRef] = None
    account_enabled: Optional[bool] = None
    skipped: Tuple[str, ...] = ()

    @property
    def static_groups(self) -> Tuple[GroupRef, ...]:
        """Groups this toolkit may remove the subject from through Graph."""
        return tuple(group for group in self.group_memberships if group.is_graph_managed)

    @property
    def dynamic_groups(self) -> Tuple[GroupRef, ...]:
        return tuple(group for group in self.group_memberships if group.is_dynamic_membership)

    @property
    def static_distribution_lists(self) -> Tuple[DistributionListRef, ...]:
        return tuple(dl for dl in self.distribution_lists if not dl.is_dynamic_membership)


@dataclass(frozen=True)
class PlanItem:
    area: str
    description: str


class PlanArea:
    MAILBOX = "Mailbox"
    DISTRIBUTION_LISTS = "EXO/DLs"
    GROUPS = "Graph/Groups"
    DELEGATIONS = "Mailbox-delegations"
    LICENSING = "Licensing"
    ENTRA = "Entra"
    ACTIVE_DIRECTORY = "AD"


PLAN_AREA_ORDER: Tuple[str, ...] = (
    PlanArea.MAILBOX,
    PlanArea.DISTRIBUTION_LISTS,
    PlanArea.GROUPS,
    PlanArea.DELEGATIONS,
    PlanArea.LICENSING,
    PlanArea.ENTRA,
    PlanArea.ACTIVE_DIRECTORY,
)


@dataclass(frozen=True)
class RunConfig:
    """Resolved flags and parameters for a single offboarding run."""

    subject: str
    ticket: str
    apply: bool = False
    convert_to_shared: bool = False
    shared_mailbox_expiry_days: int = 180
    supervisor: Optional[str] = None
    grant_full_access: bool = True
    grant_send_as: bool = True
    remove_distribution_lists: bool = False
    remove_groups: bool = False
    remove_delegations: bool = False
    remove_licenses: bool = False
    block_sign_in: bool = False
    backup_owner: Optional[str] = None
    ad_disable: bool = False
    ad_update_description: bool = False
    ad_move: bool = False
    tenant_hint: Optional[str] = None
    output_folder: Optional[Path] = None

    def __post_init__(self) -> None:
        if not (self.subject or "").strip():
            raise ValueError("A subject identity is required.")
        if not (self.ticket or "").strip():
            raise ValueError("A ticket reference is required.")
        if self.shared_mailbox_expiry_days < 0:
            raise ValueError("Shared mailbox expiry must not be negative.")

    @property
    def wants_on_premises(self) -> bool:
        return self.ad_disable or self.ad_update_description or self.ad_move

    @property
    def mode_label(self) -> str:
        return "APPLY" if self.apply else "PREVIEW"


__all__ = [
    "DelegationGrant",
    "DelegationRight",
    "DistributionListRef",
    "ExternalDirectoryRef",
    "GroupRef",
    "LicenseRef",
    "MailboxState",
    "OwnedGroupRef",
    "PLAN_AREA_ORDER",
    "PlanArea",
    "PlanItem",
    "PrincipalRef",
    "RunConfig",
    "SHARED_MAILBOX_TYPE",
    "Snapshot",
]
