"""Build the ordered, side-effect free offboarding plan."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from .models import PLAN_AREA_ORDER, PlanArea, PlanItem, RunConfig, Snapshot


EXPIRY_DATE_FORMAT = "%Y-%m-%d"


def format_expiry_marker(now: datetime, days: int) -> str:
    """Return the ``Expires: YYYY-MM-DD (Nd)`` stamp written on shared mailboxes."""
    expires = now + timedelta(days=days)
    return f"Expires: {expires.strftime(EXPIRY_DATE_FORMAT)} ({days}d)"


def format_ad_description(now: datetime, ticket: str) -> str:
    return f"Offboarded {now.strftime(EXPIRY_DATE_FORMAT)} - {ticket}"


def sole_owned_groups(before: Snapshot):
    """Owned groups that would be left without an owner (Before-time count)."""
    return tuple(group for group in before.owned_groups if group.current_owner_count <= 1)


def build_plan(
    before: Snapshot,
    config: RunConfig,
    *,
    now: Optional[datetime] = None,
    expiry_attribute: str = "CustomAttribute15",
    holding_ou: Optional[str] = None,
    sync_configured: bool = False,
) -> Tuple[PlanItem, ...]:
    """Describe what an apply run would change.

    Pure function of its inputs. Items come out grouped by
    :data:`PLAN_AREA_ORDER`, which is also the order the executor follows.
    Dynamic-membership groups and lists are never counted.
    """

    now = now or datetime.now(timezone.utc)
    items: List[PlanItem] = []

    mailbox = before.mailbox
    if config.convert_to_shared and mailbox is not None and not mailbox.is_shared:
        marker = format_expiry_marker(now, config.shared_mailbox_expiry_days)
        items.append(
            PlanItem(
                PlanArea.MAILBOX,
                f"Convert mailbox {mailbox.primary_smtp_address} to Shared; "
                f"stamp {expiry_attribute} = '{marker}'",
            )
        )
    # Grants need a mailbox to land on; without one apply skips them too.
    if config.supervisor and mailbox is not None:
        target = mailbox.primary_smtp_address
        if config.grant_full_access:
            items.append(PlanItem(PlanArea.MAILBOX, f"Grant FullAccess on {target} to {config.supervisor}"))
        if config.grant_send_as:
            items.append(PlanItem(PlanArea.MAILBOX, f"Grant SendAs on {target} to {config.supervisor}"))

    static_lists = before.static_distribution_lists
    if config.remove_distribution_lists and static_lists:
        items.append(
            PlanItem(
                PlanArea.DISTRIBUTION_LISTS,
                f"Remove from {len(static_lists)} static distribution list(s)",
            )
        )

    if config.backup_owner:
        orphaned = sole_owned_groups(before)
        if orphaned:
            items.append(
                PlanItem(
                    PlanArea.GROUPS,
                    f"Add {config.backup_owner} as owner of {len(orphaned)} sole-owned group(s)",
                )
            )
    static_groups = before.static_groups
    if config.remove_groups and static_groups:
        items.append(
            PlanItem(PlanArea.GROUPS, f"Remove from {len(static_groups)} static group(s)")
        )

    if config.remove_delegations and before.delegations:
        items.append(
            PlanItem(
                PlanArea.DELEGATIONS,
                f"Remove {len(before.delegations)} mailbox delegation(s)",
            )
        )

    if config.remove_licenses and before.licenses:
        names = ", ".join(lic.sku_name for lic in before.licenses)
        items.append(
            PlanItem(PlanArea.LICENSING, f"Remove {len(before.licenses)} license(s): {names}")
        )

    if config.block_sign_in:
        items.append(PlanItem(PlanArea.ENTRA, "Block sign-in and revoke all active sessions"))

    if config.wants_on_premises and before.directory_state is not None:
        actions: List[str] = []
        if config.ad_disable:
            actions.append("disable account")
        if config.ad_update_description:
            actions.append(f"set description '{format_ad_description(now, config.ticket)}'")
        if config.ad_move:
            actions.append(f"move to {holding_ou}" if holding_ou else "move (no holding OU configured)")
        if sync_configured:
            actions.append("start directory sync")
        items.append(
            PlanItem(
                PlanArea.ACTIVE_DIRECTORY,
                f"{before.directory_state.distinguished_name}: " + "; ".join(actions),
            )
        )

    # Stable sort keeps the per-area emission order.
    return tuple(sorted(items, key=lambda item: PLAN_AREA_ORDER.index(item.area)))


def render_plan_markdown(plan: Tuple[PlanItem, ...], config: RunConfig) -> str:
    lines = [
        f"# Offboarding plan for {config.subject}",
        "",
        f"Ticket: {config.ticket}  ",
        f"Mode: {config.mode_label}",
        "",
    ]
    if not plan:
        lines.append("- Nothing to do.")
    for item in plan:
        lines.append(f"- **[{item.area}]** {item.description}")
    return "\n".join(lines) + "\n"


__all__ = [
    "build_plan",
    "format_ad_description",
    "format_expiry_marker",
    "render_plan_markdown",
    "sole_owned_groups",
]
