"""Render the change summary pasted into the ticket work notes."""
from __future__ import annotations

from typing import Iterable, List, Optional

from .executor import ApplyResult
from .models import RunConfig, Snapshot


ARROW = "→"


def _sign_in_state(snapshot: Snapshot) -> str:
    if snapshot.account_enabled is None:
        return "unknown"
    return "enabled" if snapshot.account_enabled else "blocked"


def _mailbox_type(snapshot: Snapshot) -> str:
    return snapshot.mailbox.recipient_type_details if snapshot.mailbox else "none"


def render_report(
    before: Snapshot,
    after: Snapshot,
    config: RunConfig,
    artifacts: Iterable[str] = (),
    result: Optional[ApplyResult] = None,
) -> str:
    subject = before.subject
    if config.apply:
        banner = "MODE: APPLY - changes were made"
    else:
        banner = "MODE: PREVIEW - no changes were made"

    counts = [
        ("Static group memberships", len(before.static_groups), len(after.static_groups)),
        ("Dynamic group memberships", len(before.dynamic_groups), len(after.dynamic_groups)),
        (
            "Distribution lists",
            len(before.static_distribution_lists),
            len(after.static_distribution_lists),
        ),
        ("Owned groups", len(before.owned_groups), len(after.owned_groups)),
        ("Mailbox delegations", len(before.delegations), len(after.delegations)),
        ("Licenses", len(before.licenses), len(after.licenses)),
    ]

    lines: List[str] = [
        f"Offboarding summary for {subject.display_name} ({subject.principal_name})",
        f"Ticket: {config.ticket}",
        banner,
        f"Before captured: {before.captured_at.isoformat(timespec='seconds')}",
        f"After captured: {after.captured_at.isoformat(timespec='seconds')}",
        "",
        "Changes (before → after):",
    ]
    lines.extend(f"- {label}: {old} {ARROW} {new}" for label, old, new in counts)
    lines.append(f"- Mailbox type: {_mailbox_type(before)} {ARROW} {_mailbox_type(after)}")
    lines.append(f"- Sign-in: {_sign_in_state(before)} {ARROW} {_sign_in_state(after)}")

    if config.supervisor:
        lines.append(f"Supervisor access: {config.supervisor}")
    if config.backup_owner:
        lines.append(f"Backup owner: {config.backup_owner}")
    if before.directory_state is not None:
        after_dn = after.directory_state.distinguished_name if after.directory_state else "not found"
        lines.append(f"On-premises AD: {before.directory_state.distinguished_name} {ARROW} {after_dn}")

    if result is not None and result.failures:
        lines.append("")
        lines.append("Failures:")
        lines.extend(f"- {outcome.describe()}" for outcome in result.failures)

    skipped = list(before.skipped) + [entry for entry in after.skipped if entry not in before.skipped]
    if skipped:
        lines.append("")
        lines.append("Not captured:")
        lines.extend(f"- {entry}" for entry in skipped)

    artifact_list = list(artifacts)
    if artifact_list:
        lines.append("")
        lines.append("Artifacts:")
        lines.extend(f"- {name}" for name in artifact_list)

    return "\n".join(lines) + "\n"


__all__ = ["render_report"]
