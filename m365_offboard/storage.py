"""Persistence helpers for offboarding run artifacts."""
from __future__ import annotations

import csv
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

from .models import PlanItem, RunConfig, Snapshot
from .plan import render_plan_markdown


PLAN_FILE = "Plan-WhatWeWillDo.md"
WORK_NOTES_FILE = "ServiceNow-WorkNotes.txt"
TRANSCRIPT_FILE = "Transcript.log"

Row = Dict[str, object]


def create_output_folder(base: Path, subject: str, now: datetime) -> Path:
    """Create ``<base>/<YYYYMMDD-HHMMSS>_<subject>`` and return it."""

    safe_subject = re.sub(r"[^A-Za-z0-9@._-]+", "_", subject.strip()) or "subject"
    folder = Path(base).expanduser() / f"{now.strftime('%Y%m%d-%H%M%S')}_{safe_subject}"
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def _snapshot_tables(snapshot: Snapshot) -> List[Tuple[str, Sequence[str], List[Row]]]:
    mailbox_rows: List[Row] = []
    if snapshot.mailbox:
        mailbox = snapshot.mailbox
        mailbox_rows.append(
            {
                "identity": mailbox.identity,
                "primary_smtp_address": mailbox.primary_smtp_address,
                "recipient_type_details": mailbox.recipient_type_details,
                "distinguished_name": mailbox.distinguished_name or "",
                "custom_attribute": mailbox.custom_attribute or "",
            }
        )

    directory_rows: List[Row] = []
    if snapshot.directory_state:
        state = snapshot.directory_state
        directory_rows.append(
            {
                "distinguished_name": state.distinguished_name,
                "sam_account_name": state.sam_account_name or "",
                "enabled": "" if state.enabled is None else state.enabled,
                "description": state.description or "",
            }
        )

    return [
        (
            "Mailbox",
            (
                "identity",
                "primary_smtp_address",
                "recipient_type_details",
                "distinguished_name",
                "custom_attribute",
            ),
            mailbox_rows,
        ),
        (
            "Groups",
            (
                "group_id",
                "display_name",
                "mail_address",
                "is_mail_enabled",
                "is_security_group",
                "is_unified_group",
                "is_dynamic_membership",
                "on_premises_synced",
            ),
            [
                {
                    "group_id": group.group_id,
                    "display_name": group.display_name,
                    "mail_address": group.mail_address or "",
                    "is_mail_enabled": group.is_mail_enabled,
                    "is_security_group": group.is_security_group,
                    "is_unified_group": group.is_unified_group,
                    "is_dynamic_membership": group.is_dynamic_membership,
                    "on_premises_synced": group.on_premises_synced,
                }
                for group in snapshot.group_memberships
            ],
        ),
        (
            "OwnedGroups",
            ("group_id", "display_name", "current_owner_count"),
            [
                {
                    "group_id": group.group_id,
                    "display_name": group.display_name,
                    "current_owner_count": group.current_owner_count,
                }
                for group in snapshot.owned_groups
            ],
        ),
        (
            "DistributionLists",
            ("identity", "display_name", "mail_address", "recipient_type", "is_dynamic_membership"),
            [
                {
                    "identity": dl.identity,
                    "display_name": dl.display_name,
                    "mail_address": dl.mail_address or "",
                    "recipient_type": dl.recipient_type,
                    "is_dynamic_membership": dl.is_dynamic_membership,
                }
                for dl in snapshot.distribution_lists
            ]
            + [
                {
                    "identity": name,
                    "display_name": name,
                    "mail_address": "",
                    "recipient_type": "DynamicDistributionGroup",
                    "is_dynamic_membership": True,
                }
                for name in snapshot.dynamic_distribution_lists
            ],
        ),
        (
            "Delegations",
            ("mailbox_address", "right", "grantee_principal"),
            [
                {
                    "mailbox_address": grant.mailbox_address,
                    "right": grant.right.value,
                    "grantee_principal": grant.grantee_principal,
                }
                for grant in snapshot.delegations
            ],
        ),
        (
            "Licenses",
            ("sku_id", "sku_name", "provisioned_service_plans"),
            [
                {
                    "sku_id": lic.sku_id,
                    "sku_name": lic.sku_name,
                    "provisioned_service_plans": ";".join(sorted(lic.provisioned_service_plans)),
                }
                for lic in snapshot.licenses
            ],
        ),
        (
            "Directory",
            ("distinguished_name", "sam_account_name", "enabled", "description"),
            directory_rows,
        ),
    ]


def write_csv(path: Path, fieldnames: Sequence[str], rows: Iterable[Row]) -> Path:
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(fieldnames))
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
    return path


def write_snapshot(folder: Path, prefix: str, snapshot: Snapshot) -> List[Path]:
    """Write one ``<prefix>-<Category>.csv`` per snapshot category."""

    return [
        write_csv(folder / f"{prefix}-{category}.csv", fieldnames, rows)
        for category, fieldnames, rows in _snapshot_tables(snapshot)
    ]


def write_plan(folder: Path, plan: Sequence[PlanItem], config: RunConfig) -> Path:
    path = folder / PLAN_FILE
    path.write_text(render_plan_markdown(tuple(plan), config), encoding="utf-8")
    return path


def write_work_notes(folder: Path, report: str) -> Path:
    path = folder / WORK_NOTES_FILE
    path.write_text(report, encoding="utf-8")
    return path


__all__ = [
    "PLAN_FILE",
    "TRANSCRIPT_FILE",
    "WORK_NOTES_FILE",
    "create_output_folder",
    "write_csv",
    "write_plan",
    "write_snapshot",
    "write_work_notes",
]
