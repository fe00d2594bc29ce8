"""Tests for the work-notes change summary."""
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import FIXED_NOW
from m365_offboard.executor import ActionOutcome, ApplyResult, OutcomeStatus
from m365_offboard.models import (
    DelegationGrant,
    DelegationRight,
    ExternalDirectoryRef,
    GroupRef,
    MailboxState,
    RunConfig,
    Snapshot,
)
from m365_offboard.report import render_report


@pytest.fixture
def before(alex):
    grants = tuple(
        DelegationGrant("alex@contoso.com", DelegationRight.FULL_ACCESS, f"user{index}@contoso.com")
        for index in range(5)
    )
    return Snapshot(
        subject=alex,
        captured_at=FIXED_NOW,
        mailbox=MailboxState("alex", "alex@contoso.com", "UserMailbox"),
        group_memberships=(
            GroupRef("g-eng", "All-Engineers", is_dynamic_membership=True),
            GroupRef("g-fin", "Finance-DL", is_security_group=True),
        ),
        delegations=grants,
        account_enabled=True,
    )


@pytest.fixture
def after(before):
    return replace(
        before,
        captured_at=FIXED_NOW + timedelta(minutes=2),
        mailbox=MailboxState("alex", "alex@contoso.com", "SharedMailbox"),
        group_memberships=before.group_memberships[:1],
        delegations=(),
        account_enabled=False,
    )


def test_counts_render_before_and_after(before, after):
    config = RunConfig(subject="alex@contoso.com", ticket="RITM0012345", apply=True)
    report = render_report(before, after, config)

    assert "- Mailbox delegations: 5 → 0" in report
    assert "- Static group memberships: 1 → 0" in report
    assert "- Dynamic group memberships: 1 → 1" in report
    assert "- Mailbox type: UserMailbox → SharedMailbox" in report
    assert "- Sign-in: enabled → blocked" in report


def test_header_lines(before, after):
    config = RunConfig(subject="alex@contoso.com", ticket="RITM0012345", apply=True)
    lines = render_report(before, after, config).splitlines()

    assert lines[0] == "Offboarding summary for Alex Doe (alex@contoso.com)"
    assert lines[1] == "Ticket: RITM0012345"
    assert lines[2] == "MODE: APPLY - changes were made"
    assert lines[3] == "Before captured: 2024-01-15T09:30:00+00:00"


def test_preview_banner(before):
    config = RunConfig(subject="alex@contoso.com", ticket="RITM0012345")
    report = render_report(before, before, config)
    assert "MODE: PREVIEW - no changes were made" in report
    assert "- Mailbox delegations: 5 → 5" in report


def test_optional_sections(before, after):
    config = RunConfig(
        subject="alex@contoso.com",
        ticket="T1",
        apply=True,
        supervisor="sam@contoso.com",
        backup_owner="bea@contoso.com",
    )
    state = ExternalDirectoryRef("CN=Alex,OU=Staff,DC=contoso,DC=com")
    moved = ExternalDirectoryRef("CN=Alex,OU=Leavers,DC=contoso,DC=com")
    result = ApplyResult(
        [ActionOutcome("Licensing", "Remove 2 license(s)", OutcomeStatus.FAILED, "denied")]
    )
    report = render_report(
        replace(before, directory_state=state, skipped=("licenses: timeout",)),
        replace(after, directory_state=moved, skipped=("licenses: timeout",)),
        config,
        artifacts=["Before-Groups.csv"],
        result=result,
    )

    assert "Supervisor access: sam@contoso.com" in report
    assert "Backup owner: bea@contoso.com" in report
    assert "On-premises AD: CN=Alex,OU=Staff,DC=contoso,DC=com → CN=Alex,OU=Leavers,DC=contoso,DC=com" in report
    assert "- [Licensing] Remove 2 license(s) - failed: denied" in report
    assert report.count("licenses: timeout") == 1
    assert "- Before-Groups.csv" in report


def test_sections_omitted_when_empty(before, after):
    config = RunConfig(subject="alex@contoso.com", ticket="T1", apply=True)
    report = render_report(before, after, config, result=ApplyResult())
    assert "Failures:" not in report
    assert "Not captured:" not in report
    assert "Artifacts:" not in report
