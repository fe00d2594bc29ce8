"""
Shared fixtures: in-memory stand-ins for the Graph and Exchange clients.

The fakes expose the same methods as ``M365Client`` and ``ExchangeClient``
and keep enough state for a second snapshot to observe what an apply run
changed.
"""
from datetime import datetime, timezone

import pytest

from m365_offboard.exchange_client import ExchangeCommandError
from m365_offboard.m365_client import M365GraphError
from m365_offboard.models import PrincipalRef, RunConfig


FIXED_NOW = datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)


class FailureMixin:
    def __init__(self):
        self.failures = {}
        self.calls = []

    def _check(self, name, *args):
        self.calls.append((name,) + args)
        error = self.failures.get(name)
        if error is not None:
            raise error


class FakeGraph(FailureMixin):
    def __init__(self):
        super().__init__()
        self.users = {}
        self.groups = {}
        self.members = {}
        self.owners = {}
        self.licenses = {}

    # Seeding ----------------------------------------------------------
    def add_user(self, user_id, upn, display_name, mail=None, enabled=True):
        self.users[user_id] = {
            "id": user_id,
            "userPrincipalName": upn,
            "displayName": display_name,
            "mail": mail if mail is not None else upn,
            "accountEnabled": enabled,
        }

    def add_group(self, group_id, name, members=(), owners=(), **fields):
        payload = {
            "id": group_id,
            "displayName": name,
            "mail": fields.pop("mail", None),
            "mailEnabled": fields.pop("mailEnabled", False),
            "securityEnabled": fields.pop("securityEnabled", True),
            "groupTypes": fields.pop("groupTypes", []),
            "membershipRule": fields.pop("membershipRule", None),
            "onPremisesSyncEnabled": fields.pop("onPremisesSyncEnabled", None),
        }
        self.groups[group_id] = payload
        self.members[group_id] = list(members)
        self.owners[group_id] = list(owners)

    # Users ------------------------------------------------------------
    def _lookup(self, user_id):
        if user_id in self.users:
            return self.users[user_id]
        for user in self.users.values():
            if user["userPrincipalName"].lower() == str(user_id).lower():
                return user
        raise M365GraphError(404, "Request_ResourceNotFound", f"{user_id} does not exist")

    def get_user(self, user_id, select=None):
        self._check("get_user", user_id)
        return dict(self._lookup(user_id))

    def find_user(self, query, select=None):
        self._check("find_user", query)
        lowered = query.lower()
        for user in self.users.values():
            if lowered in (user["userPrincipalName"].lower(), (user["mail"] or "").lower()):
                return dict(user)
        return None

    def block_sign_in(self, user_id):
        self._check("block_sign_in", user_id)
        self.users[user_id]["accountEnabled"] = False

    def revoke_sign_in_sessions(self, user_id):
        self._check("revoke_sign_in_sessions", user_id)

    # Licenses ---------------------------------------------------------
    def get_user_license_details(self, user_id):
        self._check("get_user_license_details", user_id)
        return list(self.licenses.get(user_id, []))

    def remove_licenses(self, user_id, sku_ids):
        self._check("remove_licenses", user_id, tuple(sku_ids))
        self.licenses[user_id] = [
            detail for detail in self.licenses.get(user_id, []) if detail["skuId"] not in sku_ids
        ]
        return {}

    # Groups -----------------------------------------------------------
    def get_user_groups(self, user_id):
        self._check("get_user_groups", user_id)
        return [group_id for group_id, members in self.members.items() if user_id in members]

    def get_group(self, group_id):
        self._check("get_group", group_id)
        if group_id not in self.groups:
            raise M365GraphError(404, "Request_ResourceNotFound", group_id)
        return dict(self.groups[group_id])

    def get_owned_groups(self, user_id):
        self._check("get_owned_groups", user_id)
        return [
            {"id": group_id, "displayName": self.groups[group_id]["displayName"]}
            for group_id, owners in self.owners.items()
            if user_id in owners
        ]

    def count_group_owners(self, group_id):
        self._check("count_group_owners", group_id)
        return len(self.owners.get(group_id, []))

    def add_user_to_group(self, user_id, group_id):
        self._check("add_user_to_group", user_id, group_id)
        self.members[group_id].append(user_id)

    def remove_user_from_group(self, user_id, group_id):
        self._check("remove_user_from_group", user_id, group_id)
        self.members[group_id].remove(user_id)

    def add_group_owner(self, user_id, group_id):
        self._check("add_group_owner", user_id, group_id)
        self.owners[group_id].append(user_id)


class FakeExchange(FailureMixin):
    def __init__(self):
        super().__init__()
        self.mailboxes = {}
        self.recipients = {}
        self.mailbox_permissions = []
        self.recipient_permissions = []
        self.distribution_groups = {}
        self.dynamic_groups = []
        self.calendar_events = {}

    # Seeding ----------------------------------------------------------
    def add_mailbox(self, address, kind="UserMailbox", send_on_behalf=()):
        dn = f"CN={address.split('@')[0]},OU=Users,DC=contoso,DC=com"
        self.recipients[address.lower()] = dn
        self.mailboxes[address.lower()] = {
            "Identity": address.split("@")[0],
            "PrimarySmtpAddress": address,
            "RecipientTypeDetails": kind,
            "DistinguishedName": dn,
            "GrantSendOnBehalfTo": list(send_on_behalf),
        }

    def add_distribution_group(self, identity, name, members=(), security=False):
        self.distribution_groups[identity] = {
            "Identity": identity,
            "DisplayName": name,
            "PrimarySmtpAddress": f"{identity}@contoso.com",
            "RecipientTypeDetails": "MailUniversalSecurityGroup" if security else "MailUniversalDistributionGroup",
            "members": [member.lower() for member in members],
        }

    def _mailbox(self, identity):
        return self.mailboxes.get(str(identity).lower())

    # Mailboxes --------------------------------------------------------
    def get_mailbox(self, identity):
        self._check("get_mailbox", identity)
        mailbox = self._mailbox(identity)
        return dict(mailbox) if mailbox else None

    def get_recipient(self, identity):
        self._check("get_recipient", identity)
        dn = self.recipients.get(str(identity).lower())
        if dn is None:
            return None
        return {"Identity": identity, "PrimarySmtpAddress": identity, "DistinguishedName": dn}

    def convert_to_shared(self, identity):
        self._check("convert_to_shared", identity)
        for mailbox in self.mailboxes.values():
            if mailbox["Identity"] == identity:
                mailbox["RecipientTypeDetails"] = "SharedMailbox"

    def set_custom_attribute(self, identity, attribute, value):
        self._check("set_custom_attribute", identity, attribute, value)
        for mailbox in self.mailboxes.values():
            if mailbox["Identity"] == identity:
                mailbox[attribute] = value

    def list_mailboxes(self):
        self._check("list_mailboxes")
        return [dict(mailbox) for mailbox in self.mailboxes.values()]

    def find_send_on_behalf_mailboxes(self, distinguished_name):
        self._check("find_send_on_behalf_mailboxes", distinguished_name)
        address = next(
            (addr for addr, dn in self.recipients.items() if dn == distinguished_name), None
        )
        return [
            dict(mailbox)
            for mailbox in self.mailboxes.values()
            if address and address in [value.lower() for value in mailbox["GrantSendOnBehalfTo"]]
        ]

    # Permissions ------------------------------------------------------
    def get_mailbox_permissions(self, identity, user=None):
        self._check("get_mailbox_permissions", identity)
        return [
            dict(entry)
            for entry in self.mailbox_permissions
            if entry["Identity"].lower() == identity.lower()
            and (user is None or entry["User"].lower() == user.lower())
        ]

    def get_recipient_permissions(self, identity=None, trustee=None):
        self._check("get_recipient_permissions", identity, trustee)
        return [
            dict(entry)
            for entry in self.recipient_permissions
            if (identity is None or entry["Identity"].lower() == identity.lower())
            and (trustee is None or entry["Trustee"].lower() == trustee.lower())
        ]

    def add_full_access(self, identity, user):
        self._check("add_full_access", identity, user)
        self.mailbox_permissions.append(
            {"Identity": identity, "User": user, "AccessRights": ["FullAccess"], "IsInherited": False}
        )

    def remove_full_access(self, identity, user):
        self._check("remove_full_access", identity, user)
        self.mailbox_permissions = [
            entry
            for entry in self.mailbox_permissions
            if not (entry["Identity"].lower() == identity.lower() and entry["User"] == user)
        ]

    def add_send_as(self, identity, trustee):
        self._check("add_send_as", identity, trustee)
        self.recipient_permissions.append(
            {"Identity": identity, "Trustee": trustee, "AccessRights": ["SendAs"], "IsInherited": False}
        )

    def remove_send_as(self, identity, trustee):
        self._check("remove_send_as", identity, trustee)
        self.recipient_permissions = [
            entry
            for entry in self.recipient_permissions
            if not (entry["Identity"].lower() == identity.lower() and entry["Trustee"] == trustee)
        ]

    def add_send_on_behalf(self, identity, grantee):
        self._check("add_send_on_behalf", identity, grantee)
        self._mailbox(identity)["GrantSendOnBehalfTo"].append(grantee)

    def remove_send_on_behalf(self, identity, grantee):
        self._check("remove_send_on_behalf", identity, grantee)
        self._mailbox(identity)["GrantSendOnBehalfTo"].remove(grantee)

    # Distribution groups ----------------------------------------------
    def get_distribution_group_memberships(self, distinguished_name):
        self._check("get_distribution_group_memberships", distinguished_name)
        address = next(
            (addr for addr, dn in self.recipients.items() if dn == distinguished_name), None
        )
        return [
            {key: value for key, value in group.items() if key != "members"}
            for group in self.distribution_groups.values()
            if address in group["members"]
        ]

    def list_dynamic_distribution_groups(self):
        self._check("list_dynamic_distribution_groups")
        return [{"DisplayName": name} for name in self.dynamic_groups]

    def add_distribution_group_member(self, identity, member):
        self._check("add_distribution_group_member", identity, member)
        self.distribution_groups[identity]["members"].append(member.lower())

    def remove_distribution_group_member(self, identity, member):
        self._check("remove_distribution_group_member", identity, member)
        self.distribution_groups[identity]["members"].remove(member.lower())

    # Calendar ---------------------------------------------------------
    def remove_calendar_events(self, identity, query_window_days, preview_only=False):
        self._check("remove_calendar_events", identity, query_window_days, preview_only)
        events = list(self.calendar_events.get(identity.lower(), []))
        if not preview_only:
            self.calendar_events[identity.lower()] = []
        return events


def not_found(cmdlet="Get-Mailbox"):
    return ExchangeCommandError(404, cmdlet, "ManagementObjectNotFoundException", "couldn't be found")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def graph():
    """Tenant directory used by most tests."""
    fake = FakeGraph()
    fake.add_user("u-alex", "alex@contoso.com", "Alex Doe")
    fake.add_user("u-sam", "sam@contoso.com", "Sam Supervisor")
    fake.add_user("u-bea", "bea@contoso.com", "Bea Backup")
    fake.add_user("u-pat", "pat@contoso.com", "Pat Peer")

    fake.add_group("g-fin", "Finance-DL", members=["u-alex"])
    fake.add_group(
        "g-eng",
        "All-Engineers",
        members=["u-alex"],
        groupTypes=["DynamicMembership"],
        membershipRule='user.department -eq "Engineering"',
    )
    fake.add_group(
        "g-mkt",
        "Marketing Announce",
        members=["u-alex"],
        mail="marketing@contoso.com",
        mailEnabled=True,
        securityEnabled=False,
    )
    fake.add_group("g-proj", "Project X", owners=["u-alex"], groupTypes=["Unified"])
    fake.add_group("g-team", "Team Y", owners=["u-alex", "u-pat"], groupTypes=["Unified"])

    fake.licenses["u-alex"] = [
        {
            "skuId": "sku-e3",
            "skuPartNumber": "ENTERPRISEPACK",
            "servicePlans": [
                {"servicePlanName": "EXCHANGE_S_ENTERPRISE", "provisioningStatus": "Success"},
                {"servicePlanName": "YAMMER_ENTERPRISE", "provisioningStatus": "PendingActivation"},
            ],
        },
        {"skuId": "sku-ems", "skuPartNumber": "EMS", "servicePlans": []},
    ]
    return fake


@pytest.fixture
def exchange():
    fake = FakeExchange()
    fake.add_mailbox("alex@contoso.com", send_on_behalf=["pat@contoso.com"])
    fake.add_mailbox("sam@contoso.com")
    fake.add_mailbox("bea@contoso.com")
    fake.add_mailbox("pat@contoso.com")
    fake.mailbox_permissions.extend(
        [
            {"Identity": "alex@contoso.com", "User": "NT AUTHORITY\\SELF", "AccessRights": ["FullAccess"], "IsInherited": False},
            {"Identity": "alex@contoso.com", "User": "pat@contoso.com", "AccessRights": ["FullAccess"], "IsInherited": False},
            {"Identity": "alex@contoso.com", "User": "admin@contoso.com", "AccessRights": ["FullAccess"], "IsInherited": True},
        ]
    )
    fake.recipient_permissions.extend(
        [
            {"Identity": "alex@contoso.com", "Trustee": "NT AUTHORITY\\SELF", "AccessRights": ["SendAs"], "IsInherited": False},
            {"Identity": "alex@contoso.com", "Trustee": "chris@contoso.com", "AccessRights": ["SendAs"], "IsInherited": False},
        ]
    )
    fake.add_distribution_group("marketing", "Marketing Announce", members=["alex@contoso.com"])
    fake.dynamic_groups = ["All Staff (Dynamic)"]
    return fake


@pytest.fixture
def alex():
    return PrincipalRef("u-alex", "alex@contoso.com", "Alex Doe", "alex@contoso.com")


@pytest.fixture
def full_run():
    """Every M365 area requested, apply mode."""
    return RunConfig(
        subject="alex@contoso.com",
        ticket="RITM0012345",
        apply=True,
        convert_to_shared=True,
        supervisor="sam@contoso.com",
        remove_distribution_lists=True,
        remove_groups=True,
        remove_delegations=True,
        remove_licenses=True,
        block_sign_in=True,
        backup_owner="bea@contoso.com",
    )
