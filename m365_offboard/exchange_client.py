"""Exchange Online administration through the admin REST ``InvokeCommand`` endpoint."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

import msal
import requests

from .config import ExchangeConfig, M365Config
from .m365_client import build_confidential_app, error_details, request_app_token


EXCHANGE_SCOPE = ["https://outlook.office365.com/.default"]
EXCHANGE_BASE_URL = "https://outlook.office365.com/adminapi/beta"
SYSTEM_ANCHOR = "SystemMailbox{bb558c35-97f1-4cb9-8ff7-d53741dc928c}"
SELF_PRINCIPAL = "NT AUTHORITY\\SELF"
MAIL_GROUP_TYPES = ["MailUniversalDistributionGroup", "MailUniversalSecurityGroup"]

logger = logging.getLogger(__name__)


class ExchangeClientError(RuntimeError):
    """Base exception for Exchange Online operations."""


class ExchangeCommandError(ExchangeClientError):
    """Raised when an Exchange cmdlet invocation fails."""

    def __init__(self, status_code: int, cmdlet: str, error: str, description: str) -> None:
        super().__init__(f"{cmdlet} failed ({status_code}): {error} - {description}")
        self.status_code = status_code
        self.cmdlet = cmdlet
        self.error = error
        self.description = description

    @property
    def is_not_found(self) -> bool:
        text = f"{self.error} {self.description}"
        return self.status_code == 404 or "ManagementObjectNotFound" in text or "couldn't be found" in text


class ExchangeClient:
    """Runs Exchange Online cmdlets as app-only REST calls."""

    def __init__(
        self,
        m365: M365Config,
        config: ExchangeConfig,
        app: Optional[msal.ConfidentialClientApplication] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._tenant = config.organization or m365.tenant_id
        self._app = app or build_confidential_app(m365)
        self._token_lock = threading.Lock()
        self._session = session or requests.Session()

    def __enter__(self) -> "ExchangeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def close(self) -> None:
        self._session.close()

    def connect(self) -> None:
        self._acquire_token()
        logger.info("Connected to Exchange Online for %s", self._tenant)

    # ------------------------------------------------------------------ #
    # Transport                                                          #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        result = request_app_token(self._app, EXCHANGE_SCOPE, self._token_lock)
        token = result.get("access_token")
        if not token:
            raise ExchangeCommandError(
                0,
                "Connect",
                result.get("error", "token_error"),
                result.get("error_description", "No Exchange Online token was issued."),
            )
        return str(token)

    def _anchor(self) -> str:
        if self._config.anchor_mailbox:
            return f"UPN:{self._config.anchor_mailbox}"
        return f"UPN:{SYSTEM_ANCHOR}@{self._tenant}"

    def invoke(self, cmdlet: str, **parameters: Any) -> List[Dict[str, Any]]:
        """Run ``cmdlet`` and return every output object across result pages."""

        body = {
            "CmdletInput": {
                "CmdletName": cmdlet,
                "Parameters": {key: value for key, value in parameters.items() if value is not None},
            }
        }
        url: Optional[str] = f"{EXCHANGE_BASE_URL}/{self._tenant}/InvokeCommand"
        results: List[Dict[str, Any]] = []
        while url:
            response = self._session.post(
                url,
                json=body,
                timeout=self._config.timeout,
                headers={
                    "Authorization": f"Bearer {self._acquire_token()}",
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                    "X-AnchorMailbox": self._anchor(),
                },
            )
            if response.status_code >= 400:
                code, message = error_details(response, "ExchangeError")
                raise ExchangeCommandError(response.status_code, cmdlet, code, message)
            if response.status_code == 204 or not response.content:
                break
            payload = response.json()
            results.extend(payload.get("value", []))
            url = payload.get("@odata.nextLink")
        return results

    # ------------------------------------------------------------------ #
    # Mailboxes                                                          #
    # ------------------------------------------------------------------ #
    def get_mailbox(self, identity: str) -> Optional[Dict[str, Any]]:
        try:
            values = self.invoke("Get-Mailbox", Identity=identity)
        except ExchangeCommandError as exc:
            if exc.is_not_found:
                return None
            raise
        return values[0] if values else None

    def get_recipient(self, identity: str) -> Optional[Dict[str, Any]]:
        try:
            values = self.invoke("Get-Recipient", Identity=identity)
        except ExchangeCommandError as exc:
            if exc.is_not_found:
                return None
            raise
        return values[0] if values else None

    def convert_to_shared(self, identity: str) -> None:
        self.invoke("Set-Mailbox", Identity=identity, Type="Shared")

    def set_custom_attribute(self, identity: str, attribute: str, value: str) -> None:
        self.invoke("Set-Mailbox", Identity=identity, **{attribute: value})

    def list_mailboxes(self) -> List[Dict[str, Any]]:
        return self.invoke("Get-Mailbox", ResultSize="Unlimited")

    def find_send_on_behalf_mailboxes(self, distinguished_name: str) -> List[Dict[str, Any]]:
        escaped = distinguished_name.replace("'", "''")
        return self.invoke(
            "Get-Mailbox",
            ResultSize="Unlimited",
            Filter=f"GrantSendOnBehalfTo -eq '{escaped}'",
        )

    # ------------------------------------------------------------------ #
    # Permissions                                                        #
    # ------------------------------------------------------------------ #
    def get_mailbox_permissions(self, identity: str, user: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.invoke("Get-MailboxPermission", Identity=identity, User=user)

    def get_recipient_permissions(
        self, identity: Optional[str] = None, trustee: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        return self.invoke(
            "Get-RecipientPermission",
            Identity=identity,
            Trustee=trustee,
            AccessRights="SendAs",
            ResultSize="Unlimited" if identity is None else None,
        )

    def add_full_access(self, identity: str, user: str) -> None:
        self.invoke(
            "Add-MailboxPermission",
            Identity=identity,
            User=user,
            AccessRights=["FullAccess"],
            InheritanceType="All",
            AutoMapping=True,
        )

    def remove_full_access(self, identity: str, user: str) -> None:
        self.invoke(
            "Remove-MailboxPermission",
            Identity=identity,
            User=user,
            AccessRights=["FullAccess"],
            InheritanceType="All",
            Confirm=False,
        )

    def add_send_as(self, identity: str, trustee: str) -> None:
        self.invoke(
            "Add-RecipientPermission",
            Identity=identity,
            Trustee=trustee,
            AccessRights=["SendAs"],
            Confirm=False,
        )

    def remove_send_as(self, identity: str, trustee: str) -> None:
        self.invoke(
            "Remove-RecipientPermission",
            Identity=identity,
            Trustee=trustee,
            AccessRights=["SendAs"],
            Confirm=False,
        )

    def add_send_on_behalf(self, identity: str, grantee: str) -> None:
        self.invoke("Set-Mailbox", Identity=identity, GrantSendOnBehalfTo={"add": [grantee]})

    def remove_send_on_behalf(self, identity: str, grantee: str) -> None:
        self.invoke("Set-Mailbox", Identity=identity, GrantSendOnBehalfTo={"remove": [grantee]})

    # ------------------------------------------------------------------ #
    # Distribution groups                                                #
    # ------------------------------------------------------------------ #
    def get_distribution_group_memberships(self, distinguished_name: str) -> List[Dict[str, Any]]:
        escaped = distinguished_name.replace("'", "''")
        return self.invoke(
            "Get-Recipient",
            ResultSize="Unlimited",
            RecipientTypeDetails=MAIL_GROUP_TYPES,
            Filter=f"Members -eq '{escaped}'",
        )

    def list_dynamic_distribution_groups(self) -> List[Dict[str, Any]]:
        return self.invoke("Get-DynamicDistributionGroup", ResultSize="Unlimited")

    def add_distribution_group_member(self, identity: str, member: str) -> None:
        self.invoke("Add-DistributionGroupMember", Identity=identity, Member=member, Confirm=False)

    def remove_distribution_group_member(self, identity: str, member: str) -> None:
        self.invoke(
            "Remove-DistributionGroupMember",
            Identity=identity,
            Member=member,
            BypassSecurityGroupManagerCheck=True,
            Confirm=False,
        )

    # ------------------------------------------------------------------ #
    # Calendar                                                           #
    # ------------------------------------------------------------------ #
    def remove_calendar_events(
        self, identity: str, query_window_days: int, preview_only: bool = False
    ) -> List[Dict[str, Any]]:
        return self.invoke(
            "Remove-CalendarEvents",
            Identity=identity,
            CancelOrganizedMeetings=True,
            QueryWindowInDays=query_window_days,
            PreviewOnly=True if preview_only else None,
            Confirm=False,
        )


def is_self_grant(grantee: Optional[str]) -> bool:
    return (grantee or "").strip().upper() == SELF_PRINCIPAL


def flatten_identities(values: Iterable[Any]) -> List[str]:
    """Normalise multi-valued cmdlet output (``GrantSendOnBehalfTo``) to strings."""
    return [str(value).strip() for value in values or [] if str(value or "").strip()]


__all__ = [
    "ExchangeClient",
    "ExchangeClientError",
    "ExchangeCommandError",
    "SELF_PRINCIPAL",
    "flatten_identities",
    "is_self_grant",
]
