"""Microsoft Graph access for offboarding: users, licenses and groups."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import msal
import requests

from .config import M365Config


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30

logger = logging.getLogger(__name__)


class M365ClientError(RuntimeError):
    """Root of every Microsoft 365 backend error."""


class M365ConfigurationError(M365ClientError):
    """The app registration settings cannot produce a credential."""


class M365GraphError(M365ClientError):
    """A Graph call (or its token request) returned an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description

    @property
    def is_not_found(self) -> bool:
        return self.status_code in (400, 404)


def build_confidential_app(config: M365Config) -> msal.ConfidentialClientApplication:
    """Create the MSAL app shared by the Graph and Exchange clients."""

    if not config.has_credentials:
        raise M365ConfigurationError(
            "Microsoft 365 app registration is incomplete; set tenant_id, client_id "
            "and a client_secret or certificate."
        )
    credential: Any = config.client_secret
    if config.certificate_path is not None and config.certificate_thumbprint:
        credential = {
            "private_key": config.certificate_path.read_text(encoding="utf-8"),
            "thumbprint": config.certificate_thumbprint,
        }
    return msal.ConfidentialClientApplication(
        client_id=config.client_id,
        client_credential=credential,
        authority=f"https://login.microsoftonline.com/{config.tenant_id}",
    )


def request_app_token(
    app: msal.ConfidentialClientApplication, scopes: Sequence[str], lock: threading.Lock
) -> Dict[str, Any]:
    """Return the MSAL result for ``scopes``, served from the token cache when possible."""

    with lock:
        return app.acquire_token_silent(list(scopes), account=None) or app.acquire_token_for_client(
            scopes=list(scopes)
        )


def error_details(response: requests.Response, default_code: str) -> Tuple[str, str]:
    """Pull ``(code, message)`` out of an OData error body."""

    try:
        error = response.json().get("error") or {}
    except ValueError:
        return default_code, response.text or "No response body."
    message = error.get("message") or response.text
    details = error.get("details") or []
    if details and details[0].get("message"):
        message = f"{message} {details[0]['message']}"
    return error.get("code") or default_code, message


def _directory_ref(object_id: str) -> Dict[str, str]:
    return {"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{object_id}"}


class M365Client:
    """Microsoft Graph client scoped to the calls offboarding needs."""

    def __init__(
        self,
        config: M365Config,
        app: Optional[msal.ConfidentialClientApplication] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._config = config
        self._app = app or build_confidential_app(config)
        self._token_lock = threading.Lock()
        self._session = session or requests.Session()

    def __enter__(self) -> "M365Client":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def close(self) -> None:
        self._session.close()

    def connect(self) -> None:
        """Acquire a token up front so credential problems surface immediately."""
        self._acquire_token()
        logger.info("Connected to Microsoft Graph for tenant %s", self._config.tenant_id)

    # ------------------------------------------------------------------ #
    # Transport                                                          #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        result = request_app_token(self._app, GRAPH_SCOPE, self._token_lock)
        if "access_token" not in result:
            raise M365GraphError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", "No Graph token was issued."),
            )
        return str(result["access_token"])

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Send one Graph request; ``path`` may be relative or a full ``nextLink`` URL."""

        headers = {
            "Authorization": f"Bearer {self._acquire_token()}",
            "Accept": "application/json",
        }
        if "json" in kwargs:
            headers["Content-Type"] = "application/json"
        response = self._session.request(
            method,
            path if path.startswith("https://") else GRAPH_BASE_URL + path,
            timeout=REQUEST_TIMEOUT,
            headers=headers,
            **kwargs,
        )
        if response.status_code >= 400:
            code, message = error_details(response, "GraphError")
            raise M365GraphError(response.status_code, code, message)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, Any]]:
        """Yield every ``value`` entry, following ``@odata.nextLink``."""

        result = self._request("GET", path, params=params)
        while True:
            yield from result.get("value", [])
            next_link = result.get("@odata.nextLink")
            if not next_link:
                return
            result = self._request("GET", next_link)

    # ------------------------------------------------------------------ #
    # User helpers                                                       #
    # ------------------------------------------------------------------ #
    def get_user(self, user_id: str, select: Optional[str] = None) -> Dict[str, Any]:
        params = {"$select": select} if select else None
        return self._request("GET", f"/users/{user_id}", params=params)

    def find_user(self, query: str, select: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Return the first user whose UPN or primary SMTP address equals ``query``."""

        literal = (query or "").strip().replace("'", "''")
        if not literal:
            return None
        params = {"$filter": f"userPrincipalName eq '{literal}' or mail eq '{literal}'"}
        if select:
            params["$select"] = select
        matches = self._request("GET", "/users", params=params).get("value") or []
        return matches[0] if matches else None

    def update_user(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        changes = {name: value for name, value in fields.items() if value is not None}
        return self._request("PATCH", f"/users/{user_id}", json=changes) if changes else {}

    def block_sign_in(self, user_id: str) -> None:
        self.update_user(user_id, accountEnabled=False)

    def revoke_sign_in_sessions(self, user_id: str) -> None:
        self._request("POST", f"/users/{user_id}/revokeSignInSessions")

    # ------------------------------------------------------------------ #
    # License helpers                                                    #
    # ------------------------------------------------------------------ #
    def get_user_license_details(self, user_id: str) -> List[Dict[str, Any]]:
        return list(self._paged(f"/users/{user_id}/licenseDetails"))

    def remove_licenses(self, user_id: str, sku_ids: Iterable[str]) -> Dict[str, Any]:
        payload = {"addLicenses": [], "removeLicenses": list(sku_ids)}
        return self._request("POST", f"/users/{user_id}/assignLicense", json=payload)

    # ------------------------------------------------------------------ #
    # Group helpers                                                      #
    # ------------------------------------------------------------------ #
    def get_user_groups(self, user_id: str) -> List[str]:
        """IDs of groups with ``user_id`` as a direct member."""
        return [
            group["id"]
            for group in self._paged(
                f"/users/{user_id}/memberOf/microsoft.graph.group", params={"$select": "id"}
            )
            if group.get("id")
        ]

    def get_group(self, group_id: str) -> Dict[str, Any]:
        """Fetch the fields needed to classify a group."""
        return self._request(
            "GET",
            f"/groups/{group_id}",
            params={
                "$select": "id,displayName,mail,mailEnabled,securityEnabled,groupTypes,"
                "onPremisesSyncEnabled,membershipRule"
            },
        )

    def get_owned_groups(self, user_id: str) -> List[Dict[str, Any]]:
        return list(
            self._paged(
                f"/users/{user_id}/ownedObjects/microsoft.graph.group",
                params={"$select": "id,displayName"},
            )
        )

    def count_group_owners(self, group_id: str) -> int:
        return sum(1 for _ in self._paged(f"/groups/{group_id}/owners", params={"$select": "id"}))

    def add_user_to_group(self, user_id: str, group_id: str) -> None:
        self._request("POST", f"/groups/{group_id}/members/$ref", json=_directory_ref(user_id))

    def remove_user_from_group(self, user_id: str, group_id: str) -> None:
        self._request("DELETE", f"/groups/{group_id}/members/{user_id}/$ref")

    def add_group_owner(self, user_id: str, group_id: str) -> None:
        self._request("POST", f"/groups/{group_id}/owners/$ref", json=_directory_ref(user_id))


__all__ = [
    "M365Client",
    "M365ClientError",
    "M365ConfigurationError",
    "M365GraphError",
    "build_confidential_app",
    "error_details",
    "request_app_token",
]
