"""On-premises Active Directory helper client based on ldap3."""
from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import yaml
from ldap3 import ALL, MODIFY_REPLACE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException

from .config import LDAPConfig
from .models import ExternalDirectoryRef


ACCOUNTDISABLE = 0x0002
NORMAL_ACCOUNT = 0x0200

# RFC 4515 escapes for values placed inside a search filter.
_FILTER_ESCAPES = str.maketrans({"\\": r"\5c", "*": r"\2a", "(": r"\28", ")": r"\29", "\0": r"\00"})

logger = logging.getLogger(__name__)


class DirectoryUnavailableError(RuntimeError):
    """Raised when the on-premises directory cannot be reached."""


class DirectoryOperationError(RuntimeError):
    """Raised when Active Directory rejects a modification."""


class MockDirectory:
    """YAML-backed directory emulator selected with a ``mock://`` server URI."""

    def __init__(self, data_file: Optional[Path]):
        self.data_file = data_file
        self._data: Dict[str, Any] = {"users": []}
        if data_file is not None and data_file.is_file():
            loaded = yaml.safe_load(data_file.read_text(encoding="utf-8"))
            if isinstance(loaded, dict):
                self._data = loaded
        self._data.setdefault("users", [])

    def _persist(self) -> None:
        if self.data_file is None:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        self.data_file.write_text(yaml.safe_dump(self._data, sort_keys=False, indent=2), encoding="utf-8")

    def _find(self, distinguished_name: str) -> Optional[Dict[str, Any]]:
        return next(
            (user for user in self._data["users"] if user.get("distinguished_name") == distinguished_name),
            None,
        )

    def find_user(self, principal_name: str) -> Optional[Dict[str, Any]]:
        lowered = principal_name.lower()
        for user in self._data["users"]:
            attrs = user.get("attributes", {})
            candidates = (attrs.get("userPrincipalName"), attrs.get("mail"))
            if any(str(value or "").lower() == lowered for value in candidates):
                return {"distinguishedName": user.get("distinguished_name"), **attrs}
        return None

    def modify(self, distinguished_name: str, changes: Dict[str, Any]) -> bool:
        user = self._find(distinguished_name)
        if not user:
            return False
        user.setdefault("attributes", {}).update(changes)
        self._persist()
        return True

    def move(self, distinguished_name: str, new_parent: str) -> Optional[str]:
        user = self._find(distinguished_name)
        if not user:
            return None
        rdn = distinguished_name.split(",", 1)[0]
        user["distinguished_name"] = f"{rdn},{new_parent}"
        self._persist()
        return user["distinguished_name"]


class ADClient:
    """Wrapper around ldap3 that exposes the offboarding operations."""

    def __init__(self, config: LDAPConfig):
        self.config = config
        self._mock_directory: Optional[MockDirectory] = None
        self.connection: Optional[Connection] = None

        if config.server_uri.startswith("mock://"):
            self._mock_directory = MockDirectory(config.mock_data_file)
            logger.info("Using mock directory %s", config.mock_data_file or "(in-memory)")
            return

        try:
            self.server = Server(config.server_uri, use_ssl=config.use_ssl, get_info=ALL)
            self.connection = Connection(
                self.server,
                user=config.user_dn,
                password=config.password,
                auto_bind=True,
            )
        except LDAPException as exc:
            raise DirectoryUnavailableError(f"Unable to bind to {config.server_uri}: {exc}") from exc

    def close(self) -> None:
        if self.connection and self.connection.bound:
            self.connection.unbind()

    def __enter__(self) -> "ADClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # Lookup --------------------------------------------------------------
    def find_user(self, principal_name: str) -> Optional[ExternalDirectoryRef]:
        if self._mock_directory:
            record = self._mock_directory.find_user(principal_name)
        else:
            record = self._search_user(principal_name)
        if not record:
            return None

        control = record.get("userAccountControl")
        enabled: Optional[bool] = None
        if control not in (None, ""):
            enabled = not int(control) & ACCOUNTDISABLE
        description = record.get("description")
        if isinstance(description, (list, tuple)):
            description = description[0] if description else None
        return ExternalDirectoryRef(
            distinguished_name=str(record["distinguishedName"]),
            sam_account_name=record.get("sAMAccountName") or None,
            enabled=enabled,
            description=str(description) if description else None,
        )

    def _search_user(self, principal_name: str) -> Optional[Dict[str, Any]]:
        assert self.connection is not None
        escaped = principal_name.translate(_FILTER_ESCAPES)
        self.connection.search(
            search_base=self.config.base_dn,
            search_filter=f"(&(objectClass=user)(|(userPrincipalName={escaped})(mail={escaped})))",
            search_scope=SUBTREE,
            attributes=["sAMAccountName", "userAccountControl", "description"],
            size_limit=1,
        )
        if not self.connection.entries:
            return None
        entry = self.connection.entries[0]
        payload: Dict[str, Any] = {"distinguishedName": str(entry.entry_dn)}
        for attribute in ("sAMAccountName", "userAccountControl", "description"):
            if attribute in entry:
                payload[attribute] = entry[attribute].value
        return payload

    # Offboarding ---------------------------------------------------------
    def disable_user(self, user: ExternalDirectoryRef) -> None:
        self._modify(user.distinguished_name, {"userAccountControl": NORMAL_ACCOUNT | ACCOUNTDISABLE})

    def set_description(self, user: ExternalDirectoryRef, description: str) -> None:
        self._modify(user.distinguished_name, {"description": description})

    def move_user(self, user: ExternalDirectoryRef, target_ou: str) -> str:
        """Relocate the user under ``target_ou`` and return the new DN."""

        if self._mock_directory:
            moved = self._mock_directory.move(user.distinguished_name, target_ou)
            if not moved:
                raise DirectoryOperationError(f"{user.distinguished_name} was not found.")
            return moved

        assert self.connection is not None
        rdn = user.distinguished_name.split(",", 1)[0]
        if not self.connection.modify_dn(user.distinguished_name, rdn, new_superior=target_ou):
            self._raise_result(f"Unable to move {user.distinguished_name} to {target_ou}")
        return f"{rdn},{target_ou}"

    def _modify(self, distinguished_name: str, changes: Dict[str, Any]) -> None:
        if self._mock_directory:
            if not self._mock_directory.modify(distinguished_name, changes):
                raise DirectoryOperationError(f"{distinguished_name} was not found.")
            return

        assert self.connection is not None
        modified = self.connection.modify(
            distinguished_name,
            {key: [(MODIFY_REPLACE, [value])] for key, value in changes.items()},
        )
        if not modified:
            self._raise_result(f"Active Directory rejected the update of {distinguished_name}")

    def _raise_result(self, prefix: str) -> None:
        assert self.connection is not None
        outcome = self.connection.result or {}
        detail = " ".join(
            str(part) for part in (outcome.get("description") or "unknown", outcome.get("message")) if part
        )
        raise DirectoryOperationError(f"{prefix}: {detail}")


@contextlib.contextmanager
def ad_client(config: LDAPConfig) -> Iterator[ADClient]:
    client = ADClient(config)
    try:
        yield client
    finally:
        client.close()


__all__ = [
    "ADClient",
    "DirectoryOperationError",
    "DirectoryUnavailableError",
    "MockDirectory",
    "ad_client",
]
