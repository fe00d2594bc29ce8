"""Settings for the offboarding toolkit: YAML file plus ``OFFBOARD_*`` overrides."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "OFFBOARD_CONFIG"
ENV_PREFIX = "OFFBOARD_"


@dataclass
class M365Config:
    """App registration used for Microsoft Graph and Exchange Online."""

    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    certificate_path: Optional[Path] = None
    certificate_thumbprint: Optional[str] = None

    @property
    def has_certificate(self) -> bool:
        return bool(self.certificate_path and self.certificate_thumbprint)

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and (self.client_secret or self.has_certificate))


@dataclass
class ExchangeConfig:
    """Settings for the Exchange Online admin REST endpoint."""

    organization: Optional[str] = None
    anchor_mailbox: Optional[str] = None
    timeout: int = 120


@dataclass
class LDAPConfig:
    """Bind settings for on-premises Active Directory."""

    server_uri: str
    user_dn: str = ""
    password: str = ""
    base_dn: str = ""
    use_ssl: bool = True
    mock_data_file: Optional[Path] = None


@dataclass
class SyncConfig:
    """Command that starts a directory delta sync (e.g. Entra Connect)."""

    command: Optional[str] = None
    shell: bool = False
    timeout: int = 120


@dataclass
class OffboardingConfig:
    """Tenant-wide defaults for offboarding runs."""

    expiry_attribute: str = "CustomAttribute15"
    shared_mailbox_expiry_days: int = 180
    holding_ou: Optional[str] = None
    output_base: Path = field(default_factory=lambda: Path.home() / "Offboarding")


@dataclass
class AppConfig:
    m365: M365Config
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    ldap: Optional[LDAPConfig] = None
    sync: SyncConfig = field(default_factory=SyncConfig)
    offboarding: OffboardingConfig = field(default_factory=OffboardingConfig)


class ConfigurationError(RuntimeError):
    """Raised when settings are missing, malformed, or incomplete."""


# ---------------------------------------------------------------------- #
# Loading                                                                #
# ---------------------------------------------------------------------- #
def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Settings file '{path}' not found. "
            f"Copy '{DEFAULT_TEMPLATE_PATH}' to it or point {ENV_CONFIG_PATH} at another file."
        )
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Settings file '{path}' is not valid YAML: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Settings file '{path}' must contain a mapping at the top level.")
    return payload


def _environment_overrides() -> Dict[str, Any]:
    """Collect ``OFFBOARD_SECTION__KEY=value`` variables into a nested mapping."""

    overrides: Dict[str, Any] = {}
    for name, value in os.environ.items():
        if not name.startswith(ENV_PREFIX) or name == ENV_CONFIG_PATH:
            continue
        *sections, key = name[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for section in sections:
            node = node.setdefault(section, {})
        node[key] = value
    return overrides


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


def _config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    return Path(os.environ.get(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH)


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Create the settings file from the bundled example when it is missing."""

    target = _config_path(path)
    if target.exists():
        return target

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(f"Settings template '{template}' not found; cannot create '{target}'.")

    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target)
    return target


# ---------------------------------------------------------------------- #
# Value coercion                                                         #
# ---------------------------------------------------------------------- #
def _section(settings: Dict[str, Any], name: str, required: bool = False) -> Dict[str, Any]:
    if name not in settings or settings[name] is None:
        if required:
            raise ConfigurationError(f"Missing required configuration section: '{name}'.")
        return {}
    section = settings[name]
    if not isinstance(section, dict):
        raise ConfigurationError(f"Configuration section '{name}' must be a mapping.")
    return section


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _number(value: Any, key: str) -> int:
    try:
        return int(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Configuration value '{key}' must be an integer, got {value!r}.") from exc


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _path(value: Any) -> Optional[Path]:
    text = _text(value)
    return Path(text).expanduser() if text else None


# ---------------------------------------------------------------------- #
# Public API                                                             #
# ---------------------------------------------------------------------- #
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Read settings from disk, apply environment overrides, and validate them."""

    resolved = _config_path(path)
    if resolved == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved)
    settings = _merge(_read_yaml(resolved), _environment_overrides())

    m365 = _section(settings, "m365", required=True)
    m365_config = M365Config(
        tenant_id=_text(m365.get("tenant_id")),
        client_id=_text(m365.get("client_id")),
        client_secret=_text(m365.get("client_secret")),
        certificate_path=_path(m365.get("certificate_path")),
        certificate_thumbprint=_text(m365.get("certificate_thumbprint")),
    )
    if not m365_config.has_credentials:
        raise ConfigurationError(
            "Microsoft 365 credentials are incomplete: tenant_id, client_id and either "
            "client_secret or certificate_path + certificate_thumbprint are required."
        )

    exchange = _section(settings, "exchange")
    exchange_config = ExchangeConfig(
        organization=_text(exchange.get("organization")),
        anchor_mailbox=_text(exchange.get("anchor_mailbox")),
        timeout=_number(exchange.get("timeout", 120), "exchange.timeout"),
    )

    # An empty server_uri leaves on-premises integration switched off.
    ldap = _section(settings, "ldap")
    ldap_config: Optional[LDAPConfig] = None
    if _text(ldap.get("server_uri")):
        ldap_config = LDAPConfig(
            server_uri=str(_text(ldap.get("server_uri"))),
            user_dn=_text(ldap.get("user_dn")) or "",
            password=str(ldap.get("password") or ""),
            base_dn=_text(ldap.get("base_dn")) or "",
            use_ssl=_flag(ldap.get("use_ssl", True)),
            mock_data_file=_path(ldap.get("mock_data_file")),
        )

    sync = _section(settings, "sync")
    sync_config = SyncConfig(
        command=_text(sync.get("command")),
        shell=_flag(sync.get("shell", False)),
        timeout=_number(sync.get("timeout", 120), "sync.timeout"),
    )

    offboarding = _section(settings, "offboarding")
    defaults = OffboardingConfig()
    offboarding_config = OffboardingConfig(
        expiry_attribute=_text(offboarding.get("expiry_attribute")) or defaults.expiry_attribute,
        shared_mailbox_expiry_days=_number(
            offboarding.get("shared_mailbox_expiry_days", defaults.shared_mailbox_expiry_days),
            "offboarding.shared_mailbox_expiry_days",
        ),
        holding_ou=_text(offboarding.get("holding_ou")),
        output_base=_path(offboarding.get("output_base")) or defaults.output_base,
    )

    return AppConfig(
        m365=m365_config,
        exchange=exchange_config,
        ldap=ldap_config,
        sync=sync_config,
        offboarding=offboarding_config,
    )


__all__ = [
    "AppConfig",
    "ConfigurationError",
    "ExchangeConfig",
    "LDAPConfig",
    "M365Config",
    "OffboardingConfig",
    "SyncConfig",
    "ensure_default_config",
    "load_config",
]
