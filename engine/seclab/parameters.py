"""Deployment parameters — validated model, ARM parameter files, CLI precedence."""

from __future__ import annotations

import ipaddress
import json
import re
from datetime import date
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from .common import print_info, print_success
from .errors import SeclabError

# Usernames Azure refuses for VM admin accounts
RESERVED_USERNAMES = frozenset({
    "administrator", "admin", "user", "user1", "test", "user2", "test1", "user3",
    "admin1", "1", "123", "a", "actuser", "adm", "admin2", "aspnet", "backup",
    "console", "david", "guest", "john", "owner", "root", "server", "sql",
    "support", "support_388945a0", "sys", "test2", "test3", "user4", "user5",
})

# Field name mapping: ARM parameter name → model attribute.
# Only these keys are read from / written to parameter files.
_ARM_KEY_MAP: dict[str, str] = {
    "location": "location",
    "prefix": "prefix",
    "resourceGroupName": "resource_group",
    "osType": "os_type",
    "vmSize": "vm_size",
    "adminUsername": "admin_username",
    "adminPassword": "admin_password",
    "vnetAddressPrefix": "vnet_address_prefix",
    "subnetAddressPrefix": "subnet_address_prefix",
    "allowedSourceAddress": "allowed_source_address",
    "retentionInDays": "retention_days",
    "budgetAmount": "budget_amount",
    "budgetThresholds": "budget_thresholds",
    "contactEmails": "contact_emails",
    "autoShutdownTime": "auto_shutdown_time",
    "autoShutdownTimeZone": "auto_shutdown_timezone",
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class LabParameters(BaseModel):
    """All inputs of a lab deployment.

    Values can originate from (highest precedence first):
      1. CLI flags / interactive prompts
      2. ARM parameters file  (see :func:`read_parameters_file` and :func:`load_parameters`)
      3. Defaults defined here
    """

    location: str = "eastus"
    prefix: str = Field("seclab", min_length=3, max_length=12)
    resource_group: str = Field("seclab-rg", min_length=1, max_length=90)

    # VM
    os_type: Literal["Windows", "Linux"] = "Windows"
    vm_size: str = "Standard_B2s"
    admin_username: str = "labadmin"
    admin_password: Optional[SecretStr] = None

    # Network
    vnet_address_prefix: str = "10.0.0.0/16"
    subnet_address_prefix: str = "10.0.1.0/24"
    allowed_source_address: Optional[str] = None
    allow_any_source: bool = False

    # Log workspace
    retention_days: int = Field(90, ge=30, le=730)

    # Cost controls
    budget_amount: int = Field(50, gt=0)
    budget_thresholds: list[float] = Field(default_factory=lambda: [50.0, 80.0, 100.0])
    contact_emails: list[str] = Field(default_factory=list)
    auto_shutdown_time: str = "1900"
    auto_shutdown_timezone: str = "UTC"

    model_config = {"validate_assignment": True}

    # -- field validators ---------------------------------------------------

    @field_validator("prefix")
    @classmethod
    def _check_prefix(cls, v: str) -> str:
        if not re.fullmatch(r"[a-z][a-z0-9]{2,11}", v):
            raise ValueError("prefix must be 3-12 lowercase letters/digits starting with a letter")
        return v

    @field_validator("location")
    @classmethod
    def _check_location(cls, v: str) -> str:
        v = v.strip().lower().replace(" ", "")
        if not re.fullmatch(r"[a-z0-9]+", v):
            raise ValueError(f"invalid Azure region name: {v!r}")
        return v

    @field_validator("vm_size")
    @classmethod
    def _check_vm_size(cls, v: str) -> str:
        if not v.startswith(("Standard_", "Basic_")):
            raise ValueError(f"invalid VM size: {v!r} (expected e.g. Standard_B2s)")
        return v

    @field_validator("admin_username")
    @classmethod
    def _check_username(cls, v: str) -> str:
        if v.lower() in RESERVED_USERNAMES:
            raise ValueError(f"admin username {v!r} is reserved by Azure")
        if not re.fullmatch(r"[A-Za-z][A-Za-z0-9_.-]{0,19}", v) or v.endswith("."):
            raise ValueError("admin username must be 1-20 characters, start with a letter")
        return v

    @field_validator("admin_password")
    @classmethod
    def _check_password(cls, v: Optional[SecretStr]) -> Optional[SecretStr]:
        if v is None:
            return v
        raw = v.get_secret_value()
        if not 12 <= len(raw) <= 123:
            raise ValueError("admin password must be 12-123 characters")
        classes = [
            any(c.islower() for c in raw),
            any(c.isupper() for c in raw),
            any(c.isdigit() for c in raw),
            any(not c.isalnum() for c in raw),
        ]
        if sum(classes) < 3:
            raise ValueError(
                "admin password needs 3 of: lowercase, uppercase, digit, special character"
            )
        return v

    @field_validator("vnet_address_prefix", "subnet_address_prefix")
    @classmethod
    def _check_cidr(cls, v: str) -> str:
        try:
            net = ipaddress.IPv4Network(v, strict=True)
        except ValueError as exc:
            raise ValueError(f"invalid IPv4 CIDR {v!r}: {exc}") from exc
        if not net.is_private:
            raise ValueError(f"{v} is not a private address range")
        return str(net)

    @field_validator("allowed_source_address")
    @classmethod
    def _check_source(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        try:
            net = ipaddress.IPv4Network(v.strip(), strict=False)
        except ValueError as exc:
            raise ValueError(f"invalid source address {v!r}: {exc}") from exc
        return str(net) if net.prefixlen < 32 else str(net.network_address)

    @field_validator("budget_thresholds")
    @classmethod
    def _check_thresholds(cls, v: list[float]) -> list[float]:
        if not v:
            raise ValueError("at least one budget threshold is required")
        if len(v) > 5:
            raise ValueError("Azure budgets allow at most 5 notifications")
        for t in v:
            if not 0 < t <= 1000:
                raise ValueError(f"budget threshold {t} must be in (0, 1000]")
        return sorted(set(v))

    @field_validator("contact_emails")
    @classmethod
    def _check_emails(cls, v: list[str]) -> list[str]:
        cleaned = [e.strip() for e in v if e.strip()]
        for e in cleaned:
            if not _EMAIL_RE.match(e):
                raise ValueError(f"invalid e-mail address: {e!r}")
        return cleaned

    @field_validator("auto_shutdown_time")
    @classmethod
    def _check_shutdown_time(cls, v: str) -> str:
        v = v.replace(":", "")
        if not re.fullmatch(r"([01]\d|2[0-3])[0-5]\d", v):
            raise ValueError(f"auto-shutdown time must be HHMM (24h), got {v!r}")
        return v

    @model_validator(mode="after")
    def _check_network(self) -> "LabParameters":
        vnet = ipaddress.IPv4Network(self.vnet_address_prefix)
        subnet = ipaddress.IPv4Network(self.subnet_address_prefix)
        if not subnet.subnet_of(vnet):
            raise ValueError(f"subnet {subnet} is not inside vnet {vnet}")
        if self.allowed_source_address == "0.0.0.0/0" and not self.allow_any_source:
            raise ValueError(
                "allowed source 0.0.0.0/0 exposes the management port to the internet; "
                "pass --allow-any-source to accept that"
            )
        return self

    # -- derived values -----------------------------------------------------

    @property
    def management_port(self) -> int:
        return 3389 if self.os_type == "Windows" else 22

    @property
    def vm_name(self) -> str:
        # Windows computer names are capped at 15 characters
        return f"{self.prefix}-vm"[:15]

    @property
    def budget_name(self) -> str:
        return f"{self.prefix}-budget"

    @property
    def activity_log_setting_name(self) -> str:
        return f"{self.prefix}-activity-to-workspace"

    def subscription_artifact_ids(self, subscription_id: str) -> dict[str, str]:
        """Ids the subscription deployment gives its budget and activity-log setting."""
        scope = f"/subscriptions/{subscription_id}/providers"
        return {
            "budgetId": f"{scope}/Microsoft.Consumption/budgets/{self.budget_name}",
            "activityLogSettingId": (
                f"{scope}/Microsoft.Insights/diagnosticSettings/{self.activity_log_setting_name}"
            ),
        }

    def missing_required(self) -> list[str]:
        """Names of values that have no usable default and must be supplied."""
        missing = []
        if self.admin_password is None:
            missing.append("admin_password")
        if self.allowed_source_address is None:
            missing.append("allowed_source_address")
        if not self.contact_emails:
            missing.append("contact_emails")
        return missing

    # -- ARM parameter rendering -------------------------------------------

    def to_lab_arm_parameters(self) -> dict[str, dict[str, Any]]:
        """Parameters for the resource-group template."""
        if self.admin_password is None or self.allowed_source_address is None:
            raise ValueError("admin_password and allowed_source_address must be set before deploying")
        values: dict[str, Any] = {
            "location": self.location,
            "prefix": self.prefix,
            "vmName": self.vm_name,
            "vmSize": self.vm_size,
            "adminUsername": self.admin_username,
            "adminPassword": self.admin_password.get_secret_value(),
            "vnetAddressPrefix": self.vnet_address_prefix,
            "subnetAddressPrefix": self.subnet_address_prefix,
            "allowedSourceAddress": self.allowed_source_address,
            "retentionInDays": self.retention_days,
            "autoShutdownTime": self.auto_shutdown_time,
            "autoShutdownTimeZone": self.auto_shutdown_timezone,
            "autoShutdownNotificationEmail": self.contact_emails[0] if self.contact_emails else "",
        }
        return {k: {"value": v} for k, v in values.items()}

    def to_subscription_arm_parameters(
        self,
        lab_outputs: dict[str, Any],
        start_date: Optional[date] = None,
    ) -> dict[str, dict[str, Any]]:
        """Parameters for the subscription template, threaded from phase-1 outputs."""
        if "workspaceId" not in lab_outputs:
            raise ValueError("resource-group deployment outputs lack 'workspaceId'")
        start = (start_date or date.today()).replace(day=1)
        values: dict[str, Any] = {
            "budgetName": self.budget_name,
            "budgetAmount": self.budget_amount,
            "budgetStartDate": start.isoformat(),
            "contactEmails": self.contact_emails,
            "resourceGroupName": self.resource_group,
            "workspaceId": lab_outputs["workspaceId"],
            "activityLogSettingName": self.activity_log_setting_name,
        }
        return {k: {"value": v} for k, v in values.items()}

    # -- file persistence ---------------------------------------------------

    def save_parameters_file(self, path: Path) -> Path:
        """Persist non-secret values as an ARM parameters file for re-use."""
        path.parent.mkdir(parents=True, exist_ok=True)
        params: dict[str, Any] = {}
        for arm_key, attr in _ARM_KEY_MAP.items():
            if attr == "admin_password":
                continue
            value = getattr(self, attr)
            if value is None or value == []:
                continue
            params[arm_key] = {"value": value}
        doc = {
            "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#",
            "contentVersion": "1.0.0.0",
            "parameters": params,
        }
        path.write_text(json.dumps(doc, indent=2) + "\n")
        print_success(f"Parameters saved to: {path}")
        return path


def read_parameters_file(path: Path) -> dict[str, Any]:
    """Read an ARM parameters file and return model-attribute keyed values.

    Accepts both the full ``{"parameters": {...}}`` document and a bare
    parameters object. Unknown keys are ignored.
    """
    try:
        doc = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise SeclabError(f"Parameters file {path} is not valid JSON: {exc}") from exc
    raw = doc.get("parameters", doc) if isinstance(doc, dict) else {}
    values: dict[str, Any] = {}
    for arm_key, entry in raw.items():
        attr = _ARM_KEY_MAP.get(arm_key)
        if attr is None:
            continue
        if isinstance(entry, dict) and "value" in entry:
            values[attr] = entry["value"]
        elif isinstance(entry, dict) and "reference" in entry:
            # Key Vault references are resolved by ARM, not by us
            continue
        else:
            values[attr] = entry
    return values


def load_parameters(
    path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
    defaults: Optional[dict[str, Any]] = None,
) -> LabParameters:
    """Build :class:`LabParameters` with precedence overrides > file > defaults.

    ``None`` values in *overrides* mean "not given on the command line".
    """
    merged: dict[str, Any] = dict(defaults or {})
    if path is not None:
        if not path.is_file():
            raise FileNotFoundError(f"Parameters file not found: {path}")
        print_info(f"Loading parameters from: {path}")
        merged.update(read_parameters_file(path))
    for key, value in (overrides or {}).items():
        if value is None or value == () or value == []:
            continue
        merged[key] = list(value) if isinstance(value, tuple) else value
    return LabParameters(**merged)
