"""Template assembly — full resource-group and subscription templates plus sanity checks."""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Iterable

from ..common import log_quiet, print_success
from .compute import VM_ID, agent_id, compute_resources
from .expressions import RG_SCHEMA, SUBSCRIPTION_SCHEMA, param, prop, reference, referenced_names, var
from .monitoring import (
    DCR_ID,
    ONBOARDING_ID,
    WORKSPACE_API,
    WORKSPACE_ID,
    monitoring_resources,
    monitoring_variables,
)
from .network import (
    NIC_ID,
    NSG_ID,
    PUBLIC_IP_ID,
    VNET_ID,
    network_resources,
    network_variables,
    public_ip_output,
)
from .subscription import ACTIVITY_LOG_SETTING_ID, BUDGET_ID, subscription_resources

DEFAULT_THRESHOLDS = (50.0, 80.0, 100.0)

# ---------------------------------------------------------------------------
# Parameter declarations
# ---------------------------------------------------------------------------

LAB_PARAMETERS: dict[str, dict[str, Any]] = {
    "location": {
        "type": "string",
        "defaultValue": "[resourceGroup().location]",
        "metadata": {"description": "Region for every lab resource."},
    },
    "prefix": {
        "type": "string",
        "minLength": 3,
        "maxLength": 12,
        "metadata": {"description": "Short lowercase prefix for resource names."},
    },
    "vmName": {"type": "string", "maxLength": 15},
    "vmSize": {"type": "string", "defaultValue": "Standard_B2s"},
    "adminUsername": {"type": "string"},
    "adminPassword": {"type": "securestring", "minLength": 12},
    "vnetAddressPrefix": {"type": "string", "defaultValue": "10.0.0.0/16"},
    "subnetAddressPrefix": {"type": "string", "defaultValue": "10.0.1.0/24"},
    "allowedSourceAddress": {
        "type": "string",
        "metadata": {"description": "Address or CIDR allowed to reach the management port."},
    },
    "retentionInDays": {"type": "int", "defaultValue": 90, "minValue": 30, "maxValue": 730},
    "autoShutdownTime": {"type": "string", "defaultValue": "1900"},
    "autoShutdownTimeZone": {"type": "string", "defaultValue": "UTC"},
    "autoShutdownNotificationEmail": {"type": "string", "defaultValue": ""},
}

SUBSCRIPTION_PARAMETERS: dict[str, dict[str, Any]] = {
    "budgetName": {"type": "string"},
    "budgetAmount": {"type": "int", "minValue": 1},
    "budgetStartDate": {
        "type": "string",
        "metadata": {"description": "First day of the current month, YYYY-MM-DD."},
    },
    "contactEmails": {"type": "array", "minLength": 1},
    "resourceGroupName": {"type": "string"},
    "workspaceId": {
        "type": "string",
        "metadata": {"description": "workspaceId output of the resource-group deployment."},
    },
    "activityLogSettingName": {"type": "string", "defaultValue": "activity-to-workspace"},
}


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_lab_template(os_type: str = "Windows") -> dict[str, Any]:
    """Resource-group template: network, VM, workspace, Sentinel, DCR, shutdown."""
    port = 3389 if os_type == "Windows" else 22
    resources = (
        network_resources(port)
        + compute_resources(os_type)
        + monitoring_resources(os_type)
    )
    return {
        "$schema": RG_SCHEMA,
        "contentVersion": "1.0.0.0",
        "metadata": {"description": f"Security lab ({os_type}) with Microsoft Sentinel"},
        "parameters": copy.deepcopy(LAB_PARAMETERS),
        "variables": {**network_variables(), **monitoring_variables()},
        "resources": resources,
        "outputs": {
            "workspaceId": {"type": "string", "value": WORKSPACE_ID},
            "workspaceName": {"type": "string", "value": var("workspaceName")},
            "workspaceCustomerId": {
                "type": "string",
                "value": prop(reference(WORKSPACE_ID, WORKSPACE_API), "customerId"),
            },
            "vmName": {"type": "string", "value": param("vmName")},
            "vmId": {"type": "string", "value": VM_ID},
            "publicIpAddress": public_ip_output(),
            "managementPort": {"type": "int", "value": port},
            "dataCollectionRuleId": {"type": "string", "value": DCR_ID},
        },
    }


def lab_resource_ids(os_type: str = "Windows") -> set[str]:
    """Resource-id expressions of everything :func:`build_lab_template` declares."""
    return {
        NSG_ID,
        VNET_ID,
        PUBLIC_IP_ID,
        NIC_ID,
        VM_ID,
        agent_id(os_type),
        WORKSPACE_ID,
        ONBOARDING_ID,
        DCR_ID,
    }


def build_subscription_template(thresholds: Iterable[float] = DEFAULT_THRESHOLDS) -> dict[str, Any]:
    """Subscription template: budget on the lab resource group and activity-log export.

    Budget thresholds are baked in because ARM cannot loop over object keys.
    """
    return {
        "$schema": SUBSCRIPTION_SCHEMA,
        "contentVersion": "1.0.0.0",
        "metadata": {"description": "Security lab cost controls and activity-log export"},
        "parameters": copy.deepcopy(SUBSCRIPTION_PARAMETERS),
        "resources": subscription_resources(list(thresholds)),
        "outputs": {
            "budgetId": {"type": "string", "value": BUDGET_ID},
            "activityLogSettingId": {"type": "string", "value": ACTIVITY_LOG_SETTING_ID},
        },
    }


# ---------------------------------------------------------------------------
# Sanity checks
# ---------------------------------------------------------------------------


def _walk_strings(node: Any) -> Iterable[str]:
    if isinstance(node, str):
        yield node
    elif isinstance(node, dict):
        for value in node.values():
            yield from _walk_strings(value)
    elif isinstance(node, list):
        for value in node:
            yield from _walk_strings(value)


def template_dependency_errors(
    template: dict[str, Any],
    declared_ids: Iterable[str] = (),
) -> list[str]:
    """Return human-readable problems; an empty list means the template is coherent.

    Checks that every ``dependsOn`` entry is a declared resource id and that
    every ``parameters('x')`` reference names a declared parameter.
    """
    errors: list[str] = []
    declared = set(declared_ids)
    for res in template.get("resources", []):
        for dep in res.get("dependsOn", []):
            if dep not in declared:
                errors.append(f"{res['type']} depends on undeclared resource {dep}")

    params = set(template.get("parameters", {}))
    for text in _walk_strings(
        {k: v for k, v in template.items() if k in ("variables", "resources", "outputs")}
    ):
        for name in referenced_names(text):
            if name not in params:
                errors.append(f"reference to undeclared parameter '{name}'")
    return sorted(set(errors))


def render_templates(
    out_dir: Path,
    os_type: str = "Windows",
    thresholds: Iterable[float] = DEFAULT_THRESHOLDS,
) -> tuple[Path, Path]:
    """Write both templates as JSON. Returns (lab_path, subscription_path)."""
    out_dir.mkdir(parents=True, exist_ok=True)
    lab_path = out_dir / f"lab-{os_type.lower()}.json"
    sub_path = out_dir / "subscription.json"
    lab_path.write_text(json.dumps(build_lab_template(os_type), indent=2) + "\n")
    sub_path.write_text(json.dumps(build_subscription_template(thresholds), indent=2) + "\n")
    print_success(f"Templates written: {lab_path.name}, {sub_path.name} → {out_dir}")
    log_quiet(f"Rendered templates to {out_dir}")
    return lab_path, sub_path
