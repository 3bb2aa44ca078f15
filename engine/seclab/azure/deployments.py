"""ARM deployments — resource group, validation, apply, outputs."""

from __future__ import annotations

import logging
from typing import Any, Optional

from azure.core.exceptions import ResourceNotFoundError, ServiceRequestError, ServiceResponseError
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
    ResourceGroup,
)

from ..common import TIMESTAMP, log, print_info, print_step, print_success
from ..errors import DeploymentError
from ..resilience import call_with_retry
from .auth import AzureClients

logger = logging.getLogger(__name__)

# Network blips are retried; HTTP 4xx/5xx answers from ARM are not.
TRANSIENT_ERRORS = (ServiceRequestError, ServiceResponseError, ConnectionError)


def deployment_name(kind: str, prefix: str) -> str:
    """Deployment names are capped at 64 characters by ARM."""
    return f"{prefix}-{kind}-{TIMESTAMP}"[:64]


def flatten_outputs(raw: Optional[dict[str, Any]]) -> dict[str, Any]:
    """``{"name": {"type": "String", "value": v}}`` → ``{"name": v}``."""
    if not raw:
        return {}
    return {
        name: entry.get("value") if isinstance(entry, dict) else entry
        for name, entry in raw.items()
    }


def _error_from(err: Any, fallback: str) -> DeploymentError:
    """Turn an ARM ErrorResponse (possibly nested) into a DeploymentError."""
    if err is None:
        return DeploymentError(fallback)
    details = [
        f"{getattr(d, 'code', '')}: {getattr(d, 'message', '')}"
        for d in (getattr(err, "details", None) or [])
    ]
    return DeploymentError(
        getattr(err, "message", "") or fallback,
        code=getattr(err, "code", "") or "",
        details=details,
    )


def _deployment(
    template: dict[str, Any],
    parameters: dict[str, Any],
    location: Optional[str] = None,
) -> Deployment:
    return Deployment(
        location=location,
        properties=DeploymentProperties(
            mode=DeploymentMode.INCREMENTAL,
            template=template,
            parameters=parameters,
        ),
    )


# ---------------------------------------------------------------------------
# Resource group
# ---------------------------------------------------------------------------


def ensure_resource_group(
    clients: AzureClients,
    name: str,
    location: str,
    tags: Optional[dict[str, str]] = None,
) -> bool:
    """Create the resource group if needed. Returns True when it already existed."""
    print_step(f"Ensuring resource group {name} in {location}...")
    groups = clients.resource.resource_groups
    existed = bool(call_with_retry(groups.check_existence, name, retryable_exceptions=TRANSIENT_ERRORS))
    if existed:
        print_info(f"Resource group {name} already exists — deploying incrementally.")
    call_with_retry(
        groups.create_or_update,
        name,
        ResourceGroup(location=location, tags=tags or {"workload": "security-lab"}),
        retryable_exceptions=TRANSIENT_ERRORS,
    )
    if not existed:
        print_success(f"Resource group {name} created.")
    log(f"Resource group ready: {name} ({location}), existed={existed}")
    return existed


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_deployment(
    clients: AzureClients,
    resource_group: str,
    name: str,
    template: dict[str, Any],
    parameters: dict[str, Any],
) -> None:
    """Ask ARM to validate a resource-group deployment; raise on any error."""
    print_step(f"Validating deployment {name}...")
    poller = call_with_retry(
        clients.resource.deployments.begin_validate,
        resource_group,
        name,
        _deployment(template, parameters),
        retryable_exceptions=TRANSIENT_ERRORS,
    )
    result = poller.result()
    if getattr(result, "error", None) is not None:
        raise _error_from(result.error, "Template validation failed")
    print_success("Template validation passed.")


def validate_subscription_deployment(
    clients: AzureClients,
    location: str,
    name: str,
    template: dict[str, Any],
    parameters: dict[str, Any],
) -> None:
    print_step(f"Validating subscription deployment {name}...")
    poller = call_with_retry(
        clients.resource.deployments.begin_validate_at_subscription_scope,
        name,
        _deployment(template, parameters, location=location),
        retryable_exceptions=TRANSIENT_ERRORS,
    )
    result = poller.result()
    if getattr(result, "error", None) is not None:
        raise _error_from(result.error, "Subscription template validation failed")
    print_success("Subscription template validation passed.")


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


def failed_operation_messages(
    clients: AzureClients,
    name: str,
    resource_group: Optional[str] = None,
) -> list[str]:
    """Status messages of the failed operations inside a deployment."""
    ops_client = clients.resource.deployment_operations

    def list_operations() -> list[Any]:
        if resource_group:
            return list(ops_client.list(resource_group, name))
        return list(ops_client.list_at_subscription_scope(name))

    try:
        ops = call_with_retry(list_operations, retryable_exceptions=TRANSIENT_ERRORS)
        messages = []
        for op in ops:
            props = op.properties
            if props is None or props.provisioning_state != "Failed":
                continue
            target = getattr(props.target_resource, "resource_name", "") if props.target_resource else ""
            status = props.status_message
            error = getattr(status, "error", None) if status is not None else None
            text = getattr(error, "message", None) or str(status)
            messages.append(f"{target}: {text}" if target else text)
        return messages
    except ResourceNotFoundError:
        return []


def _finish(clients: AzureClients, poller: Any, name: str, resource_group: Optional[str]) -> dict[str, Any]:
    print_info("Waiting for Azure Resource Manager to converge (this can take 10+ minutes)...")
    result = poller.result()
    props = result.properties
    state = getattr(props, "provisioning_state", "Unknown")
    if state != "Succeeded":
        err = _error_from(getattr(props, "error", None), f"Deployment {name} ended in state {state}")
        err.details.extend(failed_operation_messages(clients, name, resource_group))
        raise err
    outputs = flatten_outputs(props.outputs)
    print_success(f"Deployment {name} succeeded ({len(outputs)} outputs).")
    log(f"Deployment {name} outputs: {sorted(outputs)}")
    return outputs


def deploy_resource_group(
    clients: AzureClients,
    resource_group: str,
    name: str,
    template: dict[str, Any],
    parameters: dict[str, Any],
) -> dict[str, Any]:
    """Apply *template* to *resource_group* and return its flattened outputs."""
    print_step(f"Submitting resource-group deployment {name}...")
    poller = call_with_retry(
        clients.resource.deployments.begin_create_or_update,
        resource_group,
        name,
        _deployment(template, parameters),
        retryable_exceptions=TRANSIENT_ERRORS,
    )
    return _finish(clients, poller, name, resource_group)


def deploy_subscription(
    clients: AzureClients,
    location: str,
    name: str,
    template: dict[str, Any],
    parameters: dict[str, Any],
) -> dict[str, Any]:
    """Apply a subscription-scope template and return its flattened outputs."""
    print_step(f"Submitting subscription deployment {name}...")
    poller = call_with_retry(
        clients.resource.deployments.begin_create_or_update_at_subscription_scope,
        name,
        _deployment(template, parameters, location=location),
        retryable_exceptions=TRANSIENT_ERRORS,
    )
    return _finish(clients, poller, name, None)


# ---------------------------------------------------------------------------
# Read back
# ---------------------------------------------------------------------------


def get_deployment_outputs(
    clients: AzureClients,
    name: str,
    resource_group: Optional[str] = None,
) -> dict[str, Any]:
    """Outputs of an existing deployment (subscription scope when no group given)."""
    deployments = clients.resource.deployments
    if resource_group:
        dep = call_with_retry(deployments.get, resource_group, name, retryable_exceptions=TRANSIENT_ERRORS)
    else:
        dep = call_with_retry(deployments.get_at_subscription_scope, name, retryable_exceptions=TRANSIENT_ERRORS)
    return flatten_outputs(dep.properties.outputs)


def latest_deployment_name(
    clients: AzureClients,
    resource_group: str,
    name_prefix: str,
) -> Optional[str]:
    """Most recent successful deployment in the group whose name starts with *name_prefix*."""
    deployments = clients.resource.deployments

    def list_deployments() -> list[Any]:
        return list(deployments.list_by_resource_group(resource_group))

    candidates = [
        d for d in call_with_retry(list_deployments, retryable_exceptions=TRANSIENT_ERRORS)
        if d.name.startswith(name_prefix)
        and d.properties is not None
        and d.properties.provisioning_state == "Succeeded"
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda d: d.properties.timestamp)
    return candidates[-1].name
