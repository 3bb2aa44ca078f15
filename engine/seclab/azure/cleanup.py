"""Teardown — subscription-scope artifacts first, then the resource group."""

from __future__ import annotations

from typing import Any, Mapping

from azure.core.exceptions import ResourceNotFoundError

from ..common import log, print_info, print_step, print_success, print_warning
from ..resilience import call_with_retry
from ..templates.subscription import BUDGET_API, DIAGNOSTICS_API
from .auth import AzureClients
from .deployments import TRANSIENT_ERRORS

# subscription output name → API version used to delete it
SUBSCRIPTION_ARTIFACTS = {
    "budgetId": BUDGET_API,
    "activityLogSettingId": DIAGNOSTICS_API,
}


def delete_subscription_artifacts(
    clients: AzureClients,
    subscription_outputs: Mapping[str, Any],
) -> list[str]:
    """Delete budget and activity-log setting by id. Returns the ids deleted."""
    deleted: list[str] = []
    for key, api_version in SUBSCRIPTION_ARTIFACTS.items():
        rid = subscription_outputs.get(key)
        if not rid:
            continue
        print_step(f"Deleting {rid}...")
        try:
            poller = call_with_retry(
                clients.resource.resources.begin_delete_by_id,
                rid,
                api_version,
                retryable_exceptions=TRANSIENT_ERRORS,
            )
            poller.result()
        except ResourceNotFoundError:
            print_warning(f"Already gone: {rid}")
            continue
        deleted.append(rid)
        log(f"Deleted subscription artifact {rid}")
    return deleted


def delete_resource_group(clients: AzureClients, name: str, wait: bool = True) -> bool:
    """Delete the lab resource group. Returns False when it did not exist."""
    groups = clients.resource.resource_groups
    if not call_with_retry(groups.check_existence, name, retryable_exceptions=TRANSIENT_ERRORS):
        print_info(f"Resource group {name} does not exist.")
        return False

    print_step(f"Deleting resource group {name}...")
    poller = call_with_retry(groups.begin_delete, name, retryable_exceptions=TRANSIENT_ERRORS)
    if wait:
        print_info("Waiting for deletion to finish (VM, disks and workspace)...")
        poller.result()
        print_success(f"Resource group {name} deleted.")
    else:
        print_info(f"Deletion of {name} started; not waiting.")
    log(f"Resource group delete requested: {name}, waited={wait}")
    return True


def destroy_lab(
    clients: AzureClients,
    resource_group: str,
    subscription_outputs: Mapping[str, Any],
    wait: bool = True,
) -> dict[str, Any]:
    deleted = delete_subscription_artifacts(clients, subscription_outputs)
    group_deleted = delete_resource_group(clients, resource_group, wait=wait)
    return {"subscription_artifacts": deleted, "resource_group_deleted": group_deleted}
