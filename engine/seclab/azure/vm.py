"""VM power management — the manual side of the lab's shutdown controls."""

from __future__ import annotations

from ..common import log, print_info, print_step, print_success
from ..resilience import call_with_retry
from .auth import AzureClients
from .deployments import TRANSIENT_ERRORS


def get_power_state(clients: AzureClients, resource_group: str, vm_name: str) -> str:
    """Return the power state suffix (``running``, ``deallocated``, ...) or ``unknown``."""
    view = call_with_retry(
        clients.compute.virtual_machines.instance_view,
        resource_group,
        vm_name,
        retryable_exceptions=TRANSIENT_ERRORS,
    )
    for status in view.statuses or []:
        code = status.code or ""
        if code.startswith("PowerState/"):
            return code.split("/", 1)[1]
    return "unknown"


def start_vm(clients: AzureClients, resource_group: str, vm_name: str) -> None:
    state = get_power_state(clients, resource_group, vm_name)
    if state in ("running", "starting"):
        print_info(f"{vm_name} is already {state}.")
        return

    print_step(f"Starting {vm_name}...")
    poller = call_with_retry(
        clients.compute.virtual_machines.begin_start,
        resource_group,
        vm_name,
        retryable_exceptions=TRANSIENT_ERRORS,
    )
    poller.result()
    print_success(f"{vm_name} running.")
    log(f"VM started: {resource_group}/{vm_name}")


def deallocate_vm(clients: AzureClients, resource_group: str, vm_name: str) -> None:
    """Stop and release compute so the VM stops accruing charges."""
    state = get_power_state(clients, resource_group, vm_name)
    if state in ("deallocated", "deallocating"):
        print_info(f"{vm_name} is already {state}.")
        return

    print_step(f"Deallocating {vm_name}...")
    poller = call_with_retry(
        clients.compute.virtual_machines.begin_deallocate,
        resource_group,
        vm_name,
        retryable_exceptions=TRANSIENT_ERRORS,
    )
    poller.result()
    print_success(f"{vm_name} deallocated — compute billing stopped.")
    log(f"VM deallocated: {resource_group}/{vm_name}")
