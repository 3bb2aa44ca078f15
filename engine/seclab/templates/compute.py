"""Compute resources — lab VM, Azure Monitor Agent, auto-shutdown schedule."""

from __future__ import annotations

from typing import Any

from .expressions import fmt, param, resource_id
from .network import NIC_ID

COMPUTE_API = "2023-09-01"
DEVTESTLAB_API = "2018-09-15"

IMAGES: dict[str, dict[str, str]] = {
    "Windows": {
        "publisher": "MicrosoftWindowsServer",
        "offer": "WindowsServer",
        "sku": "2022-datacenter-azure-edition",
        "version": "latest",
    },
    "Linux": {
        "publisher": "Canonical",
        "offer": "0001-com-ubuntu-server-jammy",
        "sku": "22_04-lts-gen2",
        "version": "latest",
    },
}

MONITOR_AGENTS: dict[str, dict[str, str]] = {
    "Windows": {"type": "AzureMonitorWindowsAgent", "typeHandlerVersion": "1.22"},
    "Linux": {"type": "AzureMonitorLinuxAgent", "typeHandlerVersion": "1.29"},
}

VM_ID = resource_id("Microsoft.Compute/virtualMachines", param("vmName"))


def agent_id(os_type: str) -> str:
    return resource_id(
        "Microsoft.Compute/virtualMachines/extensions",
        param("vmName"),
        MONITOR_AGENTS[os_type]["type"],
    )


def _os_profile(os_type: str) -> dict[str, Any]:
    profile: dict[str, Any] = {
        "computerName": param("vmName"),
        "adminUsername": param("adminUsername"),
        "adminPassword": param("adminPassword"),
    }
    if os_type == "Windows":
        profile["windowsConfiguration"] = {
            "enableAutomaticUpdates": True,
            "provisionVMAgent": True,
            "patchSettings": {"patchMode": "AutomaticByOS"},
        }
    else:
        profile["linuxConfiguration"] = {
            "disablePasswordAuthentication": False,
            "provisionVMAgent": True,
        }
    return profile


def virtual_machine(os_type: str) -> dict[str, Any]:
    """Lab VM with a system-assigned identity (required by the monitor agent)."""
    return {
        "type": "Microsoft.Compute/virtualMachines",
        "apiVersion": COMPUTE_API,
        "name": param("vmName"),
        "location": param("location"),
        "identity": {"type": "SystemAssigned"},
        "dependsOn": [NIC_ID],
        "properties": {
            "hardwareProfile": {"vmSize": param("vmSize")},
            "osProfile": _os_profile(os_type),
            "storageProfile": {
                "imageReference": dict(IMAGES[os_type]),
                "osDisk": {
                    "name": fmt("{0}-osdisk", param("vmName")),
                    "createOption": "FromImage",
                    "deleteOption": "Delete",
                    "managedDisk": {"storageAccountType": "StandardSSD_LRS"},
                },
            },
            "networkProfile": {
                "networkInterfaces": [
                    {
                        "id": NIC_ID,
                        "properties": {"deleteOption": "Delete"},
                    },
                ],
            },
            "diagnosticsProfile": {"bootDiagnostics": {"enabled": True}},
        },
    }


def monitor_agent(os_type: str) -> dict[str, Any]:
    agent = MONITOR_AGENTS[os_type]
    return {
        "type": "Microsoft.Compute/virtualMachines/extensions",
        "apiVersion": COMPUTE_API,
        "name": fmt("{0}/{1}", param("vmName"), agent["type"]),
        "location": param("location"),
        "dependsOn": [VM_ID],
        "properties": {
            "publisher": "Microsoft.Azure.Monitor",
            "type": agent["type"],
            "typeHandlerVersion": agent["typeHandlerVersion"],
            "autoUpgradeMinorVersion": True,
            "enableAutomaticUpgrade": True,
        },
    }


def auto_shutdown_schedule() -> dict[str, Any]:
    """Daily DevTest Labs shutdown; e-mails 30 minutes ahead when an address is set."""
    return {
        "type": "Microsoft.DevTestLab/schedules",
        "apiVersion": DEVTESTLAB_API,
        "name": fmt("shutdown-computevm-{0}", param("vmName")),
        "location": param("location"),
        "dependsOn": [VM_ID],
        "properties": {
            "status": "Enabled",
            "taskType": "ComputeVmShutdownTask",
            "dailyRecurrence": {"time": param("autoShutdownTime")},
            "timeZoneId": param("autoShutdownTimeZone"),
            "targetResourceId": VM_ID,
            "notificationSettings": {
                "status": "[if(empty(parameters('autoShutdownNotificationEmail')), 'Disabled', 'Enabled')]",
                "timeInMinutes": 30,
                "emailRecipient": param("autoShutdownNotificationEmail"),
                "notificationLocale": "en",
            },
        },
    }


def compute_resources(os_type: str) -> list[dict[str, Any]]:
    if os_type not in IMAGES:
        raise ValueError(f"unsupported OS type: {os_type!r}")
    return [virtual_machine(os_type), monitor_agent(os_type), auto_shutdown_schedule()]
