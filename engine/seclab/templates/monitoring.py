"""Monitoring resources — Log Analytics workspace, Sentinel onboarding, data collection."""

from __future__ import annotations

from typing import Any

from .compute import VM_ID
from .expressions import call, fmt, param, resource_id, var

WORKSPACE_API = "2022-10-01"
SENTINEL_API = "2024-03-01"
DCR_API = "2022-06-01"

WORKSPACE_ID = resource_id("Microsoft.OperationalInsights/workspaces", var("workspaceName"))
ONBOARDING_ID = call(
    "extensionResourceId",
    WORKSPACE_ID,
    "Microsoft.SecurityInsights/onboardingStates",
    "default",
)
DCR_ID = resource_id("Microsoft.Insights/dataCollectionRules", var("dcrName"))

DESTINATION = "labWorkspace"

# XPath queries collected from the Windows event channels
WINDOWS_SECURITY_XPATH = ["Security!*"]
WINDOWS_EVENT_XPATH = [
    "System!*[System[(Level=1 or Level=2 or Level=3)]]",
    "Application!*[System[(Level=1 or Level=2 or Level=3)]]",
    "Microsoft-Windows-Sysmon/Operational!*",
    "Microsoft-Windows-PowerShell/Operational!*[System[(EventID=4103 or EventID=4104)]]",
]

LINUX_SYSLOG_FACILITIES = ["auth", "authpriv", "cron", "daemon", "kern", "syslog", "user"]
LINUX_SYSLOG_LEVELS = ["Info", "Notice", "Warning", "Error", "Critical", "Alert", "Emergency"]

PERF_COUNTERS = {
    "Windows": [
        "\\Processor Information(_Total)\\% Processor Time",
        "\\Memory\\% Committed Bytes In Use",
        "\\LogicalDisk(_Total)\\% Free Space",
    ],
    "Linux": [
        "Processor(*)\\% Processor Time",
        "Memory(*)\\% Used Memory",
        "Logical Disk(*)\\% Used Space",
    ],
}


def monitoring_variables() -> dict[str, str]:
    return {
        "workspaceName": "[format('{0}-law-{1}', parameters('prefix'), uniqueString(resourceGroup().id))]",
        "dcrName": "[format('{0}-dcr', parameters('prefix'))]",
    }


def log_workspace() -> dict[str, Any]:
    return {
        "type": "Microsoft.OperationalInsights/workspaces",
        "apiVersion": WORKSPACE_API,
        "name": var("workspaceName"),
        "location": param("location"),
        "properties": {
            "sku": {"name": "PerGB2018"},
            "retentionInDays": param("retentionInDays"),
            "features": {"enableLogAccessUsingOnlyResourcePermissions": True},
        },
    }


def sentinel_onboarding() -> dict[str, Any]:
    """Enable Microsoft Sentinel on the workspace."""
    return {
        "type": "Microsoft.SecurityInsights/onboardingStates",
        "apiVersion": SENTINEL_API,
        "scope": fmt("Microsoft.OperationalInsights/workspaces/{0}", var("workspaceName")),
        "name": "default",
        "dependsOn": [WORKSPACE_ID],
        "properties": {},
    }


def _data_sources(os_type: str) -> dict[str, Any]:
    sources: dict[str, Any] = {
        "performanceCounters": [
            {
                "name": "perfCounters",
                "streams": ["Microsoft-Perf"],
                "samplingFrequencyInSeconds": 60,
                "counterSpecifiers": PERF_COUNTERS[os_type],
            },
        ],
    }
    if os_type == "Windows":
        sources["windowsEventLogs"] = [
            {
                "name": "securityEvents",
                "streams": ["Microsoft-SecurityEvent"],
                "xPathQueries": WINDOWS_SECURITY_XPATH,
            },
            {
                "name": "windowsEvents",
                "streams": ["Microsoft-Event"],
                "xPathQueries": WINDOWS_EVENT_XPATH,
            },
        ]
    else:
        sources["syslog"] = [
            {
                "name": "syslog",
                "streams": ["Microsoft-Syslog"],
                "facilityNames": LINUX_SYSLOG_FACILITIES,
                "logLevels": LINUX_SYSLOG_LEVELS,
            },
        ]
    return sources


def data_collection_streams(os_type: str) -> list[str]:
    """Every stream the rule's data sources emit."""
    streams: list[str] = []
    for entries in _data_sources(os_type).values():
        for entry in entries:
            streams.extend(s for s in entry["streams"] if s not in streams)
    return streams


def data_collection_rule(os_type: str) -> dict[str, Any]:
    depends = [WORKSPACE_ID]
    if os_type == "Windows":
        # SecurityEvent lands in a Sentinel-owned table
        depends.append(ONBOARDING_ID)
    return {
        "type": "Microsoft.Insights/dataCollectionRules",
        "apiVersion": DCR_API,
        "name": var("dcrName"),
        "location": param("location"),
        "kind": os_type,
        "dependsOn": depends,
        "properties": {
            "description": "Security lab VM events and performance counters",
            "dataSources": _data_sources(os_type),
            "destinations": {
                "logAnalytics": [
                    {"workspaceResourceId": WORKSPACE_ID, "name": DESTINATION},
                ],
            },
            "dataFlows": [
                {"streams": [stream], "destinations": [DESTINATION]}
                for stream in data_collection_streams(os_type)
            ],
        },
    }


def data_collection_association() -> dict[str, Any]:
    return {
        "type": "Microsoft.Insights/dataCollectionRuleAssociations",
        "apiVersion": DCR_API,
        "scope": fmt("Microsoft.Compute/virtualMachines/{0}", param("vmName")),
        "name": fmt("{0}-association", var("dcrName")),
        "dependsOn": [VM_ID, DCR_ID],
        "properties": {
            "description": "Bind the lab VM to its data collection rule",
            "dataCollectionRuleId": DCR_ID,
        },
    }


def monitoring_resources(os_type: str) -> list[dict[str, Any]]:
    return [
        log_workspace(),
        sentinel_onboarding(),
        data_collection_rule(os_type),
        data_collection_association(),
    ]
