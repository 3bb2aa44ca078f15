"""Subscription-scope resources — budget alert and activity-log export."""

from __future__ import annotations

from typing import Any, Iterable

from .expressions import param, subscription_resource_id

BUDGET_API = "2023-05-01"
# Azure rejects budgets with more notifications than this
MAX_NOTIFICATIONS = 5
DIAGNOSTICS_API = "2021-05-01-preview"

ACTIVITY_LOG_CATEGORIES = [
    "Administrative",
    "Security",
    "ServiceHealth",
    "Alert",
    "Recommendation",
    "Policy",
    "Autoscale",
    "ResourceHealth",
]

BUDGET_ID = subscription_resource_id("Microsoft.Consumption/budgets", param("budgetName"))
ACTIVITY_LOG_SETTING_ID = subscription_resource_id(
    "Microsoft.Insights/diagnosticSettings", param("activityLogSettingName"),
)


def _notification_key(kind: str, threshold: float) -> str:
    return f"{kind.lower()}_{threshold:g}".replace(".", "_")


def budget_notifications(thresholds: Iterable[float]) -> dict[str, Any]:
    """One actual-spend notification per threshold plus a forecast at 100%.

    The forecast is left out when the thresholds already use every slot.
    """
    thresholds = list(thresholds)
    notifications: dict[str, Any] = {}
    for threshold in thresholds:
        notifications[_notification_key("Actual", threshold)] = {
            "enabled": True,
            "operator": "GreaterThanOrEqualTo",
            "threshold": threshold,
            "thresholdType": "Actual",
            "contactEmails": param("contactEmails"),
        }
    if len(thresholds) >= MAX_NOTIFICATIONS:
        return notifications
    notifications[_notification_key("Forecasted", 100)] = {
        "enabled": True,
        "operator": "GreaterThan",
        "threshold": 100,
        "thresholdType": "Forecasted",
        "contactEmails": param("contactEmails"),
    }
    return notifications


def budget(thresholds: Iterable[float]) -> dict[str, Any]:
    """Monthly cost budget filtered to the lab resource group."""
    return {
        "type": "Microsoft.Consumption/budgets",
        "apiVersion": BUDGET_API,
        "name": param("budgetName"),
        "properties": {
            "category": "Cost",
            "amount": param("budgetAmount"),
            "timeGrain": "Monthly",
            "timePeriod": {"startDate": param("budgetStartDate")},
            "filter": {
                "dimensions": {
                    "name": "ResourceGroupName",
                    "operator": "In",
                    "values": [param("resourceGroupName")],
                },
            },
            "notifications": budget_notifications(thresholds),
        },
    }


def activity_log_settings() -> dict[str, Any]:
    """Stream the subscription activity log into the lab workspace."""
    return {
        "type": "Microsoft.Insights/diagnosticSettings",
        "apiVersion": DIAGNOSTICS_API,
        "name": param("activityLogSettingName"),
        "properties": {
            "workspaceId": param("workspaceId"),
            "logs": [{"category": c, "enabled": True} for c in ACTIVITY_LOG_CATEGORIES],
        },
    }


def subscription_resources(thresholds: Iterable[float]) -> list[dict[str, Any]]:
    return [budget(thresholds), activity_log_settings()]
