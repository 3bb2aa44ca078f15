"""Tests for azure/cleanup.py — teardown order and tolerance of missing resources."""

from __future__ import annotations

from unittest.mock import call

from azure.core.exceptions import ResourceNotFoundError

from seclab.azure.cleanup import delete_resource_group, delete_subscription_artifacts, destroy_lab
from seclab.templates.subscription import BUDGET_API, DIAGNOSTICS_API

SUB_OUTPUTS = {
    "budgetId": "/subscriptions/s1/providers/Microsoft.Consumption/budgets/seclab-budget",
    "activityLogSettingId": "/subscriptions/s1/providers/Microsoft.Insights/diagnosticSettings/act",
}


def test_deletes_subscription_artifacts_by_id(mock_clients):
    deleted = delete_subscription_artifacts(mock_clients, SUB_OUTPUTS)
    assert deleted == [SUB_OUTPUTS["budgetId"], SUB_OUTPUTS["activityLogSettingId"]]
    mock_clients.resource.resources.begin_delete_by_id.assert_has_calls([
        call(SUB_OUTPUTS["budgetId"], BUDGET_API),
        call().result(),
        call(SUB_OUTPUTS["activityLogSettingId"], DIAGNOSTICS_API),
        call().result(),
    ])


def test_missing_artifacts_are_skipped(mock_clients):
    resources = mock_clients.resource.resources
    resources.begin_delete_by_id.side_effect = [ResourceNotFoundError("gone"), resources.begin_delete_by_id.return_value]
    deleted = delete_subscription_artifacts(mock_clients, SUB_OUTPUTS)
    assert deleted == [SUB_OUTPUTS["activityLogSettingId"]]


def test_no_outputs_no_calls(mock_clients):
    assert delete_subscription_artifacts(mock_clients, {}) == []
    mock_clients.resource.resources.begin_delete_by_id.assert_not_called()


def test_delete_group(mock_clients):
    groups = mock_clients.resource.resource_groups
    groups.check_existence.return_value = True
    assert delete_resource_group(mock_clients, "seclab-rg") is True
    groups.begin_delete.assert_called_once_with("seclab-rg")
    groups.begin_delete.return_value.result.assert_called_once()


def test_delete_group_without_waiting(mock_clients):
    groups = mock_clients.resource.resource_groups
    groups.check_existence.return_value = True
    delete_resource_group(mock_clients, "seclab-rg", wait=False)
    groups.begin_delete.return_value.result.assert_not_called()


def test_delete_missing_group(mock_clients):
    mock_clients.resource.resource_groups.check_existence.return_value = False
    assert delete_resource_group(mock_clients, "seclab-rg") is False
    mock_clients.resource.resource_groups.begin_delete.assert_not_called()


def test_destroy_lab_summary(mock_clients):
    mock_clients.resource.resource_groups.check_existence.return_value = True
    summary = destroy_lab(mock_clients, "seclab-rg", {"budgetId": SUB_OUTPUTS["budgetId"]})
    assert summary == {
        "subscription_artifacts": [SUB_OUTPUTS["budgetId"]],
        "resource_group_deleted": True,
    }
