"""Tests for the ARM template builders."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from seclab.parameters import LabParameters
from seclab.templates import (
    build_lab_template,
    build_subscription_template,
    lab_resource_ids,
    render_templates,
    template_dependency_errors,
)
from seclab.templates.compute import compute_resources
from seclab.templates.expressions import call, fmt, param, prop, reference, referenced_names
from seclab.templates.monitoring import data_collection_streams
from seclab.templates.subscription import MAX_NOTIFICATIONS, budget_notifications


def _by_type(template: dict, resource_type: str) -> dict:
    matches = [r for r in template["resources"] if r["type"] == resource_type]
    assert len(matches) == 1, resource_type
    return matches[0]


# ── Expressions ───────────────────────────────────────────────────────────


class TestExpressions:
    def test_call_nests_expressions_and_quotes_literals(self):
        assert call("concat", param("a"), "x") == "[concat(parameters('a'), 'x')]"

    def test_literal_quotes_are_escaped(self):
        assert fmt("{0}'s lab", param("prefix")) == "[format('{0}''s lab', parameters('prefix'))]"

    def test_reference_property(self):
        expr = prop(reference("[resourceId('T', 'n')]", "2023-01-01"), "ipAddress")
        assert expr == "[reference(resourceId('T', 'n'), '2023-01-01').ipAddress]"

    def test_referenced_names(self):
        assert referenced_names("[format('{0}-{1}', parameters('a'), parameters('b'))]") == {"a", "b"}


# ── Resource-group template ───────────────────────────────────────────────


class TestLabTemplate:
    @pytest.mark.parametrize("os_type", ["Windows", "Linux"])
    def test_template_is_internally_consistent(self, os_type):
        template = build_lab_template(os_type)
        assert template_dependency_errors(template, lab_resource_ids(os_type)) == []

    @pytest.mark.parametrize("os_type", ["Windows", "Linux"])
    def test_template_is_json_serialisable(self, os_type):
        json.dumps(build_lab_template(os_type))

    def test_admin_password_is_secure(self):
        assert build_lab_template()["parameters"]["adminPassword"]["type"] == "securestring"

    def test_declares_expected_outputs(self):
        outputs = build_lab_template()["outputs"]
        for name in (
            "workspaceId", "workspaceName", "workspaceCustomerId", "vmName",
            "vmId", "publicIpAddress", "dataCollectionRuleId",
        ):
            assert name in outputs

    @pytest.mark.parametrize("os_type,port", [("Windows", "3389"), ("Linux", "22")])
    def test_nsg_opens_only_the_management_port(self, os_type, port):
        nsg = _by_type(build_lab_template(os_type), "Microsoft.Network/networkSecurityGroups")
        rules = nsg["properties"]["securityRules"]
        assert len(rules) == 1
        assert rules[0]["properties"]["destinationPortRange"] == port
        assert rules[0]["properties"]["sourceAddressPrefix"] == "[parameters('allowedSourceAddress')]"

    def test_subnet_bound_to_nsg(self):
        template = build_lab_template()
        vnet = _by_type(template, "Microsoft.Network/virtualNetworks")
        subnet = vnet["properties"]["subnets"][0]
        assert "networkSecurityGroup" in subnet["properties"]

    def test_vm_image_follows_os(self):
        win = _by_type(build_lab_template("Windows"), "Microsoft.Compute/virtualMachines")
        lin = _by_type(build_lab_template("Linux"), "Microsoft.Compute/virtualMachines")
        assert win["properties"]["storageProfile"]["imageReference"]["offer"] == "WindowsServer"
        assert lin["properties"]["storageProfile"]["imageReference"]["publisher"] == "Canonical"
        assert win["identity"] == {"type": "SystemAssigned"}

    def test_windows_dcr_collects_security_and_sysmon(self):
        template = build_lab_template("Windows")
        dcr = _by_type(template, "Microsoft.Insights/dataCollectionRules")
        event_logs = dcr["properties"]["dataSources"]["windowsEventLogs"]
        xpaths = [q for source in event_logs for q in source["xPathQueries"]]
        assert "Security!*" in xpaths
        assert any(q.startswith("Microsoft-Windows-Sysmon/Operational") for q in xpaths)
        flows = [f["streams"][0] for f in dcr["properties"]["dataFlows"]]
        assert flows == data_collection_streams("Windows")
        assert dcr["kind"] == "Windows"

    def test_linux_dcr_collects_syslog(self):
        dcr = _by_type(build_lab_template("Linux"), "Microsoft.Insights/dataCollectionRules")
        assert "syslog" in dcr["properties"]["dataSources"]
        assert "windowsEventLogs" not in dcr["properties"]["dataSources"]
        assert data_collection_streams("Linux") == ["Microsoft-Perf", "Microsoft-Syslog"]

    def test_dcr_association_targets_vm(self):
        assoc = _by_type(build_lab_template(), "Microsoft.Insights/dataCollectionRuleAssociations")
        assert "virtualMachines" in assoc["scope"]
        assert len(assoc["dependsOn"]) == 2

    def test_auto_shutdown_schedule(self):
        schedule = _by_type(build_lab_template(), "Microsoft.DevTestLab/schedules")
        props = schedule["properties"]
        assert props["taskType"] == "ComputeVmShutdownTask"
        assert props["dailyRecurrence"]["time"] == "[parameters('autoShutdownTime')]"

    def test_sentinel_onboarding_scoped_to_workspace(self):
        onboarding = _by_type(build_lab_template(), "Microsoft.SecurityInsights/onboardingStates")
        assert onboarding["name"] == "default"
        assert "workspaces" in onboarding["scope"]

    def test_unknown_os(self):
        with pytest.raises(ValueError, match="unsupported"):
            compute_resources("BeOS")

    def test_templates_are_independent_copies(self):
        first = build_lab_template()
        first["parameters"]["prefix"]["maxLength"] = 99
        assert build_lab_template()["parameters"]["prefix"]["maxLength"] == 12


# ── Subscription template ─────────────────────────────────────────────────


class TestSubscriptionTemplate:
    def test_schema_is_subscription_scope(self):
        assert "subscriptionDeploymentTemplate" in build_subscription_template()["$schema"]

    def test_consistent(self):
        assert template_dependency_errors(build_subscription_template()) == []

    def test_one_notification_per_threshold_plus_forecast(self):
        notes = budget_notifications([50, 80, 100])
        assert sorted(notes) == ["actual_100", "actual_50", "actual_80", "forecasted_100"]
        assert notes["actual_80"]["threshold"] == 80
        assert notes["forecasted_100"]["thresholdType"] == "Forecasted"

    def test_fractional_threshold_key(self):
        assert "actual_12_5" in budget_notifications([12.5])

    def test_largest_threshold_list_fits_notification_limit(self):
        params = LabParameters(budget_thresholds=[10, 20, 30, 40, 50])
        template = build_subscription_template(params.budget_thresholds)
        notes = _by_type(template, "Microsoft.Consumption/budgets")["properties"]["notifications"]
        assert len(notes) <= MAX_NOTIFICATIONS
        assert "forecasted_100" not in notes

    def test_forecast_kept_below_limit(self):
        assert "forecasted_100" in budget_notifications([10, 20, 30, 40])

    def test_budget_filtered_to_resource_group(self):
        budget = _by_type(build_subscription_template([90]), "Microsoft.Consumption/budgets")
        dims = budget["properties"]["filter"]["dimensions"]
        assert dims["name"] == "ResourceGroupName"
        assert dims["values"] == ["[parameters('resourceGroupName')]"]
        assert budget["properties"]["timeGrain"] == "Monthly"

    def test_activity_log_goes_to_workspace(self):
        setting = _by_type(build_subscription_template(), "Microsoft.Insights/diagnosticSettings")
        assert setting["properties"]["workspaceId"] == "[parameters('workspaceId')]"
        assert {"category": "Administrative", "enabled": True} in setting["properties"]["logs"]

    def test_outputs(self):
        assert set(build_subscription_template()["outputs"]) == {"budgetId", "activityLogSettingId"}


# ── Sanity checks & rendering ─────────────────────────────────────────────


class TestDependencyErrors:
    def test_flags_undeclared_dependency(self):
        template = {
            "parameters": {},
            "resources": [{"type": "T/a", "dependsOn": ["[resourceId('T/b', 'b')]"]}],
        }
        errors = template_dependency_errors(template, declared_ids=())
        assert errors == ["T/a depends on undeclared resource [resourceId('T/b', 'b')]"]

    def test_flags_undeclared_parameter(self):
        template = {
            "parameters": {"known": {"type": "string"}},
            "resources": [{"type": "T/a", "name": "[parameters('unknown')]"}],
            "outputs": {"x": {"type": "string", "value": "[parameters('known')]"}},
        }
        assert template_dependency_errors(template) == ["reference to undeclared parameter 'unknown'"]


def test_render_templates(tmp_path: Path):
    lab_path, sub_path = render_templates(tmp_path / "out", "Linux", [25, 75])
    assert lab_path.name == "lab-linux.json"
    assert sub_path.name == "subscription.json"
    lab = json.loads(lab_path.read_text())
    sub = json.loads(sub_path.read_text())
    assert lab["outputs"]["managementPort"]["value"] == 22
    notes = next(r for r in sub["resources"] if r["type"] == "Microsoft.Consumption/budgets")
    assert set(notes["properties"]["notifications"]) == {"actual_25", "actual_75", "forecasted_100"}
