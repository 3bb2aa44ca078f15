"""Tests for pipeline.py — phase ordering, output threading, dry-run, checklist."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from azure.core.exceptions import ServiceRequestError

from seclab.common import TransactionLog
from seclab.errors import DeploymentError, SeclabError
from seclab.parameters import LabParameters
from seclab.pipeline import (
    DeploymentResult,
    check_templates,
    load_outputs,
    run_deployment,
    save_outputs,
    tenant_checklist,
)

SUB_OUTPUTS = {"budgetId": "/b", "activityLogSettingId": "/a"}


@pytest.fixture
def azure_calls(lab_outputs):
    """Patch every Azure-facing call the pipeline makes."""
    with patch("seclab.pipeline.verify_login", return_value="s1") as login, \
         patch("seclab.pipeline.ensure_resource_group", return_value=False) as ensure, \
         patch("seclab.pipeline.validate_deployment") as validate, \
         patch("seclab.pipeline.deploy_resource_group", return_value=dict(lab_outputs)) as deploy_rg, \
         patch("seclab.pipeline.validate_subscription_deployment") as validate_sub, \
         patch("seclab.pipeline.deploy_subscription", return_value=dict(SUB_OUTPUTS)) as deploy_sub:
        yield {
            "login": login,
            "ensure": ensure,
            "validate": validate,
            "deploy_rg": deploy_rg,
            "validate_sub": validate_sub,
            "deploy_sub": deploy_sub,
        }


@pytest.fixture
def txlog(tmp_path: Path) -> TransactionLog:
    return TransactionLog("deploy-test", log_dir=tmp_path / "logs")


def _statuses(txlog: TransactionLog) -> dict[str, str]:
    return {s["id"]: s["status"] for s in txlog.data["steps"]}


class TestRunDeployment:
    def test_full_run_threads_outputs(self, mock_clients, lab_params, lab_outputs, azure_calls, txlog, tmp_path):
        result = run_deployment(
            mock_clients, lab_params, non_interactive=True, txlog=txlog, outputs_dir=tmp_path,
        )

        assert isinstance(result, DeploymentResult)
        assert result.lab_outputs == lab_outputs
        assert result.subscription_outputs == SUB_OUTPUTS

        # phase 2 receives the workspace created in phase 1
        sub_params = azure_calls["deploy_sub"].call_args[0][4]
        assert sub_params["workspaceId"]["value"] == lab_outputs["workspaceId"]
        assert sub_params["resourceGroupName"]["value"] == "seclab-rg"
        assert azure_calls["deploy_sub"].call_args[0][1] == "eastus"

        lab_args = azure_calls["deploy_rg"].call_args[0]
        assert lab_args[1] == "seclab-rg"
        assert lab_args[2].startswith("seclab-lab-")
        assert lab_args[4]["adminPassword"]["value"] == lab_params.admin_password.get_secret_value()

        assert txlog.data["status"] == "success"
        assert txlog.data["outputs"]["lab"] == lab_outputs
        assert len(txlog.data["outputs"]["tenant_checklist"]) == len(tenant_checklist(lab_outputs))
        assert all(status == "done" for status in _statuses(txlog).values())
        assert result.outputs_path == tmp_path / "seclab-rg.json"
        assert load_outputs("seclab-rg", tmp_path)["subscription"] == SUB_OUTPUTS

    def test_skip_subscription(self, mock_clients, lab_params, azure_calls, txlog, tmp_path):
        result = run_deployment(
            mock_clients, lab_params, non_interactive=True, skip_subscription=True,
            txlog=txlog, outputs_dir=tmp_path,
        )
        azure_calls["deploy_sub"].assert_not_called()
        assert result.subscription_outputs == {}
        assert result.subscription_deployment == ""
        assert _statuses(txlog)["7-phase2"] == "skipped"

    def test_skip_subscription_does_not_need_emails(self, mock_clients, lab_params, azure_calls, txlog, tmp_path):
        lab_params.contact_emails = []
        run_deployment(
            mock_clients, lab_params, non_interactive=True, skip_subscription=True,
            txlog=txlog, outputs_dir=tmp_path,
        )
        azure_calls["deploy_rg"].assert_called_once()

    def test_dry_run_validates_only(self, mock_clients, lab_params, azure_calls, txlog, tmp_path):
        mock_clients.resource.resource_groups.check_existence.return_value = True
        result = run_deployment(
            mock_clients, lab_params, dry_run=True, txlog=txlog,
            outputs_dir=tmp_path, render_dir=tmp_path / "rendered",
        )
        assert result.dry_run is True
        azure_calls["validate"].assert_called_once()
        azure_calls["ensure"].assert_not_called()
        azure_calls["deploy_rg"].assert_not_called()
        azure_calls["deploy_sub"].assert_not_called()
        assert txlog.data["status"] == "dry_run"
        assert (tmp_path / "rendered" / "lab-windows.json").is_file()
        assert not (tmp_path / "seclab-rg.json").exists()

    def test_dry_run_without_group_skips_remote_validation(
        self, mock_clients, lab_params, azure_calls, txlog, tmp_path,
    ):
        mock_clients.resource.resource_groups.check_existence.return_value = False
        run_deployment(
            mock_clients, lab_params, dry_run=True, txlog=txlog, render_dir=tmp_path / "rendered",
        )
        azure_calls["validate"].assert_not_called()
        assert _statuses(txlog)["4-resource-group"] == "skipped"

    def test_failure_is_logged_and_reraised(self, mock_clients, lab_params, azure_calls, txlog):
        azure_calls["deploy_rg"].side_effect = DeploymentError("quota exceeded", code="QuotaExceeded")
        with pytest.raises(DeploymentError, match="quota exceeded"):
            run_deployment(mock_clients, lab_params, non_interactive=True, txlog=txlog)
        assert txlog.data["status"] == "failed"
        assert _statuses(txlog)["6-phase1"] == "failed"
        azure_calls["deploy_sub"].assert_not_called()

    def test_phase2_failure_keeps_phase1_outputs(self, mock_clients, lab_params, lab_outputs, azure_calls, txlog,
                                                 tmp_path):
        azure_calls["deploy_sub"].side_effect = DeploymentError("budget rejected", code="InvalidBudget")
        with pytest.raises(DeploymentError, match="budget rejected"):
            run_deployment(mock_clients, lab_params, non_interactive=True, txlog=txlog, outputs_dir=tmp_path)
        saved = load_outputs("seclab-rg", tmp_path)
        assert saved["lab"] == lab_outputs
        assert saved["subscription"]["budgetId"] == (
            "/subscriptions/s1/providers/Microsoft.Consumption/budgets/seclab-budget"
        )
        assert saved["subscription"]["activityLogSettingId"].endswith(
            "/diagnosticSettings/seclab-activity-to-workspace"
        )
        assert txlog.data["status"] == "failed"
        assert _statuses(txlog)["7-phase2"] == "failed"

    def test_dry_run_retries_transient_group_lookup(self, mock_clients, lab_params, azure_calls, txlog, tmp_path):
        groups = mock_clients.resource.resource_groups
        groups.check_existence.side_effect = [ServiceRequestError("connection reset"), True]
        run_deployment(
            mock_clients, lab_params, dry_run=True, txlog=txlog, render_dir=tmp_path / "rendered",
        )
        assert groups.check_existence.call_count == 2
        azure_calls["validate"].assert_called_once()

    def test_user_can_abort_at_review(self, mock_clients, lab_params, azure_calls, txlog):
        with patch("seclab.pipeline.confirm", return_value=False):
            assert run_deployment(mock_clients, lab_params, txlog=txlog) is None
        azure_calls["ensure"].assert_not_called()
        assert txlog.data["status"] == "aborted"

    def test_missing_values_rejected_before_login(self, mock_clients, azure_calls):
        with pytest.raises(SeclabError, match="admin_password"):
            run_deployment(mock_clients, LabParameters(), non_interactive=True)
        azure_calls["login"].assert_not_called()


class TestOutputsFile:
    def test_round_trip(self, tmp_path, lab_outputs):
        result = DeploymentResult(
            resource_group="rg1",
            lab_deployment="seclab-lab-1",
            subscription_deployment="seclab-sub-1",
            lab_outputs=lab_outputs,
            subscription_outputs=SUB_OUTPUTS,
        )
        path = save_outputs(result, tmp_path)
        saved = load_outputs("rg1", tmp_path)
        assert path.name == "rg1.json"
        assert saved["deployments"] == {"lab": "seclab-lab-1", "subscription": "seclab-sub-1"}
        assert saved["lab"]["vmName"] == "seclab-vm"

    def test_missing_file(self, tmp_path):
        assert load_outputs("nothing-here", tmp_path) == {}

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "rg1.json").write_text("{\"lab\": ")
        with pytest.raises(SeclabError, match="not valid JSON"):
            load_outputs("rg1", tmp_path)

    def test_default_directory_is_local_outputs(self, isolated_settings, lab_outputs):
        save_outputs(DeploymentResult(resource_group="rg2", lab_deployment="d", lab_outputs=lab_outputs))
        assert (isolated_settings / "local" / "outputs" / "rg2.json").is_file()


class TestTenantChecklist:
    def test_windows_checklist(self, lab_outputs):
        steps = tenant_checklist(lab_outputs)
        text = "\n".join(steps)
        assert "seclab-law-abc" in text
        assert "Windows Security Events via AMA" in text
        assert "'seclab-dcr'" in text
        assert "SecurityEvent" in text
        assert "SignInLogs" in steps[0]

    def test_linux_checklist(self, lab_outputs):
        lab_outputs["managementPort"] = 22
        text = "\n".join(tenant_checklist(lab_outputs))
        assert "Syslog via AMA" in text
        assert "SecurityEvent" not in text

    def test_placeholders_without_outputs(self):
        text = "\n".join(tenant_checklist({}))
        assert "<workspace>" in text
        assert "<vm>" in text


def test_check_templates(lab_params):
    lab, sub = check_templates(lab_params)
    assert lab["resources"]
    assert sub["resources"]


def test_check_templates_reports_inconsistency(lab_params):
    with patch("seclab.pipeline.template_dependency_errors", return_value=["broken"]):
        with pytest.raises(DeploymentError, match="inconsistent"):
            check_templates(lab_params)
