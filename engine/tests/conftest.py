"""Shared pytest fixtures."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from seclab.config import settings
from seclab.parameters import LabParameters

PASSWORD = "Sup3r-Secret-Pass"


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point local/ at a temp dir and make retries instant."""
    root = tmp_path / "repo"
    root.mkdir()
    monkeypatch.setattr(settings, "repo_root", root)
    monkeypatch.setattr(settings, "retry_delay", 0.0)
    monkeypatch.setattr(settings, "retry_attempts", 3)
    monkeypatch.setattr(settings, "admin_password", None)
    monkeypatch.setattr(settings, "github_token", None)
    monkeypatch.setattr(settings, "install_root", None)
    return root


@pytest.fixture
def lab_params() -> LabParameters:
    return LabParameters(
        admin_password=PASSWORD,
        allowed_source_address="203.0.113.7",
        contact_emails=["lab@example.com"],
    )


@pytest.fixture
def params_file(tmp_path: Path) -> Path:
    """ARM parameters file as the portal would export it."""
    path = tmp_path / "lab.parameters.json"
    path.write_text(json.dumps({
        "$schema": "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#",
        "contentVersion": "1.0.0.0",
        "parameters": {
            "location": {"value": "westeurope"},
            "prefix": {"value": "redlab"},
            "osType": {"value": "Linux"},
            "allowedSourceAddress": {"value": "198.51.100.0/24"},
            "contactEmails": {"value": ["soc@example.com"]},
            "budgetAmount": {"value": 75},
            "adminPassword": {
                "reference": {
                    "keyVault": {"id": "/subscriptions/x/resourceGroups/kv/providers/Microsoft.KeyVault/vaults/kv"},
                    "secretName": "lab-admin",
                },
            },
            "somethingElse": {"value": "ignored"},
        },
    }))
    return path


@pytest.fixture
def lab_outputs() -> dict:
    return {
        "workspaceId": "/subscriptions/s1/resourceGroups/seclab-rg/providers/"
                       "Microsoft.OperationalInsights/workspaces/seclab-law-abc",
        "workspaceName": "seclab-law-abc",
        "workspaceCustomerId": "0000-1111",
        "vmName": "seclab-vm",
        "vmId": "/subscriptions/s1/resourceGroups/seclab-rg/providers/Microsoft.Compute/virtualMachines/seclab-vm",
        "publicIpAddress": "20.1.2.3",
        "managementPort": 3389,
        "dataCollectionRuleId": "/subscriptions/s1/resourceGroups/seclab-rg/providers/"
                                "Microsoft.Insights/dataCollectionRules/seclab-dcr",
    }


@pytest.fixture
def mock_clients() -> MagicMock:
    """Stand-in for AzureClients; SDK operation groups are auto-mocked."""
    clients = MagicMock()
    clients.subscription_id = "s1"
    clients.tenant_id = "t1"
    return clients


@pytest.fixture
def password() -> str:
    return PASSWORD


@pytest.fixture
def succeeded_poller():
    """Factory for a poller whose result is a Succeeded deployment with ARM-shaped outputs."""
    def make(outputs: dict | None = None) -> MagicMock:
        poller = MagicMock()
        props = poller.result.return_value.properties
        props.provisioning_state = "Succeeded"
        props.outputs = {k: {"type": "String", "value": v} for k, v in (outputs or {}).items()}
        return poller
    return make
