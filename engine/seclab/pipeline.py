"""Three-phase lab deployment — resource group → subscription → tenant checklist."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from rich.panel import Panel

from .azure.auth import AzureClients, verify_login
from .azure.deployments import (
    TRANSIENT_ERRORS,
    deploy_resource_group,
    deploy_subscription,
    deployment_name,
    ensure_resource_group,
    validate_deployment,
    validate_subscription_deployment,
)
from .common import (
    TransactionLog,
    confirm,
    console,
    log,
    mask,
    print_detail,
    print_header,
    print_info,
    print_mapping,
    print_success,
    print_warning,
)
from .errors import DeploymentError, SeclabError
from .parameters import LabParameters
from .resilience import call_with_retry
from .templates import (
    build_lab_template,
    build_subscription_template,
    lab_resource_ids,
    render_templates,
    template_dependency_errors,
)

ENTRA_DIAGNOSTICS_URL = (
    "https://portal.azure.com/#view/Microsoft_AAD_IAM/ActiveDirectoryMenuBlade/~/DiagnosticSettings"
)
ENTRA_LOG_CATEGORIES = [
    "SignInLogs",
    "NonInteractiveUserSignInLogs",
    "ServicePrincipalSignInLogs",
    "AuditLogs",
]


@dataclass
class DeploymentResult:
    resource_group: str
    lab_deployment: str
    subscription_deployment: str = ""
    lab_outputs: dict[str, Any] = field(default_factory=dict)
    subscription_outputs: dict[str, Any] = field(default_factory=dict)
    outputs_path: Optional[Path] = None
    dry_run: bool = False


# ---------------------------------------------------------------------------
# Outputs persistence
# ---------------------------------------------------------------------------


def outputs_file(resource_group: str, directory: Optional[Path] = None) -> Path:
    if directory is None:
        from .config import settings
        directory = settings.outputs_dir
    return directory / f"{resource_group}.json"


def save_outputs(result: DeploymentResult, directory: Optional[Path] = None) -> Path:
    path = outputs_file(result.resource_group, directory)
    path.parent.mkdir(parents=True, exist_ok=True)
    doc = {
        "resourceGroup": result.resource_group,
        "deployments": {
            "lab": result.lab_deployment,
            "subscription": result.subscription_deployment,
        },
        "lab": result.lab_outputs,
        "subscription": result.subscription_outputs,
    }
    path.write_text(json.dumps(doc, indent=2) + "\n")
    return path


def load_outputs(resource_group: str, directory: Optional[Path] = None) -> dict[str, Any]:
    """Saved outputs for *resource_group*, or an empty dict if none were recorded."""
    path = outputs_file(resource_group, directory)
    if not path.is_file():
        return {}
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise SeclabError(f"Outputs file {path} is not valid JSON: {exc}") from exc


# ---------------------------------------------------------------------------
# Phase 3 — tenant-level manual configuration
# ---------------------------------------------------------------------------


def tenant_checklist(lab_outputs: Mapping[str, Any]) -> list[str]:
    """Manual tenant-level steps, filled in with the resource-group outputs."""
    workspace = lab_outputs.get("workspaceName", "<workspace>")
    vm_name = lab_outputs.get("vmName", "<vm>")
    windows = int(lab_outputs.get("managementPort", 3389)) == 3389
    events_table = "SecurityEvent" if windows else "Syslog"
    connector = "Windows Security Events via AMA" if windows else "Syslog via AMA"

    return [
        (
            f"Entra ID diagnostic settings ({ENTRA_DIAGNOSTICS_URL}): add a setting that sends "
            f"{', '.join(ENTRA_LOG_CATEGORIES)} to workspace '{workspace}'. "
            "Requires Global Administrator or Security Administrator."
        ),
        (
            f"Microsoft Sentinel on '{workspace}' → Content hub: install the 'Microsoft Entra ID' "
            "solution and open its data connector to confirm it shows Connected."
        ),
        (
            f"Content hub: install the solution containing '{connector}' and check that "
            f"data collection rule '{lab_outputs.get('dataCollectionRuleId', '<dcr>').rsplit('/', 1)[-1]}' "
            "is listed on the connector page."
        ),
        (
            "Content hub: install 'Azure Activity'; the subscription activity log is already "
            "streaming to the workspace from the subscription deployment."
        ),
        (
            f"Verify ingestion in Logs: Heartbeat | where Computer startswith '{vm_name}' | take 5; "
            f"then {events_table} | take 10."
        ),
    ]


def print_tenant_checklist(lab_outputs: Mapping[str, Any]) -> None:
    print_header("Phase 3 — Tenant-level configuration (manual)")
    print_info("These settings live at tenant scope and are not deployed automatically.")
    console.print()
    for idx, item in enumerate(tenant_checklist(lab_outputs), 1):
        console.print(f"[bold cyan]  {idx}.[/bold cyan] {item}")
    console.print()


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


def review_lines(params: LabParameters) -> list[str]:
    password = params.admin_password.get_secret_value() if params.admin_password else ""
    return [
        f"Region:          {params.location}",
        f"Resource group:  {params.resource_group}",
        f"VM:              {params.vm_name} ({params.os_type}, {params.vm_size})",
        f"Admin user:      {params.admin_username} / {mask(password)}",
        f"VNet / subnet:   {params.vnet_address_prefix} / {params.subnet_address_prefix}",
        f"Management port: {params.management_port} from {params.allowed_source_address}",
        f"Log retention:   {params.retention_days} days",
        f"Budget:          {params.budget_amount} / month, alerts at "
        f"{', '.join(f'{t:g}%' for t in params.budget_thresholds)}",
        f"Contacts:        {', '.join(params.contact_emails)}",
        f"Auto-shutdown:   {params.auto_shutdown_time} {params.auto_shutdown_timezone}",
    ]


def _confirm(params: LabParameters, non_interactive: bool, dry_run: bool) -> bool:
    print_header("Review & Confirm")
    console.print(Panel("\n".join(review_lines(params)), border_style="cyan"))
    console.print()
    if non_interactive or dry_run:
        return True
    return confirm("Deploy the lab with these settings?", default=True)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def check_templates(params: LabParameters) -> tuple[dict[str, Any], dict[str, Any]]:
    """Build both templates and fail fast on internal inconsistencies."""
    lab = build_lab_template(params.os_type)
    sub = build_subscription_template(params.budget_thresholds)
    errors = template_dependency_errors(lab, lab_resource_ids(params.os_type))
    errors += template_dependency_errors(sub)
    if errors:
        raise DeploymentError("Generated templates are inconsistent", details=errors)
    return lab, sub


def run_deployment(
    clients: AzureClients,
    params: LabParameters,
    *,
    non_interactive: bool = False,
    dry_run: bool = False,
    skip_subscription: bool = False,
    txlog: Optional[TransactionLog] = None,
    outputs_dir: Optional[Path] = None,
    render_dir: Optional[Path] = None,
) -> Optional[DeploymentResult]:
    """Run the whole pipeline. Returns None when the user aborts at the review step.

    With *dry_run* the templates are written to *render_dir* and validated by
    ARM, but nothing is deployed.
    """
    missing = params.missing_required()
    if skip_subscription and "contact_emails" in missing:
        missing.remove("contact_emails")
    if missing:
        raise SeclabError(f"Missing required parameters: {', '.join(missing)}")

    txlog = txlog or TransactionLog("deploy-lab")
    try:
        return _run(
            clients, params, txlog, non_interactive, dry_run, skip_subscription, outputs_dir, render_dir,
        )
    except SystemExit:
        txlog.finalize("failed", "Exited during deployment")
        raise
    except Exception as exc:
        txlog.step_update("failed", str(exc))
        txlog.finalize("failed", str(exc))
        raise


def _run(
    clients: AzureClients,
    params: LabParameters,
    txlog: TransactionLog,
    non_interactive: bool,
    dry_run: bool,
    skip_subscription: bool,
    outputs_dir: Optional[Path],
    render_dir: Optional[Path],
) -> Optional[DeploymentResult]:
    # --- Step 1: Login ------------------------------------------------------
    txlog.step("1-login", "Azure credentials & subscription")
    subscription_id = verify_login(clients, non_interactive=non_interactive)
    txlog.step_update("done", f"subscription={subscription_id}")

    # --- Step 2: Review -----------------------------------------------------
    txlog.step("2-review", "Review parameters")
    if not _confirm(params, non_interactive, dry_run):
        print_info("Aborted by user.")
        txlog.finalize("aborted", "User declined at review")
        return None
    txlog.step_update("done")

    # --- Step 3: Templates --------------------------------------------------
    txlog.step("3-templates", "Build and check templates")
    lab_template, sub_template = check_templates(params)
    lab_name = deployment_name("lab", params.prefix)
    sub_name = deployment_name("sub", params.prefix)
    lab_parameters = params.to_lab_arm_parameters()
    if dry_run:
        if render_dir is None:
            from .config import settings
            render_dir = settings.local_dir / "rendered"
        render_templates(render_dir, params.os_type, params.budget_thresholds)
    txlog.step_update("done", f"{len(lab_template['resources'])} lab resources")

    result = DeploymentResult(
        resource_group=params.resource_group,
        lab_deployment=lab_name,
        subscription_deployment="" if skip_subscription else sub_name,
        dry_run=dry_run,
    )

    # --- Step 4: Resource group ---------------------------------------------
    txlog.step("4-resource-group", f"Resource group {params.resource_group}")
    if dry_run:
        exists = call_with_retry(
            clients.resource.resource_groups.check_existence,
            params.resource_group,
            retryable_exceptions=TRANSIENT_ERRORS,
        )
        if not exists:
            print_warning(
                f"DRY-RUN: resource group {params.resource_group} does not exist; "
                "skipping server-side validation."
            )
            txlog.step_update("skipped", "group missing in dry-run")
            txlog.finalize("dry_run", "Templates built locally only")
            return result
        txlog.step_update("done", "exists")
    else:
        ensure_resource_group(clients, params.resource_group, params.location)
        txlog.step_update("done")

    # --- Step 5: Validate ---------------------------------------------------
    txlog.step("5-validate", "Server-side template validation")
    validate_deployment(clients, params.resource_group, lab_name, lab_template, lab_parameters)
    txlog.step_update("done")

    if dry_run:
        print_warning("DRY-RUN: validation complete, nothing deployed.")
        txlog.finalize("dry_run", "Validated only")
        return result

    # --- Step 6: Phase 1 ----------------------------------------------------
    txlog.step("6-phase1", "Resource-group deployment")
    result.lab_outputs = deploy_resource_group(
        clients, params.resource_group, lab_name, lab_template, lab_parameters,
    )
    txlog.record_outputs("lab", result.lab_outputs)
    result.outputs_path = save_outputs(result, outputs_dir)
    txlog.step_update("done", f"workspace={result.lab_outputs.get('workspaceName', '')}")

    # --- Step 7: Phase 2 ----------------------------------------------------
    if skip_subscription:
        txlog.step("7-phase2", "Subscription deployment")
        print_warning("Skipping subscription deployment (budget, activity log).")
        txlog.step_update("skipped")
    else:
        txlog.step("7-phase2", "Subscription deployment")
        sub_parameters = params.to_subscription_arm_parameters(result.lab_outputs)
        try:
            validate_subscription_deployment(clients, params.location, sub_name, sub_template, sub_parameters)
            result.subscription_outputs = deploy_subscription(
                clients, params.location, sub_name, sub_template, sub_parameters,
            )
        except Exception:
            # Part of the deployment may exist; destroy deletes by these ids
            result.subscription_outputs = params.subscription_artifact_ids(subscription_id)
            save_outputs(result, outputs_dir)
            raise
        txlog.record_outputs("subscription", result.subscription_outputs)
        txlog.step_update("done")

    # --- Step 8: Phase 3 ----------------------------------------------------
    txlog.step("8-phase3", "Tenant-level checklist")
    print_tenant_checklist(result.lab_outputs)
    txlog.record_outputs("tenant_checklist", {
        str(i): item for i, item in enumerate(tenant_checklist(result.lab_outputs), 1)
    })
    txlog.step_update("done", "printed")

    # --- Done ---------------------------------------------------------------
    save_outputs(result, outputs_dir)
    txlog.finalize("success", "Lab deployed")
    _summary(result, txlog)
    return result


def _summary(result: DeploymentResult, txlog: TransactionLog) -> None:
    print_header("Lab Deployed!")
    print_mapping("Resource-group outputs", result.lab_outputs)
    if result.subscription_outputs:
        print_mapping("Subscription outputs", result.subscription_outputs)
    ip = result.lab_outputs.get("publicIpAddress", "<public-ip>")
    port = result.lab_outputs.get("managementPort", 3389)
    if int(port) == 3389:
        print_info(f"RDP: mstsc /v:{ip}")
    else:
        print_info(f"SSH: ssh <admin>@{ip}")
    print_detail(f"Outputs:  {result.outputs_path}")
    print_detail(f"JSON log: {txlog.path}")
    print_success("Next: copy seclab to the VM and run 'seclab install sysmon atomic-red-team'.")
    log(f"Deployment complete: {result.resource_group}")
