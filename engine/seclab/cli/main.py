# seclab CLI — main entry point
"""seclab CLI — deploy and operate an Azure Sentinel security lab."""

from __future__ import annotations

import functools
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

import click
from pydantic import ValidationError

from .. import __version__
from ..common import (
    confirm,
    console,
    die,
    init_logging,
    print_detail,
    print_header,
    print_info,
    print_mapping,
    print_success,
    print_warning,
    prompt_input,
    prompt_password,
)
from ..config import settings
from ..errors import SeclabError

PUBLIC_IP_URL = "https://api.ipify.org"


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        msg = err.get("msg", "").removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "Invalid parameters:\n  " + "\n  ".join(parts)


@contextmanager
def handled_errors() -> Iterator[None]:
    """Turn expected failures into a red message and exit code 1."""
    try:
        yield
    except ValidationError as exc:
        die(_validation_message(exc))
    except (SeclabError, FileNotFoundError) as exc:
        die(str(exc))
    except Exception as exc:
        from azure.core.exceptions import AzureError

        if isinstance(exc, AzureError):
            die(f"Azure error: {exc}")
        raise


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------

# click option name → LabParameters attribute
_PARAM_OPTIONS = {
    "location": "location",
    "resource_group": "resource_group",
    "prefix": "prefix",
    "os_type": "os_type",
    "vm_size": "vm_size",
    "admin_username": "admin_username",
    "allowed_source": "allowed_source_address",
    "allow_any_source": "allow_any_source",
    "retention_days": "retention_days",
    "budget": "budget_amount",
    "threshold": "budget_thresholds",
    "email": "contact_emails",
    "shutdown_time": "auto_shutdown_time",
    "timezone": "auto_shutdown_timezone",
}


def lab_options(func):
    """Options shared by ``deploy`` and ``validate``."""
    options = [
        click.option(
            "--parameters-file", "-p",
            type=click.Path(dir_okay=False, path_type=Path),
            default=None,
            help="ARM parameters JSON file (flags override its values).",
        ),
        click.option("--location", "-l", default=None, help="Azure region, e.g. eastus."),
        click.option("--resource-group", "-g", default=None, help="Lab resource group name."),
        click.option("--prefix", default=None, help="Resource name prefix (3-12 lowercase alnum)."),
        click.option(
            "--os-type",
            type=click.Choice(["Windows", "Linux"], case_sensitive=False),
            default=None,
            help="Lab VM operating system.",
        ),
        click.option("--vm-size", default=None, help="VM size, e.g. Standard_B2s."),
        click.option("--admin-username", default=None, help="VM admin account name."),
        click.option("--allowed-source", default=None, help="IPv4 address or CIDR allowed to RDP/SSH."),
        click.option("--allow-any-source", is_flag=True, help="Permit 0.0.0.0/0 as source."),
        click.option("--retention-days", type=int, default=None, help="Workspace retention (30-730)."),
        click.option("--budget", type=int, default=None, help="Monthly budget amount."),
        click.option("--threshold", type=float, multiple=True, help="Budget alert threshold in percent (repeatable)."),
        click.option("--email", multiple=True, help="Budget / shutdown notification e-mail (repeatable)."),
        click.option("--shutdown-time", default=None, help="Daily auto-shutdown time, HHMM."),
        click.option("--timezone", default=None, help="Windows time zone id for auto-shutdown."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _os_type(value: Optional[str]) -> Optional[str]:
    return value.capitalize() if value else None


def build_parameters(parameters_file: Optional[Path], opts: dict[str, Any]):
    """LabParameters from flags > parameters file > settings defaults."""
    from ..parameters import load_parameters

    overrides = {attr: opts.get(name) for name, attr in _PARAM_OPTIONS.items()}
    overrides["os_type"] = _os_type(overrides["os_type"])
    defaults = {
        "location": settings.location,
        "resource_group": settings.resource_group,
        "prefix": settings.prefix,
    }
    return load_parameters(parameters_file, overrides=overrides, defaults=defaults)


def detect_public_ip(timeout: float = 5.0) -> str:
    """Public IPv4 address of this machine as seen from the internet, or ''."""
    req = Request(PUBLIC_IP_URL, headers={"User-Agent": f"seclab/{__version__}"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.read().decode().strip()
    except (URLError, OSError):
        return ""


def fill_missing(params, non_interactive: bool, need_emails: bool = True) -> None:
    """Prompt for required values that have no default."""
    missing = params.missing_required()
    if not need_emails and "contact_emails" in missing:
        missing.remove("contact_emails")
    if not missing:
        return
    if non_interactive:
        flags = {
            "admin_password": "SECLAB_ADMIN_PASSWORD env",
            "allowed_source_address": "--allowed-source",
            "contact_emails": "--email",
        }
        die(
            "Missing required values in non-interactive mode: "
            + ", ".join(f"{m} ({flags[m]})" for m in missing)
        )

    print_header("Lab Parameters")
    if "admin_password" in missing:
        while True:
            first = prompt_password(f"Admin password for '{params.admin_username}'")
            second = prompt_password("Confirm password")
            if first != second:
                print_warning("Passwords do not match.")
                continue
            try:
                params.admin_password = first
                break
            except ValidationError as exc:
                print_warning(_validation_message(exc))

    if "allowed_source_address" in missing:
        detected = detect_public_ip()
        if detected:
            print_info(f"Detected public IP: {detected}")
        while True:
            try:
                params.allowed_source_address = prompt_input(
                    "Source address allowed to reach the management port", default=detected,
                )
                if params.allowed_source_address:
                    break
            except ValidationError as exc:
                print_warning(_validation_message(exc))

    if "contact_emails" in missing:
        while True:
            raw = prompt_input("Notification e-mail(s), comma-separated")
            try:
                params.contact_emails = raw.split(",")
                if params.contact_emails:
                    break
            except ValidationError as exc:
                print_warning(_validation_message(exc))


def _clients(subscription: Optional[str]):
    from ..azure.auth import AzureClients

    return AzureClients(
        subscription_id=subscription or settings.subscription_id,
        tenant_id=settings.tenant_id,
    )


def _password_from_settings(params) -> None:
    if settings.admin_password is not None and params.admin_password is None:
        params.admin_password = settings.admin_password.get_secret_value()


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(__version__, prog_name="seclab")
def cli() -> None:
    """seclab — Azure security lab with Microsoft Sentinel."""


# ---------------------------------------------------------------------------
# Deployment commands
# ---------------------------------------------------------------------------


@cli.command()
@lab_options
@click.option("--subscription", "-s", default=None, help="Subscription id (skip selection).")
@click.option("--non-interactive", is_flag=True, help="Never prompt; fail on missing values.")
@click.option("--dry-run", is_flag=True, help="Render and validate only; deploy nothing.")
@click.option("--skip-subscription", is_flag=True, help="Skip the budget / activity-log deployment.")
@click.option(
    "--save-parameters",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the final (non-secret) parameters to this file.",
)
def deploy(
    parameters_file: Optional[Path],
    subscription: Optional[str],
    non_interactive: bool,
    dry_run: bool,
    skip_subscription: bool,
    save_parameters: Optional[Path],
    **opts: Any,
) -> None:
    """Deploy the lab: resource group, subscription controls, tenant checklist.

    \b
    Run without flags for a guided interactive deployment.

    \b
    Examples:
        seclab deploy                                  # Interactive
        seclab deploy -p lab.parameters.json --dry-run # Validate only
        seclab deploy --os-type Linux --email me@example.com \\
            --allowed-source 203.0.113.7 --non-interactive
    """
    # Lazy imports to keep --help fast
    from ..pipeline import run_deployment

    with handled_errors():
        params = build_parameters(parameters_file, opts)
        _password_from_settings(params)
        fill_missing(params, non_interactive, need_emails=not skip_subscription)
        if save_parameters:
            params.save_parameters_file(save_parameters)

        print_header("Azure Security Lab Deployment")
        if dry_run:
            print_warning("DRY-RUN MODE — templates are validated, nothing is deployed")
            console.print()

        log_file = init_logging("deploy")
        result = run_deployment(
            _clients(subscription),
            params,
            non_interactive=non_interactive,
            dry_run=dry_run,
            skip_subscription=skip_subscription,
        )
        if result is not None:
            print_detail(f"Log file: {log_file}")


@cli.command()
@lab_options
def validate(parameters_file: Optional[Path], **opts: Any) -> None:
    """Check parameters and generated templates locally (no Azure calls)."""
    from ..pipeline import check_templates

    with handled_errors():
        params = build_parameters(parameters_file, opts)
        lab, sub = check_templates(params)
        print_success(
            f"Parameters valid; templates consistent "
            f"({len(lab['resources'])} lab resources, {len(sub['resources'])} subscription resources)."
        )
        for name in params.missing_required():
            print_warning(f"{name} is not set; deploy will prompt for it.")


@cli.command()
@click.option(
    "--out", "-o",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Output directory (default: local/rendered).",
)
@click.option(
    "--os-type",
    type=click.Choice(["Windows", "Linux"], case_sensitive=False),
    default="Windows",
    show_default=True,
)
@click.option("--threshold", type=float, multiple=True, help="Budget alert threshold in percent (repeatable).")
def render(out: Optional[Path], os_type: str, threshold: tuple[float, ...]) -> None:
    """Write the ARM templates as JSON for review or portal deployment."""
    from ..templates import render_templates
    from ..templates.builder import DEFAULT_THRESHOLDS

    with handled_errors():
        thresholds = sorted(set(threshold)) if threshold else list(DEFAULT_THRESHOLDS)
        render_templates(out or settings.local_dir / "rendered", _os_type(os_type), thresholds)


@cli.command()
@click.option("--resource-group", "-g", default=None, help="Lab resource group name.")
@click.option("--refresh", is_flag=True, help="Re-read outputs from Azure instead of the local file.")
@click.option("--subscription", "-s", default=None, help="Subscription id.")
@click.option("--prefix", default=None, help="Name prefix the lab was deployed with.")
def outputs(resource_group: Optional[str], refresh: bool, subscription: Optional[str],
            prefix: Optional[str]) -> None:
    """Show the outputs recorded by the last deployment."""
    from ..pipeline import load_outputs, outputs_file

    rg = resource_group or settings.resource_group
    with handled_errors():
        saved = load_outputs(rg)
        if refresh or not saved:
            saved = _refresh_outputs(rg, saved, subscription, prefix or settings.prefix)
        print_mapping(f"{rg} — resource-group outputs", saved.get("lab", {}))
        if saved.get("subscription"):
            print_mapping("Subscription outputs", saved["subscription"])
        path = outputs_file(rg)
        if path.is_file():
            print_detail(f"File: {path}")


def _refresh_outputs(
    rg: str, saved: dict[str, Any], subscription: Optional[str], prefix: str,
) -> dict[str, Any]:
    from ..azure.auth import verify_login
    from ..azure.deployments import get_deployment_outputs, latest_deployment_name
    from ..pipeline import DeploymentResult, save_outputs

    clients = _clients(subscription)
    verify_login(clients, non_interactive=True)
    deployments = saved.get("deployments", {})
    lab_name = deployments.get("lab") or latest_deployment_name(clients, rg, f"{prefix}-lab-")
    if not lab_name:
        raise SeclabError(f"No successful lab deployment found in resource group {rg}")
    result = DeploymentResult(
        resource_group=rg,
        lab_deployment=lab_name,
        subscription_deployment=deployments.get("subscription", ""),
        lab_outputs=get_deployment_outputs(clients, lab_name, rg),
    )
    if result.subscription_deployment:
        result.subscription_outputs = get_deployment_outputs(clients, result.subscription_deployment)
    path = save_outputs(result)
    print_info(f"Outputs refreshed from Azure → {path}")
    return {"lab": result.lab_outputs, "subscription": result.subscription_outputs}


@cli.command()
@click.option("--resource-group", "-g", default=None, help="Lab resource group name.")
@click.option("--subscription", "-s", default=None, help="Subscription id.")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.option("--no-wait", is_flag=True, help="Return once deletion has started.")
def destroy(resource_group: Optional[str], subscription: Optional[str], yes: bool, no_wait: bool) -> None:
    """Delete the budget, activity-log setting and the lab resource group."""
    from ..azure.auth import verify_login
    from ..azure.cleanup import destroy_lab
    from ..pipeline import load_outputs, outputs_file

    rg = resource_group or settings.resource_group
    with handled_errors():
        saved = load_outputs(rg)
        print_header(f"Destroy lab {rg}")
        if not saved.get("subscription"):
            print_warning("No subscription outputs recorded; budget and activity-log setting are left alone.")
        if not yes and not confirm(f"Delete resource group '{rg}' and everything in it?"):
            print_info("Aborted by user.")
            return

        init_logging("destroy")
        clients = _clients(subscription)
        verify_login(clients, non_interactive=yes)
        summary = destroy_lab(clients, rg, saved.get("subscription", {}), wait=not no_wait)
        path = outputs_file(rg)
        if path.is_file():
            path.unlink()
        print_success(
            f"Removed {len(summary['subscription_artifacts'])} subscription artifact(s); "
            f"resource group deleted: {summary['resource_group_deleted']}"
        )


@cli.command("tenant-steps")
@click.option("--resource-group", "-g", default=None, help="Lab resource group name.")
def tenant_steps(resource_group: Optional[str]) -> None:
    """Print the manual tenant-level configuration checklist."""
    from ..pipeline import load_outputs, print_tenant_checklist

    rg = resource_group or settings.resource_group
    with handled_errors():
        saved = load_outputs(rg)
        if not saved:
            print_warning(f"No outputs recorded for {rg}; showing placeholders.")
        print_tenant_checklist(saved.get("lab", {}))


# ---------------------------------------------------------------------------
# VM power commands
# ---------------------------------------------------------------------------


@cli.group()
def vm() -> None:
    """Start, stop (deallocate) or inspect the lab VM."""


def _vm_target(resource_group: Optional[str], name: Optional[str], prefix: Optional[str]) -> tuple[str, str]:
    from ..pipeline import load_outputs

    rg = resource_group or settings.resource_group
    if name:
        return rg, name
    recorded = load_outputs(rg).get("lab", {}).get("vmName")
    return rg, recorded or f"{prefix or settings.prefix}-vm"[:15]


def _vm_command(func):
    @click.option("--resource-group", "-g", default=None, help="Lab resource group name.")
    @click.option("--name", "-n", default=None, help="VM name (default: from recorded outputs).")
    @click.option("--prefix", default=None, help="Name prefix used when no VM name is recorded.")
    @click.option("--subscription", "-s", default=None, help="Subscription id.")
    @functools.wraps(func)
    def wrapper(resource_group: Optional[str], name: Optional[str], prefix: Optional[str],
                subscription: Optional[str]) -> None:
        from ..azure.auth import verify_login

        with handled_errors():
            rg, vm_name = _vm_target(resource_group, name, prefix)
            init_logging(f"vm-{func.__name__}")
            clients = _clients(subscription)
            verify_login(clients, non_interactive=True)
            func(clients, rg, vm_name)
    return wrapper


@vm.command("start")
@_vm_command
def start(clients, rg: str, vm_name: str) -> None:
    """Start the lab VM."""
    from ..azure.vm import start_vm

    start_vm(clients, rg, vm_name)


@vm.command("stop")
@_vm_command
def stop(clients, rg: str, vm_name: str) -> None:
    """Deallocate the lab VM so compute billing stops."""
    from ..azure.vm import deallocate_vm

    deallocate_vm(clients, rg, vm_name)


@vm.command("status")
@_vm_command
def status(clients, rg: str, vm_name: str) -> None:
    """Show the lab VM power state."""
    from ..azure.vm import get_power_state

    state = get_power_state(clients, rg, vm_name)
    colour = "green" if state == "running" else "yellow"
    console.print(f"{rg}/{vm_name}: [{colour}]{state}[/{colour}]")


# ---------------------------------------------------------------------------
# Tool installer commands
# ---------------------------------------------------------------------------


@cli.group()
def tools() -> None:
    """Security tooling that can be installed on the lab VM."""


@tools.command("list")
def tools_list() -> None:
    """List installable tools."""
    from rich.table import Table

    from ..installers.tools import TOOLS, platform_key

    os_name, arch = platform_key()
    table = Table(title=f"Tools ({os_name} {arch})")
    table.add_column("Name", style="cyan")
    table.add_column("Platforms")
    table.add_column("Source")
    table.add_column("Here", style="green")
    table.add_column("Description")
    for spec in TOOLS.values():
        table.add_row(
            spec.name,
            ", ".join(spec.platforms),
            spec.source,
            "✔" if spec.supports(os_name) else "✖",
            spec.description,
        )
    console.print(table)


@cli.command()
@click.argument("tool_names", metavar="TOOL...", nargs=-1, required=True)
@click.option(
    "--dest",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Install root (default: SECLAB_INSTALL_ROOT or local/tools).",
)
@click.option("--no-post-install", is_flag=True, help="Skip post-install commands (e.g. Sysmon -i).")
def install(tool_names: tuple[str, ...], dest: Optional[Path], no_post_install: bool) -> None:
    """Download, extract, copy and verify one or more tools.

    \b
    Examples:
        seclab install sysmon atomic-red-team invoke-atomicredteam
        seclab install stratus-red-team --dest /opt/seclab
    """
    from ..installers.installer import install_tools

    with handled_errors():
        init_logging("install")
        results = install_tools(
            tool_names,
            install_root=dest,
            post_install=not no_post_install,
        )
        print_header("Installed")
        print_mapping(
            "Tools",
            {r.tool: f"{r.install_dir} {r.version}".strip() + ("" if r.verified else " (unverified)") for r in results},
        )


if __name__ == "__main__":
    cli()
