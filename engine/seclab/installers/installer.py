"""Tool installation — download → extract → copy-to-path → verify."""

from __future__ import annotations

import os
import shutil
import stat
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Union
from urllib.parse import urlparse

from ..common import (
    check_command,
    log,
    print_detail,
    print_header,
    print_info,
    print_step,
    print_success,
    print_warning,
)
from ..errors import InstallError
from .archive import extract_archive, is_archive
from .github import GitHubClient
from .tools import ToolSpec, get_tool, platform_key

Runner = Callable[..., subprocess.CompletedProcess]

COMMAND_TIMEOUT = 300


@dataclass
class InstallResult:
    tool: str
    install_dir: Path
    source_url: str
    version: str = ""
    verified: bool = False
    file_count: int = 0


def resolve_download(
    spec: ToolSpec,
    os_name: str,
    arch: str,
    github: GitHubClient,
) -> tuple[str, str, str]:
    """Return ``(url, filename, version)`` for the tool on this platform."""
    if spec.source == "url":
        url = spec.render(spec.url, os_name, arch)
        return url, Path(urlparse(url).path).name, ""

    release = github.latest_release(spec.repo)
    tag = release.get("tag_name", "")
    if spec.source == "release-zipball":
        return github.zipball_url(release), f"{spec.name}-{tag or 'latest'}.zip", tag

    asset = github.find_asset(release, spec.render(spec.asset_pattern, os_name, arch))
    return asset["browser_download_url"], asset["name"], tag


def run_command(cmd: list[str], what: str, runner: Runner = subprocess.run) -> str:
    """Run *cmd* and return its stdout; any failure raises InstallError."""
    print_detail(f"$ {' '.join(cmd)}")
    try:
        result = runner(cmd, capture_output=True, text=True, timeout=COMMAND_TIMEOUT)
    except FileNotFoundError as exc:
        raise InstallError(f"{what}: command not found: {cmd[0]}") from exc
    except subprocess.TimeoutExpired as exc:
        raise InstallError(f"{what}: timed out after {COMMAND_TIMEOUT}s") from exc
    if result.returncode != 0:
        output = (result.stderr or result.stdout or "").strip().splitlines()
        tail = output[-1] if output else "no output"
        raise InstallError(f"{what} failed (exit {result.returncode}): {tail}")
    return result.stdout or ""


def _copy_into(source: Path, install_dir: Path) -> None:
    if install_dir.exists():
        print_info(f"Replacing existing {install_dir}")
        shutil.rmtree(install_dir)
    if source.is_dir():
        shutil.copytree(source, install_dir)
    else:
        install_dir.mkdir(parents=True)
        shutil.copy2(source, install_dir / source.name)


def _make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _count_files(root: Path) -> int:
    return sum(len(files) for _, _, files in os.walk(root))


def install_tool(
    tool: Union[str, ToolSpec],
    *,
    install_root: Optional[Path] = None,
    github: Optional[GitHubClient] = None,
    system: Optional[str] = None,
    machine: Optional[str] = None,
    post_install: bool = True,
    runner: Runner = subprocess.run,
) -> InstallResult:
    """Install one tool under ``<install_root>/<tool name>``.

    Network steps are retried by :class:`GitHubClient`; every other failure
    raises :class:`InstallError` and leaves no temporary files behind.
    """
    spec = get_tool(tool) if isinstance(tool, str) else tool
    os_name, arch = platform_key(system, machine)
    if not spec.supports(os_name):
        raise InstallError(
            f"{spec.name} is not available on {os_name} (supported: {', '.join(spec.platforms)})"
        )
    if install_root is None:
        from ..config import settings
        install_root = settings.effective_install_root
    github = github or GitHubClient()
    install_dir = install_root / spec.name

    print_header(f"Install {spec.name}")
    print_info(spec.description)

    # --- Download -----------------------------------------------------------
    url, filename, version = resolve_download(spec, os_name, arch, github)
    if version:
        print_info(f"Latest release: {version}")

    with tempfile.TemporaryDirectory(prefix=f"seclab-{spec.name}-") as tmp:
        work = Path(tmp)
        downloaded = github.download(url, work / filename)

        # --- Extract --------------------------------------------------------
        unpacked = work / "unpacked"
        if is_archive(downloaded):
            print_step(f"Extracting {downloaded.name}...")
            content = extract_archive(downloaded, unpacked)
        else:
            unpacked.mkdir()
            content = unpacked
            shutil.move(str(downloaded), content / downloaded.name)

        source = content / spec.copy_from if spec.copy_from else content
        if not source.exists():
            raise InstallError(f"'{spec.copy_from}' not found in {downloaded.name}")

        # --- Copy -----------------------------------------------------------
        print_step(f"Copying to {install_dir}...")
        install_root.mkdir(parents=True, exist_ok=True)
        _copy_into(source, install_dir)

    for extra_url, extra_name in spec.extra_files:
        github.download(extra_url, install_dir / extra_name)

    if os_name != "Windows":
        for exe in spec.executables:
            path = install_dir / spec.render(exe, os_name, arch)
            if path.exists():
                _make_executable(path)

    # --- Verify -------------------------------------------------------------
    missing = [
        rel for rel in (spec.render(f, os_name, arch) for f in spec.required_files)
        if not (install_dir / rel).exists()
    ]
    if missing:
        raise InstallError(f"{spec.name}: expected files missing after copy: {', '.join(missing)}")

    if post_install and spec.post_install:
        print_step(f"Running {spec.name} post-install...")
        cmd = [spec.render(a, os_name, arch, install_dir) for a in spec.post_install]
        run_command(cmd, f"{spec.name} post-install", runner)

    verified = False
    if spec.verify and spec.verify_after_post_install and not post_install:
        print_warning(f"Post-install skipped; {spec.name} verification needs it and was not run.")
    elif spec.verify:
        cmd = [spec.render(a, os_name, arch, install_dir) for a in spec.verify]
        is_path = os.sep in cmd[0] or "/" in cmd[0]
        if not is_path and not check_command(cmd[0]):
            print_warning(f"{cmd[0]} not on PATH; skipped '{' '.join(cmd)}' check.")
        else:
            print_step(f"Verifying {spec.name}...")
            output = run_command(cmd, f"{spec.name} verification", runner)
            verified = True
            first_line = output.strip().splitlines()[0] if output.strip() else ""
            version = version or first_line

    result = InstallResult(
        tool=spec.name,
        install_dir=install_dir,
        source_url=url,
        version=version,
        verified=verified,
        file_count=_count_files(install_dir),
    )
    print_success(f"{spec.name} installed to {install_dir} ({result.file_count} files)")
    log(f"Installed {spec.name} {version or ''} from {url} to {install_dir}, verified={verified}")
    return result


def install_tools(names: Iterable[str], **kwargs) -> list[InstallResult]:
    """Install several tools in order, stopping at the first failure."""
    specs = [get_tool(n) for n in names]
    return [install_tool(spec, **kwargs) for spec in specs]
