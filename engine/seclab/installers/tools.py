"""Registry of installable tools.

Every string field of a :class:`ToolSpec` may contain these placeholders,
filled in by :func:`ToolSpec.render`:

    {os}    Windows / Linux / Darwin
    {arch}  x86_64 / arm64
    {ext}   archive suffix for the platform (zip on Windows, tar.gz elsewhere)
    {exe}   ".exe" on Windows, empty elsewhere
    {dir}   install directory of the tool
"""

from __future__ import annotations

import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import InstallError

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def platform_key(system: Optional[str] = None, machine: Optional[str] = None) -> tuple[str, str]:
    """Normalised ``(os, arch)`` of this machine, e.g. ``("Linux", "x86_64")``."""
    os_name = system or platform.system()
    raw = (machine or platform.machine()).lower()
    return os_name, _ARCH_ALIASES.get(raw, raw)


@dataclass(frozen=True)
class ToolSpec:
    """How to fetch, lay out and check one tool."""

    name: str
    description: str
    platforms: tuple[str, ...] = ("Windows", "Linux", "Darwin")

    # Source: a fixed URL, a release asset (glob) or the latest release zipball
    url: str = ""
    repo: str = ""
    asset_pattern: str = ""
    use_zipball: bool = False

    # Layout: sub-path of the extracted archive to copy ("" = everything)
    copy_from: str = ""
    required_files: tuple[str, ...] = ()
    executables: tuple[str, ...] = ()

    # Extra single-file downloads placed in the install dir: (url, filename)
    extra_files: tuple[tuple[str, str], ...] = ()

    post_install: tuple[str, ...] = ()
    verify: tuple[str, ...] = ()
    # verify only passes once post_install has run (e.g. a service it registers)
    verify_after_post_install: bool = False
    docs: str = ""

    @property
    def source(self) -> str:
        if self.url:
            return "url"
        if self.use_zipball:
            return "release-zipball"
        return "release-asset"

    def supports(self, os_name: str) -> bool:
        return os_name in self.platforms

    def render(self, text: str, os_name: str, arch: str, install_dir: Optional[Path] = None) -> str:
        windows = os_name == "Windows"
        return text.format(
            os=os_name,
            arch=arch,
            ext="zip" if windows else "tar.gz",
            exe=".exe" if windows else "",
            dir=str(install_dir) if install_dir is not None else "",
        )


SYSMON = ToolSpec(
    name="sysmon",
    description="Sysinternals System Monitor with the SwiftOnSecurity configuration",
    platforms=("Windows",),
    url="https://download.sysinternals.com/files/Sysmon.zip",
    required_files=("Sysmon64.exe", "sysmonconfig-export.xml"),
    extra_files=(
        (
            "https://raw.githubusercontent.com/SwiftOnSecurity/sysmon-config/master/sysmonconfig-export.xml",
            "sysmonconfig-export.xml",
        ),
    ),
    post_install=("{dir}/Sysmon64.exe", "-accepteula", "-i", "{dir}/sysmonconfig-export.xml"),
    verify=("sc.exe", "query", "Sysmon64"),
    verify_after_post_install=True,
    docs="https://learn.microsoft.com/sysinternals/downloads/sysmon",
)

ATOMIC_RED_TEAM = ToolSpec(
    name="atomic-red-team",
    description="Red Canary Atomic Red Team test definitions (atomics folder)",
    url="https://github.com/redcanaryco/atomic-red-team/archive/refs/heads/master.zip",
    copy_from="atomics",
    required_files=("T1003/T1003.yaml", "T1059.001/T1059.001.yaml"),
    docs="https://github.com/redcanaryco/atomic-red-team",
)

INVOKE_ATOMIC = ToolSpec(
    name="invoke-atomicredteam",
    description="PowerShell execution framework for Atomic Red Team tests",
    repo="redcanaryco/invoke-atomicredteam",
    use_zipball=True,
    required_files=("Invoke-AtomicRedTeam.psd1",),
    verify=(
        "pwsh", "-NoProfile", "-Command",
        "Import-Module '{dir}/Invoke-AtomicRedTeam.psd1' -Force; "
        "(Get-Module Invoke-AtomicRedTeam).Version.ToString()",
    ),
    docs="https://github.com/redcanaryco/invoke-atomicredteam/wiki",
)

STRATUS_RED_TEAM = ToolSpec(
    name="stratus-red-team",
    description="Datadog Stratus Red Team cloud attack emulation binary",
    repo="DataDog/stratus-red-team",
    asset_pattern="stratus-red-team*_{os}_{arch}.{ext}",
    required_files=("stratus{exe}",),
    executables=("stratus{exe}",),
    verify=("{dir}/stratus{exe}", "version"),
    docs="https://stratus-red-team.cloud",
)

TOOLS: dict[str, ToolSpec] = {
    t.name: t for t in (SYSMON, ATOMIC_RED_TEAM, INVOKE_ATOMIC, STRATUS_RED_TEAM)
}


def get_tool(name: str) -> ToolSpec:
    try:
        return TOOLS[name.lower()]
    except KeyError:
        raise InstallError(f"Unknown tool {name!r}; choose from: {', '.join(sorted(TOOLS))}") from None
