"""seclab configuration — loads from environment and local .env files."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings


def _find_repo_root() -> Path:
    """Walk up from the working directory to find the repo root (where pyproject.toml lives)."""
    p = Path.cwd().resolve()
    while p != p.parent:
        if (p / "pyproject.toml").exists():
            return p
        p = p.parent
    return Path.cwd().resolve()


class Settings(BaseSettings):
    """Application settings — populated from env vars or .env file."""

    app_name: str = "seclab"
    app_version: str = "0.1.0"

    # Azure
    subscription_id: str = ""
    tenant_id: str = ""
    location: str = "eastus"
    resource_group: str = "seclab-rg"
    prefix: str = "seclab"
    # Lets --non-interactive deploys run without a prompt
    admin_password: Optional[SecretStr] = None

    # Installers — set SECLAB_GITHUB_TOKEN to lift the anonymous API rate limit
    github_token: Optional[str] = None
    install_root: Optional[Path] = None

    # Retry policy for every external call
    retry_attempts: int = 3
    retry_delay: float = 2.0

    # Paths
    repo_root: Path = _find_repo_root()

    model_config = {"env_prefix": "SECLAB_", "env_file": ".env", "extra": "ignore"}

    @property
    def local_dir(self) -> Path:
        return self.repo_root / "local"

    @property
    def log_dir(self) -> Path:
        return self.local_dir / "logs"

    @property
    def outputs_dir(self) -> Path:
        d = self.local_dir / "outputs"
        d.mkdir(parents=True, exist_ok=True)
        return d

    @property
    def effective_install_root(self) -> Path:
        if self.install_root:
            return self.install_root
        return self.local_dir / "tools"


settings = Settings()
