"""Installers for the security tooling that runs on the lab VM."""
