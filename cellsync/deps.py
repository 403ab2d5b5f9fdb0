"""
Dependency installation for a session's requirements.txt.
"""

import logging
import subprocess
import sys
from dataclasses import dataclass
from importlib.metadata import distributions
from typing import Optional, Protocol

from cellsync.errors import CollaboratorUnavailable
from cellsync.utils import requirement_name

logger = logging.getLogger(__name__)


@dataclass
class InstallResult:
    success: bool
    output: str = ""


class PackageInstaller(Protocol):
    def install(self, packages: list[str]) -> InstallResult:
        ...


class PipInstaller:
    """Installs packages into the running interpreter with pip."""

    def __init__(self, python: Optional[str] = None, timeout: float = 600.0):
        self.python = python or sys.executable
        self.timeout = timeout

    def install(self, packages: list[str]) -> InstallResult:
        cmd = [self.python, "-m", "pip", "install", "--no-input", *packages]
        logger.info("Running %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CollaboratorUnavailable(f"pip could not be run: {e}") from e
        return InstallResult(success=proc.returncode == 0, output=proc.stdout or "")


def installed_packages() -> set[str]:
    """Normalized names of every distribution importable by this interpreter."""
    return {
        requirement_name(d.metadata["Name"])
        for d in distributions()
        if d.metadata["Name"]
    }


def missing_packages(manifest_source: str) -> list[str]:
    """Requirement lines of a requirements.txt whose distribution is not installed."""
    installed = installed_packages()
    missing = []
    for line in manifest_source.splitlines():
        line = line.strip()
        if not line or line.startswith(("#", "-")):
            continue
        if requirement_name(line) not in installed:
            missing.append(line)
    return missing
