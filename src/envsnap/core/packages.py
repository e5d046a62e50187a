"""Package-manager and preference-store collaborators.

envsnap never installs package managers itself. It talks to whatever is on the
machine through two operations: list what is installed, and install by name.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from .commands import run_command
from .errors import CommandError

logger = logging.getLogger(__name__)


class PackageManager:
    """Interface of a package-manager collaborator."""

    name = ""
    domain = "packages"

    @property
    def lock_group(self) -> str:
        """Installs sharing a lock group never run at the same time."""
        return self.name

    def installed(self) -> Dict[str, str]:
        """Return installed package names mapped to their versions."""
        raise NotImplementedError("installed() not implemented")

    def install(self, package: str, version: Optional[str] = None) -> None:
        """Install ``package``. Raises CommandError on failure."""
        raise NotImplementedError("install() not implemented")


class CommandPackageManager(PackageManager):
    """A package manager driven by its command-line tool.

    Attributes:
        name: Manager name used as the identity prefix (e.g. ``brew``).
        domain: Domain the manager's packages belong to.
        list_command: Command printing one installed package per line.
        install_command: Command template; ``{name}`` and ``{version}`` are
            substituted per argument.
        pattern: Regex with ``name`` and optional ``version`` groups applied
            to each output line.
        list_timeout: Seconds allowed for the list command; defaults to
            ``timeout``. Installs use ``timeout`` only.
        lock_group: Name of the install lock; defaults to the install
            binary so managers sharing one tool never install concurrently.
    """

    def __init__(
        self,
        name: str,
        list_command: List[str],
        install_command: List[str],
        pattern: str = r"^(?P<name>\S+)(?:\s+(?P<version>\S+))?",
        domain: str = "packages",
        timeout: Optional[float] = None,
        list_timeout: Optional[float] = None,
        lock_group: Optional[str] = None,
    ) -> None:
        self.name = name
        self.domain = domain
        self.list_command = list(list_command)
        self.install_command = list(install_command)
        self.pattern = re.compile(pattern)
        self.timeout = timeout
        self.list_timeout = list_timeout if list_timeout is not None else timeout
        self._lock_group = lock_group

    @property
    def lock_group(self) -> str:
        return self._lock_group or Path(self.install_command[0]).name

    def __repr__(self) -> str:
        return f"CommandPackageManager({self.name})"

    def parse(self, output: str) -> Dict[str, str]:
        packages: Dict[str, str] = {}
        for line in output.splitlines():
            match = self.pattern.match(line.strip())
            if not match:
                continue
            groups = match.groupdict()
            packages[groups["name"]] = groups.get("version") or ""
        return packages

    def installed(self) -> Dict[str, str]:
        output = run_command(self.list_command, timeout=self.list_timeout)
        return self.parse(output.decode("utf-8", "replace"))

    def install(self, package: str, version: Optional[str] = None) -> None:
        args = [
            part.format(name=package, version=version or "") for part in self.install_command
        ]
        logger.info("Installing %s with %s", package, self.name)
        run_command(args, timeout=self.timeout)


def build_package_managers(config: Any) -> Dict[str, PackageManager]:
    """Create the command package managers declared in configuration."""
    managers: Dict[str, PackageManager] = {}
    for name, settings in config.package_managers.items():
        if not settings.get("enabled", True):
            continue
        domain = settings.get("domain", "packages")
        kwargs: Dict[str, Any] = {
            "name": name,
            "list_command": settings["list"],
            "install_command": settings["install"],
            "domain": domain,
            "timeout": settings.get("timeout"),
            "list_timeout": config.collector_timeout(domain),
        }
        if settings.get("pattern"):
            kwargs["pattern"] = settings["pattern"]
        if settings.get("lock_group"):
            kwargs["lock_group"] = settings["lock_group"]
        managers[name] = CommandPackageManager(**kwargs)
    return managers


class DefaultsStore:
    """Reads and writes preference domains through the ``defaults`` tool."""

    def __init__(self, command: str = "defaults", timeout: Optional[float] = None) -> None:
        self.command = command
        self.timeout = timeout

    def export(self, domain: str) -> bytes:
        """Return the preference domain as plist bytes."""
        return run_command([self.command, "export", domain, "-"], timeout=self.timeout)

    def import_(self, domain: str, data: bytes) -> None:
        """Replace the preference domain with the plist ``data``."""
        run_command([self.command, "import", domain, "-"], input_data=data)

    def available(self) -> bool:
        try:
            run_command([self.command, "domains"], timeout=self.timeout)
        except CommandError:
            return False
        return True
