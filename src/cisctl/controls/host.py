"""Thin wrappers around the host commands used by built-in control content."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path


class HostCommandError(RuntimeError):
    """Raised when a host command fails."""


@dataclass(slots=True)
class HostCommands:
    """Run package, service and kernel-module commands on the local host."""

    rpm_bin: str = "rpm"
    yum_bin: str = "yum"
    systemctl_bin: str = "systemctl"
    rmmod_bin: str = "rmmod"
    proc_modules: Path = Path("/proc/modules")

    # Packages ---------------------------------------------------------
    def package_installed(self, package: str) -> bool:
        """Return ``True`` when ``rpm -q`` finds *package*."""
        return self.run([self.rpm_bin, "-q", package], check=False).returncode == 0

    def install_package(self, package: str) -> None:
        """Install *package* with yum."""
        self.run([self.yum_bin, "install", "-y", package])

    def remove_package(self, package: str) -> None:
        """Remove *package* with yum."""
        self.run([self.yum_bin, "remove", "-y", package])

    # Services ---------------------------------------------------------
    def systemctl(self, command: str, unit: str, *, check: bool = True) -> bool:
        """Run ``systemctl <command> <unit>``; return ``True`` on exit 0."""
        result = self.run([self.systemctl_bin, command, unit], check=check)
        return result.returncode == 0

    def service_enabled(self, unit: str) -> bool:
        """Return ``True`` when *unit* is enabled."""
        return self.systemctl("is-enabled", unit, check=False)

    def service_active(self, unit: str) -> bool:
        """Return ``True`` when *unit* is running."""
        return self.systemctl("is-active", unit, check=False)

    # Kernel modules ---------------------------------------------------
    def module_loaded(self, module: str) -> bool:
        """Return ``True`` when *module* appears in ``/proc/modules``."""
        try:
            text = self.proc_modules.read_text(encoding="utf-8")
        except OSError:
            return False
        return any(line.split(" ", 1)[0] == module for line in text.splitlines())

    def unload_module(self, module: str) -> bool:
        """Try to unload *module*; return ``False`` when it stays loaded."""
        return self.run([self.rmmod_bin, module], check=False).returncode == 0

    # ------------------------------------------------------------------
    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args* capturing output; raise on failure when *check*."""
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            if not check:
                return subprocess.CompletedProcess(
                    list(args), returncode=127, stdout="", stderr=str(exc)
                )
            raise HostCommandError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            joined = " ".join(args)
            raise HostCommandError(f"{joined} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["HostCommandError", "HostCommands"]
