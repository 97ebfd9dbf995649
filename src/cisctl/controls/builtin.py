"""Built-in control content.

Each rule is data plugged into the generic :class:`ControlUnit`: the factories
below close over the rule's resource names and commands and hand the runner
plain detect/apply/verify callables.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import ControlFailure
from .catalog import ControlCatalog
from .host import HostCommands
from .models import ControlLevel, ControlUnit, Resource

if TYPE_CHECKING:
    from ..context import ExecutionContext

MODPROBE_DIR = Path("/etc/modprobe.d")


def _blacklist_line(module: str) -> str:
    return f"install {module} /bin/true"


def _module_blacklisted(modprobe_dir: Path, module: str) -> bool:
    expected = _blacklist_line(module)
    if not modprobe_dir.is_dir():
        return False
    for path in sorted(modprobe_dir.iterdir()):
        if not path.is_file():
            continue
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError):
            continue
        if any(line.startswith(expected) for line in lines):
            return True
    return False


def modprobe_disable_control(
    control_id: str,
    module: str,
    *,
    title: str | None = None,
    description: str = "",
    group: int = 1,
    level: ControlLevel = "L1",
    modprobe_dir: Path = MODPROBE_DIR,
    host: HostCommands | None = None,
) -> ControlUnit:
    """Return a control that disables loading of a kernel filesystem module."""
    commands = host or HostCommands()
    conf_path = modprobe_dir / f"{module}.conf"

    def detect(ctx: ExecutionContext) -> bool:
        ctx.log.info(control_id, f"Checking if {module} filesystem is disabled")
        if commands.module_loaded(module):
            ctx.log.info(control_id, f"{module} module is currently loaded")
            return True
        if not _module_blacklisted(modprobe_dir, module):
            ctx.log.info(control_id, f"{module} is not blacklisted in modprobe configuration")
            return True
        ctx.log.info(control_id, f"{module} filesystem is already properly disabled")
        return False

    def apply(ctx: ExecutionContext) -> bool:
        try:
            conf_path.parent.mkdir(parents=True, exist_ok=True)
            conf_path.write_text(_blacklist_line(module) + "\n", encoding="utf-8")
        except OSError as exc:
            raise ControlFailure(control_id, "apply", f"cannot write {conf_path}: {exc}") from exc
        ctx.log.info(control_id, f"Created {conf_path} with {module} blacklist")
        if commands.module_loaded(module):
            if commands.unload_module(module):
                ctx.log.info(control_id, f"Removed {module} module from kernel")
            else:
                ctx.log.warn(control_id, f"Could not remove {module} module (may be in use)")
        return True

    def verify(ctx: ExecutionContext) -> bool:
        if not _module_blacklisted(modprobe_dir, module):
            ctx.log.error(control_id, f"{module} blacklist not found")
            return False
        if commands.module_loaded(module):
            ctx.log.warn(control_id, f"{module} module is still loaded but blacklisted")
        return True

    return ControlUnit(
        id=control_id,
        title=title or f"Ensure mounting of {module} filesystems is disabled",
        description=description,
        group=group,
        level=level,
        resources=(Resource.for_path(conf_path),),
        detect=detect,
        apply=apply,
        verify=verify,
    )


def package_service_control(
    control_id: str,
    package: str,
    *,
    service: str | None = None,
    title: str | None = None,
    description: str = "",
    group: int = 4,
    level: ControlLevel = "L1",
    host: HostCommands | None = None,
) -> ControlUnit:
    """Return a control that installs *package* and enables its *service*."""
    commands = host or HostCommands()

    def detect(ctx: ExecutionContext) -> bool:
        ctx.log.info(control_id, f"Checking if {package} is installed")
        if commands.package_installed(package):
            ctx.log.info(control_id, f"{package} is already installed")
            return False
        ctx.log.info(control_id, f"{package} is not installed")
        return True

    def apply(ctx: ExecutionContext) -> bool:
        commands.install_package(package)
        ctx.log.success(control_id, f"{package} installed successfully")
        if service is not None:
            commands.systemctl("enable", service)
            ctx.log.info(control_id, f"{service} service enabled")
            commands.systemctl("start", service)
            ctx.log.info(control_id, f"{service} service started")
        return True

    def verify(ctx: ExecutionContext) -> bool:
        if not commands.package_installed(package):
            ctx.log.error(control_id, f"{package} package is not installed")
            return False
        ctx.log.success(control_id, f"{package} package is installed")
        if service is not None:
            if not commands.service_enabled(service):
                ctx.log.warn(control_id, f"{service} service is not enabled")
            if not commands.service_active(service):
                ctx.log.warn(control_id, f"{service} service is not running")
        return True

    def undo(ctx: ExecutionContext) -> None:
        if service is not None:
            if commands.service_active(service):
                commands.systemctl("stop", service, check=False)
                ctx.log.info(control_id, f"Stopped {service} service")
            if commands.service_enabled(service):
                commands.systemctl("disable", service, check=False)
                ctx.log.info(control_id, f"Disabled {service} service")
        if commands.package_installed(package):
            commands.remove_package(package)
            ctx.log.info(control_id, f"Removed {package} package")

    return ControlUnit(
        id=control_id,
        title=title or f"Ensure {package} is installed",
        description=description,
        group=group,
        level=level,
        detect=detect,
        apply=apply,
        verify=verify,
        undo=undo,
    )


def default_catalog(host: HostCommands | None = None) -> ControlCatalog:
    """Return the catalog of controls shipped with cisctl."""
    commands = host or HostCommands()
    return ControlCatalog(
        [
            modprobe_disable_control(
                "1.1.1",
                "cramfs",
                description=(
                    "The cramfs filesystem type is a compressed read-only Linux "
                    "filesystem embedded in small footprint systems."
                ),
                host=commands,
            ),
            package_service_control(
                "4.1.1",
                "audit",
                service="auditd",
                title="Ensure auditd is installed",
                description="auditd is the userspace component of the Linux Auditing System.",
                level="L2",
                host=commands,
            ),
            package_service_control(
                "4.2.1",
                "rsyslog",
                service="rsyslog",
                description=(
                    "The rsyslog software is a recommended replacement to the "
                    "original syslogd daemon."
                ),
                host=commands,
            ),
        ]
    )


__all__ = [
    "MODPROBE_DIR",
    "default_catalog",
    "modprobe_disable_control",
    "package_service_control",
]
