"""Tests for the built-in control content, driven through the runner."""
from __future__ import annotations

from pathlib import Path

import pytest

from cisctl.context import ExecutionContext
from cisctl.controls import (
    HostCommandError,
    HostCommands,
    RemediationOutcome,
    default_catalog,
    modprobe_disable_control,
    package_service_control,
)
from cisctl.runner import run_control


def _script(path: Path, body: str) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def host(tmp_path: Path) -> HostCommands:
    """Return host commands backed by stub scripts and a fake /proc/modules.

    The stub rpm reports a package installed once the stub yum created a
    marker file for it; yum remove deletes the marker again.
    """
    bin_dir = tmp_path / "bin"
    state = tmp_path / "state"
    state.mkdir()
    calls = tmp_path / "calls.log"
    proc_modules = tmp_path / "proc_modules"
    proc_modules.write_text("ext4 1 0 - Live 0x0\n", encoding="utf-8")
    return HostCommands(
        rpm_bin=_script(bin_dir / "rpm", f'test -f "{state}/$2"'),
        yum_bin=_script(
            bin_dir / "yum",
            f'echo "yum $*" >> "{calls}"\n'
            f'if [ "$1" = install ]; then touch "{state}/$3"; else rm -f "{state}/$3"; fi',
        ),
        systemctl_bin=_script(bin_dir / "systemctl", f'echo "systemctl $*" >> "{calls}"'),
        rmmod_bin=_script(bin_dir / "rmmod", f'echo "rmmod $*" >> "{calls}"'),
        proc_modules=proc_modules,
    )


def _calls(tmp_path: Path) -> list[str]:
    path = tmp_path / "calls.log"
    return path.read_text(encoding="utf-8").splitlines() if path.exists() else []


def test_modprobe_control_writes_blacklist(
    tmp_path: Path,
    host: HostCommands,
    context: ExecutionContext,
) -> None:
    """A missing blacklist is created and verified."""
    modprobe_dir = tmp_path / "modprobe.d"
    unit = modprobe_disable_control("1.1.1", "cramfs", modprobe_dir=modprobe_dir, host=host)

    result = run_control(unit, context)

    assert result.outcome is RemediationOutcome.REMEDIATED
    conf = modprobe_dir / "cramfs.conf"
    assert conf.read_text(encoding="utf-8") == "install cramfs /bin/true\n"
    assert _calls(tmp_path) == []


def test_modprobe_control_already_compliant(
    tmp_path: Path,
    host: HostCommands,
    context: ExecutionContext,
) -> None:
    """A blacklist in any modprobe file satisfies the control."""
    modprobe_dir = tmp_path / "modprobe.d"
    modprobe_dir.mkdir()
    (modprobe_dir / "CIS.conf").write_text("install cramfs /bin/true\n", encoding="utf-8")
    unit = modprobe_disable_control("1.1.1", "cramfs", modprobe_dir=modprobe_dir, host=host)

    result = run_control(unit, context)

    assert result.outcome is RemediationOutcome.ALREADY_COMPLIANT
    assert not (modprobe_dir / "cramfs.conf").exists()


def test_modprobe_control_ignores_indented_blacklist(
    tmp_path: Path,
    host: HostCommands,
    context: ExecutionContext,
) -> None:
    """Only a blacklist line starting at column 0 counts."""
    modprobe_dir = tmp_path / "modprobe.d"
    modprobe_dir.mkdir()
    (modprobe_dir / "CIS.conf").write_text("  install cramfs /bin/true\n", encoding="utf-8")
    unit = modprobe_disable_control("1.1.1", "cramfs", modprobe_dir=modprobe_dir, host=host)

    result = run_control(unit, context)

    assert result.outcome is RemediationOutcome.REMEDIATED
    conf = modprobe_dir / "cramfs.conf"
    assert conf.read_text(encoding="utf-8") == "install cramfs /bin/true\n"


def test_modprobe_control_unloads_loaded_module(
    tmp_path: Path,
    host: HostCommands,
    context: ExecutionContext,
) -> None:
    """A loaded module triggers remediation and an rmmod attempt."""
    host.proc_modules.write_text("cramfs 16384 0 - Live 0x0\n", encoding="utf-8")
    modprobe_dir = tmp_path / "modprobe.d"
    modprobe_dir.mkdir()
    (modprobe_dir / "cramfs.conf").write_text("install cramfs /bin/true\n", encoding="utf-8")
    unit = modprobe_disable_control("1.1.1", "cramfs", modprobe_dir=modprobe_dir, host=host)

    result = run_control(unit, context)

    assert result.outcome is RemediationOutcome.REMEDIATED
    assert _calls(tmp_path) == ["rmmod cramfs"]
    assert len(result.backups) == 1


def test_modprobe_control_unwritable_directory_fails(
    tmp_path: Path,
    host: HostCommands,
    context: ExecutionContext,
) -> None:
    """A blacklist that cannot be written fails the apply phase."""
    modprobe_dir = tmp_path / "modprobe.d"
    modprobe_dir.write_text("not a directory\n", encoding="utf-8")
    unit = modprobe_disable_control("1.1.1", "cramfs", modprobe_dir=modprobe_dir, host=host)

    result = run_control(unit, context)

    assert result.outcome is RemediationOutcome.FAILED
    assert result.error is not None
    assert result.error.startswith("1.1.1 apply failed: cannot write")
    assert modprobe_dir.read_text(encoding="utf-8") == "not a directory\n"


def test_package_control_installs_and_enables(
    tmp_path: Path,
    host: HostCommands,
    context: ExecutionContext,
) -> None:
    """A missing package is installed and its service enabled and started."""
    unit = package_service_control("4.1.1", "audit", service="auditd", host=host)

    result = run_control(unit, context)

    assert result.outcome is RemediationOutcome.REMEDIATED
    calls = _calls(tmp_path)
    assert calls[:3] == [
        "yum install -y audit",
        "systemctl enable auditd",
        "systemctl start auditd",
    ]
    assert host.package_installed("audit")


def test_package_control_already_installed(
    tmp_path: Path,
    host: HostCommands,
    context: ExecutionContext,
) -> None:
    """An installed package means nothing to do."""
    (tmp_path / "state" / "rsyslog").touch()
    unit = package_service_control("4.2.1", "rsyslog", service="rsyslog", host=host)

    result = run_control(unit, context)

    assert result.outcome is RemediationOutcome.ALREADY_COMPLIANT
    assert _calls(tmp_path) == []


def test_package_control_dry_run_changes_nothing(
    tmp_path: Path,
    host: HostCommands,
    dry_context: ExecutionContext,
) -> None:
    """Dry runs only report the needed remediation."""
    unit = package_service_control("4.1.1", "audit", service="auditd", host=host)

    result = run_control(unit, dry_context)

    assert result.outcome is RemediationOutcome.WOULD_REMEDIATE
    assert _calls(tmp_path) == []


def test_package_control_install_failure_rolls_back(
    tmp_path: Path,
    host: HostCommands,
    context: ExecutionContext,
) -> None:
    """A failing install is reported and the undo hook runs."""
    host.yum_bin = _script(tmp_path / "bin" / "yum-broken", 'echo "No package" >&2\nexit 1')
    unit = package_service_control("4.1.1", "audit", service="auditd", host=host)

    result = run_control(unit, context)

    assert result.outcome is RemediationOutcome.FAILED
    assert result.rolled_back is True
    assert result.error is not None and "No package" in result.error


def test_host_run_missing_binary(tmp_path: Path) -> None:
    """Missing binaries raise when checked and report 127 otherwise."""
    commands = HostCommands(rpm_bin=str(tmp_path / "nope"))

    assert commands.package_installed("audit") is False
    with pytest.raises(HostCommandError):
        commands.run([str(tmp_path / "nope"), "-q", "audit"])


def test_module_loaded_handles_missing_proc(tmp_path: Path) -> None:
    """An unreadable modules list means nothing is loaded."""
    commands = HostCommands(proc_modules=tmp_path / "missing")

    assert commands.module_loaded("cramfs") is False


def test_default_catalog_contents() -> None:
    """The shipped catalog carries the three baseline controls."""
    catalog = default_catalog(HostCommands())

    assert [unit.id for unit in catalog] == ["1.1.1", "4.1.1", "4.2.1"]
    assert [unit.id for unit in catalog.select(4)] == ["4.1.1", "4.2.1"]
    audit = catalog.get("4.1.1")
    assert audit is not None and audit.level == "L2"
    cramfs = catalog.get("1.1.1")
    assert cramfs is not None
    assert [resource.name for resource in cramfs.resources] == ["cramfs.conf"]
