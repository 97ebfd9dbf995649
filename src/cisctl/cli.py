"""Typer-powered command line for ``cisctl``.

Two halves share this entry point:

* ``dispatch`` / ``status`` run on the operator workstation and fan a
  remediation batch out to many instances through AWS Systems Manager.
* ``run`` executes on a target and drives the selected controls through
  detect, backup, apply, verify and rollback.
"""
from __future__ import annotations

import sys
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import get_version
from .backups import BackupError, BackupStore
from .config import AppConfig, ConfigError, load_config
from .context import ExecutionContext
from .controls import (
    GROUP_SELECTOR_VALUES,
    ControlCatalog,
    ControlUnit,
    RemediationOutcome,
    RunReport,
    default_catalog,
    parse_group_selector,
    read_patterns,
)
from .errors import DispatchError, RunInterrupted, ValidationError
from .exit_codes import ExitCode
from .fleet import (
    BatchSummary,
    CompletionPoller,
    DispatchHandle,
    DispatchOptions,
    TargetDispatcher,
    TargetState,
    parse_targets,
    serialize_summary,
    summarize,
)
from .logging import LOG_LEVELS, OperationScope, RunLog, StructuredLogger, normalize_level
from .providers import SsmProvider
from .runner import require_root, run_controls

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to cisctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    "-d",
    help="Report what would change without mutating anything.",
)

LOG_LEVEL_OPTION = typer.Option(
    None,
    "--log-level",
    "-l",
    help=f"Logging level: {'|'.join(LOG_LEVELS)} (default from config).",
)

PROFILE_OPTION = typer.Option(None, "--profile", help="AWS CLI profile to use.")
REGION_OPTION = typer.Option(None, "--region", help="AWS region (default: from AWS config).")

TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    "-t",
    help="Command timeout in seconds (default: 3600).",
)

INTERVAL_OPTION = typer.Option(
    None,
    "--interval",
    help="Seconds between status checks while waiting (default: 10).",
)

GROUP_ARGUMENT = typer.Argument(
    ...,
    help=f"CIS group to remediate ({', '.join(GROUP_SELECTOR_VALUES)}).",
)

TARGETS_ARGUMENT = typer.Argument(
    ...,
    help="Comma-separated instance IDs (e.g. i-111,i-222).",
)


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        CIS benchmark remediation for fleets of Amazon Linux hosts.

        Dispatch remediation groups to instances through AWS Systems Manager,
        wait for the outcome, or run the controls locally on a target.
        """
    ).strip(),
)
controls_app = typer.Typer(help="Inspect the built-in control catalog.")
backups_app = typer.Typer(help="List and restore resource backups.")

app.add_typer(controls_app, name="controls")
app.add_typer(backups_app, name="backups")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=ExitCode.FAILURE) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the cisctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"cisctl {get_version()}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.FAILURE,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]", highlight=False)
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _resolve_level(raw: str | None, default: str) -> str:
    level = normalize_level(raw) if raw else default
    if level not in LOG_LEVELS:
        allowed = ", ".join(LOG_LEVELS)
        raise ValidationError(f"Invalid log level: {raw}. Must be one of {allowed}.")
    return level


def _operator_log(level: str, *, quiet: bool) -> RunLog:
    """Console-only log for workstation commands; silent when emitting JSON."""
    stream = None if quiet else sys.stdout
    return RunLog(None, level=level, stream=stream)


def _ssm_provider(config: AppConfig, profile: str | None, region: str | None) -> SsmProvider:
    remote = config.remote
    return SsmProvider(
        document_name=remote.document_name,
        aws_bin=remote.aws_bin,
        profile=profile or remote.profile,
        region=region or remote.region,
    )


# ----------------------------------------------------------------------
# Fleet commands
# ----------------------------------------------------------------------
def _state_style(state: TargetState) -> str:
    if state is TargetState.SUCCESS:
        return "green"
    if state.is_terminal:
        return "red"
    return "yellow"


def _render_summary(summary: BatchSummary) -> None:
    console.print("Final results:")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Target", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for item in summary.targets:
        status = item.state.value
        if item.local_timeout:
            status = f"{status} (local wait)"
        style = _state_style(item.state)
        table.add_row(item.target, f"[{style}]{status}[/{style}]", item.detail or "")
    console.print(table)

    for item in summary.targets:
        if item.error_output:
            console.print(f"Error output from {item.target}:")
            for line in item.error_output.splitlines():
                console.print(f"    {line}", markup=False, highlight=False)
        if item.output_tail:
            console.print(f"Output from {item.target} (last {len(item.output_tail)} lines):")
            for line in item.output_tail:
                console.print(f"    {line}", markup=False, highlight=False)

    if summary.interrupted:
        console.print("[yellow]Wait interrupted; remote commands keep running.[/yellow]")
    colour = "green" if summary.exit_code == ExitCode.OK else "red"
    console.print(f"Overall: [{colour}]{summary.status.value}[/{colour}]")


def _summary_exit_code(summary: BatchSummary) -> int:
    if summary.interrupted:
        return int(ExitCode.INTERRUPTED)
    return summary.exit_code


def _wait_and_report(
    op: OperationScope,
    provider: SsmProvider,
    handle: DispatchHandle,
    *,
    config: AppConfig,
    log: RunLog,
    timeout: int | None,
    interval: float | None,
    json_output: bool,
) -> NoReturn:
    try:
        poller = CompletionPoller(
            provider,
            interval=interval if interval is not None else config.polling.interval,
            timeout=timeout if timeout is not None else config.polling.timeout,
            log=log,
        )
        report = poller.wait(handle)
    except ValidationError as exc:
        _command_error(op, str(exc))
    op.add_step("poll.wait", detail=f"{report.rounds} round(s)")
    summary = summarize(report, tail_lines=config.polling.output_tail_lines)
    payload = serialize_summary(summary)
    if json_output:
        console.print_json(data=payload)
    else:
        _render_summary(summary)
    code = _summary_exit_code(summary)
    context: Mapping[str, object] = {"command_id": handle.command_id, "summary": payload}
    if code == ExitCode.OK:
        op.success(
            "All targets completed successfully.",
            changed=len(handle.targets),
            context=context,
        )
    else:
        failed = [item.target for item in summary.targets if item.state is not TargetState.SUCCESS]
        op.error(
            f"Remediation did not succeed on: {', '.join(failed) or 'unknown'}",
            rc=code,
            context=context,
        )
    raise typer.Exit(code=code)


@app.command()
def dispatch(
    ctx: typer.Context,
    group: str = GROUP_ARGUMENT,
    targets: str = TARGETS_ARGUMENT,
    dry_run: bool = DRY_RUN_OPTION,
    bucket: str | None = typer.Option(None, "--bucket", "-b", help="S3 bucket with the rules."),
    prefix: str | None = typer.Option(None, "--prefix", "-p", help="S3 key prefix."),
    log_level: str | None = LOG_LEVEL_OPTION,
    wait: bool = typer.Option(
        False,
        "--wait",
        "-w",
        help="Wait for command completion and show output.",
    ),
    timeout: int | None = TIMEOUT_OPTION,
    interval: float | None = INTERVAL_OPTION,
    profile: str | None = PROFILE_OPTION,
    region: str | None = REGION_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Execute CIS remediation on EC2 instances via SSM."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    with runtime.logger.operation(
        "dispatch",
        args={
            "group": group,
            "dry_run": dry_run,
            "wait": wait,
            "timeout": timeout,
            "log_level": log_level,
        },
        target={"kind": "fleet", "targets": targets},
    ) as op:
        try:
            level = _resolve_level(log_level, config.log_level)
            options = DispatchOptions(
                dry_run=dry_run,
                log_level=level,
                timeout_seconds=timeout if timeout is not None else config.polling.timeout,
                artifact_bucket=bucket or config.artifacts.bucket,
                artifact_prefix=prefix if prefix is not None else config.artifacts.prefix,
            )
            log = _operator_log(level, quiet=json_output)
            provider = _ssm_provider(config, profile, region)
            dispatcher = TargetDispatcher(provider, log=log)
            handle = dispatcher.dispatch(group, targets, options)
        except ValidationError as exc:
            _command_error(op, str(exc))
        except DispatchError as exc:
            errors = [str(exc)]
            if exc.detail:
                console.print(exc.detail, markup=False, highlight=False)
                errors.append(exc.detail)
            _command_error(op, str(exc), errors=errors)

        op.add_step("dispatch.submit", detail=handle.command_id)
        for warning in handle.warnings:
            op.add_step(f"prerequisite.{warning.check}", status="warning", detail=warning.message)

        if wait:
            _wait_and_report(
                op,
                provider,
                handle,
                config=config,
                log=log,
                timeout=timeout,
                interval=interval,
                json_output=json_output,
            )

        if json_output:
            console.print_json(
                data={
                    "command_id": handle.command_id,
                    "targets": list(handle.targets),
                    "group": str(handle.group),
                    "document": handle.entry_point,
                    "warnings": [warning.message for warning in handle.warnings],
                }
            )
        else:
            console.print(
                f"Use 'cisctl status {handle.command_id} {','.join(handle.targets)}' "
                "to check status",
                markup=False,
                highlight=False,
            )
        op.success(
            "Remediation command sent.",
            changed=len(handle.targets),
            context={"command_id": handle.command_id},
        )


@app.command()
def status(
    ctx: typer.Context,
    command_id: str = typer.Argument(..., help="Command ID returned by dispatch."),
    targets: str = TARGETS_ARGUMENT,
    timeout: int | None = TIMEOUT_OPTION,
    interval: float | None = INTERVAL_OPTION,
    profile: str | None = PROFILE_OPTION,
    region: str | None = REGION_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Wait for an earlier dispatch and report per-target results."""
    runtime = _get_runtime(ctx)
    config = runtime.config

    with runtime.logger.operation(
        "status",
        args={"command_id": command_id, "timeout": timeout},
        target={"kind": "fleet", "targets": targets},
    ) as op:
        try:
            selected = parse_targets(targets)
        except ValidationError as exc:
            _command_error(op, str(exc))
        if not command_id.strip():
            _command_error(op, "A command ID is required.")
        provider = _ssm_provider(config, profile, region)
        log = _operator_log(config.log_level, quiet=json_output)
        handle = DispatchHandle(
            command_id=command_id.strip(),
            targets=selected,
            entry_point=provider.entry_point,
        )
        _wait_and_report(
            op,
            provider,
            handle,
            config=config,
            log=log,
            timeout=timeout,
            interval=interval,
            json_output=json_output,
        )


# ----------------------------------------------------------------------
# On-target runner
# ----------------------------------------------------------------------
_OUTCOME_STYLES: Mapping[RemediationOutcome, str] = {
    RemediationOutcome.ALREADY_COMPLIANT: "green",
    RemediationOutcome.REMEDIATED: "green",
    RemediationOutcome.WOULD_REMEDIATE: "yellow",
    RemediationOutcome.FAILED: "red",
}


def _serialize_run_report(report: RunReport) -> dict[str, object]:
    return {
        "dry_run": report.dry_run,
        "succeeded": report.succeeded,
        "totals": {outcome.value: count for outcome, count in report.totals().items()},
        "skipped": list(report.skipped),
        "results": [
            {
                "control": result.control_id,
                "outcome": result.outcome.value,
                "message": result.message,
                "phases": [phase.value for phase in result.phases],
                "rolled_back": result.rolled_back,
                "backups": [str(record.location) for record in result.backups],
                "error": result.error,
                "duration_ms": result.duration_ms,
            }
            for result in report.results
        ],
    }


def _render_run_report(report: RunReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Control", style="bold")
    table.add_column("Outcome")
    table.add_column("Rolled back")
    table.add_column("Message")
    for result in report.results:
        style = _OUTCOME_STYLES[result.outcome]
        message = result.message if result.error is None else f"{result.message} {result.error}"
        table.add_row(
            result.control_id,
            f"[{style}]{result.outcome.value}[/{style}]",
            "yes" if result.rolled_back else "",
            message,
        )
    for control_id in report.skipped:
        table.add_row(control_id, "[dim]skipped[/dim]", "", "")
    console.print(table)


def _select_units(
    catalog: ControlCatalog,
    group: str,
    controls_file: Path | None,
) -> list[ControlUnit]:
    selector = parse_group_selector(group)
    patterns = read_patterns(controls_file) if controls_file is not None else None
    return catalog.select(selector, patterns)


@app.command()
def run(
    ctx: typer.Context,
    group: str = GROUP_ARGUMENT,
    controls_file: Path | None = typer.Option(
        None,
        "--controls-file",
        dir_okay=False,
        help="File of glob patterns (e.g. 4.1.*) selecting controls within the group.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
    log_file: Path | None = typer.Option(None, "--log-file", help="Remediation log file."),
    backup_root: Path | None = typer.Option(
        None,
        "--backup-root",
        file_okay=False,
        help="Directory that receives resource backups.",
    ),
    fail_fast: bool = typer.Option(
        False,
        "--fail-fast",
        help="Stop after the first failed control instead of continuing.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Run the selected controls on this host."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    effective_dry_run = dry_run or config.dry_run
    effective_fail_fast = fail_fast or config.fail_fast

    with runtime.logger.operation(
        "run",
        args={
            "group": group,
            "dry_run": effective_dry_run,
            "fail_fast": effective_fail_fast,
            "controls_file": controls_file,
        },
        target={"kind": "host"},
    ) as op:
        try:
            level = _resolve_level(log_level, config.log_level)
            units = _select_units(
                default_catalog(),
                group,
                controls_file or config.controls_file,
            )
            require_root(config.require_root)
        except ValidationError as exc:
            _command_error(op, str(exc))

        op.add_step("controls.select", detail=", ".join(unit.id for unit in units) or "none")
        if not units:
            console.print(f"[yellow]No controls selected for group {group}.[/yellow]")
            op.success("No controls selected.", changed=0)
            return

        log = RunLog(
            log_file or config.log_file,
            level=level,
            stream=None if json_output else sys.stdout,
        )
        context = ExecutionContext(
            dry_run=effective_dry_run,
            log=log,
            backup_root=backup_root or config.backup_root,
            log_level=level,
        )
        try:
            report = run_controls(units, context, fail_fast=effective_fail_fast)
        except RunInterrupted as exc:
            partial = exc.report if isinstance(exc.report, RunReport) else None
            if partial is not None:
                if json_output:
                    console.print_json(data=_serialize_run_report(partial))
                else:
                    _render_run_report(partial)
            _command_error(op, str(exc), rc=ExitCode.INTERRUPTED)

        payload = _serialize_run_report(report)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_run_report(report)

        changed = sum(
            1 for result in report.results if result.outcome is RemediationOutcome.REMEDIATED
        )
        backups = [str(record.location) for result in report.results for record in result.backups]
        if report.succeeded:
            op.success("Controls completed.", changed=changed, backups=backups, context=payload)
            return
        failed = [result.control_id for result in report.failed]
        op.error(
            f"Controls failed: {', '.join(failed)}",
            rc=int(ExitCode.FAILURE),
            context=payload,
        )
        raise typer.Exit(code=ExitCode.FAILURE)


# ----------------------------------------------------------------------
# Catalog and backups
# ----------------------------------------------------------------------
@controls_app.command("list")
def controls_list(
    ctx: typer.Context,
    group: str = typer.Option("all", "--group", "-g", help="Only list controls in this group."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List the controls shipped with cisctl."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "controls list",
        args={"group": group, "json": json_output},
        target={"kind": "controls"},
    ) as op:
        try:
            selector = parse_group_selector(group)
        except ValidationError as exc:
            _command_error(op, str(exc))
        units = default_catalog().units(selector)

        if json_output:
            console.print_json(
                data={
                    "controls": [
                        {
                            "id": unit.id,
                            "group": unit.group,
                            "level": unit.level,
                            "title": unit.title,
                            "resources": [str(resource.path) for resource in unit.resources],
                        }
                        for unit in units
                    ]
                }
            )
            op.success("Reported controls as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Group")
        table.add_column("Level")
        table.add_column("Title")
        if not units:
            table.add_row("(none)", "", "", "")
        for unit in units:
            table.add_row(unit.id, str(unit.group), unit.level, unit.title)
        console.print(table)
        op.success("Reported controls.", changed=0)


@backups_app.command("list")
def backups_list(
    ctx: typer.Context,
    name: str | None = typer.Option(None, "--name", help="Only list backups of this resource."),
    backup_root: Path | None = typer.Option(
        None,
        "--backup-root",
        file_okay=False,
        help="Override the backup root for this invocation.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List resource backups, oldest first."""
    runtime = _get_runtime(ctx)
    store = BackupStore(backup_root or runtime.config.backup_root)

    with runtime.logger.operation(
        "backups list",
        args={"name": name, "json": json_output},
        target={"kind": "backups", "root": store.root},
    ) as op:
        try:
            records = store.records(name)
        except BackupError as exc:
            _command_error(op, str(exc))

        if json_output:
            console.print_json(data={"backups": [record.to_dict() for record in records]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Timestamp")
        table.add_column("Source")
        table.add_column("Backup")
        if not records:
            table.add_row("(none)", "", "", "")
        for record in records:
            table.add_row(
                record.logical_name,
                record.timestamp.isoformat(sep=" "),
                str(record.source or ""),
                record.location.name,
            )
        console.print(table)
        op.success("Reported backups.", changed=0)


@backups_app.command("restore")
def backups_restore(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Logical resource name (e.g. cramfs.conf)."),
    dest: Path | None = typer.Option(
        None,
        "--dest",
        dir_okay=False,
        help="Restore to this path instead of the recorded source.",
    ),
    backup_root: Path | None = typer.Option(
        None,
        "--backup-root",
        file_okay=False,
        help="Override the backup root for this invocation.",
    ),
) -> None:
    """Restore the most recent backup of a resource."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    log = RunLog(config.log_file, level=config.log_level, stream=sys.stdout)
    store = BackupStore(backup_root or config.backup_root, log=log)

    with runtime.logger.operation(
        "backups restore",
        args={"name": name, "dest": dest},
        target={"kind": "backups", "root": store.root},
    ) as op:
        try:
            restored = store.restore(name, dest)
        except BackupError as exc:
            _command_error(op, str(exc))
        if restored is None:
            _command_error(op, f"No backup restored for {name}.")
        op.success(f"Restored {name}.", changed=1, context={"path": restored})


def main() -> None:  # pragma: no cover - exercised via console script
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
