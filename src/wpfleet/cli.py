"""Typer command line interface for ``wpfleet``.

Commands resolve a set of hosts (a hostname argument or ``--server-range``),
fan out over SSH with :class:`~wpfleet.fleet.FleetExecutor`, and report one
result per site. Mutating ``compose`` commands run every site through
:class:`~wpfleet.mutation.MutationController`, so a change that breaks a site
is rolled back from the backup taken just before it was applied.
"""
from __future__ import annotations

import json
import textwrap
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn, TextIO, TypeVar

import httpx
import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .compose import ComposeStore, ComposeStoreError, NotFoundError, ParseError, RestoreError
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .export import (
    ExportError,
    append_block,
    collect_placeholders,
    parse_keys,
    placeholder_block,
    run_callback,
    write_env_file,
)
from .fleet import FleetExecutor
from .health import (
    CONTAINER_PROBES,
    PROBE_KIND_VALUES,
    URL_PROBES,
    ContainerProbePayload,
    HealthEngine,
    HealthStatus,
    HealthVerdict,
    HttpProbePayload,
    MetricsProbePayload,
    ProbeKind,
    ProbeOptions,
    TLSProbePayload,
    WordPressProbePayload,
    format_prometheus,
    parse_probe_kinds,
    serialize_verdict,
)
from .logging import OperationScope, StructuredLogger
from .mutation import (
    AddSection,
    Change,
    Confirmer,
    DeleteKey,
    DeleteSection,
    HealthCheckFailed,
    MutationConfig,
    MutationController,
    MutationOutcome,
    OutcomeKind,
    ReplaceDocument,
    RollbackFailure,
    SetValue,
    failed_outcome,
    skipped_outcome,
    summarize,
)
from .prompts import (
    AlwaysConfirm,
    FileValue,
    InteractiveConfirmer,
    InteractiveValue,
    PresetValue,
    PromptError,
    ValueSource,
    parse_value,
)
from .providers import DockerError, DockerProvider, WordPressError
from .ranges import FormatError, HostTarget, resolve_targets
from .transport import (
    CommandError,
    Connection,
    Connector,
    SSHSettings,
    TransportError,
    make_connector,
)

console = Console()

R = TypeVar("R")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to wpfleet's YAML config file.",
)

HOSTNAME_ARGUMENT = typer.Argument(
    None,
    help="Target host (omit when using --server-range).",
)
SERVER_RANGE_OPTION = typer.Option(
    None,
    "--server-range",
    help="Host range pattern, e.g. 'wp%d.example.com:0-41:!10,15-17'.",
)
CONTAINER_OPTION = typer.Option(
    None,
    "--container",
    help="Container name (omit when using --all-containers).",
)
ALL_CONTAINERS_OPTION = typer.Option(
    False,
    "--all-containers",
    help="Apply to every running container whose name matches --prefix.",
)
PREFIX_OPTION = typer.Option(
    None,
    "--prefix",
    help="Container name prefix used with --all-containers (default: fleet.container_prefix).",
)
WORKING_DIR_PARENT_OPTION = typer.Option(
    None,
    "--working-dir-parent",
    help="Override the parent directory of compose projects (e.g. /var/opt) "
    "while keeping each project's directory name.",
)

SSH_USER_OPTION = typer.Option(None, "--user", "-u", help="SSH username.")
SSH_PORT_OPTION = typer.Option(None, "--port", "-p", min=1, max=65535, help="SSH port.")
SSH_KEY_OPTION = typer.Option(
    None,
    "--key",
    "-k",
    dir_okay=False,
    help="SSH private key path.",
)
NO_AGENT_OPTION = typer.Option(
    False,
    "--no-agent",
    help="Do not offer keys from the running SSH agent.",
)
SSH_TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    "-t",
    min=0.1,
    help="SSH connection timeout in seconds.",
)

NO_BACKUP_OPTION = typer.Option(False, "--no-backup", help="Skip backup creation.")
NO_CONFIRM_OPTION = typer.Option(
    False,
    "--no-confirm",
    "--yes",
    "-y",
    help="Skip the confirmation prompt.",
)
NO_RESTART_OPTION = typer.Option(False, "--no-restart", help="Skip the compose restart.")
NO_HEALTH_CHECK_OPTION = typer.Option(
    False,
    "--no-health-check",
    help="Skip the health check after the restart.",
)
NO_ROLLBACK_OPTION = typer.Option(
    False,
    "--no-rollback",
    help="Disable automatic rollback when the restart or health check fails.",
)
HEALTH_URL_OPTION = typer.Option(
    None,
    "--health-url",
    help=(
        "URL for the health check (default: the WordPress siteurl, else https://<host>). "
        "Single host only."
    ),
)
HEALTH_TIMEOUT_OPTION = typer.Option(
    None,
    "--health-timeout",
    min=0.1,
    help="Health check timeout in seconds (default: mutation.health_timeout).",
)
CONCURRENCY_OPTION = typer.Option(
    None,
    "--concurrency",
    min=1,
    help="Maximum number of hosts processed at once (default: fleet.concurrency).",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit results as JSON.")

SERVICE_OPTION = typer.Option(..., "--service", "-s", help="Compose service name.")
CONFIG_KEY_OPTION = typer.Option(..., "--config-key", help="Key inside the service.")

YAML_OPTION = typer.Option(None, "--yaml", help="YAML content to apply.")
YAML_FILE_OPTION = typer.Option(
    None,
    "--yaml-file",
    dir_okay=False,
    help="Local YAML file to apply.",
)

_PROBE_NAMES = ", ".join(PROBE_KIND_VALUES)

PROBES_OPTION = typer.Option(
    None,
    "--probes",
    metavar="PROBE[,PROBE...]",
    help=f"Comma-separated probes to run ({_PROBE_NAMES}; default: health.probes).",
)
METRICS_OPTION = typer.Option(
    False,
    "--metrics",
    help="Also query the site's metrics endpoint.",
)
METRICS_PATH_OPTION = typer.Option(
    None,
    "--metrics-path",
    help="Metrics endpoint path relative to the site URL (default: health.metrics_path).",
)
METRICS_TOKEN_OPTION = typer.Option(
    None,
    "--metrics-token",
    help="Bearer token for the metrics endpoint (default: health.metrics_token).",
)
OUTPUT_OPTION = typer.Option(
    "text",
    "--output",
    "-o",
    help="Output format: text, json or prometheus.",
)

_OUTPUT_FORMATS = ("text", "json", "prometheus")

# Errors that belong to one site; anything else fails the whole host.
_SITE_ERRORS = (
    ComposeStoreError,
    ExportError,
    DockerError,
    WordPressError,
    TransportError,
    CommandError,
    PromptError,
)

_OUTCOME_STYLE = {
    OutcomeKind.COMMITTED: "[green]committed[/green]",
    OutcomeKind.ROLLED_BACK: "[yellow]rolled back[/yellow]",
    OutcomeKind.ROLLBACK_FAILED: "[bold red]ROLLBACK FAILED[/bold red]",
    OutcomeKind.FAILED: "[red]failed[/red]",
    OutcomeKind.CANCELLED: "[yellow]cancelled[/yellow]",
    OutcomeKind.SKIPPED: "[dim]skipped[/dim]",
}
_STATUS_STYLE = {
    HealthStatus.HEALTHY: "[green]HEALTHY[/green]",
    HealthStatus.DEGRADED: "[yellow]DEGRADED[/yellow]",
    HealthStatus.UNHEALTHY: "[red]UNHEALTHY[/red]",
    HealthStatus.UNKNOWN: "[magenta]UNKNOWN[/magenta]",
}
_STATUS_EXIT = {
    HealthStatus.HEALTHY: ExitCode.OK,
    HealthStatus.DEGRADED: ExitCode.OK,
    HealthStatus.UNHEALTHY: ExitCode.PROVIDER,
    HealthStatus.UNKNOWN: ExitCode.ENVIRONMENT,
}


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage a fleet of containerized WordPress sites over SSH.

        Compose changes are applied transactionally: back up, apply, restart,
        check health, then commit or roll back, across many hosts at once.
        """
    ).strip(),
)
compose_app = typer.Typer(help="Read and change remote docker-compose files.")
health_app = typer.Typer(help="Probe site health.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(compose_app, name="compose")
app.add_typer(health_app, name="health")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    connector_factory: Callable[[SSHSettings], Connector] = make_connector
    engine_factory: Callable[[ProbeOptions], HealthEngine] = HealthEngine
    confirmer: Confirmer = field(default_factory=InteractiveConfirmer)
    sleep: Callable[[float], None] = time.sleep
    stdin: TextIO | None = None


@dataclass(frozen=True)
class TargetSelection:
    """Hosts and containers a command applies to."""

    targets: tuple[HostTarget, ...]
    container: str | None
    all_containers: bool
    prefix: str
    working_dir_parent: str | None

    @property
    def has_containers(self) -> bool:
        """Return whether commands reach into containers."""
        return self.all_containers or self.container is not None

    def describe(self) -> str:
        """Return a short human description."""
        if len(self.targets) == 1:
            hosts = self.targets[0].host
        else:
            hosts = f"{len(self.targets)} hosts"
        if self.all_containers:
            return f"{hosts} (all containers matching '{self.prefix}')"
        if self.container:
            return f"{hosts} (container {self.container})"
        return hosts

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "hosts": [target.host for target in self.targets],
            "container": self.container,
            "all_containers": self.all_containers,
            "prefix": self.prefix,
            "working_dir_parent": self.working_dir_parent,
        }


@dataclass(frozen=True)
class SiteReport:
    """Result of a non-transactional command for one site."""

    target: HostTarget
    data: object = None
    error: BaseException | None = None
    skipped: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the site completed without error."""
        return self.error is None and self.skipped is None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.target.host,
            "container": self.target.container,
            "ok": self.ok,
            "data": self.data,
            "error": str(self.error) if self.error is not None else None,
            "skipped": self.skipped,
        }


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
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
        help="Show the wpfleet version and exit.",
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
            console.print(f"wpfleet {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _error_exit_code(error: BaseException | None) -> ExitCode:
    if error is None:
        return ExitCode.PROVIDER
    if isinstance(error, RollbackFailure):
        return ExitCode.ROLLBACK_FAILED
    if isinstance(error, (FormatError, ParseError, NotFoundError, PromptError, ConfigError)):
        return ExitCode.VALIDATION
    if isinstance(error, TransportError):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


# Option resolution ---------------------------------------------------


def _select_targets(
    op: OperationScope,
    runtime: RuntimeContext,
    hostname: str | None,
    server_range: str | None,
    container: str | None,
    all_containers: bool,
    prefix: str | None,
    working_dir_parent: str | None,
    *,
    require_container: bool = True,
) -> TargetSelection:
    if container and all_containers:
        _command_error(op, "Cannot combine --container and --all-containers.")
    if require_container and not container and not all_containers:
        _command_error(op, "Either --container or --all-containers is required.")
    try:
        targets = resolve_targets(server_range, hosts=[hostname] if hostname else [])
    except FormatError as exc:
        _command_error(op, f"Invalid server range: {exc}")
    if not targets:
        _command_error(op, "A hostname or --server-range is required.")
    selection = TargetSelection(
        targets=tuple(targets),
        container=container or None,
        all_containers=all_containers,
        prefix=prefix or runtime.config.fleet.container_prefix,
        working_dir_parent=working_dir_parent or None,
    )
    op.add_step("targets", detail=f"{len(targets)} host(s)")
    return selection


def _ssh_settings(
    config: AppConfig,
    user: str | None,
    port: int | None,
    key: Path | None,
    no_agent: bool,
    timeout: float | None,
) -> SSHSettings:
    ssh = config.ssh
    return SSHSettings(
        user=user or ssh.user,
        port=port or ssh.port,
        key_path=key or ssh.key_path,
        use_agent=ssh.use_agent and not no_agent,
        connect_timeout=timeout or ssh.connect_timeout,
        command_timeout=ssh.command_timeout,
        disable_default_keys=ssh.disable_default_keys,
    )


def _configured_probes(op: OperationScope, config: AppConfig) -> frozenset[ProbeKind]:
    try:
        return parse_probe_kinds(config.health.probes)
    except ValueError as exc:
        _command_error(op, str(exc))


def _probe_options(
    config: AppConfig,
    *,
    url: str | None = None,
    timeout: float | None = None,
    headers: Mapping[str, str] | None = None,
    follow_redirects: bool | None = None,
    verify_tls: bool | None = None,
    metrics_path: str | None = None,
    metrics_token: str | None = None,
) -> ProbeOptions:
    health = config.health
    return ProbeOptions(
        url=url,
        headers=dict(headers or {}),
        timeout=timeout or config.mutation.health_timeout,
        follow_redirects=health.follow_redirects if follow_redirects is None else follow_redirects,
        verify_tls=health.verify_tls if verify_tls is None else verify_tls,
        tls_warn_days=health.tls_warn_days,
        memory_warn_percent=health.memory_warn_percent,
        cpu_warn_percent=health.cpu_warn_percent,
        metrics_path=metrics_path or health.metrics_path,
        metrics_token=metrics_token or health.metrics_token,
    )


def _check_single_host_url(
    op: OperationScope,
    selection: TargetSelection,
    url: str | None,
    flag: str,
) -> None:
    if url and len(selection.targets) > 1:
        _command_error(op, f"{flag} applies to a single host; omit it with --server-range.")


def _mutation_config(
    op: OperationScope,
    runtime: RuntimeContext,
    selection: TargetSelection,
    *,
    no_backup: bool,
    no_confirm: bool,
    no_restart: bool,
    no_health_check: bool,
    no_rollback: bool,
    health_url: str | None,
    health_timeout: float | None,
    concurrency: int | None,
) -> MutationConfig:
    _check_single_host_url(op, selection, health_url, "--health-url")
    config = runtime.config
    return MutationConfig(
        skip_backup=no_backup,
        skip_confirm=no_confirm,
        skip_restart=no_restart,
        skip_health_check=no_health_check,
        skip_rollback=no_rollback,
        settle_delay=config.mutation.settle_delay,
        health_timeout=health_timeout or config.mutation.health_timeout,
        probes=_configured_probes(op, config),
        health_url=health_url,
        concurrency=concurrency or config.fleet.concurrency,
    )


def _read_local_yaml(op: OperationScope, text: str | None, path: Path | None) -> str:
    if (text is None) == (path is None):
        _command_error(op, "Provide exactly one of --yaml or --yaml-file.")
    if path is not None:
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            _command_error(op, f"Unable to read YAML file {path}: {exc}")
    return text or ""


def _value_source(
    op: OperationScope,
    runtime: RuntimeContext,
    value: str | None,
    value_file: Path | None,
    interactive: bool,
) -> ValueSource:
    provided = [value is not None, value_file is not None, interactive]
    if sum(provided) != 1:
        _command_error(op, "Provide exactly one of --value, --value-file or --interactive.")
    if value is not None:
        return PresetValue(value)
    if value_file is not None:
        return FileValue(value_file)
    return InteractiveValue(stream=runtime.stdin)


# Fan-out --------------------------------------------------------------


def _working_dir(docker: DockerProvider, site: HostTarget, selection: TargetSelection) -> str:
    if site.container is None:
        raise DockerError(f"No container selected on {site.host}.")
    return docker.working_dir(
        site.container,
        parent_override=selection.working_dir_parent,
        prefix=selection.prefix,
    )


def _open_store(
    connection: Connection,
    docker: DockerProvider,
    site: HostTarget,
    selection: TargetSelection,
) -> ComposeStore:
    return ComposeStore(
        connection,
        _working_dir(docker, site, selection),
        container=site.container,
    )


def _fan_out(
    runtime: RuntimeContext,
    selection: TargetSelection,
    settings: SSHSettings,
    concurrency: int,
    per_site: Callable[[HostTarget, Connection, DockerProvider], R],
    *,
    on_error: Callable[[HostTarget, Exception], R],
    on_skip: Callable[[HostTarget, str], R],
) -> tuple[list[R], bool]:
    """Run ``per_site`` for every selected container on every host.

    Each host gets its own connection. Site-level errors become that site's
    result; anything escaping a host is converted by the executor.
    """
    connector = runtime.connector_factory(settings)

    def operation(host: HostTarget) -> tuple[R, ...]:
        connection = connector(host.host)
        try:
            docker = DockerProvider(connection)
            if selection.all_containers:
                containers = docker.discover_containers(selection.prefix)
                if not containers:
                    return (on_skip(host, f"no containers matching '{selection.prefix}'"),)
            else:
                containers = [selection.container]
            results: list[R] = []
            for name in containers:
                site = HostTarget(host=host.host, container=name)
                try:
                    results.append(per_site(site, connection, docker))
                except _SITE_ERRORS as exc:
                    results.append(on_error(site, exc))
            return tuple(results)
        finally:
            connection.close()

    executor: FleetExecutor[tuple[R, ...]] = FleetExecutor(
        operation,
        on_error=lambda target, exc: (on_error(target, exc),),
        on_skip=lambda target: (on_skip(target, "interrupted before start"),),
        concurrency=concurrency,
    )
    run = executor.run(selection.targets)
    flattened = [item for group in run.outcomes for item in group]
    return flattened, run.interrupted


def _ordered(items: Iterable[R], selection: TargetSelection) -> list[R]:
    order = {target.host: index for index, target in enumerate(selection.targets)}

    def key(item: R) -> tuple[int, str]:
        target: HostTarget = getattr(item, "target")
        return order.get(target.host, len(order)), target.container or ""

    return sorted(items, key=key)


def _report_sites(
    runtime: RuntimeContext,
    op: OperationScope,
    selection: TargetSelection,
    settings: SSHSettings,
    concurrency: int,
    per_site: Callable[[HostTarget, Connection, DockerProvider], SiteReport],
) -> tuple[list[SiteReport], bool]:
    reports, interrupted = _fan_out(
        runtime,
        selection,
        settings,
        concurrency,
        per_site,
        on_error=lambda target, exc: SiteReport(target, error=exc),
        on_skip=lambda target, reason: SiteReport(target, skipped=reason),
    )
    ordered = _ordered(reports, selection)
    for report in ordered:
        if report.skipped is not None:
            op.add_step(report.target.label, status="skipped", detail=report.skipped)
        elif report.error is not None:
            op.add_step(report.target.label, status="error", detail=str(report.error))
        else:
            op.add_step(report.target.label)
    return ordered, interrupted


def _finish_reports(
    op: OperationScope,
    command: str,
    reports: Sequence[SiteReport],
    interrupted: bool,
    *,
    json_output: bool,
    render: Callable[[SiteReport], None],
    changed: int = 0,
) -> None:
    if json_output:
        console.print_json(
            data={"results": [report.to_dict() for report in reports], "interrupted": interrupted},
            default=str,
        )
    else:
        for report in reports:
            label = escape(report.target.label)
            if report.skipped is not None:
                console.print(f"[yellow]{label}: skipped ({escape(report.skipped)})[/yellow]")
                continue
            if report.data is not None:
                render(report)
            if report.error is not None:
                console.print(f"[red]{label}: {escape(str(report.error))}[/red]")
        if interrupted:
            console.print("[yellow]Interrupted; remaining hosts were skipped.[/yellow]")

    failures = [report for report in reports if report.error is not None]
    context = {"results": [report.to_dict() for report in reports], "interrupted": interrupted}
    codes = [_error_exit_code(report.error) for report in failures]
    if interrupted:
        codes.append(ExitCode.PROVIDER)
    rc = max(codes, default=ExitCode.OK)
    if rc is ExitCode.OK:
        skipped = [report.target.label for report in reports if report.skipped is not None]
        if skipped:
            op.warning(
                f"{command} completed; {len(skipped)} target(s) skipped.",
                warnings=skipped,
                changed=changed,
                context=context,
            )
        else:
            op.success(f"{command} completed on {len(reports)} site(s).", changed=changed, context=context)
        return
    op.error(
        f"{command} failed on {len(failures)} of {len(reports)} site(s).",
        rc=int(rc),
        errors=[f"{report.target.label}: {report.error}" for report in failures] or None,
        context=context,
    )
    raise typer.Exit(code=int(rc))


# Mutations ---------------------------------------------------------------


def _mutation_exit_code(outcomes: Sequence[MutationOutcome], interrupted: bool) -> ExitCode:
    codes: list[ExitCode] = []
    for outcome in outcomes:
        if outcome.kind is OutcomeKind.ROLLBACK_FAILED:
            codes.append(ExitCode.ROLLBACK_FAILED)
        elif outcome.kind in (OutcomeKind.FAILED, OutcomeKind.ROLLED_BACK):
            codes.append(_error_exit_code(outcome.error))
    if interrupted:
        codes.append(ExitCode.PROVIDER)
    return max(codes, default=ExitCode.OK)


def _render_outcomes(
    outcomes: Sequence[MutationOutcome],
    counts: Mapping[OutcomeKind, int],
    interrupted: bool,
) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Target", style="bold")
    table.add_column("Outcome")
    table.add_column("Health")
    table.add_column("Backup")
    table.add_column("Detail")
    for outcome in outcomes:
        table.add_row(
            escape(outcome.target.label),
            _OUTCOME_STYLE[outcome.kind],
            outcome.verdict.status.value if outcome.verdict else "",
            escape(outcome.backup.path) if outcome.backup else "",
            escape(outcome.message),
        )
    console.print(table)

    for outcome in outcomes:
        if outcome.kind is OutcomeKind.ROLLBACK_FAILED:
            backup = outcome.backup.path if outcome.backup else "(none)"
            console.print(
                f"[bold red]{escape(outcome.target.label)} is in an unknown state; "
                f"restore manually from {escape(backup)}.[/bold red]"
            )

    summary = " ".join(f"{kind.value}={counts[kind]}" for kind in OutcomeKind)
    console.print(f"Summary: {summary}")
    if interrupted:
        console.print("[yellow]Interrupted; remaining hosts were skipped.[/yellow]")


def _execute_mutation(
    runtime: RuntimeContext,
    op: OperationScope,
    command: str,
    selection: TargetSelection,
    settings: SSHSettings,
    config: MutationConfig,
    change: Change,
    *,
    json_output: bool,
) -> None:
    """Confirm once, then run ``change`` through a controller on every site."""
    if not config.skip_confirm:
        prompt = f"Apply '{change.describe()}' to {selection.describe()}?"
        if not runtime.confirmer.confirm(prompt):
            console.print("Cancelled.")
            op.add_step("confirm", status="cancelled")
            op.warning("Cancelled by operator.", warnings=["cancelled"], changed=0)
            return
        op.add_step("confirm")

    engine = runtime.engine_factory(
        _probe_options(runtime.config, url=config.health_url, timeout=config.health_timeout)
    )

    def mutate(site: HostTarget, connection: Connection, docker: DockerProvider) -> MutationOutcome:
        store = _open_store(connection, docker, site, selection)
        controller = MutationController(
            store,
            restart=lambda: docker.restart_project(store.working_dir),
            check_health=lambda: engine.evaluate(site, config.probes, connection=connection),
            config=config,
            confirmer=AlwaysConfirm(),  # answered by the batch prompt
            target=site,
            sleep=runtime.sleep,
        )
        return controller.run(change)

    outcomes, interrupted = _fan_out(
        runtime,
        selection,
        settings,
        config.concurrency,
        mutate,
        on_error=failed_outcome,
        on_skip=skipped_outcome,
    )
    outcomes = _ordered(outcomes, selection)
    for outcome in outcomes:
        for step in outcome.steps:
            op.add_step(
                f"{outcome.target.label}.{step.name}",
                status=step.status,
                detail=step.detail,
            )

    counts = summarize(outcomes)
    if json_output:
        console.print_json(
            data={
                "change": change.describe(),
                "outcomes": [outcome.to_dict() for outcome in outcomes],
                "summary": {kind.value: count for kind, count in counts.items()},
                "interrupted": interrupted,
            }
        )
    else:
        _render_outcomes(outcomes, counts, interrupted)

    rc = _mutation_exit_code(outcomes, interrupted)
    context = {
        "change": change.describe(),
        "config": config.to_dict(),
        "selection": selection.to_dict(),
        "summary": {kind.value: count for kind, count in counts.items()},
    }
    backups = [outcome.backup.path for outcome in outcomes if outcome.backup is not None]
    committed = counts[OutcomeKind.COMMITTED]
    if rc is ExitCode.OK:
        op.success(
            f"{command}: {committed} of {len(outcomes)} site(s) committed.",
            changed=committed,
            backups=backups,
            context=context,
        )
        return

    errors = [
        f"{outcome.target.label}: {outcome.message}"
        for outcome in outcomes
        if outcome.kind not in (OutcomeKind.COMMITTED, OutcomeKind.CANCELLED)
    ]
    if rc is ExitCode.ROLLBACK_FAILED:
        message = f"{command}: rollback failed on {counts[OutcomeKind.ROLLBACK_FAILED]} site(s)."
    else:
        message = f"{command}: {len(errors)} of {len(outcomes)} site(s) not committed."
    op.error(message, rc=int(rc), errors=errors, context=context)
    raise typer.Exit(code=int(rc))


# compose: read-only -------------------------------------------------------


@compose_app.command("read")
def compose_read(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Print the compose file of each selected site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose read",
        args={"json": json_output, "container": container, "all_containers": all_containers},
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)

        def read(site: HostTarget, connection: Connection, docker: DockerProvider) -> SiteReport:
            store = _open_store(connection, docker, site, selection)
            return SiteReport(site, data={"path": store.path, "content": store.read_text()})

        reports, interrupted = _report_sites(
            runtime, op, selection, settings, concurrency or runtime.config.fleet.concurrency, read
        )

        def render(report: SiteReport) -> None:
            data = report.data if isinstance(report.data, dict) else {}
            console.print(
                f"[bold]=== {escape(report.target.label)}: {escape(str(data.get('path')))} ===[/bold]"
            )
            typer.echo(str(data.get("content", "")).rstrip("\n"))

        _finish_reports(op, "compose read", reports, interrupted, json_output=json_output, render=render)


@compose_app.command("get")
def compose_get(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    service: str = SERVICE_OPTION,
    config_key: str = CONFIG_KEY_OPTION,
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Print ``services.<service>.<key>`` from each selected site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose get",
        args={"service": service, "config_key": config_key, "json": json_output},
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)

        def get(site: HostTarget, connection: Connection, docker: DockerProvider) -> SiteReport:
            store = _open_store(connection, docker, site, selection)
            return SiteReport(site, data={"value": store.get_value(service, config_key)})

        reports, interrupted = _report_sites(
            runtime, op, selection, settings, concurrency or runtime.config.fleet.concurrency, get
        )

        def render(report: SiteReport) -> None:
            data = report.data if isinstance(report.data, dict) else {}
            value = data.get("value")
            console.print(
                f"[bold]=== {escape(report.target.label)}: "
                f"services.{escape(service)}.{escape(config_key)} ===[/bold]"
            )
            if isinstance(value, (dict, list)):
                typer.echo(yaml.safe_dump(value, sort_keys=False, default_flow_style=False).rstrip("\n"))
            else:
                typer.echo(str(value))

        _finish_reports(op, "compose get", reports, interrupted, json_output=json_output, render=render)


@compose_app.command("export")
def compose_export(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    service: str = SERVICE_OPTION,
    keys: str = typer.Option(
        ...,
        "--keys",
        help="Comma-separated service keys to export (e.g. ports,environment).",
    ),
    placeholder_prefix: str | None = typer.Option(
        None,
        "--placeholder-prefix",
        help="Prefix for placeholder names (default: the service name).",
    ),
    out_file: Path | None = typer.Option(
        None,
        "--out-file",
        dir_okay=False,
        help="Write NAME=value lines to this local file. Single site only.",
    ),
    remote_append: bool = typer.Option(
        False,
        "--remote-append",
        help="Append a placeholders block to the remote compose file.",
    ),
    remote_file: str | None = typer.Option(
        None,
        "--remote-file",
        help="Remote file to append to instead of the compose file.",
    ),
    callback: Path | None = typer.Option(
        None,
        "--callback",
        exists=True,
        dir_okay=False,
        help="Local script run per site with the placeholders in its environment.",
    ),
    yaml_format: bool = typer.Option(
        True,
        "--yaml-format/--plain-format",
        help="Render lists and mappings as YAML (default) or as plain strings.",
    ),
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Export service keys as placeholders for callbacks or appended YAML."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose export",
        args={
            "service": service,
            "keys": keys,
            "placeholder_prefix": placeholder_prefix,
            "out_file": str(out_file) if out_file else None,
            "remote_append": remote_append,
            "remote_file": remote_file,
            "callback": str(callback) if callback else None,
            "yaml_format": yaml_format,
            "json": json_output,
        },
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        key_names = parse_keys(keys)
        if not key_names:
            _command_error(op, "--keys must name at least one service key.")
        if remote_file is not None and not remote_append:
            _command_error(op, "--remote-file requires --remote-append.")
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        if out_file is not None and (len(selection.targets) > 1 or selection.all_containers):
            _command_error(op, "--out-file needs a single host and --container.")
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)

        def export(site: HostTarget, connection: Connection, docker: DockerProvider) -> SiteReport:
            store = _open_store(connection, docker, site, selection)
            placeholders = collect_placeholders(
                store.read(),
                service,
                key_names,
                prefix=placeholder_prefix,
                yaml_format=yaml_format,
            )
            data: dict[str, object] = {"placeholders": placeholders, "appended_to": None}
            if out_file is not None:
                write_env_file(out_file, placeholders)
            if remote_append:
                data["appended_to"] = append_block(
                    store, placeholder_block(placeholders), remote_file
                )
            if callback is not None:
                run_callback(callback, placeholders)
            return SiteReport(site, data=data)

        reports, interrupted = _report_sites(
            runtime, op, selection, settings, concurrency or runtime.config.fleet.concurrency, export
        )

        def render(report: SiteReport) -> None:
            data = report.data if isinstance(report.data, dict) else {}
            console.print(f"[bold]=== {escape(report.target.label)}: placeholders ===[/bold]")
            for name, value in dict(data.get("placeholders") or {}).items():
                typer.echo(f"{name}=\n{value}\n---")
            if data.get("appended_to"):
                console.print(
                    f"[green]✓[/green] Appended placeholders to {escape(str(data['appended_to']))}"
                )

        if out_file is not None and not json_output and any(report.ok for report in reports):
            console.print(f"[green]✓[/green] Wrote placeholders to {escape(str(out_file))}")
        _finish_reports(
            op,
            "compose export",
            reports,
            interrupted,
            json_output=json_output,
            render=render,
            changed=sum(
                1
                for report in reports
                if report.ok and isinstance(report.data, dict) and report.data.get("appended_to")
            ),
        )


@compose_app.command("list")
def compose_list(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the services defined in each selected compose file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose list",
        args={"json": json_output},
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)

        def list_services(
            site: HostTarget, connection: Connection, docker: DockerProvider
        ) -> SiteReport:
            document = _open_store(connection, docker, site, selection).read()
            services: dict[str, object] = {}
            for name in document.section_names():
                section = document.get_section(name)
                services[name] = {
                    "image": section.get("image"),
                    "container_name": section.get("container_name"),
                    "ports": section.get("ports"),
                    "restart": section.get("restart"),
                }
            return SiteReport(site, data={"services": services})

        reports, interrupted = _report_sites(
            runtime, op, selection, settings, concurrency or runtime.config.fleet.concurrency,
            list_services,
        )

        def render(report: SiteReport) -> None:
            data = report.data if isinstance(report.data, dict) else {}
            services = data.get("services") or {}
            table = Table(
                title=f"Services in {report.target.label}",
                show_header=True,
                header_style="bold magenta",
            )
            table.add_column("Service", style="bold")
            table.add_column("Image")
            table.add_column("Container")
            table.add_column("Ports")
            table.add_column("Restart")
            if not services:
                table.add_row("(none)", "", "", "", "")
            for name, details in services.items():
                table.add_row(
                    escape(name),
                    escape(str(details.get("image") or "")),
                    escape(str(details.get("container_name") or "")),
                    escape(", ".join(str(item) for item in details.get("ports") or [])),
                    escape(str(details.get("restart") or "")),
                )
            console.print(table)

        _finish_reports(op, "compose list", reports, interrupted, json_output=json_output, render=render)


@compose_app.command("backup")
def compose_backup(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Take a timestamped backup of each selected compose file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose backup",
        args={"json": json_output},
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)

        def backup(site: HostTarget, connection: Connection, docker: DockerProvider) -> SiteReport:
            record = _open_store(connection, docker, site, selection).backup()
            return SiteReport(site, data=record.to_dict())

        reports, interrupted = _report_sites(
            runtime, op, selection, settings, concurrency or runtime.config.fleet.concurrency, backup
        )

        def render(report: SiteReport) -> None:
            data = report.data if isinstance(report.data, dict) else {}
            console.print(
                f"[green]✓[/green] {escape(report.target.label)}: "
                f"backup created at {escape(str(data.get('path')))}"
            )

        _finish_reports(
            op,
            "compose backup",
            reports,
            interrupted,
            json_output=json_output,
            render=render,
            changed=sum(1 for report in reports if report.ok),
        )


@compose_app.command("backups")
def compose_backups(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the backups next to each selected compose file, oldest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose backups",
        args={"json": json_output},
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)

        def list_backups(
            site: HostTarget, connection: Connection, docker: DockerProvider
        ) -> SiteReport:
            records = _open_store(connection, docker, site, selection).list_backups()
            return SiteReport(site, data={"backups": [record.to_dict() for record in records]})

        reports, interrupted = _report_sites(
            runtime, op, selection, settings, concurrency or runtime.config.fleet.concurrency,
            list_backups,
        )

        def render(report: SiteReport) -> None:
            data = report.data if isinstance(report.data, dict) else {}
            backups = data.get("backups") or []
            table = Table(
                title=f"Backups for {report.target.label}",
                show_header=True,
                header_style="bold magenta",
            )
            table.add_column("Created (UTC)", style="bold")
            table.add_column("Path")
            if not backups:
                table.add_row("(none)", "")
            for entry in backups:
                table.add_row(escape(str(entry["timestamp"])), escape(str(entry["path"])))
            console.print(table)

        _finish_reports(op, "compose backups", reports, interrupted, json_output=json_output, render=render)


# compose: mutations -------------------------------------------------------


@compose_app.command("set")
def compose_set(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    service: str = SERVICE_OPTION,
    config_key: str = CONFIG_KEY_OPTION,
    value: str | None = typer.Option(None, "--value", help="YAML value to set."),
    value_file: Path | None = typer.Option(
        None,
        "--value-file",
        dir_okay=False,
        help="Local file containing the YAML value.",
    ),
    interactive: bool = typer.Option(
        False,
        "--interactive",
        help="Read a multi-line YAML value from stdin.",
    ),
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
    no_confirm: bool = NO_CONFIRM_OPTION,
    no_restart: bool = NO_RESTART_OPTION,
    no_health_check: bool = NO_HEALTH_CHECK_OPTION,
    no_rollback: bool = NO_ROLLBACK_OPTION,
    health_url: str | None = HEALTH_URL_OPTION,
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Set ``services.<service>.<key>`` and restart behind the health gate."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose set",
        args={
            "service": service,
            "config_key": config_key,
            "value_file": value_file,
            "interactive": interactive,
            "no_backup": no_backup,
            "no_restart": no_restart,
            "no_health_check": no_health_check,
            "no_rollback": no_rollback,
        },
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)
        config = _mutation_config(
            op,
            runtime,
            selection,
            no_backup=no_backup,
            no_confirm=no_confirm,
            no_restart=no_restart,
            no_health_check=no_health_check,
            no_rollback=no_rollback,
            health_url=health_url,
            health_timeout=health_timeout,
            concurrency=concurrency,
        )
        source = _value_source(op, runtime, value, value_file, interactive)
        try:
            parsed = source.read_value()
        except PromptError as exc:
            _command_error(op, str(exc))
        change = SetValue(service, config_key, parsed)
        _execute_mutation(
            runtime, op, "compose set", selection, settings, config, change,
            json_output=json_output,
        )


@compose_app.command("delete")
def compose_delete(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    service: str = SERVICE_OPTION,
    config_key: str | None = typer.Option(
        None,
        "--config-key",
        help="Key to delete (omit to delete the entire service).",
    ),
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
    no_confirm: bool = NO_CONFIRM_OPTION,
    no_restart: bool = NO_RESTART_OPTION,
    no_health_check: bool = NO_HEALTH_CHECK_OPTION,
    no_rollback: bool = NO_ROLLBACK_OPTION,
    health_url: str | None = HEALTH_URL_OPTION,
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Delete a key from a service, or the whole service."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose delete",
        args={
            "service": service,
            "config_key": config_key,
            "no_backup": no_backup,
            "no_restart": no_restart,
            "no_health_check": no_health_check,
            "no_rollback": no_rollback,
        },
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)
        config = _mutation_config(
            op,
            runtime,
            selection,
            no_backup=no_backup,
            no_confirm=no_confirm,
            no_restart=no_restart,
            no_health_check=no_health_check,
            no_rollback=no_rollback,
            health_url=health_url,
            health_timeout=health_timeout,
            concurrency=concurrency,
        )
        change: Change
        if config_key:
            change = DeleteKey(service, config_key)
        else:
            change = DeleteSection(service)
        _execute_mutation(
            runtime, op, "compose delete", selection, settings, config, change,
            json_output=json_output,
        )


@compose_app.command("add")
def compose_add(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    service: str = SERVICE_OPTION,
    yaml_text: str | None = YAML_OPTION,
    yaml_file: Path | None = YAML_FILE_OPTION,
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
    no_confirm: bool = NO_CONFIRM_OPTION,
    no_restart: bool = NO_RESTART_OPTION,
    no_health_check: bool = NO_HEALTH_CHECK_OPTION,
    no_rollback: bool = NO_ROLLBACK_OPTION,
    health_url: str | None = HEALTH_URL_OPTION,
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Add a new service whose definition is given as YAML."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose add",
        args={
            "service": service,
            "yaml_file": yaml_file,
            "no_backup": no_backup,
            "no_restart": no_restart,
            "no_health_check": no_health_check,
            "no_rollback": no_rollback,
        },
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)
        config = _mutation_config(
            op,
            runtime,
            selection,
            no_backup=no_backup,
            no_confirm=no_confirm,
            no_restart=no_restart,
            no_health_check=no_health_check,
            no_rollback=no_rollback,
            health_url=health_url,
            health_timeout=health_timeout,
            concurrency=concurrency,
        )
        body = parse_value(_read_local_yaml(op, yaml_text, yaml_file))
        if not isinstance(body, Mapping):
            _command_error(op, f"Service {service} must be defined by a YAML mapping.")
        _execute_mutation(
            runtime, op, "compose add", selection, settings, config, AddSection(service, body),
            json_output=json_output,
        )


@compose_app.command("edit")
def compose_edit(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    yaml_text: str | None = YAML_OPTION,
    yaml_file: Path | None = YAML_FILE_OPTION,
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    no_backup: bool = NO_BACKUP_OPTION,
    no_confirm: bool = NO_CONFIRM_OPTION,
    no_restart: bool = NO_RESTART_OPTION,
    no_health_check: bool = NO_HEALTH_CHECK_OPTION,
    no_rollback: bool = NO_ROLLBACK_OPTION,
    health_url: str | None = HEALTH_URL_OPTION,
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Replace the whole compose file with the given YAML document."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose edit",
        args={
            "yaml_file": yaml_file,
            "no_backup": no_backup,
            "no_restart": no_restart,
            "no_health_check": no_health_check,
            "no_rollback": no_rollback,
        },
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)
        config = _mutation_config(
            op,
            runtime,
            selection,
            no_backup=no_backup,
            no_confirm=no_confirm,
            no_restart=no_restart,
            no_health_check=no_health_check,
            no_rollback=no_rollback,
            health_url=health_url,
            health_timeout=health_timeout,
            concurrency=concurrency,
        )
        try:
            change = ReplaceDocument.from_text(_read_local_yaml(op, yaml_text, yaml_file))
        except ParseError as exc:
            _command_error(op, f"Invalid compose document: {exc}")
        _execute_mutation(
            runtime, op, "compose edit", selection, settings, config, change,
            json_output=json_output,
        )


@compose_app.command("restore")
def compose_restore(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    backup_path: str | None = typer.Option(
        None,
        "--backup-path",
        help="Remote backup file to restore.",
    ),
    latest: bool = typer.Option(
        False,
        "--latest",
        help="Restore the newest backup of each selected compose file.",
    ),
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    working_dir_parent: str | None = WORKING_DIR_PARENT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    no_confirm: bool = NO_CONFIRM_OPTION,
    no_restart: bool = NO_RESTART_OPTION,
    no_health_check: bool = NO_HEALTH_CHECK_OPTION,
    health_url: str | None = HEALTH_URL_OPTION,
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Copy a backup over the live compose file and restart the project."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "compose restore",
        args={
            "backup_path": backup_path,
            "latest": latest,
            "no_restart": no_restart,
            "no_health_check": no_health_check,
        },
        target={"kind": "compose", "host": hostname, "server_range": server_range},
    ) as op:
        if (backup_path is None) == (not latest):
            _command_error(op, "Provide exactly one of --backup-path or --latest.")
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix,
            working_dir_parent,
        )
        _check_single_host_url(op, selection, health_url, "--health-url")
        settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)
        probes = _configured_probes(op, runtime.config)
        source = backup_path or "the latest backup"

        if not no_confirm:
            if not runtime.confirmer.confirm(f"Restore {source} on {selection.describe()}?"):
                console.print("Cancelled.")
                op.add_step("confirm", status="cancelled")
                op.warning("Cancelled by operator.", warnings=["cancelled"], changed=0)
                return
            op.add_step("confirm")

        engine = runtime.engine_factory(
            _probe_options(runtime.config, url=health_url, timeout=health_timeout)
        )

        def restore(site: HostTarget, connection: Connection, docker: DockerProvider) -> SiteReport:
            store = _open_store(connection, docker, site, selection)
            path = backup_path
            if path is None:
                record = store.latest_backup()
                if record is None:
                    raise RestoreError(f"No backups of {store.path} found on {site.host}.")
                path = record.path
            store.restore(path)
            data: dict[str, object] = {"backup": path, "restarted": False, "health": None}
            if no_restart:
                return SiteReport(site, data=data)
            docker.restart_project(store.working_dir)
            data["restarted"] = True
            if no_health_check:
                return SiteReport(site, data=data)
            if runtime.config.mutation.settle_delay > 0:
                runtime.sleep(runtime.config.mutation.settle_delay)
            verdict = engine.evaluate(site, probes, connection=connection)
            data["health"] = verdict.status.value
            if verdict.status is HealthStatus.UNHEALTHY:
                return SiteReport(site, data=data, error=HealthCheckFailed(verdict))
            return SiteReport(site, data=data)

        reports, interrupted = _report_sites(
            runtime, op, selection, settings, concurrency or runtime.config.fleet.concurrency,
            restore,
        )

        def render(report: SiteReport) -> None:
            data = report.data if isinstance(report.data, dict) else {}
            line = f"{escape(report.target.label)}: restored {escape(str(data.get('backup')))}"
            if data.get("restarted"):
                line += ", restarted"
            if data.get("health"):
                line += f", health {data['health']}"
            console.print(f"[green]✓[/green] {line}")

        _finish_reports(
            op,
            "compose restore",
            reports,
            interrupted,
            json_output=json_output,
            render=render,
            changed=sum(1 for report in reports if report.data is not None),
        )


# health ------------------------------------------------------------------


def _format_ms(value: float | None) -> str:
    return "-" if value is None else f"{value:.1f} ms"


def _probe_summary(kind: ProbeKind, verdict: HealthVerdict) -> str:
    result = verdict.per_probe[kind]
    if result.error is not None:
        return f"[red]error[/red] {escape(result.error.message)}"
    payload = result.payload
    if isinstance(payload, HttpProbePayload):
        return f"{payload.status_code} in {_format_ms(payload.response_time_ms)}"
    if isinstance(payload, TLSProbePayload):
        state = "valid" if payload.valid else "[red]invalid[/red]"
        return f"{state}, expires in {payload.days_until_expiry} days ({escape(payload.protocol or '?')})"
    if isinstance(payload, ContainerProbePayload):
        parts = [payload.status]
        if payload.uptime_seconds is not None:
            parts.append(f"uptime {int(payload.uptime_seconds)}s")
        if payload.cpu_percent is not None:
            parts.append(f"cpu {payload.cpu_percent:.1f}%")
        if payload.memory_percent is not None:
            parts.append(f"mem {payload.memory_percent:.1f}%")
        return escape(", ".join(parts))
    if isinstance(payload, WordPressProbePayload):
        db = "db ok" if payload.db_reachable else "[red]db unreachable[/red]"
        return f"{escape(payload.version)}, {db}, {payload.plugin_count} active plugins"
    if isinstance(payload, MetricsProbePayload):
        if not payload.available:
            return f"[yellow]unavailable[/yellow] {escape(payload.detail or '')}".rstrip()
        if not payload.parsed:
            return "available (unparsed)"
        return f"available, {payload.metric_count} metrics"
    return ""


def _render_verdict(verdict: HealthVerdict) -> None:
    console.print(
        f"{_STATUS_STYLE[verdict.status]} {escape(verdict.target.label)} "
        f"({verdict.duration_ms} ms)"
    )
    for kind in ProbeKind:
        if kind in verdict.per_probe:
            console.print(f"  {kind.value}: {_probe_summary(kind, verdict)}")
    for warning in verdict.warnings:
        console.print(f"  [yellow]warning:[/yellow] {escape(warning)}")


def _aborted_verdict(target: HostTarget, reason: str) -> HealthVerdict:
    return HealthVerdict(
        target=target,
        status=HealthStatus.UNKNOWN,
        warnings=(reason,),
        per_probe={},
        checked_at=datetime.now(UTC),
    )


def _emit_verdicts(
    op: OperationScope,
    command: str,
    verdicts: Sequence[HealthVerdict],
    interrupted: bool,
    output: str,
) -> None:
    for verdict in verdicts:
        op.add_step(
            verdict.target.label,
            status=verdict.status.value,
            detail="; ".join(verdict.warnings) or None,
        )
    if output == "json":
        console.print_json(
            data={
                "verdicts": [serialize_verdict(verdict) for verdict in verdicts],
                "interrupted": interrupted,
            }
        )
    elif output == "prometheus":
        typer.echo(format_prometheus(verdicts), nl=False)
    elif output == "text":
        for verdict in verdicts:
            _render_verdict(verdict)
        if interrupted:
            console.print("[yellow]Interrupted; remaining hosts were skipped.[/yellow]")

    counts = {status.value: 0 for status in HealthStatus}
    for verdict in verdicts:
        counts[verdict.status.value] += 1
    context = {"summary": counts, "interrupted": interrupted}
    codes = [_STATUS_EXIT[verdict.status] for verdict in verdicts]
    if interrupted:
        codes.append(ExitCode.PROVIDER)
    rc = max(codes, default=ExitCode.OK)
    warnings = [
        f"{verdict.target.label}: {warning}"
        for verdict in verdicts
        for warning in verdict.warnings
    ]
    if rc is ExitCode.OK:
        if counts[HealthStatus.DEGRADED.value] or warnings:
            op.warning(f"{command}: sites degraded or with warnings.", warnings=warnings, context=context)
        else:
            op.success(f"{command}: {len(verdicts)} site(s) healthy.", changed=0, context=context)
        return
    unhealthy = [
        verdict.target.label
        for verdict in verdicts
        if verdict.status in (HealthStatus.UNHEALTHY, HealthStatus.UNKNOWN)
    ]
    op.error(
        f"{command}: {len(unhealthy)} of {len(verdicts)} site(s) unhealthy or unknown.",
        rc=int(rc),
        errors=unhealthy or None,
        warnings=warnings,
        context=context,
    )
    raise typer.Exit(code=int(rc))


def _validate_output(op: OperationScope, output: str) -> str:
    normalized = output.strip().lower()
    if normalized not in _OUTPUT_FORMATS:
        _command_error(op, f"Unknown output format '{output}'. Use one of: {', '.join(_OUTPUT_FORMATS)}.")
    return normalized


@health_app.command("check")
def health_check(
    ctx: typer.Context,
    hostname: str | None = HOSTNAME_ARGUMENT,
    server_range: str | None = SERVER_RANGE_OPTION,
    container: str | None = CONTAINER_OPTION,
    all_containers: bool = ALL_CONTAINERS_OPTION,
    prefix: str | None = PREFIX_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
    url: str | None = typer.Option(
        None,
        "--url",
        help=(
            "Site URL to probe (default: the WordPress siteurl of each container, "
            "else https://<host>). Single host only."
        ),
    ),
    probes: str | None = PROBES_OPTION,
    metrics: bool = METRICS_OPTION,
    metrics_path: str | None = METRICS_PATH_OPTION,
    metrics_token: str | None = METRICS_TOKEN_OPTION,
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    concurrency: int | None = CONCURRENCY_OPTION,
    output: str = OUTPUT_OPTION,
) -> None:
    """Run the health probes against each selected site and report a verdict."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "health check",
        args={
            "probes": probes,
            "metrics": metrics,
            "metrics_path": metrics_path,
            "output": output,
            "container": container,
            "all_containers": all_containers,
        },
        target={"kind": "health", "host": hostname, "server_range": server_range},
    ) as op:
        output_format = _validate_output(op, output)
        selection = _select_targets(
            op, runtime, hostname, server_range, container, all_containers, prefix, None,
            require_container=False,
        )
        _check_single_host_url(op, selection, url, "--url")
        if probes is None:
            kinds = set(_configured_probes(op, runtime.config))
        else:
            try:
                kinds = set(parse_probe_kinds([probes]))
            except ValueError as exc:
                _command_error(op, str(exc))
        if metrics:
            kinds.add(ProbeKind.METRICS)
        if not selection.has_containers and kinds & CONTAINER_PROBES:
            kinds -= CONTAINER_PROBES
            op.add_step(
                "probes",
                status="skipped",
                detail="container and wordpress probes need --container or --all-containers",
            )
        enabled = frozenset(kinds)

        engine = runtime.engine_factory(
            _probe_options(
                runtime.config,
                url=url,
                timeout=health_timeout,
                metrics_path=metrics_path,
                metrics_token=metrics_token,
            )
        )
        workers = concurrency or runtime.config.fleet.concurrency

        # Without --url each container is probed at its own siteurl, which needs SSH.
        needs_ssh = bool(enabled & CONTAINER_PROBES) or (
            bool(enabled & URL_PROBES) and not engine.options.url
        )
        if selection.has_containers and needs_ssh:
            settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)

            def evaluate_site(
                site: HostTarget, connection: Connection, docker: DockerProvider
            ) -> HealthVerdict:
                return engine.evaluate(site, enabled, connection=connection)

            verdicts, interrupted = _fan_out(
                runtime,
                selection,
                settings,
                workers,
                evaluate_site,
                on_error=lambda target, exc: _aborted_verdict(target, f"Health check aborted: {exc}"),
                on_skip=lambda target, reason: _aborted_verdict(target, f"Skipped: {reason}"),
            )
        else:
            executor: FleetExecutor[HealthVerdict] = FleetExecutor(
                lambda target: engine.evaluate(target, enabled),
                on_error=lambda target, exc: _aborted_verdict(target, f"Health check aborted: {exc}"),
                on_skip=lambda target: _aborted_verdict(target, "Skipped: interrupted before start"),
                concurrency=workers,
            )
            run = executor.run(selection.targets)
            verdicts, interrupted = list(run.outcomes), run.interrupted

        _emit_verdicts(op, "health check", _ordered(verdicts, selection), interrupted, output_format)


def _parse_headers(op: OperationScope, values: Sequence[str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, separator, content = value.partition(":")
        if not separator or not name.strip():
            _command_error(op, f"Invalid header '{value}'. Use 'Name: value'.")
        headers[name.strip()] = content.strip()
    return headers


@health_app.command("probe")
def health_probe(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="URL to request."),
    header: list[str] | None = typer.Option(
        None,
        "--header",
        "-H",
        help="Extra request header ('Name: value'); repeatable.",
    ),
    no_follow_redirects: bool = typer.Option(
        False,
        "--no-follow-redirects",
        help="Report the first response instead of following redirects.",
    ),
    insecure: bool = typer.Option(
        False,
        "--insecure",
        help="Do not verify the server certificate.",
    ),
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Time a single HTTP request and show its phase breakdown."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "health probe",
        args={"url": url, "follow_redirects": not no_follow_redirects, "insecure": insecure},
        target={"kind": "url", "url": url},
    ) as op:
        try:
            host = httpx.URL(url).host
        except httpx.InvalidURL as exc:
            _command_error(op, f"Invalid URL '{url}': {exc}")
        if not host:
            _command_error(op, f"URL '{url}' has no host.")
        headers = _parse_headers(op, header or [])
        engine = runtime.engine_factory(
            _probe_options(
                runtime.config,
                url=url,
                timeout=health_timeout,
                headers=headers,
                follow_redirects=not no_follow_redirects,
                verify_tls=not insecure,
            )
        )
        verdict = engine.evaluate(HostTarget(host=host), {ProbeKind.HTTP})
        result = verdict.per_probe.get(ProbeKind.HTTP)
        payload = result.payload if result is not None else None

        if json_output:
            console.print_json(data=serialize_verdict(verdict))
        elif isinstance(payload, HttpProbePayload):
            console.print(
                f"{_STATUS_STYLE[verdict.status]} {escape(payload.final_url)}: "
                f"HTTP {payload.status_code} in {_format_ms(payload.response_time_ms)}"
            )
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Phase", style="bold")
            table.add_column("Duration", justify="right")
            timings = payload.timings
            table.add_row("DNS", _format_ms(timings.dns_ms))
            table.add_row("Connect", _format_ms(timings.connect_ms))
            table.add_row("TLS handshake", _format_ms(timings.tls_ms))
            table.add_row("First byte", _format_ms(timings.first_byte_ms))
            table.add_row("Transfer", _format_ms(timings.transfer_ms))
            table.add_row("Total", _format_ms(payload.response_time_ms))
            console.print(table)
            if payload.content_length is not None:
                console.print(f"Content length: {payload.content_length} bytes")
            if payload.redirects:
                console.print("Redirects: " + " -> ".join(escape(item) for item in payload.redirects))
        else:
            _render_verdict(verdict)

        _emit_verdicts(op, "health probe", [verdict], False, "quiet")


@health_app.command("metrics")
def health_metrics(
    ctx: typer.Context,
    hostname: str = typer.Argument(..., help="Site host."),
    url: str | None = typer.Option(
        None,
        "--url",
        help="Site URL (default: https://<host>).",
    ),
    metrics_path: str | None = METRICS_PATH_OPTION,
    metrics_token: str | None = METRICS_TOKEN_OPTION,
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Query a site's metrics endpoint and summarise it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "health metrics",
        args={"url": url, "metrics_path": metrics_path},
        target={"kind": "health", "host": hostname},
    ) as op:
        engine = runtime.engine_factory(
            _probe_options(
                runtime.config,
                url=url,
                timeout=health_timeout,
                metrics_path=metrics_path,
                metrics_token=metrics_token,
            )
        )
        verdict = engine.evaluate(HostTarget(host=hostname), {ProbeKind.METRICS})
        result = verdict.per_probe.get(ProbeKind.METRICS)
        if result is None or result.error is not None:
            detail = result.error.message if result is not None and result.error else "no result"
            _command_error(op, f"Metrics probe failed: {detail}", rc=ExitCode.PROVIDER)
        payload = result.payload
        if not isinstance(payload, MetricsProbePayload):
            _command_error(op, "Metrics probe returned no data.", rc=ExitCode.PROVIDER)

        if json_output:
            console.print_json(data=serialize_verdict(verdict))
        else:
            console.print(f"Metrics endpoint: {escape(payload.url)}")
            if not payload.available:
                console.print(
                    f"[yellow]Metrics unavailable[/yellow]: {escape(payload.detail or 'no detail')}"
                )
            else:
                table = Table(show_header=True, header_style="bold magenta")
                table.add_column("Metric", style="bold")
                table.add_column("Value", justify="right")
                rows: list[tuple[str, object]] = [
                    ("status code", payload.status_code),
                    ("response time", _format_ms(payload.response_time_ms)),
                    ("parsed", payload.parsed),
                    ("metric families", payload.metric_count),
                    ("requests total", payload.requests_total),
                    ("errors total", payload.errors_total),
                    ("avg request duration (s)", payload.avg_request_duration_seconds),
                    ("php memory (bytes)", payload.php_memory_bytes),
                    ("db queries total", payload.db_queries_total),
                    ("cache hit rate", payload.cache_hit_rate),
                ]
                for label, value in rows:
                    table.add_row(label, "-" if value is None else str(value))
                console.print(table)

        context = {"metrics": serialize_verdict(verdict)["probes"]}
        if not payload.available:
            op.warning(
                "Metrics endpoint unavailable.",
                warnings=[payload.detail or "unavailable"],
                context=context,
            )
            return
        op.success("Reported site metrics.", changed=0, context=context)


def _dashboard_table(verdict: HealthVerdict, refresh: int, interval: float) -> Table:
    table = Table(
        title=f"{verdict.target.label} (refresh {refresh}, every {interval:g}s)",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Check", style="bold")
    table.add_column("Result")
    table.add_row("status", _STATUS_STYLE[verdict.status])
    table.add_row("checked at", verdict.checked_at.strftime("%Y-%m-%d %H:%M:%S %Z"))
    table.add_row("duration", f"{verdict.duration_ms} ms")
    for kind in ProbeKind:
        if kind in verdict.per_probe:
            table.add_row(kind.value, _probe_summary(kind, verdict))
    for warning in verdict.warnings:
        table.add_row("[yellow]warning[/yellow]", escape(warning))
    return table


@health_app.command("dashboard")
def health_dashboard(
    ctx: typer.Context,
    hostname: str = typer.Argument(..., help="Site host."),
    container: str | None = typer.Option(
        None,
        "--container",
        help="Container to watch; enables --docker-stats and the siteurl lookup.",
    ),
    url: str | None = typer.Option(
        None,
        "--url",
        help="Site URL to probe (default: the WordPress siteurl, else https://<host>).",
    ),
    interval: float = typer.Option(5.0, "--interval", "-i", min=0.5, help="Seconds between refreshes."),
    iterations: int = typer.Option(
        0,
        "--iterations",
        "-n",
        min=0,
        help="Stop after this many refreshes (0: run until Ctrl+C).",
    ),
    docker_stats: bool = typer.Option(
        False,
        "--docker-stats",
        help="Also show container status and resource usage.",
    ),
    metrics: bool = METRICS_OPTION,
    metrics_path: str | None = METRICS_PATH_OPTION,
    metrics_token: str | None = METRICS_TOKEN_OPTION,
    health_timeout: float | None = HEALTH_TIMEOUT_OPTION,
    user: str | None = SSH_USER_OPTION,
    port: int | None = SSH_PORT_OPTION,
    key: Path | None = SSH_KEY_OPTION,
    no_agent: bool = NO_AGENT_OPTION,
    timeout: float | None = SSH_TIMEOUT_OPTION,
) -> None:
    """Refresh a live health table for one site until interrupted."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "health dashboard",
        args={
            "interval": interval,
            "iterations": iterations,
            "docker_stats": docker_stats,
            "metrics": metrics,
        },
        target={"kind": "health", "host": hostname, "container": container},
    ) as op:
        if docker_stats and not container:
            _command_error(op, "--docker-stats needs --container.")
        kinds = {ProbeKind.HTTP}
        if docker_stats:
            kinds.add(ProbeKind.CONTAINER)
        if metrics:
            kinds.add(ProbeKind.METRICS)
        enabled = frozenset(kinds)

        engine = runtime.engine_factory(
            _probe_options(
                runtime.config,
                url=url,
                timeout=health_timeout,
                metrics_path=metrics_path,
                metrics_token=metrics_token,
            )
        )
        target = HostTarget(host=hostname, container=container)

        connection: Connection | None = None
        if container:
            settings = _ssh_settings(runtime.config, user, port, key, no_agent, timeout)
            try:
                connection = runtime.connector_factory(settings)(hostname)
            except TransportError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        refreshes = 0
        verdict: HealthVerdict | None = None
        interrupted = False
        try:
            while True:
                verdict = engine.evaluate(target, enabled, connection=connection)
                refreshes += 1
                console.clear()
                console.print(_dashboard_table(verdict, refreshes, interval))
                if iterations and refreshes >= iterations:
                    break
                runtime.sleep(interval)
        except KeyboardInterrupt:
            interrupted = True
        finally:
            if connection is not None:
                connection.close()

        context = {
            "refreshes": refreshes,
            "interrupted": interrupted,
            "last_status": verdict.status.value if verdict is not None else None,
        }
        op.success(f"Dashboard closed after {refreshes} refresh(es).", changed=0, context=context)


# config ------------------------------------------------------------------


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key_name, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key_name, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
