"""Typer-powered command line interface for ``instctl``.

Every command runs inside a :class:`~instctl.logging.StructuredLogger`
operation so the outcome (including failures) lands in ``operations.jsonl``.
Errors are printed in red and mapped onto :class:`~instctl.exit_codes.ExitCode`.
"""
from __future__ import annotations

import logging
import sys
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import get_version
from .cancellation import CancelToken
from .config import AppConfig, ConfigError, load_config
from .edit import REJECTED_FILENAME, EditSession, select_edit_mode
from .editor import EditorError, InteractiveEditor
from .errors import CoordinationError, EditError, ValidationError
from .exit_codes import ExitCode, exit_code_for
from .instance_config import (
    InstanceConfigError,
    InstanceConfigSchema,
    load_instance_config,
    validate_instance_config,
)
from .logging import OperationScope, StructuredLogger
from .network import NetworkError, NetworkReconciler
from .patch import PatchEvaluator
from .providers import InstanceState, InstanceStatusProvider, SystemdError, SystemdProvider
from .start import InstanceStarter, RestartCoordinator, StartError
from .store import InstanceStore, StoreError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to instctl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage local compute instances and their configuration documents.

        Each instance lives in its own directory below the instance root and is
        described by an ``instance.yaml`` document.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the instctl configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    systemd: SystemdProvider
    store: InstanceStore
    coordinator: RestartCoordinator


class TyperConfirmer:
    """Ask yes/no questions on the terminal."""

    def confirm(self, message: str, default: bool) -> bool:
        """Return the operator's answer to *message*."""
        return typer.confirm(message, default=default)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    systemd = SystemdProvider(
        unit_prefix=config.systemd.unit_prefix,
        systemctl_bin=config.systemd.systemctl_bin,
        user=config.systemd.user,
    )
    store = InstanceStore(config.instance_root, InstanceStatusProvider(systemd))
    networks = NetworkReconciler(
        store=store,
        systemd=systemd,
        networks=config.networks,
        timeout=config.start.timeout,
        poll_interval=config.start.poll_interval,
    )
    starter = InstanceStarter(
        store=store,
        systemd=systemd,
        timeout=config.start.timeout,
        poll_interval=config.start.poll_interval,
    )
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        systemd=systemd,
        store=store,
        coordinator=RestartCoordinator(networks=networks, starter=starter),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _configure_logging(debug: bool) -> None:
    if not debug:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _complete_instance_names(ctx: typer.Context, incomplete: str) -> list[str]:
    """Complete instance names from the store."""
    try:
        runtime = _get_runtime(ctx)
        names = runtime.store.list_names()
    except (typer.Exit, StoreError):
        return []
    return [name for name in names if name.startswith(incomplete)]


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the instctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Log debug output to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(debug)
    if version:
        console.print(f"instctl {get_version()}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command("edit")
def edit_command(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Instance to edit (defaults to the configured default instance).",
        autocompletion=_complete_instance_names,
    ),
    tty: bool | None = typer.Option(
        None,
        "--tty/--no-tty",
        help=(
            "Enable TUI interactions such as opening an editor; "
            "defaults to true when stdout is a terminal."
        ),
    ),
    set_expression: str = typer.Option(
        "",
        "--set",
        help="Modify the configuration in place, using yq syntax (experimental).",
    ),
    resume: bool = typer.Option(
        False,
        "--resume",
        help=f"Open the editor on ./{REJECTED_FILENAME} left by a rejected edit.",
    ),
) -> None:
    """Edit the configuration of a stopped instance."""
    runtime = _get_runtime(ctx)
    instance_name = name or runtime.config.default_instance
    interactive = sys.stdout.isatty() if tty is None else tty
    with runtime.logger.operation(
        "edit",
        args={
            "name": instance_name,
            "tty": interactive,
            "set": set_expression or None,
            "resume": resume,
        },
        target={"kind": "instance", "name": instance_name},
    ) as op:
        try:
            mode = select_edit_mode(
                instance_name,
                expression=set_expression,
                interactive=interactive,
                resume_from=Path.cwd() / REJECTED_FILENAME if resume else None,
            )
            op.add_step("mode", status="success", detail=type(mode).__name__)
            session = EditSession(
                store=runtime.store,
                evaluator=PatchEvaluator(),
                editor=InteractiveEditor(command=runtime.config.editor),
                schema=InstanceConfigSchema(),
                coordinator=runtime.coordinator,
                confirmer=TyperConfirmer(),
                interactive=interactive,
                console=console,
                cancel=CancelToken(),
            )
            result = session.run(instance_name, mode)
        except ValidationError as exc:
            op.add_step("validate", status="error", detail=str(exc.rejected_path))
            _command_error(op, str(exc), rc=exit_code_for(exc))
        except CoordinationError as exc:
            op.add_step("commit", status="success", detail="configuration saved before restart")
            _command_error(op, str(exc), rc=exit_code_for(exc))
        except (EditError, EditorError, StoreError) as exc:
            _command_error(op, str(exc), rc=exit_code_for(exc))

        op.add_step(
            "restart",
            status="success" if result.restart_states else "skipped",
            detail=",".join(state.value for state in result.restart_states) or None,
        )
        op.success(
            result.message,
            changed=1 if result.outcome.changed else 0,
            context={"outcome": result.outcome.value, "config_path": result.config_path},
        )


@app.command("list")
def list_command(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List instances and their status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "store"},
    ) as op:
        try:
            instances = [runtime.store.inspect(name) for name in runtime.store.list_names()]
        except (EditError, StoreError) as exc:
            _command_error(op, str(exc), rc=exit_code_for(exc))

        if json_output:
            console.print_json(
                data={
                    "instances": [
                        {
                            "name": instance.name,
                            "status": instance.status.value,
                            "dir": str(instance.dir),
                        }
                        for instance in instances
                    ]
                }
            )
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Status")
        table.add_column("Dir")
        if not instances:
            table.add_row("(none)", "", "")
        for instance in instances:
            table.add_row(instance.name, instance.status.value, str(instance.dir))
        console.print(table)
        op.success("Reported instance list.", changed=0)


@app.command("show")
def show_command(
    ctx: typer.Context,
    name: str = typer.Argument(
        ...,
        help="Instance to display.",
        autocompletion=_complete_instance_names,
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the status and configuration of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = runtime.store.inspect(name)
            document = runtime.store.read_document(instance.config_path)
        except (EditError, StoreError) as exc:
            _command_error(op, str(exc), rc=exit_code_for(exc))

        if json_output:
            console.print_json(
                data={
                    "name": instance.name,
                    "status": instance.status.value,
                    "status_detail": instance.status_detail,
                    "dir": str(instance.dir),
                    "config": document.decode("utf-8", errors="replace"),
                }
            )
            op.success("Displayed instance as JSON.", changed=0)
            return

        table = Table(show_header=False)
        table.add_row("Name", instance.name)
        table.add_row("Status", instance.status.value)
        if instance.status_detail:
            table.add_row("Status Detail", instance.status_detail)
        table.add_row("Config", str(instance.config_path))
        console.print(table)
        console.print(document.decode("utf-8", errors="replace"), markup=False, highlight=False)
        op.success("Displayed instance.", changed=0)


@app.command("validate")
def validate_command(
    ctx: typer.Context,
    targets: list[str] = typer.Argument(
        ...,
        help="Instance names or paths of instance.yaml files.",
    ),
    strict: bool = typer.Option(
        True,
        "--strict/--no-strict",
        help="Treat unknown keys as errors.",
    ),
) -> None:
    """Validate instance configuration documents."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "validate",
        args={"targets": targets, "strict": strict},
        target={"kind": "instance", "scope": "validate"},
    ) as op:
        failures: list[str] = []
        for target in targets:
            path = Path(target)
            try:
                if not path.is_file():
                    path = runtime.store.inspect(target).config_path
                config = load_instance_config(runtime.store.read_document(path), path)
                validate_instance_config(config, strict=strict)
            except InstanceConfigError as exc:
                failures.append(str(exc))
                console.print(f"[red]{exc}[/red]")
                for problem in exc.problems:
                    console.print(f"  - {problem}")
                op.add_step(target, status="error", detail=str(exc))
                continue
            except (EditError, StoreError) as exc:
                failures.append(str(exc))
                console.print(f"[red]{exc}[/red]")
                op.add_step(target, status="error", detail=str(exc))
                continue
            console.print(f"[green]{path} is valid.[/green]")
            op.add_step(target, status="success")

        if failures:
            _command_error(
                op,
                f"{len(failures)} of {len(targets)} document(s) invalid.",
                rc=ExitCode.VALIDATION,
                errors=failures,
            )
        op.success("All documents valid.", changed=0)


@app.command("start")
def start_command(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Instance to start (defaults to the configured default instance).",
        autocompletion=_complete_instance_names,
    ),
) -> None:
    """Reconcile networks and start an instance."""
    runtime = _get_runtime(ctx)
    instance_name = name or runtime.config.default_instance
    with runtime.logger.operation(
        "start",
        args={"name": instance_name},
        target={"kind": "instance", "name": instance_name},
    ) as op:
        cancel = CancelToken()
        try:
            instance = runtime.store.inspect(instance_name)
            if instance.status is InstanceState.RUNNING:
                console.print(f"Instance '{instance.name}' is already running.")
                op.success("Instance already running.", changed=0)
                return
            runtime.coordinator.reconcile_network(cancel, instance.name)
            op.add_step("network.reconcile", status="success")
            runtime.coordinator.start(cancel, instance)
            op.add_step("systemd.start", status="success")
        except (NetworkError, StartError, SystemdError) as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)
        except (EditError, StoreError) as exc:
            _command_error(op, str(exc), rc=exit_code_for(exc))
        console.print(f"[green]Instance '{instance.name}' started.[/green]")
        op.success("Instance started.", changed=1)


@app.command("stop")
def stop_command(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Instance to stop (defaults to the configured default instance).",
        autocompletion=_complete_instance_names,
    ),
) -> None:
    """Stop a running instance."""
    runtime = _get_runtime(ctx)
    instance_name = name or runtime.config.default_instance
    with runtime.logger.operation(
        "stop",
        args={"name": instance_name},
        target={"kind": "instance", "name": instance_name},
    ) as op:
        try:
            instance = runtime.store.inspect(instance_name)
            if instance.status is not InstanceState.RUNNING:
                console.print(f"[yellow]Instance '{instance.name}' is not running.[/yellow]")
                op.success("Instance not running.", changed=0)
                return
            runtime.systemd.stop(runtime.systemd.unit_name(instance.name))
            op.add_step("systemd.stop", status="success")
        except SystemdError as exc:
            _command_error(op, f"systemd stop failed: {exc}", rc=ExitCode.PROVIDER)
        except (EditError, StoreError) as exc:
            _command_error(op, str(exc), rc=exit_code_for(exc))
        console.print(f"[yellow]Instance '{instance.name}' stopped.[/yellow]")
        op.success("Instance stopped.", changed=1)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the resolved configuration."""
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
        for key, value in data.items():
            table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:  # pragma: no cover - console script entry point
    """Run the Typer application."""
    app()


__all__ = ["app", "main"]
