"""Edit session: the edit, validate, commit and restart workflow.

An :class:`EditSession` edits the configuration document of one stopped
instance:

1. inspect the instance and refuse to continue while it is running;
2. produce a candidate document with exactly one :data:`EditMode`;
3. stop early when the operator aborted or nothing changed;
4. parse and strictly validate the candidate, saving a rejected buffer to
   :data:`REJECTED_FILENAME` in the working directory;
5. write the candidate over the document;
6. when interactive, offer to start the instance (network reconciliation
   followed by start).

The commit is never rolled back: a failed or cancelled restart leaves the
edited document in place.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from rich.console import Console

from .cancellation import CancelToken
from .editor import generate_warning_header
from .errors import (
    CoordinationError,
    EvaluationError,
    InstanceNotFoundError,
    InvalidStateError,
    OperationCancelledError,
    PersistenceError,
    ValidationError,
)
from .instance_config import InstanceConfig, InstanceConfigError
from .network import NetworkError
from .providers.instance_status_provider import InstanceState
from .providers.systemd import SystemdError
from .start import StartError
from .store import Instance, StoreError

LOGGER = logging.getLogger(__name__)

# Operators and tooling rely on this exact name to resume a rejected edit.
REJECTED_FILENAME = "instance.REJECTED.yaml"

START_PROMPT = "Do you want to start the instance now?"


class ConfigStore(Protocol):
    """Instance lookup and document persistence."""

    def inspect(self, name: str) -> Instance: ...

    def read_document(self, path: Path) -> bytes: ...

    def write_document(self, path: Path, data: bytes) -> None: ...


class Evaluator(Protocol):
    """Scripted transformation of document bytes."""

    def evaluate(self, expression: str, data: bytes) -> bytes: ...


class Editor(Protocol):
    """Operator-driven transformation of document bytes."""

    def edit(self, label: str, initial: bytes, header: str) -> bytes: ...


class SchemaValidator(Protocol):
    """Parsing and semantic validation of documents."""

    def parse(self, data: bytes, source: Path) -> InstanceConfig: ...

    def validate(self, config: InstanceConfig, strict: bool = True) -> None: ...


class Coordinator(Protocol):
    """Two-phase restart of an instance."""

    def reconcile_network(self, cancel: CancelToken, name: str) -> None: ...

    def start(self, cancel: CancelToken, instance: Instance) -> None: ...


class Confirmer(Protocol):
    """Yes/no question asked to the operator."""

    def confirm(self, message: str, default: bool) -> bool: ...


@dataclass(frozen=True)
class ScriptedEdit:
    """Apply a patch expression without operator interaction."""

    expression: str


@dataclass(frozen=True)
class InteractiveEdit:
    """Open the editor; *initial* replaces the stored document as buffer."""

    header: str
    initial: bytes | None = None


@dataclass(frozen=True)
class NoEdit:
    """Neither a script nor a terminal is available."""


EditMode = ScriptedEdit | InteractiveEdit | NoEdit


class EditOutcome(str, Enum):
    """How an edit session ended."""

    SKIPPED = "skipped"
    ABORTED = "aborted"
    UNCHANGED = "unchanged"
    COMMITTED = "committed"
    STARTED = "started"

    @property
    def changed(self) -> bool:
        """Return ``True`` when the document was written."""
        return self in (EditOutcome.COMMITTED, EditOutcome.STARTED)


class RestartState(str, Enum):
    """States of the post-commit restart decision."""

    COMMITTED = "committed"
    NON_INTERACTIVE = "non_interactive"
    PROMPT_RESTART = "prompt_restart"
    RESTARTING = "restarting"
    DONE = "done"


@dataclass(frozen=True)
class EditResult:
    """Summary returned by :meth:`EditSession.run`."""

    outcome: EditOutcome
    name: str
    config_path: Path
    restart_states: tuple[RestartState, ...] = ()
    message: str = ""


def edit_header(name: str) -> str:
    """Return the header shown above the buffer in the editor."""
    return (
        f"# Please edit the following configuration for instance '{name}'\n"
        "# and an empty file will abort the edit.\n"
        "\n" + generate_warning_header()
    )


def select_edit_mode(
    name: str,
    *,
    expression: str | None,
    interactive: bool,
    resume_from: Path | None = None,
) -> EditMode:
    """Choose the edit mode once; a script wins over the editor.

    With *resume_from* pointing at an existing rejected buffer, the editor
    opens on that buffer instead of the stored document.
    """
    if expression:
        return ScriptedEdit(expression)
    if not interactive:
        return NoEdit()
    initial: bytes | None = None
    if resume_from is not None:
        try:
            initial = resume_from.read_bytes()
        except FileNotFoundError:
            LOGGER.info("No rejected buffer at %s; editing the stored document", resume_from)
        except OSError as exc:
            raise PersistenceError(f"Failed to read rejected buffer {resume_from}: {exc}") from exc
    return InteractiveEdit(header=edit_header(name), initial=initial)


@dataclass
class EditSession:
    """Orchestrates one edit transaction against a configuration store."""

    store: ConfigStore
    evaluator: Evaluator
    editor: Editor
    schema: SchemaValidator
    coordinator: Coordinator
    confirmer: Confirmer
    interactive: bool
    console: Console = field(default_factory=Console)
    cancel: CancelToken = field(default_factory=CancelToken)
    rejected_dir: Path | None = None

    @property
    def rejected_path(self) -> Path:
        """Return where a rejected candidate is saved."""
        return (self.rejected_dir or Path.cwd()) / REJECTED_FILENAME

    def run(self, name: str, mode: EditMode) -> EditResult:
        """Run the session for instance *name* using *mode*."""
        instance = self._inspect(name)
        original = self.store.read_document(instance.config_path)

        candidate = self._acquire(instance, mode, original)
        if candidate is None:
            return self._finish(
                instance,
                EditOutcome.SKIPPED,
                "No editor or --set expression; nothing to do.",
            )
        if not candidate:
            return self._finish(
                instance,
                EditOutcome.ABORTED,
                "Aborting, as requested by saving the file with empty content.",
            )
        if candidate == original:
            return self._finish(
                instance,
                EditOutcome.UNCHANGED,
                "Aborting, no changes made to the instance.",
            )

        self._validate(instance, candidate)
        self._commit(instance, candidate)

        states = self._restart(instance)
        outcome = EditOutcome.COMMITTED
        if RestartState.RESTARTING in states:
            outcome = EditOutcome.STARTED
        return EditResult(
            outcome=outcome,
            name=instance.name,
            config_path=instance.config_path,
            restart_states=states,
            message=f"Instance '{instance.name}' configuration edited.",
        )

    # ------------------------------------------------------------------
    def _inspect(self, name: str) -> Instance:
        try:
            instance = self.store.inspect(name)
        except FileNotFoundError as exc:
            raise InstanceNotFoundError(name) from exc
        if instance.status is InstanceState.RUNNING:
            raise InvalidStateError(
                f"Cannot edit a running instance; stop '{instance.name}' first."
            )
        return instance

    def _acquire(self, instance: Instance, mode: EditMode, original: bytes) -> bytes | None:
        if isinstance(mode, ScriptedEdit):
            self.console.print("[yellow]Warning:[/yellow] `--set` is experimental.")
            LOGGER.info("Applying --set expression to %s", instance.config_path)
            try:
                return self.evaluator.evaluate(mode.expression, original)
            except ValueError as exc:
                raise EvaluationError(f"Failed to apply --set expression: {exc}") from exc
        if isinstance(mode, InteractiveEdit):
            initial = original if mode.initial is None else mode.initial
            return self.editor.edit(instance.name, initial, mode.header)
        return None

    def _validate(self, instance: Instance, candidate: bytes) -> None:
        try:
            config = self.schema.parse(candidate, instance.config_path)
            self.schema.validate(config, strict=True)
        except InstanceConfigError as exc:
            self._reject(candidate, exc)

    def _reject(self, candidate: bytes, cause: InstanceConfigError) -> None:
        path = self.rejected_path
        if path.exists():
            LOGGER.info("Overwriting previously rejected buffer %s", path)
            self.console.print(f"[yellow]Overwriting previously rejected buffer {path}.[/yellow]")
        try:
            path.write_bytes(candidate)
        except OSError as write_exc:
            raise PersistenceError(
                f"The YAML is invalid, attempted to save the buffer as '{path}' but failed: "
                f"{write_exc}: {cause}"
            ) from cause
        raise ValidationError(
            f"The YAML is invalid, saved the buffer as '{path}': {cause}",
            rejected_path=path,
        ) from cause

    def _commit(self, instance: Instance, candidate: bytes) -> None:
        try:
            self.store.write_document(instance.config_path, candidate)
        except (StoreError, OSError) as exc:
            raise PersistenceError(str(exc)) from exc
        LOGGER.info("Instance '%s' configuration edited", instance.name)
        self.console.print(f"[green]Instance '{instance.name}' configuration edited.[/green]")

    def _restart(self, instance: Instance) -> tuple[RestartState, ...]:
        states = [RestartState.COMMITTED]
        if not self.interactive:
            # The operator starts the instance explicitly with `instctl start`.
            states += [RestartState.NON_INTERACTIVE, RestartState.DONE]
            return tuple(states)

        states.append(RestartState.PROMPT_RESTART)
        if not self.confirmer.confirm(START_PROMPT, True):
            states.append(RestartState.DONE)
            return tuple(states)

        states.append(RestartState.RESTARTING)
        try:
            self._start_after_commit(instance)
        except KeyboardInterrupt as exc:
            # Ctrl-C while restarting cancels the restart; the commit stays.
            self.cancel.cancel()
            raise OperationCancelledError(
                f"restart of instance '{instance.name}' cancelled"
            ) from exc
        self.console.print(f"[green]Instance '{instance.name}' started.[/green]")
        states.append(RestartState.DONE)
        return tuple(states)

    def _start_after_commit(self, instance: Instance) -> None:
        self.cancel.raise_if_cancelled(f"restart of instance '{instance.name}'")
        try:
            self.coordinator.reconcile_network(self.cancel, instance.name)
        except (NetworkError, SystemdError, StoreError) as exc:
            raise CoordinationError(
                f"Network reconciliation for instance '{instance.name}' failed: {exc}"
            ) from exc
        try:
            self.coordinator.start(self.cancel, instance)
        except (StartError, SystemdError, StoreError) as exc:
            raise CoordinationError(str(exc)) from exc

    def _finish(self, instance: Instance, outcome: EditOutcome, message: str) -> EditResult:
        LOGGER.info("%s (%s)", message, instance.name)
        self.console.print(message)
        return EditResult(
            outcome=outcome,
            name=instance.name,
            config_path=instance.config_path,
            message=message,
        )


__all__ = [
    "REJECTED_FILENAME",
    "ConfigStore",
    "Confirmer",
    "Coordinator",
    "EditMode",
    "EditOutcome",
    "EditResult",
    "EditSession",
    "Editor",
    "Evaluator",
    "InteractiveEdit",
    "NoEdit",
    "RestartState",
    "ScriptedEdit",
    "SchemaValidator",
    "edit_header",
    "select_edit_mode",
]
