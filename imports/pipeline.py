"""Small step runner with fatal/soft failure policies."""

from __future__ import annotations

import enum
import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, ContextManager, Sequence

logger = logging.getLogger(__name__)


class ImportCancelledError(RuntimeError):
    """Raised when the caller cancels an import before it is committed."""


class StepPolicy(enum.Enum):
    FATAL = "fatal"
    SOFT = "soft"


class ImportState(enum.Enum):
    NOT_STARTED = "not_started"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[ImportState, frozenset[ImportState]] = {
    ImportState.NOT_STARTED: frozenset({ImportState.FETCHING, ImportState.CANCELLED}),
    ImportState.FETCHING: frozenset(
        {ImportState.RECONCILING, ImportState.FAILED, ImportState.CANCELLED}
    ),
    ImportState.RECONCILING: frozenset(
        {ImportState.PERSISTING, ImportState.CANCELLED}
    ),
    ImportState.PERSISTING: frozenset(
        {ImportState.DONE, ImportState.FAILED, ImportState.CANCELLED}
    ),
    ImportState.DONE: frozenset(),
    ImportState.FAILED: frozenset(),
    ImportState.CANCELLED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass(frozen=True)
class Step:
    """One unit of work; ``exclusive`` steps run while holding the pipeline lock."""

    name: str
    action: Callable[[Any], None]
    phase: ImportState
    policy: StepPolicy = StepPolicy.SOFT
    exclusive: bool = False


@dataclass
class StepOutcome:
    name: str
    ok: bool
    error: BaseException | None = None


@dataclass
class PipelineRun:
    label: str
    state: ImportState = ImportState.NOT_STARTED
    outcomes: list[StepOutcome] = field(default_factory=list)

    @property
    def soft_failures(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes if not outcome.ok]


class ImportPipeline:
    """Run steps in order, stopping on fatal errors and logging soft ones.

    Steps are grouped by phase and the phases must follow
    ``FETCHING -> RECONCILING -> PERSISTING``. Reconciling steps are always
    soft. The cancellation event is checked before every step; a fatal error
    or cancellation calls ``on_abort`` before the exclusive lock is released.
    """

    def __init__(
        self,
        steps: Sequence[Step],
        *,
        lock: ContextManager[Any] | None = None,
        on_abort: Callable[[], None] | None = None,
    ) -> None:
        for step in steps:
            if step.phase not in (
                ImportState.FETCHING,
                ImportState.RECONCILING,
                ImportState.PERSISTING,
            ):
                raise ValueError(f"step {step.name!r} has no runnable phase")
            if step.phase is ImportState.RECONCILING and step.policy is StepPolicy.FATAL:
                raise ValueError(f"reconciling step {step.name!r} cannot be fatal")
        self._steps = list(steps)
        self._lock = lock
        self._on_abort = on_abort

    def run(
        self,
        context: Any,
        *,
        label: str = "",
        cancel_event: threading.Event | None = None,
    ) -> PipelineRun:
        run = PipelineRun(label=label)
        with ExitStack() as stack:
            locked = False
            try:
                for step in self._steps:
                    if step.phase is not run.state:
                        _transition(run, step.phase)
                    raise_if_cancelled(cancel_event, label)
                    if step.exclusive and not locked and self._lock is not None:
                        stack.enter_context(self._lock)
                        locked = True
                    self._run_step(step, context, run)
                _transition(run, ImportState.DONE)
            except ImportCancelledError:
                run.state = ImportState.CANCELLED
                logger.info("Import %s cancelled", label)
                self._abort(label)
                raise
            except Exception:
                if run.state in (ImportState.FETCHING, ImportState.PERSISTING):
                    run.state = ImportState.FAILED
                self._abort(label)
                raise
        return run

    def _run_step(self, step: Step, context: Any, run: PipelineRun) -> None:
        logger.debug("Import %s: running step %s", run.label, step.name)
        try:
            step.action(context)
        except ImportCancelledError:
            raise
        except Exception as exc:
            run.outcomes.append(StepOutcome(step.name, ok=False, error=exc))
            if step.policy is StepPolicy.FATAL:
                logger.error("Import %s: step %s failed: %s", run.label, step.name, exc)
                raise
            logger.warning(
                "Import %s: step %s failed; continuing without it: %s",
                run.label,
                step.name,
                exc,
                exc_info=True,
            )
            return
        run.outcomes.append(StepOutcome(step.name, ok=True))

    def _abort(self, label: str) -> None:
        if self._on_abort is None:
            return
        try:
            self._on_abort()
        except Exception:
            logger.exception("Import %s: cleanup after failure also failed", label)


def _transition(run: PipelineRun, new_state: ImportState) -> None:
    if new_state not in _TRANSITIONS[run.state]:
        raise InvalidTransitionError(
            f"cannot move import from {run.state.value} to {new_state.value}"
        )
    run.state = new_state


def raise_if_cancelled(cancel_event: threading.Event | None, label: str = "") -> None:
    """Raise :class:`ImportCancelledError` when ``cancel_event`` is set."""

    if cancel_event is not None and cancel_event.is_set():
        raise ImportCancelledError(f"import {label} was cancelled")


__all__ = [
    "ImportCancelledError",
    "ImportPipeline",
    "ImportState",
    "InvalidTransitionError",
    "PipelineRun",
    "Step",
    "StepOutcome",
    "StepPolicy",
    "raise_if_cancelled",
]
