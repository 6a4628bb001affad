"""
Iterative constraint runner with cooperative cancellation and pause/resume.

A run evaluates every constraint, in stored order, once per iteration.
Constraints within a pass see the transforms already changed by earlier
constraints in the same pass, so evaluation is strictly sequential.

Suspension points: hooks that return awaitables, an optional per-iteration
delay, the optional pause gate between iterations, and whatever the host's
``apply_rotation`` awaits. Cancellation is observed only between
constraints and at iteration boundaries; an evaluation already in flight
always finishes.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from assembly_constraints import Constraint, ConstraintRegistry, evaluate_constraint
from constraint_status import ConstraintRunResult, ConstraintStatus, finalize_result
from solver_context import (
    DEFAULT_ROTATION_GAIN,
    DEFAULT_SOLVER_ITERATIONS,
    DEFAULT_SOLVER_TOLERANCE,
    DEFAULT_TRANSLATION_GAIN,
    SolverContext,
    clamp_gain,
    clamp_iterations,
    normalize_tolerance,
    to_finite_number,
)

logger = logging.getLogger(__name__)

DEBUG_ITERATION_DELAY = 0.5  # seconds
ABORT_POLL_INTERVAL = 0.02  # seconds, for abort signals without an awaitable wait()


class RunnerBusyError(RuntimeError):
    """A run was launched while another one is still live."""
    pass


@dataclass
class SolverConfig:
    """Solver settings a host collects from its user."""
    tolerance: float = DEFAULT_SOLVER_TOLERANCE
    iterations: int = DEFAULT_SOLVER_ITERATIONS
    rotation_gain: float = DEFAULT_ROTATION_GAIN
    translation_gain: float = DEFAULT_TRANSLATION_GAIN
    iteration_delay: Optional[float] = None  # seconds
    debug_mode: bool = False
    pause_enabled: bool = False
    stop_when_settled: bool = False

    def normalized(self) -> "SolverConfig":
        """Copy with every value clamped into its usable range."""
        delay = self.iteration_delay
        if delay is None:
            delay = DEBUG_ITERATION_DELAY if self.debug_mode else 0.0
        return replace(
            self,
            tolerance=normalize_tolerance(self.tolerance),
            iterations=clamp_iterations(self.iterations),
            rotation_gain=clamp_gain(
                to_finite_number(self.rotation_gain, DEFAULT_ROTATION_GAIN), DEFAULT_ROTATION_GAIN),
            translation_gain=clamp_gain(
                to_finite_number(self.translation_gain, DEFAULT_TRANSLATION_GAIN), DEFAULT_TRANSLATION_GAIN),
            iteration_delay=max(0.0, to_finite_number(delay, 0.0)),
        )

    def validate(self):
        """Raise ValueError when a value is outside its range."""
        if not (isinstance(self.tolerance, (int, float)) and self.tolerance > 0):
            raise ValueError(f"tolerance must be positive, got {self.tolerance!r}")
        if not isinstance(self.iterations, int) or self.iterations < 1:
            raise ValueError(f"iterations must be an integer >= 1, got {self.iterations!r}")
        for name in ("rotation_gain", "translation_gain"):
            value = getattr(self, name)
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must lie in [0, 1], got {value!r}")
        if self.iteration_delay is not None and self.iteration_delay < 0:
            raise ValueError(f"iteration_delay must be >= 0, got {self.iteration_delay!r}")

    def run_options(self, **hooks) -> "RunOptions":
        cfg = self.normalized()
        return RunOptions(
            pause_enabled=cfg.pause_enabled,
            iteration_delay=cfg.iteration_delay,
            stop_when_settled=cfg.stop_when_settled,
            **hooks,
        )


class RunState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RunEvent:
    """Payload handed to every hook; fields not relevant to a hook stay None."""
    max_iterations: int
    iteration: Optional[int] = None
    index: Optional[int] = None
    constraint_id: Optional[str] = None
    kind: Optional[str] = None
    total_constraints: int = 0
    result: Optional[ConstraintRunResult] = None
    applied: Optional[bool] = None
    aborted: Optional[bool] = None
    iterations_completed: Optional[int] = None
    results: List[ConstraintRunResult] = field(default_factory=list)


Hook = Optional[Callable[[RunEvent], Any]]


@dataclass
class RunOptions:
    """
    Hooks and scheduling switches for one run.

    Hooks may be plain callables or coroutine functions; awaitable returns
    are awaited before the run continues. ``abort_signal`` is any object
    with ``is_set()`` (asyncio.Event, threading.Event).
    """
    on_start: Hook = None
    on_iteration_start: Hook = None
    on_constraint_start: Hook = None
    on_constraint_end: Hook = None
    on_constraint_skipped: Hook = None
    on_iteration_complete: Hook = None
    on_complete: Hook = None
    abort_signal: Any = None
    pause_enabled: bool = False
    iteration_delay: float = 0.0  # seconds
    stop_when_settled: bool = False


@dataclass
class SolverRun:
    """Mutable state of one live run."""
    requested_iterations: int
    max_iterations: int
    current_iteration: int = 0
    iterations_completed: int = 0
    current_constraint_id: Optional[str] = None
    aborted: bool = False
    paused: bool = False
    state: RunState = RunState.IDLE
    continuation_gate: Optional[asyncio.Future] = None


class RunHandle:
    """Controls for a launched run."""

    def __init__(self, run: SolverRun, options: RunOptions):
        self.run = run
        self.options = options
        self.results: List[ConstraintRunResult] = []
        self.task: Optional[asyncio.Task] = None
        self._abort_requested = False
        self._paused_event = asyncio.Event()

    @property
    def state(self) -> RunState:
        return self.run.state

    @property
    def done(self) -> bool:
        return self.run.state in (RunState.COMPLETED, RunState.ABORTED)

    @property
    def abort_requested(self) -> bool:
        if self._abort_requested:
            return True
        signal = self.options.abort_signal
        return bool(signal is not None and signal.is_set())

    def abort(self):
        """Request cancellation; also releases a pending pause gate."""
        self._abort_requested = True
        self._release_gate()

    def resume(self):
        self._release_gate()

    def set_pause_enabled(self, enabled: bool):
        self.options.pause_enabled = bool(enabled)
        if not enabled:
            self._release_gate()

    async def wait(self) -> List[ConstraintRunResult]:
        """Wait for the run to finish and return the final per-constraint results."""
        if self.task is not None:
            await asyncio.shield(self.task)
        return self.results

    async def wait_paused(self):
        """Wait until the run suspends on its pause gate (or finishes)."""
        await self._paused_event.wait()

    async def _pause(self):
        loop = asyncio.get_running_loop()
        gate = loop.create_future()
        self.run.continuation_gate = gate
        self.run.paused = True
        self.run.state = RunState.PAUSED
        self._paused_event.set()
        signal = self.options.abort_signal
        watcher = None
        if signal is not None:
            watcher = loop.create_task(self._watch_abort_signal(signal))
        try:
            await gate
        finally:
            if watcher is not None:
                watcher.cancel()
            self.run.continuation_gate = None
            self.run.paused = False
            self._paused_event.clear()
            if self.run.state is RunState.PAUSED:
                self.run.state = RunState.RUNNING

    async def _watch_abort_signal(self, signal):
        """Release the pause gate once an external abort signal is set."""
        if isinstance(signal, asyncio.Event):
            await signal.wait()
        else:
            while not signal.is_set():
                await asyncio.sleep(ABORT_POLL_INTERVAL)
        self._release_gate()

    def _release_gate(self):
        gate = self.run.continuation_gate
        if gate is not None and not gate.done():
            gate.set_result(None)
            self._paused_event.clear()


class ConstraintRunner:
    """
    Drives constraints through repeated passes against one host context.

    A runner permits one live run at a time. ``start`` stops any previous run
    first; ``launch`` refuses with RunnerBusyError instead.
    """

    def __init__(self, context: SolverContext, registry: Optional[ConstraintRegistry] = None):
        self.context = context
        self.registry = registry or ConstraintRegistry()
        self.active: Optional[RunHandle] = None

    @property
    def busy(self) -> bool:
        return self.active is not None

    def launch(
        self,
        constraints: Sequence[Constraint],
        iterations: int,
        options: Optional[RunOptions] = None,
    ) -> RunHandle:
        """Schedule a run on the running event loop and return its handle.

        Raises:
            RunnerBusyError: a previous run is still live.
        """
        if self.busy:
            raise RunnerBusyError("A solver run is already active; stop it first.")
        total = clamp_iterations(iterations)
        handle = RunHandle(SolverRun(requested_iterations=iterations, max_iterations=total), options or RunOptions())
        self.active = handle
        handle.task = asyncio.get_running_loop().create_task(self._execute(handle, list(constraints)))
        return handle

    async def start(
        self,
        constraints: Sequence[Constraint],
        iterations: int,
        options: Optional[RunOptions] = None,
    ) -> RunHandle:
        """Stop any live run, then launch a new one."""
        await self.stop()
        return self.launch(constraints, iterations, options)

    async def stop(self):
        """Abort the live run, if any, and wait for it to wind down."""
        handle = self.active
        if handle is None:
            return
        handle.abort()
        await handle.wait()

    async def run(
        self,
        constraints: Sequence[Constraint],
        iterations: int,
        options: Optional[RunOptions] = None,
    ) -> List[ConstraintRunResult]:
        """Start a run and wait for its results."""
        handle = await self.start(constraints, iterations, options)
        return await handle.wait()

    # ─── Run loop ────────────────────────────────────────────────────────────

    async def _execute(self, handle: RunHandle, constraints: List[Constraint]):
        try:
            return await self._drive(handle, constraints)
        finally:
            if self.active is handle:
                self.active = None

    async def _drive(self, handle: RunHandle, constraints: List[Constraint]):
        run = handle.run
        options = handle.options
        total = len(constraints)
        latest: Dict[int, ConstraintRunResult] = {}
        broke_on_abort = False
        run.state = RunState.RUNNING

        logger.info("Solver run started: %d constraint(s), %d iteration(s)", total, run.max_iterations)
        try:
            await self._call_hook(options.on_start, RunEvent(
                max_iterations=run.max_iterations, total_constraints=total,
            ))

            for iteration in range(run.max_iterations if constraints else 0):
                if handle.abort_requested:
                    broke_on_abort = True
                    break
                run.current_iteration = iteration
                run.current_constraint_id = None
                await self._call_hook(options.on_iteration_start, RunEvent(
                    max_iterations=run.max_iterations, iteration=iteration, total_constraints=total,
                ))
                context = self.context.with_iteration(iteration, run.max_iterations)

                iteration_applied = False
                for index, constraint in enumerate(constraints):
                    if handle.abort_requested:
                        broke_on_abort = True
                        break
                    result = await self._step(handle, constraint, index, context, total)
                    latest[index] = result
                    iteration_applied = iteration_applied or result.applied
                if broke_on_abort:
                    break

                run.iterations_completed = iteration + 1
                await self._call_hook(options.on_iteration_complete, RunEvent(
                    max_iterations=run.max_iterations,
                    iteration=iteration,
                    total_constraints=total,
                    applied=iteration_applied,
                    iterations_completed=run.iterations_completed,
                ))

                if options.stop_when_settled and not iteration_applied:
                    logger.info("Solver settled after %d iteration(s)", run.iterations_completed)
                    break
                if iteration + 1 >= run.max_iterations:
                    break
                if options.iteration_delay > 0 and not handle.abort_requested:
                    await asyncio.sleep(options.iteration_delay)
                if options.pause_enabled and not handle.abort_requested:
                    await handle._pause()
        finally:
            run.aborted = broke_on_abort
            run.current_constraint_id = None
            run.state = RunState.ABORTED if run.aborted else RunState.COMPLETED
            handle._paused_event.set()
            handle.results = [
                latest.get(index) or self._not_evaluated(constraint)
                for index, constraint in enumerate(constraints)
            ]

        if run.aborted:
            logger.info("Solver run aborted after %d iteration(s)", run.iterations_completed)
        else:
            logger.info("Solver run completed: %d iteration(s)", run.iterations_completed)
        await self._call_hook(options.on_complete, RunEvent(
            max_iterations=run.max_iterations,
            total_constraints=total,
            aborted=run.aborted,
            iterations_completed=run.iterations_completed,
            results=list(handle.results),
        ))
        return handle.results

    async def _step(self, handle: RunHandle, constraint: Constraint, index: int,
                    context: SolverContext, total: int) -> ConstraintRunResult:
        run = handle.run
        options = handle.options
        iteration = run.current_iteration
        event = RunEvent(
            max_iterations=run.max_iterations,
            iteration=iteration,
            index=index,
            constraint_id=constraint.id,
            kind=constraint.kind_name,
            total_constraints=total,
        )

        handler = self.registry.get_safe(constraint.kind)
        if handler is None:
            result = finalize_result(ConstraintRunResult(
                ok=False,
                status=ConstraintStatus.ERROR.value,
                message=f"Unknown constraint type: {constraint.kind_name}",
            ), iteration=iteration)
            self._stamp(result, constraint)
            await self._call_hook(options.on_constraint_skipped, event)
            return result

        run.current_constraint_id = constraint.id
        await self._call_hook(options.on_constraint_start, event)
        try:
            raw = await evaluate_constraint(constraint, context, self.registry)
        except Exception as exc:
            logger.warning("Constraint %s evaluation failed: %s", constraint.id, exc)
            raw = ConstraintRunResult(
                ok=False,
                status=ConstraintStatus.ERROR.value,
                message=str(exc) or "Constraint evaluation failed.",
                exception=exc,
            )
        result = finalize_result(raw, iteration=iteration)
        self._stamp(result, constraint)
        if result.exception is None and result.status_enum not in handler.statuses:
            logger.warning(
                "Constraint %s reported status %r outside its %s taxonomy",
                constraint.id, result.status, handler.kind,
            )
        logger.debug("[%d] %s -> %s %s", iteration, constraint.id, result.status, result.message)

        event.result = result
        await self._call_hook(options.on_constraint_end, event)
        return result

    @staticmethod
    def _stamp(result: ConstraintRunResult, constraint: Constraint):
        result.constraint_id = constraint.id
        result.kind = constraint.kind_name
        constraint.last_result = result

    @staticmethod
    def _not_evaluated(constraint: Constraint) -> ConstraintRunResult:
        result = finalize_result(ConstraintRunResult(
            ok=False,
            status=ConstraintStatus.PENDING.value,
            message="Constraint was not evaluated.",
        ))
        result.constraint_id = constraint.id
        result.kind = constraint.kind_name
        return result

    @staticmethod
    async def _call_hook(hook: Hook, event: RunEvent):
        if hook is None:
            return
        try:
            outcome = hook(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("Solver hook %s failed: %s", getattr(hook, "__name__", hook), exc)
