"""Tests for constraint_runner module: scheduling, pause/resume and cancellation."""
import asyncio
import logging
import math
import threading

import pytest

from assembly_constraints import Constraint, ConstraintHandler, ConstraintKind, ConstraintRegistry
from assembly_scene import Selection, SelectionKind
from constraint_runner import (
    ConstraintRunner,
    RunnerBusyError,
    RunOptions,
    RunState,
    SolverConfig,
)
from solver_context import clamp_gain, clamp_iterations, normalize_tolerance

TIMEOUT = 5.0


def face(name):
    return Selection(name, SelectionKind.FACE)


def parallel_set(count):
    return [
        Constraint(f"PARA{i + 1}", ConstraintKind.PARALLEL, [face("base:+z"), face("top:+z")])
        for i in range(count)
    ]


def run(coro):
    return asyncio.run(asyncio.wait_for(coro, TIMEOUT))


class Recorder:
    """Collects hook events in call order."""

    def __init__(self):
        self.calls = []
        self.completions = []

    def options(self, **kwargs):
        return RunOptions(
            on_start=lambda e: self.calls.append(("start", None)),
            on_iteration_start=lambda e: self.calls.append(("iteration_start", e.iteration)),
            on_constraint_start=lambda e: self.calls.append(("constraint_start", e.constraint_id)),
            on_constraint_end=lambda e: self.calls.append(("constraint_end", e.result.status)),
            on_constraint_skipped=lambda e: self.calls.append(("skipped", e.constraint_id)),
            on_iteration_complete=lambda e: self.calls.append(("iteration_complete", e.iteration)),
            on_complete=self.completions.append,
            **kwargs,
        )


class TestConfig:

    def test_defaults(self):
        cfg = SolverConfig().normalized()
        assert cfg.tolerance == pytest.approx(1e-4)
        assert cfg.iterations == 1
        assert cfg.rotation_gain == pytest.approx(0.5)
        assert cfg.translation_gain == pytest.approx(0.5)
        assert cfg.iteration_delay == 0.0
        cfg.validate()

    def test_debug_mode_delay(self):
        assert SolverConfig(debug_mode=True).normalized().iteration_delay == pytest.approx(0.5)
        assert SolverConfig(debug_mode=True, iteration_delay=0.1).normalized().iteration_delay == pytest.approx(0.1)

    def test_clamping(self):
        cfg = SolverConfig(
            tolerance=-0.01, iterations=3.7, rotation_gain=5.0,
            translation_gain=math.nan, iteration_delay=-1.0,
        ).normalized()
        assert cfg.tolerance == pytest.approx(0.01)
        assert cfg.iterations == 3
        assert cfg.rotation_gain == 1.0
        assert cfg.translation_gain == pytest.approx(0.5)
        assert cfg.iteration_delay == 0.0

    @pytest.mark.parametrize("kwargs", [
        {"tolerance": 0.0},
        {"iterations": 0},
        {"rotation_gain": 1.5},
        {"translation_gain": -0.1},
        {"iteration_delay": -1.0},
    ])
    def test_validate_rejects(self, kwargs):
        with pytest.raises(ValueError):
            SolverConfig(**kwargs).validate()

    def test_context_helpers(self):
        assert clamp_gain("0.3", 0.5) == pytest.approx(0.3)
        assert clamp_gain(None, 0.5) == pytest.approx(0.5)
        assert clamp_iterations(0) == 1
        assert clamp_iterations("12") == 12
        assert normalize_tolerance(math.inf) == pytest.approx(1e-4)


class TestRunLoop:

    def test_hook_order(self, tilted_scene):
        recorder = Recorder()
        runner = ConstraintRunner(tilted_scene.make_context())
        constraints = parallel_set(2)
        results = run(runner.run(constraints, 2, recorder.options()))

        assert recorder.calls == [
            ("start", None),
            ("iteration_start", 0),
            ("constraint_start", "PARA1"),
            ("constraint_end", "adjusted"),
            ("constraint_start", "PARA2"),
            ("constraint_end", "adjusted"),
            ("iteration_complete", 0),
            ("iteration_start", 1),
            ("constraint_start", "PARA1"),
            ("constraint_end", "adjusted"),
            ("constraint_start", "PARA2"),
            ("constraint_end", "adjusted"),
            ("iteration_complete", 1),
        ]
        assert len(recorder.completions) == 1
        done = recorder.completions[0]
        assert done.aborted is False
        assert done.iterations_completed == 2
        assert [r.constraint_id for r in results] == ["PARA1", "PARA2"]
        assert all(r.iteration == 1 for r in results)
        assert constraints[0].last_result is results[0]

    def test_constraints_see_earlier_corrections(self, tilted_scene):
        runner = ConstraintRunner(tilted_scene.make_context(rotation_gain=1.0))
        constraints = parallel_set(2)
        run(runner.run(constraints, 1))
        first, second = constraints[0].last_result, constraints[1].last_result
        assert second.angle_error == pytest.approx(first.angle_error - math.radians(20.0))

    def test_run_converges(self, tilted_scene):
        runner = ConstraintRunner(tilted_scene.make_context())
        results = run(runner.run(parallel_set(1), 30))
        assert results[0].status == "satisfied"

    def test_empty_constraints_complete_once(self, aligned_scene):
        recorder = Recorder()
        runner = ConstraintRunner(aligned_scene.make_context())
        results = run(runner.run([], 10, recorder.options()))
        assert results == []
        assert recorder.calls == [("start", None)]
        assert len(recorder.completions) == 1
        assert recorder.completions[0].aborted is False
        assert recorder.completions[0].iterations_completed == 0

    def test_status_never_halts_run(self, make_scene):
        scene = make_scene(tilt_deg=30.0, top_fixed=True)
        recorder = Recorder()
        runner = ConstraintRunner(scene.make_context())
        run(runner.run(parallel_set(1), 4, recorder.options()))
        statuses = [status for name, status in recorder.calls if name == "constraint_end"]
        assert statuses == ["blocked"] * 4
        assert recorder.completions[0].iterations_completed == 4

    def test_unknown_kind_is_skipped_with_error(self, tilted_scene):
        recorder = Recorder()
        runner = ConstraintRunner(tilted_scene.make_context())
        constraints = [Constraint("X1", "distance", [face("base:+z"), face("top:+z")])] + parallel_set(1)
        results = run(runner.run(constraints, 1, recorder.options()))
        assert ("skipped", "X1") in recorder.calls
        assert results[0].status == "error"
        assert "Unknown constraint type" in results[0].message
        assert results[1].status == "adjusted"

    def test_raising_kind_becomes_error(self, tilted_scene):
        def explode(constraint, context):
            raise RuntimeError("kaboom")

        registry = ConstraintRegistry()
        registry.register(ConstraintHandler(kind="explosive", short_name="BOOM", evaluate=explode))
        runner = ConstraintRunner(tilted_scene.make_context(), registry)
        constraints = [Constraint("BOOM1", "explosive")] + parallel_set(1)
        results = run(runner.run(constraints, 2))
        assert results[0].status == "error"
        assert isinstance(results[0].exception, RuntimeError)
        assert results[1].status == "adjusted"

    def test_failing_hook_does_not_end_run(self, tilted_scene):
        completions = []

        def bad_hook(event):
            raise ValueError("hook broke")

        options = RunOptions(on_iteration_start=bad_hook, on_complete=completions.append)
        runner = ConstraintRunner(tilted_scene.make_context())
        run(runner.run(parallel_set(1), 3, options))
        assert completions[0].iterations_completed == 3
        assert completions[0].aborted is False

    def test_async_iteration_hook_is_awaited(self, tilted_scene):
        seen = []

        async def refresh(event):
            await asyncio.sleep(0)
            seen.append(event.iteration)

        runner = ConstraintRunner(tilted_scene.make_context())
        run(runner.run(parallel_set(1), 3, RunOptions(on_iteration_complete=refresh)))
        assert seen == [0, 1, 2]

    def test_stop_when_settled(self, aligned_scene):
        completions = []
        options = RunOptions(stop_when_settled=True, on_complete=completions.append)
        runner = ConstraintRunner(aligned_scene.make_context())
        run(runner.run(parallel_set(1), 50, options))
        assert completions[0].iterations_completed == 1

    @pytest.mark.parametrize("kind", [ConstraintKind.ANTI_PARALLEL, "anti_parallel", "antiparallel", "Anti-Parallel", "oppose"])
    def test_anti_parallel_aliases_oppose_normals(self, aligned_scene, kind):
        runner = ConstraintRunner(aligned_scene.make_context())
        constraint = Constraint("ANTI1", kind, [face("base:+z"), face("top:-z")])
        results = run(runner.run([constraint], 1))
        assert results[0].status == "satisfied"
        assert results[0].angle_error == pytest.approx(0.0, abs=1e-9)
        assert aligned_scene.updated_components == set()

    def test_status_outside_taxonomy_is_logged(self, aligned_scene, caplog):
        registry = ConstraintRegistry()
        registry.register(ConstraintHandler(
            kind="noop_kind", short_name="NOOP",
            evaluate=lambda constraint, context: {"ok": True, "status": "noop"},
        ))
        runner = ConstraintRunner(aligned_scene.make_context(), registry)
        with caplog.at_level(logging.WARNING, logger="constraint_runner"):
            results = run(runner.run([Constraint("NOOP1", "noop_kind")], 1))
        assert results[0].status == "noop"
        assert "outside its noop_kind taxonomy" in caplog.text

    def test_builtin_statuses_are_not_logged(self, tilted_scene, caplog):
        runner = ConstraintRunner(tilted_scene.make_context())
        with caplog.at_level(logging.WARNING, logger="constraint_runner"):
            run(runner.run(parallel_set(1), 3))
        assert "taxonomy" not in caplog.text


class TestCancellation:

    def test_abort_while_paused(self, tilted_scene):
        recorder = Recorder()
        runner = ConstraintRunner(tilted_scene.make_context())

        async def scenario():
            handle = await runner.start(parallel_set(5), 100, recorder.options(pause_enabled=True))
            await handle.wait_paused()
            assert handle.state is RunState.PAUSED
            assert handle.run.iterations_completed == 1
            handle.abort()
            results = await handle.wait()
            return handle, results

        handle, results = run(scenario())
        assert handle.state is RunState.ABORTED
        assert handle.run.aborted
        assert len(recorder.completions) == 1
        assert recorder.completions[0].aborted is True
        assert recorder.completions[0].iterations_completed == 1
        assert len(results) == 5
        assert runner.active is None

    def test_resume_continues(self, tilted_scene):
        runner = ConstraintRunner(tilted_scene.make_context())

        async def scenario():
            handle = await runner.start(parallel_set(1), 3, RunOptions(pause_enabled=True))
            for expected in (1, 2):
                await handle.wait_paused()
                assert handle.run.iterations_completed == expected
                handle.resume()
            await handle.wait()
            return handle

        handle = run(scenario())
        assert handle.state is RunState.COMPLETED
        assert handle.run.iterations_completed == 3

    def test_disabling_pause_releases_gate(self, tilted_scene):
        runner = ConstraintRunner(tilted_scene.make_context())

        async def scenario():
            handle = await runner.start(parallel_set(1), 5, RunOptions(pause_enabled=True))
            await handle.wait_paused()
            handle.set_pause_enabled(False)
            await handle.wait()
            return handle

        handle = run(scenario())
        assert handle.run.iterations_completed == 5

    def test_external_abort_signal(self, tilted_scene):
        signal = threading.Event()
        completions = []

        def trip(event):
            if event.iteration == 1:
                signal.set()

        options = RunOptions(abort_signal=signal, on_iteration_complete=trip, on_complete=completions.append)
        runner = ConstraintRunner(tilted_scene.make_context())
        run(runner.run(parallel_set(2), 10, options))
        assert completions[0].aborted is True
        assert completions[0].iterations_completed == 2

    @pytest.mark.parametrize("signal_type", ["asyncio", "threading"])
    def test_abort_signal_releases_pause(self, tilted_scene, signal_type):
        recorder = Recorder()
        runner = ConstraintRunner(tilted_scene.make_context())

        async def scenario():
            signal = asyncio.Event() if signal_type == "asyncio" else threading.Event()
            options = recorder.options(pause_enabled=True, abort_signal=signal)
            handle = await runner.start(parallel_set(5), 100, options)
            await handle.wait_paused()
            assert handle.state is RunState.PAUSED
            signal.set()
            await asyncio.wait_for(handle.wait(), 1.0)
            return handle

        handle = run(scenario())
        assert handle.state is RunState.ABORTED
        assert recorder.completions[0].aborted is True
        assert recorder.completions[0].iterations_completed == 1
        assert runner.active is None

    def test_abort_after_last_iteration_is_not_reported(self, tilted_scene):
        completions = []
        holder = {}

        def late_abort(event):
            if event.iteration == 2:
                holder["handle"].abort()

        async def scenario():
            options = RunOptions(on_iteration_complete=late_abort, on_complete=completions.append)
            holder["handle"] = await runner.start(parallel_set(1), 3, options)
            await holder["handle"].wait()
            return holder["handle"]

        runner = ConstraintRunner(tilted_scene.make_context())
        handle = run(scenario())
        assert handle.state is RunState.COMPLETED
        assert completions[0].aborted is False
        assert completions[0].iterations_completed == 3

    def test_abort_between_constraints(self, tilted_scene):
        runner = ConstraintRunner(tilted_scene.make_context())
        completions = []
        evaluated = []

        async def scenario():
            holder = {}

            def stop_after_first(event):
                evaluated.append(event.constraint_id)
                holder["handle"].abort()

            options = RunOptions(on_constraint_end=stop_after_first, on_complete=completions.append)
            holder["handle"] = await runner.start(parallel_set(3), 10, options)
            return await holder["handle"].wait()

        results = run(scenario())
        assert evaluated == ["PARA1"]
        assert completions[0].aborted is True
        assert completions[0].iterations_completed == 0
        assert results[1].message == "Constraint was not evaluated."

    def test_start_stops_previous_run(self, tilted_scene):
        runner = ConstraintRunner(tilted_scene.make_context())
        first_done = []

        async def scenario():
            first = await runner.start(
                parallel_set(1), 100,
                RunOptions(pause_enabled=True, on_complete=first_done.append),
            )
            await first.wait_paused()
            second = await runner.start(parallel_set(1), 2)
            assert first.state is RunState.ABORTED
            await second.wait()
            return first, second

        first, second = run(scenario())
        assert first_done[0].aborted is True
        assert second.state is RunState.COMPLETED

    def test_launch_while_busy_raises(self, tilted_scene):
        runner = ConstraintRunner(tilted_scene.make_context())

        async def scenario():
            handle = await runner.start(parallel_set(1), 10, RunOptions(pause_enabled=True))
            await handle.wait_paused()
            with pytest.raises(RunnerBusyError):
                runner.launch(parallel_set(1), 1)
            await runner.stop()
            assert not runner.busy

        run(scenario())

    def test_runners_are_independent(self, make_scene):
        scene_a, scene_b = make_scene(tilt_deg=30.0), make_scene(tilt_deg=30.0)
        runner_a = ConstraintRunner(scene_a.make_context())
        runner_b = ConstraintRunner(scene_b.make_context())

        async def scenario():
            paused = await runner_a.start(parallel_set(1), 10, RunOptions(pause_enabled=True))
            await paused.wait_paused()
            results = await runner_b.run(parallel_set(1), 3)
            paused.abort()
            await paused.wait()
            return results

        results = run(scenario())
        assert results[0].iteration == 2
