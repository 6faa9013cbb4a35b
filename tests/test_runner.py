import os
import signal
import sys
import threading
import time

import pytest

from stagebuild import buildsystem, meta
from stagebuild.buildsystem import BuildStrategy, OutcomeStatus
from stagebuild.runner import DEADLINE_REASON, INTERRUPT_REASON, Runner
from stagebuild.state import RunnerState, StateStore

from conftest import FakeRunner, component, plan_of


class SlowFake(FakeRunner):
    def run(self, argv, *, cwd, env, log_path=None):
        time.sleep(0.01)
        return super().run(argv, cwd=cwd, env=env, log_path=log_path)


def factory(fake):
    def _make(tracker):
        fake.tracker = tracker
        return fake
    return _make


def statuses(stage):
    return [o.status for o in stage.outcomes]


def dispatched(runner, stage_id=None):
    return [name for ev, sid, name in runner.trace if ev == "dispatch" and (stage_id is None or sid == stage_id)]


def test_scenario_a_success_and_missing_complete(make_src, env, tmp_path):
    fake = FakeRunner()
    plan = plan_of((1, [component("noop", make_src("noop", "CMakeLists.txt")),
                        component("absent", tmp_path / "nowhere")]))
    runner = Runner(plan, env, runner_factory=factory(fake))
    summary = runner.run()
    assert summary.state is RunnerState.COMPLETED
    assert runner.state is RunnerState.COMPLETED
    assert statuses(summary.stage(1)) == [OutcomeStatus.SUCCEEDED, OutcomeStatus.SKIPPED_MISSING]
    assert summary.aborted is None


def test_scenario_b_failure_aborts_before_next_stage(make_src, env):
    fake = FakeRunner(fail_on=[("--build", 1)])
    plan = plan_of((1, [component("igc", make_src("igc", "CMakeLists.txt"))]),
                   (2, [component("xess", make_src("xess", "include/x.h"), meta.HEADER_ONLY)]))
    runner = Runner(plan, env, runner_factory=factory(fake))
    summary = runner.run()
    assert summary.state is RunnerState.ABORTED
    assert (summary.aborted.stage, summary.aborted.component, summary.aborted.phase) == (1, "igc", "build")
    assert summary.stage(2).dispatched == 0
    assert dispatched(runner, 2) == []
    assert runner.current_stage == 1


@pytest.mark.parametrize("how", ["stage-flag", "runner-option"])
def test_best_effort_stage_downgrades_failure(make_src, env, how):
    fake = FakeRunner(fail_on=[("media-driver", 1)])
    stages = ((1, [component("media-driver", make_src("media-driver", "CMakeLists.txt")),
                   component("ok", make_src("ok", "CMakeLists.txt"))]),
              (2, [component("qatlib", make_src("qatlib", "configure"), meta.AUTOTOOLS)]))
    if how == "stage-flag":
        runner = Runner(plan_of(*stages, best_effort=[1]), env, runner_factory=factory(fake))
    else:
        runner = Runner(plan_of(*stages), env, best_effort_stages=[1], runner_factory=factory(fake))
    summary = runner.run()
    assert summary.state is RunnerState.COMPLETED
    s1 = summary.stage(1)
    assert statuses(s1) == [OutcomeStatus.FAILED, OutcomeStatus.SUCCEEDED]
    assert s1.best_effort
    assert len(s1.warnings) == 1 and "media-driver" in s1.warnings[0]
    assert dispatched(runner, 2) == ["qatlib"]


@pytest.mark.parametrize("best_effort", [True, False])
def test_skips_never_abort(make_src, env, tmp_path, best_effort):
    plan = plan_of((1, [component("gone", tmp_path / "gone"),
                        component("odd", make_src("odd", "SConstruct"), "scons")]),
                   (2, [component("next", make_src("next", "x.h"), meta.HEADER_ONLY)]),
                   best_effort=[1] if best_effort else [])
    summary = Runner(plan, env, runner_factory=factory(FakeRunner())).run()
    assert summary.state is RunnerState.COMPLETED
    assert statuses(summary.stage(1)) == [OutcomeStatus.SKIPPED_MISSING, OutcomeStatus.SKIPPED_UNKNOWN_KIND]


def test_stage_ordering_in_trace(make_src, env):
    stages = []
    for sid in (1, 2, 3):
        stages.append((sid, [component(f"c{sid}{i}", make_src(f"c{sid}{i}", "CMakeLists.txt")) for i in range(4)]))
    runner = Runner(plan_of(*stages), env, workers=4, runner_factory=factory(SlowFake()))
    runner.run()
    trace = runner.trace
    last_resolved_2 = max(i for i, (ev, sid, _) in enumerate(trace) if ev == "resolved" and sid == 2)
    first_dispatch_3 = min(i for i, (ev, sid, _) in enumerate(trace) if ev == "dispatch" and sid == 3)
    assert last_resolved_2 < first_dispatch_3
    assert len(dispatched(runner)) == 12


def test_single_worker_dispatches_in_declaration_order(make_src, env):
    names = ["zeta", "alpha", "mid"]
    plan = plan_of((1, [component(n, make_src(n, "CMakeLists.txt")) for n in names]))
    runner = Runner(plan, env, workers=1, runner_factory=factory(FakeRunner()))
    summary = runner.run()
    assert dispatched(runner) == names
    assert [o.name for o in summary.stage(1).outcomes] == names


def test_scenario_c_resume_skips_earlier_stages(make_src, env, tmp_path):
    store = StateStore(tmp_path / "state" / "run-summary.json")
    stages = ((1, [component("xetla", make_src("xetla", "include/x.hpp"), meta.HEADER_ONLY)]),
              (2, [component("oneTBB", make_src("tbb", "CMakeLists.txt"))]),
              (3, [component("perfspect", make_src("perfspect", "setup.py"), meta.PACKAGE_MANAGER)]))
    plan = plan_of(*stages)

    first = Runner(plan, env, store=store, runner_factory=factory(FakeRunner(fail_on=[("--install", 1)])))
    assert first.run().state is RunnerState.ABORTED
    assert store.load().aborted.stage == 2

    runner = Runner(plan, env, store=store, runner_factory=factory(FakeRunner()))
    summary = runner.resume(2)
    assert runner.trace[0] == ("dispatch", 2, "oneTBB")
    assert dispatched(runner, 1) == []
    assert summary.state is RunnerState.COMPLETED
    assert summary.from_stage == 2
    # stage 1 record carried over from the aborted run
    assert statuses(summary.stage(1)) == [OutcomeStatus.SUCCEEDED]
    persisted = store.load()
    assert persisted.state is RunnerState.COMPLETED
    assert [s.status for s in persisted.stages] == ["succeeded"] * 3


def test_to_stage_stops_early(make_src, env):
    plan = plan_of(*((sid, [component(f"c{sid}", make_src(f"c{sid}", "x.h"), meta.HEADER_ONLY)]) for sid in (1, 2, 3)))
    runner = Runner(plan, env, runner_factory=factory(FakeRunner()))
    summary = runner.run(from_stage=2, to_stage=2)
    assert dispatched(runner) == ["c2"]
    assert summary.state is RunnerState.COMPLETED
    assert summary.stage(3).status == "not-run"


def test_summary_persisted_per_stage(make_src, env, tmp_path):
    store = StateStore(tmp_path / "rs.json")
    seen = []

    class Recording(StateStore):
        def save(self, summary):
            seen.append((summary.state, summary.current_stage))
            return store.save(summary)

    plan = plan_of((1, [component("a", make_src("a", "x.h"), meta.HEADER_ONLY)]),
                   (2, [component("b", make_src("b", "x.h"), meta.HEADER_ONLY)]))
    Runner(plan, env, store=Recording(store.path), runner_factory=factory(FakeRunner())).run()
    assert (RunnerState.STAGE_RUNNING, 1) in seen
    assert (RunnerState.STAGE_RUNNING, 2) in seen
    assert seen[-1][0] is RunnerState.COMPLETED
    data = store.load().to_dict()
    assert [c["name"] for s in data["stages"] for c in s["components"]] == ["a", "b"]
    assert data["stages"][0]["components"][0]["artifactPath"].endswith("a/include")


def test_unexpected_strategy_error_becomes_failed(make_src, env, monkeypatch):
    class Broken(BuildStrategy):
        kind = "broken"

        def build(self, component, env, runner):
            raise RuntimeError("kaboom")

    monkeypatch.setitem(buildsystem._STRATEGIES, "broken", Broken())
    plan = plan_of((1, [component("b", make_src("b"), "broken")]))
    summary = Runner(plan, env, runner_factory=factory(FakeRunner())).run()
    assert summary.state is RunnerState.ABORTED
    out = summary.stage(1).outcomes[0]
    assert out.status is OutcomeStatus.FAILED
    assert out.phase == "internal" and "kaboom" in out.error_detail


def test_clean_removes_previous_build_dir(make_src, env):
    stale = env.build_dir("tbb") / "CMakeCache.txt"
    stale.parent.mkdir(parents=True)
    stale.write_text("stale")
    plan = plan_of((1, [component("tbb", make_src("tbb", "CMakeLists.txt"))]))
    Runner(plan, env, clean=True, runner_factory=factory(FakeRunner())).run()
    assert not stale.exists()
    assert env.build_dir("tbb").is_dir()


def test_dry_run_runs_nothing_and_persists_nothing(make_src, env, tmp_path):
    store = StateStore(tmp_path / "rs.json")
    plan = plan_of((1, [component("tbb", make_src("tbb", "CMakeLists.txt")),
                        component("hdr", make_src("hdr", "x.h"), meta.HEADER_ONLY)]))
    summary = Runner(plan, env, dry_run=True, store=store).run()
    assert summary.state is RunnerState.COMPLETED
    assert not env.build_dir("tbb").exists()
    assert not env.install_dir("hdr").exists()
    assert not store.exists()


def test_runner_is_single_use_and_checks_stage_ids(make_src, env):
    plan = plan_of((1, [component("a", make_src("a", "x.h"), meta.HEADER_ONLY)]))
    with pytest.raises(KeyError):
        Runner(plan, env).run(from_stage=7)
    runner = Runner(plan, env, runner_factory=factory(FakeRunner()))
    runner.run()
    with pytest.raises(RuntimeError):
        runner.run()


class Sleeper(BuildStrategy):
    kind = "sleep"

    def build(self, component, env, runner):
        self._workdir(component, env, runner)
        self._phase(runner, "build", [sys.executable, "-c", "import time; time.sleep(60)"],
                    cwd=component.source_path, component=component, env=env)
        return env.build_dir(component.name)


def test_deadline_terminates_and_aborts(make_src, env, monkeypatch):
    monkeypatch.setitem(buildsystem._STRATEGIES, "sleep", Sleeper())
    src = make_src("slow")
    plan = plan_of((1, [component("slow", src, "sleep"), component("queued", src, "sleep")]),
                   (2, [component("later", src, "sleep")]))
    runner = Runner(plan, env, workers=1, deadline=0.5)
    started = time.monotonic()
    summary = runner.run()
    assert time.monotonic() - started < 20
    assert summary.state is RunnerState.ABORTED
    assert summary.aborted.reason == DEADLINE_REASON
    assert (summary.aborted.stage, summary.aborted.component) == (1, "slow")
    assert dispatched(runner) == ["slow"]
    assert summary.stage(1).outcomes[0].status is OutcomeStatus.FAILED
    assert summary.stage(2).dispatched == 0
    assert runner.deadline_expired


def test_interrupt_terminates_running_builds(make_src, env, monkeypatch, tmp_path):
    monkeypatch.setitem(buildsystem._STRATEGIES, "sleep", Sleeper())
    src = make_src("slow")
    plan = plan_of((1, [component("slow", src, "sleep"), component("queued", src, "sleep")]))
    store = StateStore(tmp_path / "rs.json")
    runner = Runner(plan, env, workers=1, store=store)
    timer = threading.Timer(0.7, os.kill, (os.getpid(), signal.SIGINT))
    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(KeyboardInterrupt):
            runner.run()
    finally:
        timer.cancel()
    assert time.monotonic() - started < 20
    assert runner.tracker.cancelled and runner.tracker.reason == INTERRUPT_REASON
    assert dispatched(runner) == ["slow"]
    assert store.load().state is RunnerState.STAGE_RUNNING


@pytest.mark.parametrize("deadline", [0, -1.5])
def test_non_positive_deadline_is_rejected(env, deadline):
    with pytest.raises(ValueError):
        Runner(plan_of((1, [])), env, deadline=deadline)
