# stagebuild/runner.py
# -*- coding: utf-8 -*-
"""
runner.py - staged execution of a BuildPlan

Features:
 - Stages run strictly in order; components inside a stage run in a
   ThreadPoolExecutor bounded by `workers`, dispatched in declaration order
 - Fail-fast by default; best-effort stages downgrade failures to warnings
 - Overall deadline: queued components never start, in-flight processes are
   terminated, the plan aborts with reason "deadline exceeded"
 - Resume from a stage, carrying earlier stage records over from the last
   persisted summary
 - Summary persisted after every stage
 - Execution trace (dispatch/resolved events) for inspection
"""

from __future__ import annotations

import shutil
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from copy import deepcopy
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from stagebuild.buildsystem import (
    BuildOutcome,
    CommandRunner,
    OutcomeStatus,
    ProcessTracker,
    execute_component,
)
from stagebuild.logging import get_logger
from stagebuild.meta import BuildPlan, ComponentDescriptor, Stage
from stagebuild.state import (
    STAGE_FAILED,
    STAGE_OK,
    STAGE_RUNNING,
    STAGE_WARNINGS,
    AbortInfo,
    RunnerState,
    RunSummary,
    StageResult,
    StateError,
    StateStore,
)
from stagebuild.toolchain import Environment

logger = get_logger("runner")

DEADLINE_REASON = "deadline exceeded"
INTERRUPT_REASON = "interrupted"

RunnerFactory = Callable[[ProcessTracker], CommandRunner]

class Runner:
    def __init__(
        self,
        plan: BuildPlan,
        env: Environment,
        *,
        workers: Optional[int] = None,
        best_effort_stages: Iterable[int] = (),
        dry_run: bool = False,
        deadline: Optional[float] = None,
        store: Optional[StateStore] = None,
        clean: bool = False,
        runner_factory: Optional[RunnerFactory] = None,
    ):
        self.plan = plan
        self.env = env
        self.workers = max(1, int(workers or env.jobs))
        self.best_effort_stages = set(int(s) for s in best_effort_stages)
        self.dry_run = dry_run
        if deadline is not None and deadline <= 0:
            raise ValueError(f"deadline must be a positive number of seconds, got {deadline}")
        self.deadline = deadline
        self.store = store
        self.clean = clean
        self.tracker = ProcessTracker()
        if runner_factory is not None:
            self.command_runner = runner_factory(self.tracker)
        else:
            self.command_runner = CommandRunner(self.tracker, dry_run=dry_run, tail_lines=env.tail_lines)

        self.state = RunnerState.NOT_STARTED
        self.current_stage: Optional[int] = None
        self.summary: Optional[RunSummary] = None
        self._trace: List[Tuple[str, int, str]] = []
        self._trace_lock = threading.Lock()
        self._expired = threading.Event()
        self._timer: Optional[threading.Timer] = None

    # ------------------
    # observability
    # ------------------
    @property
    def trace(self) -> List[Tuple[str, int, str]]:
        """Snapshot of ('dispatch' | 'resolved', stage_id, component_name) events in order."""
        with self._trace_lock:
            return list(self._trace)

    def _record(self, event: str, stage_id: int, name: str) -> None:
        with self._trace_lock:
            self._trace.append((event, stage_id, name))

    def is_best_effort(self, stage: Stage) -> bool:
        return stage.best_effort or stage.id in self.best_effort_stages

    @property
    def deadline_expired(self) -> bool:
        return self._expired.is_set()

    # ------------------
    # entry points
    # ------------------
    def resume(self, from_stage: int) -> RunSummary:
        return self.run(from_stage=from_stage)

    def run(self, from_stage: Optional[int] = None, to_stage: Optional[int] = None) -> RunSummary:
        if self.state is not RunnerState.NOT_STARTED:
            raise RuntimeError(f"runner already used (state={self.state.value})")
        ids = self.plan.stage_ids()
        if from_stage is not None and from_stage not in ids:
            raise KeyError(f"unknown stage {from_stage}")
        if to_stage is not None and to_stage not in ids:
            raise KeyError(f"unknown stage {to_stage}")

        summary = RunSummary(from_stage=from_stage)
        previous = self._previous_summary() if from_stage is not None else None
        selected = {s.id for s in self.plan.select(from_stage, to_stage)}
        for stage in self.plan.stages:
            carried = previous.stage(stage.id) if previous and from_stage is not None and stage.id < from_stage else None
            if carried is not None:
                summary.stages.append(deepcopy(carried))
            else:
                summary.stages.append(StageResult(stage.id, stage.label, self.is_best_effort(stage)))
        self.summary = summary

        self._start_deadline()
        try:
            for stage in self.plan.stages:
                if stage.id not in selected:
                    continue
                if self._expired.is_set():
                    self._abort(summary, AbortInfo(stage.id, reason=DEADLINE_REASON))
                    break
                self.state = RunnerState.STAGE_RUNNING
                self.current_stage = stage.id
                summary.state = self.state
                summary.current_stage = stage.id
                result = summary.stage(stage.id)
                result.status = STAGE_RUNNING
                self._persist(summary)

                abort = self._run_stage(stage, result)
                self._persist(summary)
                if abort is not None:
                    self._abort(summary, abort)
                    break
            else:
                self.state = RunnerState.COMPLETED
                summary.state = self.state
                logger.info("plan completed")
        except KeyboardInterrupt:
            logger.error("run interrupted during stage %s", self.current_stage)
            raise
        finally:
            self._stop_deadline()
            self._persist(summary)
        return summary

    # ------------------
    # internals
    # ------------------
    def _previous_summary(self) -> Optional[RunSummary]:
        if self.store is None:
            return None
        try:
            return self.store.load()
        except StateError as e:
            logger.warning("ignoring previous run summary: %s", e)
            return None

    def _persist(self, summary: RunSummary) -> None:
        if self.store is None or self.dry_run:
            return
        try:
            self.store.save(summary)
        except OSError as e:
            logger.error("cannot write run summary %s: %s", self.store.path, e)

    def _abort(self, summary: RunSummary, info: AbortInfo) -> None:
        self.state = RunnerState.ABORTED
        summary.state = self.state
        summary.aborted = info
        logger.error("plan aborted at stage %s%s: %s", info.stage,
                     f" ({info.component})" if info.component else "", info.reason)

    def _start_deadline(self) -> None:
        if self.deadline is None:
            return
        self._timer = threading.Timer(float(self.deadline), self._on_deadline)
        self._timer.daemon = True
        self._timer.start()

    def _stop_deadline(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_deadline(self) -> None:
        logger.warning("deadline of %ss reached, cancelling running builds", self.deadline)
        self._expired.set()
        self.tracker.cancel(DEADLINE_REASON)

    def _clean(self, component: ComponentDescriptor) -> None:
        bdir = self.env.build_dir(component.name)
        if not bdir.exists():
            return
        if self.dry_run:
            logger.info("[dry-run] would remove %s", bdir)
            return
        try:
            shutil.rmtree(bdir)
            logger.info("%s: removed %s", component.name, bdir)
        except OSError as e:
            logger.warning("%s: cannot clean %s: %s", component.name, bdir, e)

    def _execute(self, stage: Stage, component: ComponentDescriptor) -> Optional[BuildOutcome]:
        if self._expired.is_set() or self.tracker.cancelled:
            return None
        self._record("dispatch", stage.id, component.name)
        started = time.monotonic()
        if self.clean:
            self._clean(component)
        try:
            outcome = execute_component(component, self.env, self.command_runner)
        except Exception as e:
            logger.exception("%s: unexpected error", component.name)
            outcome = BuildOutcome(component.name, OutcomeStatus.FAILED, error_detail=f"internal error: {e}",
                                   phase="internal", duration=time.monotonic() - started)
        self._record("resolved", stage.id, component.name)
        return outcome

    def _run_stage(self, stage: Stage, result: StageResult) -> Optional[AbortInfo]:
        best_effort = self.is_best_effort(stage)
        logger.info("stage %s: %s (%d components%s)", stage.id, stage.label, len(stage),
                    ", best-effort" if best_effort else "")
        resolved: Dict[str, BuildOutcome] = {}
        with ThreadPoolExecutor(max_workers=self.workers) as ex:
            futures = {ex.submit(self._execute, stage, c): c for c in stage.components}
            try:
                for fut in as_completed(futures):
                    comp = futures[fut]
                    outcome = fut.result()
                    if outcome is not None:
                        resolved[comp.name] = outcome
            except BaseException:
                # children run in their own session and never see the terminal's SIGINT
                self.tracker.cancel(INTERRUPT_REASON)
                raise

        result.outcomes = [resolved[c.name] for c in stage.components if c.name in resolved]
        failed = [o for o in result.outcomes if o.failed]
        for o in result.outcomes:
            if o.status is OutcomeStatus.SKIPPED_MISSING:
                logger.info("stage %s: %s skipped (%s)", stage.id, o.name, o.skip_reason)
            elif o.status is OutcomeStatus.SKIPPED_UNKNOWN_KIND:
                logger.warning("stage %s: %s skipped (%s)", stage.id, o.name, o.skip_reason)

        if self._expired.is_set():
            result.status = STAGE_FAILED
            first = failed[0] if failed else None
            return AbortInfo(stage.id, first.name if first else None, first.phase if first else None,
                             DEADLINE_REASON)
        if failed and not best_effort:
            result.status = STAGE_FAILED
            first = failed[0]
            return AbortInfo(stage.id, first.name, first.phase, first.error_detail or "component failed")
        if failed:
            for o in failed:
                msg = f"{o.name}: {o.error_detail}"
                result.warnings.append(msg)
                logger.warning("stage %s (best-effort): %s", stage.id, msg)
            result.status = STAGE_WARNINGS
        else:
            result.status = STAGE_OK
        return None

__all__ = ["Runner", "RunnerState", "RunSummary", "StageResult", "DEADLINE_REASON", "INTERRUPT_REASON"]
