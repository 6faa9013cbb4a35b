# stagebuild/cli.py
"""
stagebuild CLI - runs a staged build plan and reports on it

Commands:
  run         execute the plan (fail-fast, best-effort stages, resume, deadline)
  status      last known runner state from the run summary
  plan        show stages and components of a manifest
  discover    list compilers found on this host
  verify      audit sources, tools and (optionally) installed artifacts
  env-script  write a shell script exporting the installed components
  config      print or validate the merged configuration

Exit codes: 0 completed, 1 aborted, 2 configuration or manifest error.
"""

from __future__ import annotations

import sys
import json
import argparse
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from stagebuild import config as config_mod
from stagebuild.audit import ERROR, WARNING, PlanAuditor
from stagebuild.buildsystem import OutcomeStatus
from stagebuild.config import Config, ConfigError
from stagebuild.logging import get_logger, get_metrics, setup_logging
from stagebuild.meta import BuildPlan, ManifestError, load_plan
from stagebuild.runner import Runner
from stagebuild.setupenv import write_setup_script
from stagebuild.state import SUMMARY_FILENAME, RunnerState, RunSummary, StateError, StateStore
from stagebuild.toolchain import ToolchainManager, load_environment

logger = get_logger("cli")

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CONFIG = 2

console = Console(highlight=False)

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {escape(msg)}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {escape(msg)}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {escape(msg)}")

def print_info(msg: str):
    console.print(f"[cyan]{escape(msg)}[/cyan]")

STATUS_STYLE = {
    OutcomeStatus.SUCCEEDED: "green",
    OutcomeStatus.SKIPPED_MISSING: "yellow",
    OutcomeStatus.SKIPPED_UNKNOWN_KIND: "yellow",
    OutcomeStatus.FAILED: "red",
}

# -----------------------
# helpers
# -----------------------
def state_path(cfg: Config) -> Path:
    explicit = cfg.get("paths.state_file")
    if explicit:
        return Path(explicit)
    build_root = cfg.get("paths.build_root")
    if build_root:
        return Path(build_root) / SUMMARY_FILENAME
    root = Path(cfg.get("paths.root") or Path.cwd())
    return root / "build" / SUMMARY_FILENAME

def summary_table(summary: RunSummary) -> Table:
    table = Table(title=f"run: {summary.state.value}")
    table.add_column("stage", justify="right")
    table.add_column("component")
    table.add_column("status")
    table.add_column("detail", overflow="fold")
    for stage in summary.stages:
        if not stage.outcomes:
            table.add_row(str(stage.id), f"[dim]{escape(stage.label)}[/dim]", stage.status, "")
            continue
        for o in stage.outcomes:
            style = STATUS_STYLE.get(o.status, "")
            detail = o.artifact_path if o.status is OutcomeStatus.SUCCEEDED else (o.error_detail or o.skip_reason or "")
            table.add_row(str(stage.id), escape(o.name), f"[{style}]{o.status.value}[/{style}]", escape(detail or ""))
    return table

def print_abort(summary: RunSummary) -> None:
    info = summary.aborted
    if info is None:
        return
    print_err(f"aborted at stage {info.stage}: {info.reason}")
    if info.component:
        print_err(f"component: {info.component}  phase: {info.phase or '-'}")
        stage = summary.stage(info.stage)
        outcome = stage.outcome(info.component) if stage else None
        if outcome and outcome.output_tail:
            console.print("[dim]--- last output lines ---[/dim]")
            for line in outcome.output_tail:
                console.print(line, markup=False)

# -----------------------
# CLI Implementation
# -----------------------
class StageBuildCLI:
    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.cfg = config_mod.load(args.config, fatal=True)
        log_cfg = self.cfg.section("logging")
        if args.log_level:
            log_cfg["level"] = args.log_level
        if args.no_color:
            log_cfg["color"] = False
        setup_logging(log_cfg)

    def _manifest(self) -> Path:
        return Path(getattr(self.args, "manifest", None) or self.cfg.get("plan.manifest"))

    def _plan(self) -> BuildPlan:
        return load_plan(self._manifest())

    def _store(self) -> StateStore:
        return StateStore(state_path(self.cfg))

    # run
    def run(self) -> int:
        a = self.args
        if a.deadline is not None and a.deadline <= 0:
            raise ConfigError(f"--deadline must be a positive number of seconds, got {a.deadline}")
        plan = self._plan()
        env = load_environment(self.cfg, jobs=a.jobs)
        store = self._store()

        from_stage = a.from_stage
        if a.resume:
            previous = store.load()
            if previous is not None and previous.state is not RunnerState.COMPLETED:
                from_stage = previous.aborted.stage if previous.aborted else previous.current_stage
                print_info(f"resuming at stage {from_stage}")
            elif previous is not None:
                print_ok("previous run completed, nothing to resume")
                return EXIT_OK
            else:
                print_warn("no previous run recorded, starting from the first stage")

        best_effort = list(self.cfg.get("plan.best_effort_stages") or []) + list(a.best_effort_stage or [])
        runner = Runner(
            plan,
            env,
            workers=a.workers or self.cfg.get("build.workers"),
            best_effort_stages=best_effort,
            dry_run=a.dry_run,
            deadline=a.deadline if a.deadline is not None else self.cfg.get("build.deadline"),
            store=store,
            clean=a.clean or bool(self.cfg.get("build.clean")),
        )
        try:
            summary = runner.run(from_stage=from_stage, to_stage=a.to_stage)
        except KeyError as e:
            raise ManifestError(f"unknown stage {e.args[0]}")

        console.print(summary_table(summary))
        metrics = get_metrics()
        print_info(f"log: {metrics.get('WARNING', 0)} warnings, {metrics.get('ERROR', 0)} errors")
        if summary.state is RunnerState.COMPLETED:
            print_ok(f"plan completed ({', '.join(f'{k}={v}' for k, v in sorted(summary.counts().items())) or 'no components'})")
            return EXIT_OK
        print_abort(summary)
        return EXIT_ABORTED

    # status
    def status(self) -> int:
        store = self._store()
        summary = store.load()
        if summary is None:
            print_warn(f"no run summary at {store.path}")
            return EXIT_CONFIG
        if self.args.json:
            sys.stdout.write(json.dumps(summary.to_dict(), indent=2) + "\n")
        else:
            console.print(summary_table(summary))
            if summary.state is RunnerState.STAGE_RUNNING:
                print_warn(f"run interrupted during stage {summary.current_stage}")
            print_abort(summary)
        if summary.state is RunnerState.COMPLETED:
            return EXIT_OK
        return EXIT_ABORTED

    # plan
    def plan(self) -> int:
        plan = self._plan()
        if self.args.json:
            data = {
                "source": str(plan.source or self._manifest()),
                "stages": [{"id": s.id, "label": s.label, "best_effort": s.best_effort,
                            "components": [c.to_dict() for c in s.components]} for s in plan.stages],
            }
            sys.stdout.write(json.dumps(data, indent=2) + "\n")
            return EXIT_OK
        table = Table(title=str(plan.source or self._manifest()))
        table.add_column("stage", justify="right")
        table.add_column("component")
        table.add_column("kind")
        table.add_column("source", overflow="fold")
        for stage in plan.stages:
            label = escape(stage.label) + (" [yellow](best-effort)[/yellow]" if stage.best_effort else "")
            table.add_row(str(stage.id), f"[bold]{label}[/bold]", "", "")
            for c in stage.components:
                src = escape(str(c.source_path))
                if not c.source_path.exists():
                    src = f"[dim]{src} (missing)[/dim]"
                table.add_row("", escape(c.name), c.build_kind, src)
        console.print(table)
        return EXIT_OK

    # discover
    def discover(self) -> int:
        found = ToolchainManager(self.cfg).discover_system_compilers()
        if not found:
            print_err("no compilers found")
            return EXIT_CONFIG
        table = Table(title="compilers")
        table.add_column("name")
        table.add_column("path")
        table.add_column("version", overflow="fold")
        for c in found:
            table.add_row(c["name"], c["path"], escape(c.get("version") or "?"))
        console.print(table)
        return EXIT_OK

    # verify
    def verify(self) -> int:
        plan = self._plan()
        env = load_environment(self.cfg)
        summary = self._store().load() if self.args.artifacts else None
        if self.args.artifacts and summary is None and not self.args.json:
            print_warn("no run summary recorded, skipping artifact checks")
        report = PlanAuditor(plan, env).audit_all(summary)
        if self.args.json:
            sys.stdout.write(json.dumps(report.to_dict(), indent=2) + "\n")
            return EXIT_OK if report.ok else EXIT_ABORTED
        for item in report.items:
            msg = f"{item.check}: {item.subject}" + (f" - {item.message}" if item.message else "")
            if item.level == ERROR:
                print_err(msg)
            elif item.level == WARNING:
                print_warn(msg)
            elif self.args.verbose:
                print_ok(msg)
        print_info(f"{report.errors} errors, {report.warnings} warnings")
        return EXIT_OK if report.ok else EXIT_ABORTED

    # env-script
    def env_script(self) -> int:
        summary = self._store().load()
        if summary is None:
            print_err("no run summary recorded, run the plan first")
            return EXIT_CONFIG
        env = load_environment(self.cfg)
        path = write_setup_script(summary, env, self.args.output)
        print_ok(f"wrote {path}")
        return EXIT_OK

    # config
    def config(self) -> int:
        ok, issues = config_mod.validate_config(self.cfg)
        if self.args.print or not self.args.validate:
            sys.stdout.write(yaml.safe_dump(self.cfg.as_dict(), sort_keys=False))
        if self.args.validate:
            for issue in issues:
                print_err(issue)
            if ok:
                print_ok(f"config ok ({self.cfg.path or 'defaults'})")
        return EXIT_OK if ok else EXIT_CONFIG

def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="stagebuild", description="Multi-stage build orchestrator")
    ap.add_argument("--config", help="config file (YAML or JSON)")
    ap.add_argument("--log-level", help="console log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--no-color", action="store_true", help="disable colored output")
    sub = ap.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="execute the build plan")
    p_run.add_argument("--manifest", help="component manifest (default: plan.manifest)")
    start = p_run.add_mutually_exclusive_group()
    start.add_argument("--from-stage", type=int, help="skip stages before this id")
    start.add_argument("--resume", action="store_true", help="restart at the stage the last run stopped in")
    p_run.add_argument("--to-stage", type=int, help="stop after this stage id")
    p_run.add_argument("--jobs", type=int, help="parallel jobs handed to build tools")
    p_run.add_argument("--workers", type=int, help="components built concurrently within a stage")
    p_run.add_argument("--dry-run", action="store_true", help="log commands without running them")
    p_run.add_argument("--best-effort-stage", type=int, action="append", metavar="ID",
                       help="downgrade failures in this stage to warnings (repeatable)")
    p_run.add_argument("--deadline", type=float, metavar="SECONDS", help="overall time limit for the plan")
    p_run.add_argument("--clean", action="store_true", help="remove per-component build dirs first")

    p_status = sub.add_parser("status", help="show the last recorded run")
    p_status.add_argument("--json", action="store_true", help="print the raw run summary")

    p_plan = sub.add_parser("plan", help="show stages and components")
    p_plan.add_argument("--manifest")
    p_plan.add_argument("--json", action="store_true", help="print the plan as JSON")

    sub.add_parser("discover", help="list compilers found on this host")

    p_verify = sub.add_parser("verify", help="audit sources, tools and artifacts")
    p_verify.add_argument("--manifest")
    p_verify.add_argument("--artifacts", action="store_true", help="also check recorded artifacts")
    p_verify.add_argument("-v", "--verbose", action="store_true", help="list passing checks too")
    p_verify.add_argument("--json", action="store_true", help="print the report as JSON")

    p_env = sub.add_parser("env-script", help="write the environment setup script")
    p_env.add_argument("--output", help="script path (default: <install_root>/setup_env.sh)")

    p_cfg = sub.add_parser("config", help="print or validate configuration")
    p_cfg.add_argument("--print", action="store_true")
    p_cfg.add_argument("--validate", action="store_true")
    return ap

def main(argv: Optional[List[str]] = None) -> int:
    global console
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if args.no_color:
        console = Console(highlight=False, no_color=True)
    if not args.cmd:
        parser.print_help()
        return EXIT_CONFIG

    handlers: Dict[str, Any] = {
        "run": StageBuildCLI.run,
        "status": StageBuildCLI.status,
        "plan": StageBuildCLI.plan,
        "discover": StageBuildCLI.discover,
        "verify": StageBuildCLI.verify,
        "env-script": StageBuildCLI.env_script,
        "config": StageBuildCLI.config,
    }
    try:
        cli = StageBuildCLI(args)
        return handlers[args.cmd](cli)
    except (ConfigError, ManifestError) as e:
        print_err(str(e))
        return EXIT_CONFIG
    except StateError as e:
        print_err(f"run summary unreadable: {e}")
        return EXIT_CONFIG
    except KeyboardInterrupt:
        print_err("interrupted")
        return 130

if __name__ == "__main__":
    sys.exit(main())
