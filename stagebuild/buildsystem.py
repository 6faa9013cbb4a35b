# stagebuild/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - build strategies for stagebuild

API:
  outcome = execute_component(component, env, runner)

Each build kind has one strategy object (cmake, autotools, package-manager,
native-toolchain, colcon, header-only, install-script, auto). A strategy
never raises for a build problem: every result is a BuildOutcome.

Phases:
  generate -> configure -> build -> install   (whichever apply to the kind)

A non-zero exit inside a phase becomes a `failed` outcome naming the phase.
Partial artifacts of a failed phase stay on disk for inspection or re-runs.
Command output goes to <build_root>/<name>/logs/<phase>.log; the last lines
are kept in the outcome.
"""

from __future__ import annotations

import os
import enum
import shutil
import signal
import site
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from stagebuild import meta
from stagebuild.logging import get_logger
from stagebuild.meta import ComponentDescriptor
from stagebuild.toolchain import Environment

logger = get_logger("buildsystem")

INSTALL_SCRIPT = meta.INSTALL_SCRIPT
HEADER_SUFFIXES = (".h", ".hpp", ".hh", ".hxx", ".inl")

# --- outcomes ---
class OutcomeStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    SKIPPED_MISSING = "skipped-missing"
    SKIPPED_UNKNOWN_KIND = "skipped-unknown-kind"
    FAILED = "failed"

@dataclass(frozen=True)
class BuildOutcome:
    name: str
    status: OutcomeStatus
    artifact_path: Optional[str] = None
    error_detail: Optional[str] = None
    phase: Optional[str] = None
    output_tail: Tuple[str, ...] = ()
    duration: float = 0.0
    skip_reason: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.status is OutcomeStatus.SUCCEEDED:
            d["artifactPath"] = self.artifact_path
        elif self.failed:
            d["errorDetail"] = self.error_detail or ""
        elif self.skip_reason:
            d["skipReason"] = self.skip_reason
        if self.phase:
            d["phase"] = self.phase
        if self.output_tail:
            d["outputTail"] = list(self.output_tail)
        d["duration"] = round(self.duration, 3)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BuildOutcome":
        return cls(
            name=d["name"],
            status=OutcomeStatus(d["status"]),
            artifact_path=d.get("artifactPath"),
            error_detail=d.get("errorDetail"),
            phase=d.get("phase"),
            output_tail=tuple(d.get("outputTail") or ()),
            duration=float(d.get("duration") or 0.0),
            skip_reason=d.get("skipReason"),
        )

# --- errors ---
class PhaseFailure(Exception):
    """A phase (generate/configure/build/install) of a strategy did not succeed."""

    def __init__(self, phase: str, rc: Optional[int] = None, tail: Sequence[str] = (),
                 log_path: Optional[Path] = None, detail: Optional[str] = None):
        self.phase = phase
        self.rc = rc
        self.tail = tuple(tail)
        self.log_path = log_path
        self.detail = detail
        super().__init__(self.describe())

    def describe(self) -> str:
        msg = f"phase '{self.phase}' failed"
        if self.detail:
            msg += f": {self.detail}"
        elif self.rc is not None:
            msg += f" with exit code {self.rc}"
        if self.log_path:
            msg += f" (log: {self.log_path})"
        return msg

class BuildCancelled(Exception):
    """Raised when the plan was cancelled (deadline) before or during a command."""

# --- process management ---
@dataclass(frozen=True)
class CommandResult:
    rc: int
    tail: Tuple[str, ...] = ()
    log_path: Optional[Path] = None

class ProcessTracker:
    """Live child processes shared by every runner of a plan, so they can be cancelled together."""

    def __init__(self):
        self._lock = threading.Lock()
        self._procs: List[subprocess.Popen] = []
        self._cancelled = threading.Event()
        self.reason = "cancelled"

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def add(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs.append(proc)
            cancelled = self._cancelled.is_set()
        if cancelled:
            _terminate(proc)

    def discard(self, proc: subprocess.Popen) -> None:
        with self._lock:
            if proc in self._procs:
                self._procs.remove(proc)

    def cancel(self, reason: str = "cancelled", grace: float = 5.0) -> None:
        with self._lock:
            self.reason = reason
            self._cancelled.set()
            procs = list(self._procs)
        for p in procs:
            _terminate(p)
        deadline = time.monotonic() + grace
        for p in procs:
            try:
                p.wait(timeout=max(0.0, deadline - time.monotonic()))
            except subprocess.TimeoutExpired:
                logger.warning("process %s ignored SIGTERM, killing", p.pid)
                _signal_group(p, signal.SIGKILL)

def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass

def _terminate(proc: subprocess.Popen) -> None:
    if proc.poll() is None:
        logger.debug("terminating pid %s", proc.pid)
        _signal_group(proc, signal.SIGTERM)

class CommandRunner:
    """
    Runs external build commands with an explicit cwd and environment.
    Output (stderr merged) is appended to the given log file and the last
    `tail_lines` lines are returned. A missing executable yields rc 127.
    """

    def __init__(self, tracker: Optional[ProcessTracker] = None, dry_run: bool = False, tail_lines: int = 40):
        self.tracker = tracker or ProcessTracker()
        self.dry_run = dry_run
        self.tail_lines = tail_lines

    def run(self, argv: Sequence[str], *, cwd: Path, env: Dict[str, str],
            log_path: Optional[Path] = None) -> CommandResult:
        argv = [str(a) for a in argv]
        if self.tracker.cancelled:
            raise BuildCancelled(self.tracker.reason)
        if self.dry_run:
            logger.info("[dry-run] would run: %s (cwd=%s)", " ".join(argv), cwd)
            return CommandResult(0)
        logger.debug("RUN: %s (cwd=%s)", " ".join(argv), cwd)
        tail: deque = deque(maxlen=max(1, self.tail_lines))
        log_fh = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_fh = open(log_path, "a", encoding="utf-8")
            log_fh.write(f"$ {' '.join(argv)}\n")
        try:
            try:
                proc = subprocess.Popen(
                    argv, cwd=str(cwd), env=env, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL, text=True, errors="replace", start_new_session=True,
                )
            except FileNotFoundError:
                msg = f"command not found: {argv[0]}"
                if log_fh:
                    log_fh.write(msg + "\n")
                return CommandResult(127, (msg,), log_path)
            except OSError as e:
                msg = f"cannot execute {argv[0]}: {e}"
                if log_fh:
                    log_fh.write(msg + "\n")
                return CommandResult(126, (msg,), log_path)
            self.tracker.add(proc)
            try:
                for line in proc.stdout:
                    if log_fh:
                        log_fh.write(line)
                    tail.append(line.rstrip("\n"))
                rc = proc.wait()
            finally:
                proc.stdout.close()
                self.tracker.discard(proc)
        finally:
            if log_fh:
                log_fh.close()
        if rc != 0 and self.tracker.cancelled:
            raise BuildCancelled(self.tracker.reason)
        return CommandResult(rc, tuple(tail)[-self.tail_lines:] if self.tail_lines else (), log_path)

# --- strategies ---
class BuildStrategy:
    """Base contract: execute(component, env, runner) -> BuildOutcome."""

    kind = ""

    def execute(self, component: ComponentDescriptor, env: Environment, runner: CommandRunner) -> BuildOutcome:
        started = time.monotonic()
        src = component.source_path
        if not src.exists():
            logger.info("%s: source not found at %s, skipping", component.name, src)
            return BuildOutcome(component.name, OutcomeStatus.SKIPPED_MISSING,
                                skip_reason=f"source not found: {src}", duration=time.monotonic() - started)
        missing = [r for r in component.requires if shutil.which(r) is None]
        if missing:
            logger.info("%s: required tools missing (%s), skipping", component.name, ", ".join(missing))
            return BuildOutcome(component.name, OutcomeStatus.SKIPPED_MISSING,
                                skip_reason="required tools not found: " + ", ".join(missing),
                                duration=time.monotonic() - started)
        return self._execute(component, env, runner, started)

    def _execute(self, component: ComponentDescriptor, env: Environment, runner: CommandRunner,
                 started: float) -> BuildOutcome:
        logger.info("building %s (%s)", component.name, self.kind)
        try:
            artifact = self.build(component, env, runner)
        except PhaseFailure as e:
            logger.error("%s: %s", component.name, e.describe())
            return BuildOutcome(component.name, OutcomeStatus.FAILED, error_detail=e.describe(),
                                phase=e.phase, output_tail=e.tail, duration=time.monotonic() - started)
        except BuildCancelled as e:
            logger.warning("%s: cancelled (%s)", component.name, e)
            return BuildOutcome(component.name, OutcomeStatus.FAILED, error_detail=f"cancelled: {e}",
                                phase="cancelled", duration=time.monotonic() - started)
        except OSError as e:
            logger.error("%s: %s", component.name, e)
            return BuildOutcome(component.name, OutcomeStatus.FAILED, error_detail=str(e),
                                phase="prepare", duration=time.monotonic() - started)
        logger.info("%s -> %s", component.name, artifact)
        return BuildOutcome(component.name, OutcomeStatus.SUCCEEDED, artifact_path=str(artifact),
                            duration=time.monotonic() - started)

    def build(self, component: ComponentDescriptor, env: Environment, runner: CommandRunner) -> Path:
        raise NotImplementedError

    # helpers
    def _workdir(self, component: ComponentDescriptor, env: Environment, runner: CommandRunner) -> Path:
        bdir = env.build_dir(component.name)
        if not runner.dry_run:
            bdir.mkdir(parents=True, exist_ok=True)
        return bdir

    def _phase(self, runner: CommandRunner, phase: str, argv: Sequence[str], *, cwd: Path,
               component: ComponentDescriptor, env: Environment, log_name: Optional[str] = None,
               overrides: Optional[Dict[str, str]] = None) -> CommandResult:
        log_path = env.build_dir(component.name) / "logs" / f"{log_name or phase}.log"
        res = runner.run(argv, cwd=cwd, env=env.process_env(overrides), log_path=log_path)
        if res.rc != 0:
            raise PhaseFailure(phase, res.rc, res.tail, res.log_path)
        return res

class CMakeStrategy(BuildStrategy):
    kind = meta.CMAKE

    def configure_args(self, component: ComponentDescriptor, env: Environment) -> List[str]:
        args = ["cmake", "-S", str(component.source_path), "-B", str(env.build_dir(component.name))]
        if env.cmake_generator:
            args += ["-G", env.cmake_generator]
        args += [
            f"-DCMAKE_BUILD_TYPE={env.build_type}",
            f"-DCMAKE_INSTALL_PREFIX={env.install_dir(component.name)}",
            f"-DCMAKE_C_COMPILER={env.cc}",
            f"-DCMAKE_CXX_COMPILER={env.cxx}",
        ]
        if env.cflags:
            args.append(f"-DCMAKE_C_FLAGS={env.cflags}")
        if env.cxxflags:
            args.append(f"-DCMAKE_CXX_FLAGS={env.cxxflags}")
        if env.ldflags:
            args.append(f"-DCMAKE_EXE_LINKER_FLAGS={env.ldflags}")
            args.append(f"-DCMAKE_SHARED_LINKER_FLAGS={env.ldflags}")
        # per-component overrides win: later -D of the same key replaces earlier ones
        args.extend(component.extra_args)
        return args

    def build(self, component, env, runner):
        bdir = self._workdir(component, env, runner)
        prefix = env.install_dir(component.name)
        self._phase(runner, "configure", self.configure_args(component, env), cwd=bdir, component=component, env=env)
        self._phase(runner, "build", ["cmake", "--build", str(bdir), "--parallel", str(env.jobs)],
                    cwd=bdir, component=component, env=env)
        self._phase(runner, "install", ["cmake", "--install", str(bdir)], cwd=bdir, component=component, env=env)
        return prefix

class AutotoolsStrategy(BuildStrategy):
    kind = meta.AUTOTOOLS

    def generator_command(self, src: Path) -> Optional[List[str]]:
        if (src / "configure").exists():
            return None
        autogen = src / "autogen.sh"
        if autogen.exists():
            return ["./autogen.sh"] if os.access(autogen, os.X_OK) else ["sh", "autogen.sh"]
        if (src / "configure.ac").exists() or (src / "configure.in").exists():
            return ["autoreconf", "-fi"]
        return None

    def configure_args(self, component: ComponentDescriptor, env: Environment) -> List[str]:
        args = [
            str(component.source_path / "configure"),
            f"--prefix={env.install_dir(component.name)}",
            f"CC={env.cc}",
            f"CXX={env.cxx}",
        ]
        if env.cflags:
            args.append(f"CFLAGS={env.cflags}")
        if env.cxxflags:
            args.append(f"CXXFLAGS={env.cxxflags}")
        if env.ldflags:
            args.append(f"LDFLAGS={env.ldflags}")
        args.extend(component.extra_args)
        return args

    def build(self, component, env, runner):
        src = component.source_path
        gen = self.generator_command(src)
        if gen:
            self._phase(runner, "generate", gen, cwd=src, component=component, env=env,
                        overrides={"NOCONFIGURE": "1"})
        bdir = self._workdir(component, env, runner)
        self._phase(runner, "configure", self.configure_args(component, env), cwd=bdir, component=component, env=env)
        self._phase(runner, "build", ["make", f"-j{env.jobs}"], cwd=bdir, component=component, env=env)
        self._phase(runner, "install", ["make", "install"], cwd=bdir, component=component, env=env)
        return env.install_dir(component.name)

class PackageManagerStrategy(BuildStrategy):
    """
    Development (editable) install first, plain install as fallback. Only a
    failure of both attempts fails the component.
    """
    kind = meta.PACKAGE_MANAGER

    def target_args(self, component: ComponentDescriptor, env: Environment) -> List[str]:
        if env.pip_user:
            return ["--user"]
        return ["--prefix", str(env.install_dir(component.name))]

    def install_commands(self, component: ComponentDescriptor, env: Environment) -> List[List[str]]:
        base = [env.python, "-m", "pip", "install"] + self.target_args(component, env)
        src = str(component.source_path)
        extra = list(component.extra_args)
        return [base + ["-e", src] + extra, base + [src] + extra]

    def artifact(self, component: ComponentDescriptor, env: Environment) -> Path:
        if env.pip_user:
            return Path(site.getuserbase())
        return env.install_dir(component.name)

    def build(self, component, env, runner):
        bdir = self._workdir(component, env, runner)
        develop, plain = self.install_commands(component, env)
        try:
            self._phase(runner, "install", develop, cwd=bdir, component=component, env=env, log_name="install-develop")
        except PhaseFailure as first:
            logger.warning("%s: development install failed (%s), retrying with a standard install",
                           component.name, first.describe())
            try:
                self._phase(runner, "install", plain, cwd=bdir, component=component, env=env)
            except PhaseFailure as second:
                raise PhaseFailure(
                    "install", second.rc, second.tail, second.log_path,
                    detail=f"development install exited {first.rc}, standard install exited {second.rc}",
                )
        return self.artifact(component, env)

class NativeToolchainStrategy(BuildStrategy):
    kind = meta.NATIVE_TOOLCHAIN

    def build(self, component, env, runner):
        bdir = self._workdir(component, env, runner)
        argv = ["cargo", "build", "--release", "--target-dir", str(bdir)] + list(component.extra_args)
        self._phase(runner, "build", argv, cwd=component.source_path, component=component, env=env)
        return bdir / "release"

class ColconStrategy(BuildStrategy):
    kind = meta.COLCON

    def build(self, component, env, runner):
        bdir = self._workdir(component, env, runner)
        prefix = env.install_dir(component.name)
        argv = [
            "colcon", "build",
            "--base-paths", str(component.source_path),
            "--build-base", str(bdir / "build"),
            "--install-base", str(prefix),
            "--cmake-args", f"-DCMAKE_BUILD_TYPE={env.build_type}",
        ] + list(component.extra_args)
        self._phase(runner, "build", argv, cwd=bdir, component=component, env=env)
        return prefix

class HeaderOnlyStrategy(BuildStrategy):
    """
    Copies include/ (merged into an existing tree) or loose headers into
    <install>/<name>/include. Only an uncreatable destination is a failure.
    """
    kind = meta.HEADER_ONLY

    def build(self, component, env, runner):
        src = component.source_path
        dest = env.install_dir(component.name) / "include"
        if runner.dry_run:
            logger.info("[dry-run] would copy headers from %s to %s", src, dest)
            return dest
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PhaseFailure("install", detail=f"cannot create {dest}: {e}")

        copied = []
        errors = 0

        def _copy(s, d):
            shutil.copy2(s, d)
            copied.append(d)

        inc = src / "include"
        if inc.is_dir():
            try:
                shutil.copytree(str(inc), str(dest), copy_function=_copy, dirs_exist_ok=True)
            except shutil.Error as e:
                errors = len(e.args[0]) if e.args and isinstance(e.args[0], list) else 1
                logger.warning("%s: %d header(s) could not be copied: %s", component.name, errors, e)
            except OSError as e:
                errors = 1
                logger.warning("%s: cannot copy %s: %s", component.name, inc, e)
        else:
            try:
                loose = [f for f in sorted(src.iterdir()) if f.is_file() and f.suffix in HEADER_SUFFIXES]
            except OSError as e:
                loose, errors = [], 1
                logger.warning("%s: cannot list %s: %s", component.name, src, e)
            for f in loose:
                try:
                    _copy(str(f), str(dest / f.name))
                except OSError as e:
                    errors += 1
                    logger.warning("%s: cannot copy %s: %s", component.name, f, e)
        if copied:
            logger.debug("%s: copied %d header(s) to %s", component.name, len(copied), dest)
        elif not errors:
            logger.warning("%s: no headers found under %s", component.name, src)
        return dest

class InstallScriptStrategy(BuildStrategy):
    kind = INSTALL_SCRIPT

    def build(self, component, env, runner):
        self._workdir(component, env, runner)
        prefix = env.install_dir(component.name)
        argv = [str(component.source_path / "install.sh")] + list(component.extra_args)
        self._phase(runner, "install", argv, cwd=component.source_path, component=component, env=env,
                    overrides={"PREFIX": str(prefix), "JOBS": str(env.jobs)})
        return prefix

# --- detect build system ---
def detect_build_kind(src: Path) -> Optional[str]:
    """
    Marker files in fixed priority order:
      Cargo.toml > CMakeLists.txt > pyproject.toml/setup.py > configure/autogen.sh/configure.ac
      > executable install.sh
    """
    if (src / "Cargo.toml").exists():
        return meta.NATIVE_TOOLCHAIN
    if (src / "CMakeLists.txt").exists():
        return meta.CMAKE
    if (src / "pyproject.toml").exists() or (src / "setup.py").exists():
        return meta.PACKAGE_MANAGER
    if any((src / m).exists() for m in ("configure", "autogen.sh", "configure.ac", "configure.in")):
        return meta.AUTOTOOLS
    script = src / "install.sh"
    if script.is_file() and os.access(script, os.X_OK):
        return INSTALL_SCRIPT
    return None

class AutoDetectStrategy(BuildStrategy):
    kind = meta.AUTO

    def _execute(self, component, env, runner, started):
        detected = detect_build_kind(component.source_path)
        strategy = get_strategy(detected) if detected else None
        if strategy is None or strategy is self:
            logger.warning("%s: no build system detected in %s", component.name, component.source_path)
            return BuildOutcome(component.name, OutcomeStatus.SKIPPED_UNKNOWN_KIND,
                                skip_reason="no build system detected", duration=time.monotonic() - started)
        logger.info("%s: detected %s", component.name, detected)
        return strategy._execute(component, env, runner, started)

# --- registry ---
_STRATEGIES: Dict[str, BuildStrategy] = {}

def register_strategy(kind: str, strategy: BuildStrategy) -> None:
    _STRATEGIES[meta.normalize_kind(kind)] = strategy

def get_strategy(kind: Optional[str]) -> Optional[BuildStrategy]:
    if not kind:
        return None
    return _STRATEGIES.get(meta.normalize_kind(kind))

for _s in (CMakeStrategy(), AutotoolsStrategy(), PackageManagerStrategy(), NativeToolchainStrategy(),
           ColconStrategy(), HeaderOnlyStrategy(), InstallScriptStrategy(), AutoDetectStrategy()):
    register_strategy(_s.kind, _s)

def execute_component(component: ComponentDescriptor, env: Environment, runner: CommandRunner) -> BuildOutcome:
    strategy = get_strategy(component.build_kind)
    if strategy is None:
        if not component.source_path.exists():
            return BuildOutcome(component.name, OutcomeStatus.SKIPPED_MISSING,
                                skip_reason=f"source not found: {component.source_path}")
        logger.warning("%s: unknown build type %s", component.name, component.build_kind)
        return BuildOutcome(component.name, OutcomeStatus.SKIPPED_UNKNOWN_KIND,
                            skip_reason=f"unknown build kind: {component.build_kind}")
    return strategy.execute(component, env, runner)
