import stat
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from stagebuild import config as config_mod
from stagebuild.buildsystem import CommandResult
from stagebuild.config import DEFAULTS, Config, _deep_merge
from stagebuild.logging import reset_metrics, setup_logging
from stagebuild.meta import BuildPlan, ComponentDescriptor, Stage
from stagebuild.toolchain import Environment


@dataclass
class Call:
    argv: List[str]
    cwd: Path
    env: Dict[str, str]
    log_path: Optional[Path]

    @property
    def phase(self) -> Optional[str]:
        return self.log_path.stem if self.log_path else None

    @property
    def line(self) -> str:
        return " ".join(self.argv)


class FakeRunner:
    """Records commands instead of running them; fails those matching a substring."""

    def __init__(self, tracker=None, fail_on: Sequence[Tuple[str, int]] = (), dry_run: bool = False):
        self.tracker = tracker
        self.dry_run = dry_run
        self.fail_on = list(fail_on)
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def run(self, argv, *, cwd, env, log_path=None):
        call = Call([str(a) for a in argv], Path(cwd), dict(env), log_path)
        with self._lock:
            self.calls.append(call)
        for needle, rc in self.fail_on:
            if needle in call.line:
                return CommandResult(rc, ("error: " + needle, "boom"), log_path)
        return CommandResult(0, (), log_path)

    def phases(self) -> List[Optional[str]]:
        return [c.phase for c in self.calls]


def make_config(**sections) -> Config:
    return Config(merged=_deep_merge(DEFAULTS, sections))


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in ("STAGEBUILD_CONFIG", "CC", "CXX"):
        monkeypatch.delenv(var, raising=False)
    config_mod.reset()
    setup_logging({"level": "DEBUG", "color": False})
    reset_metrics()
    yield
    config_mod.reset()


@pytest.fixture
def env(tmp_path) -> Environment:
    build, install = tmp_path / "build", tmp_path / "install"
    build.mkdir()
    install.mkdir()
    return Environment(cc="cc", cxx="c++", jobs=2, root=tmp_path, build_root=build, install_root=install)


@pytest.fixture
def fake():
    return FakeRunner()


@pytest.fixture
def make_src(tmp_path):
    """make_src("name", "CMakeLists.txt", ...) -> directory holding the given marker files."""

    def _make(name: str, *files: str, executable: Sequence[str] = ()) -> Path:
        d = tmp_path / "src" / name
        d.mkdir(parents=True, exist_ok=True)
        for f in files:
            p = d / f
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text("")
        for f in executable:
            p = d / f
            if not p.exists():
                p.write_text("#!/bin/sh\nexit 0\n")
            p.chmod(p.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return d

    return _make


def component(name: str, path: Path, kind: str = "cmake", stage_id: int = 1, args=(), requires=()) -> ComponentDescriptor:
    return ComponentDescriptor(name=name, source_path=Path(path), build_kind=kind, extra_args=tuple(args),
                               stage_id=stage_id, requires=tuple(requires))


def plan_of(*stages: Tuple[int, Sequence[ComponentDescriptor]], best_effort: Sequence[int] = ()) -> BuildPlan:
    out = []
    for sid, comps in stages:
        comps = tuple(ComponentDescriptor(c.name, c.source_path, c.build_kind, c.extra_args, sid, c.requires)
                      for c in comps)
        out.append(Stage(id=sid, label=f"stage {sid}", components=comps, best_effort=sid in best_effort))
    return BuildPlan(stages=tuple(out))


def write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(0o755)
    return path
