# stagebuild/toolchain.py
"""
Toolchain and build environment for stagebuild.

- Probes for a usable C/C++ compiler pair (CC/CXX override, preferred, fallback)
- Resolves build/install roots and creates them (idempotent)
- Captures the job count and opaque flag strings
- Produces the immutable Environment every build strategy receives
"""

from __future__ import annotations

import os
import sys
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from stagebuild.config import Config, ConfigError, get_config
from stagebuild.logging import get_logger

logger = get_logger("toolchain")

Which = Callable[[str], Optional[str]]

# ---------------------
# Environment
# ---------------------
@dataclass(frozen=True)
class Environment:
    cc: str
    cxx: str
    jobs: int
    root: Path
    build_root: Path
    install_root: Path
    cflags: str = ""
    cxxflags: str = ""
    ldflags: str = ""
    build_type: str = "Release"
    cmake_generator: Optional[str] = None
    python: str = sys.executable
    pip_user: bool = False
    tail_lines: int = 40
    extra_env: Tuple[Tuple[str, str], ...] = ()

    def build_dir(self, name: str) -> Path:
        return self.build_root / name

    def install_dir(self, name: str) -> Path:
        return self.install_root / name

    def process_env(self, overrides: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Fresh environment mapping for a child process; os.environ is left untouched."""
        env = dict(os.environ)
        env.update({"CC": self.cc, "CXX": self.cxx})
        for key, val in (("CFLAGS", self.cflags), ("CXXFLAGS", self.cxxflags), ("LDFLAGS", self.ldflags)):
            if val:
                env[key] = val
        env.update(dict(self.extra_env))
        if overrides:
            env.update(overrides)
        return env

    def describe(self) -> Dict[str, Any]:
        return {
            "cc": self.cc,
            "cxx": self.cxx,
            "jobs": self.jobs,
            "root": str(self.root),
            "build_root": str(self.build_root),
            "install_root": str(self.install_root),
            "build_type": self.build_type,
            "cmake_generator": self.cmake_generator,
            "python": self.python,
        }

# ---------------------
# ToolchainManager
# ---------------------
class ToolchainManager:
    def __init__(self, cfg: Optional[Config] = None, which: Which = shutil.which):
        self.cfg = cfg or get_config()
        self.which = which

    def _pairs(self, key: str) -> List[Tuple[str, str]]:
        return [(str(a), str(b)) for a, b in (self.cfg.get(f"toolchain.{key}") or [])]

    def candidates(self) -> List[Tuple[str, str]]:
        pairs: List[Tuple[str, str]] = []
        cc, cxx = os.environ.get("CC"), os.environ.get("CXX")
        if cc and cxx:
            pairs.append((cc, cxx))
        pairs.extend(self._pairs("preferred"))
        pairs.extend(self._pairs("fallback"))
        return pairs

    def probe(self) -> Tuple[str, str]:
        """Return the first (cc, cxx) pair whose both compilers resolve on PATH."""
        tried = []
        for cc, cxx in self.candidates():
            cc_path, cxx_path = self.which(cc), self.which(cxx)
            if cc_path and cxx_path:
                logger.info("using compilers %s / %s", cc, cxx)
                return cc, cxx
            tried.append(f"{cc}/{cxx}")
            logger.debug("compiler pair %s/%s not available", cc, cxx)
        raise ConfigError("no usable compiler found (tried: %s)" % ", ".join(tried or ["<none>"]))

    def discover_system_compilers(self) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        seen = set()
        names: List[str] = []
        for cc, cxx in self.candidates():
            names.extend([cc, cxx])
        for c in names:
            if c in seen:
                continue
            seen.add(c)
            p = self.which(c)
            if not p:
                continue
            try:
                out = subprocess.run([p, "--version"], stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                     text=True, timeout=10).stdout
            except (OSError, subprocess.SubprocessError) as e:
                logger.debug("version probe failed for %s: %s", p, e)
                out = ""
            ver = out.splitlines()[0] if out else None
            results.append({"name": c, "path": p, "version": ver})
        return results

# ---------------------
# helpers
# ---------------------
def _ensure_dir(path: Path, what: str) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"cannot create {what} {path}: {e}") from e
    if not os.access(path, os.W_OK):
        raise ConfigError(f"{what} {path} is not writable")
    return path

def _resolve_jobs(explicit: Optional[int], configured: Optional[int]) -> int:
    jobs = explicit if explicit is not None else configured
    if jobs is None:
        jobs = os.cpu_count() or 1
    try:
        jobs = int(jobs)
    except (TypeError, ValueError):
        raise ConfigError(f"job count must be an integer, got {jobs!r}")
    if jobs < 1:
        raise ConfigError(f"job count must be >= 1, got {jobs}")
    return jobs

def _opaque(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{what} must be a string")
    return value

# ---------------------
# Config provider entry point
# ---------------------
def load_environment(cfg: Optional[Config] = None, *, root: Optional[Path] = None,
                     jobs: Optional[int] = None, which: Which = shutil.which) -> Environment:
    """
    Resolve the global build environment once, before any stage executes.
    Raises ConfigError when no compiler pair resolves or the roots are unusable.
    Creating the roots is idempotent.
    """
    cfg = cfg or get_config()
    cc, cxx = ToolchainManager(cfg, which=which).probe()

    base = Path(root or cfg.get("paths.root") or Path.cwd()).expanduser().resolve()
    build_root = Path(cfg.get("paths.build_root") or base / "build")
    install_root = Path(cfg.get("paths.install_root") or base / "install")
    _ensure_dir(build_root, "build root")
    _ensure_dir(install_root, "install root")

    generator = cfg.get("build.cmake_generator")
    if not generator and which("ninja"):
        generator = "Ninja"

    extra_env: Sequence[Tuple[str, str]] = tuple(
        (str(k), _opaque(v, f"env.{k}")) for k, v in sorted((cfg.get("env") or {}).items())
    )
    env = Environment(
        cc=cc,
        cxx=cxx,
        jobs=_resolve_jobs(jobs, cfg.get("build.jobs")),
        root=base,
        build_root=build_root.resolve(),
        install_root=install_root.resolve(),
        cflags=_opaque(cfg.get("flags.cflags"), "flags.cflags"),
        cxxflags=_opaque(cfg.get("flags.cxxflags"), "flags.cxxflags"),
        ldflags=_opaque(cfg.get("flags.ldflags"), "flags.ldflags"),
        build_type=str(cfg.get("build.build_type") or "Release"),
        cmake_generator=generator or None,
        python=str(cfg.get("package_manager.python") or sys.executable),
        pip_user=bool(cfg.get("package_manager.user", False)),
        tail_lines=int(cfg.get("build.tail_lines", 40)),
        extra_env=tuple(extra_env),
    )
    logger.debug("environment: %s", env.describe())
    return env
