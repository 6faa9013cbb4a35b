# stagebuild/setupenv.py
"""
Generates a POSIX shell script that puts every installed component on the
search paths (PATH, LD_LIBRARY_PATH, PKG_CONFIG_PATH, CMAKE_PREFIX_PATH).
Each export is guarded by a directory test so the script stays valid when
an install tree is removed later.
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import List, Optional, Tuple

from stagebuild.buildsystem import OutcomeStatus
from stagebuild.logging import get_logger
from stagebuild.state import RunSummary
from stagebuild.toolchain import Environment

logger = get_logger("setupenv")

SETUP_FILENAME = "setup_env.sh"

# (variable, sub-directory of the prefix)
SEARCH_DIRS: Tuple[Tuple[str, str], ...] = (
    ("PATH", "bin"),
    ("LD_LIBRARY_PATH", "lib"),
    ("LD_LIBRARY_PATH", "lib64"),
    ("PKG_CONFIG_PATH", "lib/pkgconfig"),
    ("PKG_CONFIG_PATH", "lib64/pkgconfig"),
    ("PKG_CONFIG_PATH", "share/pkgconfig"),
    ("CMAKE_PREFIX_PATH", ""),
)

def _prefix_for(artifact: Path) -> Path:
    # header-only installs report <prefix>/include
    return artifact.parent if artifact.name == "include" else artifact

def _prepend(var: str, directory: Path) -> str:
    d = shlex.quote(str(directory))
    return f'[ -d {d} ] && export {var}={d}"${{{var}:+:${var}}}"'

def render_setup_script(summary: RunSummary, env: Environment) -> str:
    lines: List[str] = [
        "#!/bin/sh",
        "# stagebuild environment setup",
        f"# source this file: . {env.install_root / SETUP_FILENAME}",
        "",
        f"export STAGEBUILD_INSTALL={shlex.quote(str(env.install_root))}",
        "",
    ]
    for outcome in summary.outcomes():
        if outcome.status is not OutcomeStatus.SUCCEEDED or not outcome.artifact_path:
            continue
        artifact = Path(outcome.artifact_path)
        if not artifact.exists():
            logger.warning("%s: artifact %s no longer exists, not exported", outcome.name, artifact)
            continue
        lines.append(f"# {outcome.name}")
        if artifact.name == "release":
            # native toolchain output: binaries sit directly in the artifact dir
            lines.append(_prepend("PATH", artifact))
            continue
        prefix = _prefix_for(artifact)
        for var, sub in SEARCH_DIRS:
            lines.append(_prepend(var, prefix / sub if sub else prefix))
    lines.append("")
    for var, value in (("CC", env.cc), ("CXX", env.cxx), ("CFLAGS", env.cflags),
                       ("CXXFLAGS", env.cxxflags), ("LDFLAGS", env.ldflags)):
        if value:
            lines.append(f"export {var}={shlex.quote(value)}")
    return "\n".join(lines) + "\n"

def write_setup_script(summary: RunSummary, env: Environment, path: Optional[os.PathLike] = None) -> Path:
    target = Path(path) if path else env.install_root / SETUP_FILENAME
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_setup_script(summary, env), encoding="utf-8")
    target.chmod(0o755)
    logger.info("setup script written to %s", target)
    return target
