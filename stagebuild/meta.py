# stagebuild/meta.py
"""
meta.py - loader and validator for component manifests

A manifest is a YAML (or JSON) document describing the build plan:

    root: ..                      # optional, relative to the manifest file
    stages:
      - id: 1
        label: Toolchains
        best_effort: false
        components:
          - name: xetla
            path: submodules/xetla
            kind: header-only
      - id: 2
        label: oneAPI
        components:
          - name: oneTBB
            path: oneapi-tbb
            kind: cmake
            args: [-DTBB_TEST=OFF]
    components:                   # optional flat form, each entry names its stage
      - name: perfspect
        path: tools/PerfSpect
        kind: pip
        stage: 2
        requires: [python3]

Components are immutable once loaded. extra args are kept as opaque strings.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from stagebuild.logging import get_logger

logger = get_logger("meta")

# -----------------------
# Build kinds
# -----------------------
CMAKE = "cmake"
AUTOTOOLS = "autotools"
PACKAGE_MANAGER = "package-manager"
NATIVE_TOOLCHAIN = "native-toolchain"
HEADER_ONLY = "header-only"
AUTO = "auto"
COLCON = "colcon"

INSTALL_SCRIPT = "install-script"

KIND_ALIASES: Dict[str, str] = {
    "pip": PACKAGE_MANAGER,
    "python": PACKAGE_MANAGER,
    "package_manager": PACKAGE_MANAGER,
    "cargo": NATIVE_TOOLCHAIN,
    "rust": NATIVE_TOOLCHAIN,
    "native": NATIVE_TOOLCHAIN,
    "headers": HEADER_ONLY,
    "header_only": HEADER_ONLY,
    "autoconf": AUTOTOOLS,
    "script": INSTALL_SCRIPT,
}

def normalize_kind(kind: Any) -> str:
    k = str(kind or AUTO).strip().lower()
    return KIND_ALIASES.get(k, k)

# -----------------------
# Data models
# -----------------------
class ManifestError(Exception):
    pass

@dataclass(frozen=True)
class ComponentDescriptor:
    name: str
    source_path: Path
    build_kind: str
    extra_args: Tuple[str, ...] = ()
    stage_id: int = 0
    requires: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "path": str(self.source_path),
            "kind": self.build_kind,
            "args": list(self.extra_args),
            "stage": self.stage_id,
            "requires": list(self.requires),
        }

@dataclass(frozen=True)
class Stage:
    id: int
    label: str
    components: Tuple[ComponentDescriptor, ...] = ()
    best_effort: bool = False

    def __len__(self) -> int:
        return len(self.components)

@dataclass(frozen=True)
class BuildPlan:
    stages: Tuple[Stage, ...] = field(default_factory=tuple)
    source: Optional[Path] = None

    def stage(self, stage_id: int) -> Stage:
        for s in self.stages:
            if s.id == stage_id:
                return s
        raise KeyError(stage_id)

    def stage_ids(self) -> List[int]:
        return [s.id for s in self.stages]

    def components(self) -> Iterator[ComponentDescriptor]:
        for s in self.stages:
            yield from s.components

    def select(self, from_stage: Optional[int] = None, to_stage: Optional[int] = None) -> List[Stage]:
        """Contiguous slice of stages with from_stage <= id <= to_stage."""
        out = []
        for s in self.stages:
            if from_stage is not None and s.id < from_stage:
                continue
            if to_stage is not None and s.id > to_stage:
                continue
            out.append(s)
        return out

    def validate(self) -> List[str]:
        """Return a list of invariant violations (empty when the plan is sound)."""
        errors: List[str] = []
        prev = None
        for s in self.stages:
            if prev is not None and s.id <= prev:
                errors.append(f"stage ids must be strictly increasing: {s.id} after {prev}")
            prev = s.id
        seen: Dict[str, int] = {}
        for s in self.stages:
            for c in s.components:
                if c.name in seen:
                    errors.append(f"duplicate component name {c.name!r} (stages {seen[c.name]} and {s.id})")
                seen[c.name] = s.id
                if c.stage_id != s.id:
                    errors.append(f"component {c.name!r} declares stage {c.stage_id} but sits in stage {s.id}")
        return errors

# -----------------------
# Loader
# -----------------------
def _parse_file(path: Path) -> Dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError(f"cannot read manifest {path}: {e}") from e
    try:
        data = json.loads(text) if path.suffix.lower() == ".json" else yaml.safe_load(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ManifestError(f"cannot parse manifest {path}: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError(f"manifest {path} must contain a mapping at top level")
    return data

def _as_str_tuple(value: Any, what: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ManifestError(f"{what} must be a list of strings")
    for v in value:
        if not isinstance(v, str) or not v:
            raise ManifestError(f"{what} must contain non-empty strings, got {v!r}")
    return tuple(value)

class ManifestLoader:
    """
    Turns a manifest document into a validated BuildPlan. Relative component
    paths resolve against `root` (explicit argument, the manifest's own
    `root` key, or the manifest's directory, in that order).
    """
    def __init__(self, root: Optional[Path] = None):
        self.root = Path(root).resolve() if root else None

    def load(self, path: os.PathLike) -> BuildPlan:
        p = Path(path).expanduser().resolve()
        if not p.exists():
            raise ManifestError(f"manifest not found: {p}")
        data = _parse_file(p)
        root = self.root
        if root is None:
            declared = data.get("root")
            root = (p.parent / declared).resolve() if declared else p.parent
        plan = self.from_dict(data, root=root, source=p)
        logger.debug("loaded manifest %s: %d stages, %d components", p, len(plan.stages), sum(len(s) for s in plan.stages))
        return plan

    def from_dict(self, data: Dict[str, Any], root: Optional[Path] = None, source: Optional[Path] = None) -> BuildPlan:
        root = Path(root or self.root or Path.cwd())
        stages_raw = data.get("stages") or []
        if not isinstance(stages_raw, list):
            raise ManifestError("stages must be a list")

        stage_defs: Dict[int, Dict[str, Any]] = {}
        order: List[int] = []
        members: Dict[int, List[ComponentDescriptor]] = {}
        for entry in stages_raw:
            if not isinstance(entry, dict) or "id" not in entry:
                raise ManifestError(f"stage entry needs an id: {entry!r}")
            try:
                sid = int(entry["id"])
            except (TypeError, ValueError):
                raise ManifestError(f"stage id must be an integer: {entry['id']!r}")
            if sid in stage_defs:
                raise ManifestError(f"duplicate stage id {sid}")
            stage_defs[sid] = entry
            order.append(sid)
            members[sid] = [self._component(c, sid, root) for c in (entry.get("components") or [])]

        for c in data.get("components") or []:
            if not isinstance(c, dict) or "stage" not in c:
                raise ManifestError(f"top-level component needs a stage: {c!r}")
            try:
                sid = int(c["stage"])
            except (TypeError, ValueError):
                raise ManifestError(f"component stage must be an integer: {c['stage']!r}")
            if sid not in stage_defs:
                raise ManifestError(f"component {c.get('name')!r} references unknown stage {sid}")
            members[sid].append(self._component(c, sid, root))

        stages = []
        for sid in order:
            entry = stage_defs[sid]
            stages.append(Stage(
                id=sid,
                label=str(entry.get("label") or f"stage {sid}"),
                components=tuple(members[sid]),
                best_effort=bool(entry.get("best_effort", False)),
            ))
        plan = BuildPlan(stages=tuple(stages), source=source)
        errors = plan.validate()
        if errors:
            raise ManifestError("invalid build plan: " + "; ".join(errors))
        return plan

    def _component(self, raw: Any, stage_id: int, root: Path) -> ComponentDescriptor:
        if not isinstance(raw, dict):
            raise ManifestError(f"component entry must be a mapping: {raw!r}")
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ManifestError(f"component needs a name: {raw!r}")
        if "/" in name or name in (".", ".."):
            raise ManifestError(f"component name {name!r} cannot be used as a directory name")
        path = raw.get("path") or raw.get("source")
        if not isinstance(path, str) or not path:
            raise ManifestError(f"component {name!r} needs a path")
        declared = raw.get("stage")
        if declared is not None and str(declared) != str(stage_id):
            raise ManifestError(f"component {name!r} declares stage {declared} inside stage {stage_id}")
        src = Path(os.path.expanduser(path))
        if not src.is_absolute():
            src = root / src
        return ComponentDescriptor(
            name=name,
            source_path=src,
            build_kind=normalize_kind(raw.get("kind") or raw.get("type")),
            extra_args=_as_str_tuple(raw.get("args"), f"args of {name!r}"),
            stage_id=stage_id,
            requires=_as_str_tuple(raw.get("requires"), f"requires of {name!r}"),
        )

def load_plan(path: os.PathLike, root: Optional[Path] = None) -> BuildPlan:
    return ManifestLoader(root=root).load(path)
