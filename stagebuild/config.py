# stagebuild/config.py
# -*- coding: utf-8 -*-
"""
stagebuild central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types (paths, job counts)
- Validate structure and types, warn or error (fatal optional)
- Provide dot-path access via Config dataclass (get_config(), Config.section())
"""

from __future__ import annotations

import os
import json
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml

from stagebuild.logging import get_logger

logger = get_logger("config")


class ConfigError(Exception):
    """Unrecoverable environment or configuration problem; the plan never starts."""


# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "10M",
        "backups": 3,
        "jsonl": {"enabled": False, "path": None},
        "module_levels": {},
    },
    "paths": {
        "root": None,          # defaults to cwd
        "build_root": None,    # <root>/build
        "install_root": None,  # <root>/install
        "state_file": None,    # <build_root>/run-summary.json
    },
    "build": {
        "jobs": None,          # defaults to host cpu count
        "workers": None,       # concurrent components per stage, defaults to jobs
        "build_type": "Release",
        "cmake_generator": None,
        "deadline": None,      # seconds for the whole plan
        "tail_lines": 40,
        "clean": False,
    },
    "toolchain": {
        "preferred": [["clang", "clang++"]],
        "fallback": [
            ["gcc-15", "g++-15"],
            ["gcc-14", "g++-14"],
            ["gcc-13", "g++-13"],
            ["gcc", "g++"],
        ],
    },
    "flags": {
        "cflags": "",
        "cxxflags": "",
        "ldflags": "",
    },
    "env": {},
    "package_manager": {
        "python": None,        # defaults to the running interpreter
        "user": False,
    },
    "plan": {
        "manifest": "components.yaml",
        "best_effort_stages": [],
    },
}

CONFIG_ENV_VAR = "STAGEBUILD_CONFIG"

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def section(self, name: str) -> Dict[str, Any]:
        val = self.merged.get(name)
        return deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()

# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "stagebuild.yaml",
        Path.cwd() / "stagebuild.yml",
        Path.cwd() / "stagebuild.json",
        Path.home() / ".config" / "stagebuild" / "config.yaml",
        Path("/etc") / "stagebuild" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at top level")
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields and coerce basic types."""
    out = deepcopy(cfg)
    paths = out.get("paths")
    if isinstance(paths, dict):
        for key in ("root", "build_root", "install_root", "state_file"):
            if paths.get(key):
                paths[key] = _expand_path(paths[key])
    log_cfg = out.get("logging")
    if isinstance(log_cfg, dict) and log_cfg.get("file"):
        log_cfg["file"] = _expand_path(log_cfg["file"])

    build = out.get("build")
    if isinstance(build, dict):
        for key in ("jobs", "workers", "tail_lines"):
            if build.get(key) is not None:
                try:
                    build[key] = int(build[key])
                except (TypeError, ValueError):
                    logger.debug("config: cannot coerce build.%s=%r", key, build[key])
        if build.get("deadline") is not None:
            try:
                build["deadline"] = float(build["deadline"])
            except (TypeError, ValueError):
                logger.debug("config: cannot coerce build.deadline=%r", build["deadline"])
    return out

def _allowed_top_level_keys() -> List[str]:
    return list(DEFAULTS.keys())

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless called with fatal=True in load."""
    issues: List[str] = []
    for k in cfg.keys():
        if k not in _allowed_top_level_keys():
            issues.append(f"Unknown top-level config key: {k}")
    build = cfg.get("build") or {}
    for key in ("jobs", "workers"):
        val = build.get(key)
        if val is not None and (not isinstance(val, int) or val < 1):
            issues.append(f"build.{key} must be integer >= 1")
    tail = build.get("tail_lines")
    if not isinstance(tail, int) or tail < 0:
        issues.append("build.tail_lines must be integer >= 0")
    deadline = build.get("deadline")
    if deadline is not None and (not isinstance(deadline, float) or deadline <= 0):
        issues.append("build.deadline must be a positive number of seconds")
    for key, val in (cfg.get("flags") or {}).items():
        if not isinstance(val, str):
            issues.append(f"flags.{key} must be a string")
    env = cfg.get("env")
    if not isinstance(env, dict):
        issues.append("env must be a mapping")
    else:
        for key, val in env.items():
            if not isinstance(val, str):
                issues.append(f"env.{key} must be a string")
    tc = cfg.get("toolchain") or {}
    for key in ("preferred", "fallback"):
        pairs = tc.get(key)
        if not isinstance(pairs, list) or not all(
            isinstance(p, (list, tuple)) and len(p) == 2 and all(isinstance(x, str) for x in p) for p in pairs
        ):
            issues.append(f"toolchain.{key} must be a list of [cc, cxx] pairs")
    stages = (cfg.get("plan") or {}).get("best_effort_stages")
    if not isinstance(stages, list) or not all(isinstance(s, int) for s in stages):
        issues.append("plan.best_effort_stages must be a list of stage ids")
    return (len(issues) == 0, issues)

# ----------------------------
# Loading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise.
    Returns Config object and caches it for get_config().
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = _load_file(cfg_path) if cfg_path else {}
        merged = _deep_merge(DEFAULTS, raw)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                raise ConfigError(msg)
            logger.warning(msg)
        cfg_obj = Config(raw=raw, merged=normalized, path=cfg_path)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return cfg_obj

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def reset() -> None:
    """Drop the cached config so the next get_config() reloads from disk."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = None

def validate_config(cfg: Optional[Config] = None) -> Tuple[bool, List[str]]:
    cfg = cfg or get_config()
    ok, issues = _validate_structure(cfg.merged)
    for key in ("root", "build_root", "install_root"):
        p = cfg.get(f"paths.{key}")
        if p and Path(p).exists() and not os.access(p, os.W_OK):
            issues.append(f"paths.{key} {p} not writable")
    return (len(issues) == 0, issues)
