# stagebuild/logging.py
# -*- coding: utf-8 -*-
"""
stagebuild logging

Features:
 - Console color formatter
 - Rotating file handler (human sizes: 10M, 512K, 1G)
 - JSONL log for machine consumption
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration and per-level counters
"""

from __future__ import annotations

import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

_logger = logging.getLogger("stagebuild.logging")

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",
        logging.INFO: "\033[36m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41;37m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        if not hasattr(record, "sb_module"):
            record.sb_module = record.name
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg

# ----------------------
# JSONL formatter
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "sb_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "sb_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

class _PlainFormatter(logging.Formatter):
    def format(self, record):
        if not hasattr(record, "sb_module"):
            record.sb_module = record.name
        return super().format(record)

# ----------------------
# StageLogger (singleton)
# ----------------------
class StageLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("stagebuild")
        self._root.setLevel(logging.INFO)
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._root.addFilter(self._count_levels_filter)
        self._inited = True

    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            with self._lock:
                self._metrics[name] += 1
        return True

    def apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)

            self._module_filter = ModuleLevelFilter(cfg.get("module_levels") or {})
            self._root.addFilter(self._module_filter)

            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
            fmt = cfg.get("format") or "[%(asctime)s] [%(levelname)s] [%(sb_module)s] %(message)s"
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            ch = logging.StreamHandler(sys.stderr)
            ch.setLevel(level)
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
            self._root.addHandler(ch)
            self._handlers.append(ch)

            root_level = level
            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = parse_size(cfg.get("max_size", "10M")) or 10 * 1024 * 1024
                fh = logging.handlers.RotatingFileHandler(
                    str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 3)), encoding="utf-8"
                )
                file_level = getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG)
                fh.setLevel(file_level)
                fh.setFormatter(_PlainFormatter("%(asctime)s %(levelname)s [%(sb_module)s] %(message)s"))
                self._root.addHandler(fh)
                self._handlers.append(fh)
                root_level = min(root_level, file_level)

            jsonl_cfg = cfg.get("jsonl") or {}
            if jsonl_cfg.get("enabled") and jsonl_cfg.get("path"):
                path = Path(jsonl_cfg["path"]).expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                jh.setFormatter(JSONLineFormatter())
                self._root.addHandler(jh)
                self._handlers.append(jh)
                root_level = min(root_level, jh.level)

            self._root.setLevel(root_level)
            # handlers own the output from here on
            self._root.propagate = False
            _logger.debug("logging: configuration applied")

    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'sb_module' into records."""
        return logging.LoggerAdapter(self._root, {"sb_module": module_name})

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

    def reset_metrics(self):
        with self._lock:
            for k in self._metrics:
                self._metrics[k] = 0

# ----------------------
# Helper parse size (public)
# ----------------------
def parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    units = (("KB", 1024), ("K", 1024), ("MB", 1024 ** 2), ("M", 1024 ** 2), ("GB", 1024 ** 3), ("G", 1024 ** 3))
    try:
        for suffix, mul in units:
            if ss.endswith(suffix):
                return int(float(ss[: -len(suffix)]) * mul)
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = StageLogger()

def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)

def setup_logging(cfg: Dict[str, Any]):
    _GLOBAL_LOGGER.apply_config(cfg or {})

def get_metrics() -> Dict[str, int]:
    return _GLOBAL_LOGGER.get_metrics()

def reset_metrics():
    _GLOBAL_LOGGER.reset_metrics()
