# stagebuild/state.py
"""
Run summary model and its JSON persistence.

The summary is rewritten after every stage so `status` and `run --resume`
always see the last resolved stage, even after a crash mid-plan.
"""

from __future__ import annotations

import os
import enum
import json
import tempfile
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from stagebuild.buildsystem import BuildOutcome
from stagebuild.logging import get_logger

logger = get_logger("state")

SCHEMA_VERSION = 1
SUMMARY_FILENAME = "run-summary.json"

class StateError(Exception):
    pass

class RunnerState(str, enum.Enum):
    NOT_STARTED = "not-started"
    STAGE_RUNNING = "stage-running"
    COMPLETED = "completed"
    ABORTED = "aborted"

# stage statuses
STAGE_NOT_RUN = "not-run"
STAGE_RUNNING = "running"
STAGE_OK = "succeeded"
STAGE_WARNINGS = "succeeded-with-warnings"
STAGE_FAILED = "failed"

def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")

@dataclass
class AbortInfo:
    stage: int
    component: Optional[str] = None
    phase: Optional[str] = None
    reason: str = "component failed"

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage, "component": self.component, "phase": self.phase, "reason": self.reason}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AbortInfo":
        return cls(stage=int(d["stage"]), component=d.get("component"), phase=d.get("phase"),
                   reason=d.get("reason") or "component failed")

@dataclass
class StageResult:
    id: int
    label: str
    best_effort: bool = False
    status: str = STAGE_NOT_RUN
    outcomes: List[BuildOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def dispatched(self) -> int:
        return len(self.outcomes)

    def outcome(self, name: str) -> Optional[BuildOutcome]:
        for o in self.outcomes:
            if o.name == name:
                return o
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "best_effort": self.best_effort,
            "status": self.status,
            "warnings": list(self.warnings),
            "components": [o.to_dict() for o in self.outcomes],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StageResult":
        return cls(
            id=int(d["id"]),
            label=str(d.get("label", "")),
            best_effort=bool(d.get("best_effort", False)),
            status=d.get("status") or STAGE_NOT_RUN,
            outcomes=[BuildOutcome.from_dict(c) for c in d.get("components") or []],
            warnings=list(d.get("warnings") or []),
        )

@dataclass
class RunSummary:
    state: RunnerState = RunnerState.NOT_STARTED
    stages: List[StageResult] = field(default_factory=list)
    started_at: str = field(default_factory=utcnow)
    updated_at: Optional[str] = None
    from_stage: Optional[int] = None
    current_stage: Optional[int] = None
    aborted: Optional[AbortInfo] = None

    def stage(self, stage_id: int) -> Optional[StageResult]:
        for s in self.stages:
            if s.id == stage_id:
                return s
        return None

    def outcomes(self) -> Iterator[BuildOutcome]:
        for s in self.stages:
            yield from s.outcomes

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for o in self.outcomes():
            out[o.status.value] = out.get(o.status.value, 0) + 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": SCHEMA_VERSION,
            "state": self.state.value,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "from_stage": self.from_stage,
            "current_stage": self.current_stage,
            "aborted": self.aborted.to_dict() if self.aborted else None,
            "stages": [s.to_dict() for s in self.stages],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RunSummary":
        aborted = d.get("aborted")
        return cls(
            state=RunnerState(d.get("state") or RunnerState.NOT_STARTED.value),
            stages=[StageResult.from_dict(s) for s in d.get("stages") or []],
            started_at=d.get("started_at") or utcnow(),
            updated_at=d.get("updated_at"),
            from_stage=d.get("from_stage"),
            current_stage=d.get("current_stage"),
            aborted=AbortInfo.from_dict(aborted) if aborted else None,
        )

# -----------------------
# Store
# -----------------------
class StateStore:
    def __init__(self, path: os.PathLike):
        self.path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def for_build_root(cls, build_root: Path) -> "StateStore":
        return cls(Path(build_root) / SUMMARY_FILENAME)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[RunSummary]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StateError(f"cannot read run summary {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StateError(f"run summary {self.path} is not a JSON object")
        version = data.get("version", SCHEMA_VERSION)
        if version != SCHEMA_VERSION:
            raise StateError(f"unsupported run summary version {version} in {self.path}")
        try:
            return RunSummary.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"malformed run summary {self.path}: {e}") from e

    def save(self, summary: RunSummary) -> Path:
        """Atomic write: temp file in the same directory, then os.replace."""
        summary.updated_at = utcnow()
        payload = json.dumps(summary.to_dict(), indent=2, ensure_ascii=False)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".run-summary.", suffix=".tmp", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        logger.debug("run summary written to %s", self.path)
        return self.path
