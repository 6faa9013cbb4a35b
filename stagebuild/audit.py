# stagebuild/audit.py
# -*- coding: utf-8 -*-
"""
audit.py - pre/post-build verification of a build plan

Features:
 - audit_sources: every component's source tree present or missing
 - audit_tools: executables each build kind needs are on PATH
 - audit_artifacts: artifacts recorded as succeeded still exist on disk
 - checks run in parallel (ThreadPoolExecutor)

Missing sources are warnings (the runner skips them); missing tools for a
component whose source exists and missing artifacts are errors.
"""

from __future__ import annotations

import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from stagebuild import meta
from stagebuild.buildsystem import INSTALL_SCRIPT, OutcomeStatus, detect_build_kind
from stagebuild.logging import get_logger
from stagebuild.meta import BuildPlan, ComponentDescriptor
from stagebuild.state import RunSummary
from stagebuild.toolchain import Environment

logger = get_logger("audit")

OK = "ok"
WARNING = "warning"
ERROR = "error"

TOOLS_BY_KIND: Dict[str, List[str]] = {
    meta.CMAKE: ["cmake"],
    meta.AUTOTOOLS: ["make"],
    meta.NATIVE_TOOLCHAIN: ["cargo"],
    meta.COLCON: ["colcon", "cmake"],
    meta.HEADER_ONLY: [],
    meta.PACKAGE_MANAGER: [],
    INSTALL_SCRIPT: [],
}

@dataclass(frozen=True)
class AuditItem:
    check: str
    subject: str
    level: str
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"check": self.check, "subject": self.subject, "level": self.level, "message": self.message}

@dataclass
class AuditReport:
    items: List[AuditItem] = field(default_factory=list)

    def extend(self, items: List[AuditItem]) -> None:
        self.items.extend(items)

    @property
    def errors(self) -> int:
        return sum(1 for i in self.items if i.level == ERROR)

    @property
    def warnings(self) -> int:
        return sum(1 for i in self.items if i.level == WARNING)

    @property
    def ok(self) -> bool:
        return self.errors == 0

    def to_dict(self) -> Dict[str, Any]:
        return {"errors": self.errors, "warnings": self.warnings, "items": [i.to_dict() for i in self.items]}

class PlanAuditor:
    def __init__(self, plan: BuildPlan, env: Environment, workers: Optional[int] = None,
                 which: Callable[[str], Optional[str]] = shutil.which):
        self.plan = plan
        self.env = env
        self.workers = max(1, int(workers or env.jobs))
        self.which = which

    def _parallel(self, fn, subjects: List[Any], check: str) -> List[AuditItem]:
        if not subjects:
            return []
        results: Dict[int, AuditItem] = {}
        with ThreadPoolExecutor(max_workers=self.workers) as ex:
            futures = {ex.submit(fn, s): idx for idx, s in enumerate(subjects)}
            for fut in as_completed(futures):
                idx = futures[fut]
                try:
                    results[idx] = fut.result()
                except OSError as e:
                    logger.exception("audit: %s failed", check)
                    results[idx] = AuditItem(check, str(subjects[idx]), ERROR, str(e))
        return [results[i] for i in sorted(results)]

    # sources
    def _check_source(self, c: ComponentDescriptor) -> AuditItem:
        if c.source_path.exists():
            return AuditItem("source", c.name, OK, str(c.source_path))
        return AuditItem("source", c.name, WARNING, f"missing: {c.source_path}")

    def audit_sources(self) -> AuditReport:
        report = AuditReport()
        report.extend(self._parallel(self._check_source, list(self.plan.components()), "source"))
        return report

    # tools
    def tools_for(self, c: ComponentDescriptor) -> List[str]:
        kind = c.build_kind
        if kind == meta.AUTO and c.source_path.exists():
            kind = detect_build_kind(c.source_path) or kind
        tools = list(TOOLS_BY_KIND.get(kind, []))
        if kind == meta.CMAKE and self.env.cmake_generator == "Ninja":
            tools.append("ninja")
        return tools + list(c.requires)

    def _check_tools(self, c: ComponentDescriptor) -> AuditItem:
        missing = [t for t in self.tools_for(c) if not self.which(t)]
        if not missing:
            return AuditItem("tools", c.name, OK)
        # components without sources are skipped at run time, their tools don't matter
        level = ERROR if c.source_path.exists() else WARNING
        return AuditItem("tools", c.name, level, "not on PATH: " + ", ".join(missing))

    def audit_tools(self) -> AuditReport:
        report = AuditReport()
        for name, cc in (("cc", self.env.cc), ("cxx", self.env.cxx)):
            if self.which(cc):
                report.items.append(AuditItem("tools", name, OK, cc))
            else:
                report.items.append(AuditItem("tools", name, ERROR, f"compiler {cc} not on PATH"))
        report.extend(self._parallel(self._check_tools, list(self.plan.components()), "tools"))
        return report

    # artifacts
    def _check_artifact(self, entry) -> AuditItem:
        name, path = entry
        if path and Path(path).exists():
            return AuditItem("artifact", name, OK, path)
        return AuditItem("artifact", name, ERROR, f"artifact missing: {path}")

    def audit_artifacts(self, summary: RunSummary) -> AuditReport:
        report = AuditReport()
        entries = [(o.name, o.artifact_path) for o in summary.outcomes() if o.status is OutcomeStatus.SUCCEEDED]
        report.extend(self._parallel(self._check_artifact, entries, "artifact"))
        return report

    def audit_all(self, summary: Optional[RunSummary] = None) -> AuditReport:
        report = AuditReport()
        report.extend(self.audit_sources().items)
        report.extend(self.audit_tools().items)
        if summary is not None:
            report.extend(self.audit_artifacts(summary).items)
        logger.info("audit: %d errors, %d warnings", report.errors, report.warnings)
        return report
