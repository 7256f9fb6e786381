"""Fold completed unit branches into the integration branch.

Branches are merged in group order with ``--no-ff``.  A clean merge marks the
unit ``merged``; a conflict goes to the external resolver (pass/fail) and the
unit ends ``merged`` or ``blocked``.  A missing branch or a merge error blocks
the unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from trackswarm.adapters.base import ConflictResolver, WorkspaceProvider
from trackswarm.coordinator.event_bus import EventBus
from trackswarm.protocol.models import WorkPlan, WorkUnit

logger = logging.getLogger(__name__)

DEFAULT_INTEGRATION_BRANCH = "work/integration"


@dataclass(slots=True)
class MergeReport:
    merged: list[str] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)


class MergeFlow:
    def __init__(
        self,
        workspaces: WorkspaceProvider,
        *,
        integration_branch: str = DEFAULT_INTEGRATION_BRANCH,
        resolver: ConflictResolver | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.workspaces = workspaces
        self.integration_branch = integration_branch
        self.resolver = resolver
        self.events = events

    def _emit(self, unit: WorkUnit) -> None:
        if self.events is not None:
            self.events.publish("merge", unit.id, unit.status_message, status=unit.status)

    def _block(self, unit: WorkUnit, message: str, report: MergeReport) -> None:
        unit.status = "blocked"
        unit.status_message = message
        report.blocked[unit.id] = message
        logger.warning("Unit %s blocked: %s", unit.id, message)
        self._emit(unit)

    def _merged(self, unit: WorkUnit, message: str, report: MergeReport) -> None:
        unit.status = "merged"
        unit.status_message = message
        report.merged.append(unit.id)
        logger.info("Unit %s merged into %s", unit.id, self.integration_branch)
        self._emit(unit)

    async def _resolve(self, unit: WorkUnit, conflicts: list[str]) -> bool:
        if self.resolver is None or unit.branch is None:
            return False
        try:
            return bool(await self.resolver.resolve(unit.branch, self.integration_branch, conflicts))
        except Exception as exc:
            logger.warning("Conflict resolver failed for %s: %s", unit.id, exc)
            return False

    async def merge_completed(self, plan: WorkPlan) -> MergeReport:
        report = MergeReport()
        for group in plan.groups:
            for uid in group:
                unit = plan.unit(uid)
                if unit is None or unit.status != "completed":
                    continue
                await self._merge_unit(unit, report)
        logger.info(
            "Merge finished: %d merged, %d blocked", len(report.merged), len(report.blocked),
        )
        return report

    async def _merge_unit(self, unit: WorkUnit, report: MergeReport) -> None:
        if not unit.branch:
            self._block(unit, "No branch associated with unit", report)
            return

        try:
            outcome = await self.workspaces.merge(unit.branch, self.integration_branch)
        except Exception as exc:
            self._block(unit, f"Error during merge: {exc}", report)
            return

        if outcome.success:
            self._merged(unit, "Merged into integration branch", report)
            return
        if not outcome.conflict:
            self._block(unit, outcome.message or "Merge failed", report)
            return

        passed = await self._resolve(unit, outcome.conflicts)
        try:
            await self.workspaces.finish_merge(self.integration_branch, accept=passed)
        except Exception as exc:
            self._block(unit, f"Error concluding merge: {exc}", report)
            return
        if passed:
            self._merged(unit, "Conflicts resolved and merged", report)
        else:
            self._block(unit, "Conflict during merge; resolution required", report)
