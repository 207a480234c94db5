from __future__ import annotations

import asyncio

from loguru import logger

from flowpilot.events import EventLevel, EventType
from flowpilot.oracle.base import MaintenanceReport, MaintenanceStatus
from flowpilot.state import EngineContext, Phase


class MaintenanceLoop:
    """Watchdog that periodically asks the oracle about a finished workflow."""

    def __init__(self, context: EngineContext) -> None:
        self.context = context
        self.reports: list[MaintenanceReport] = []

    async def scan_once(self) -> MaintenanceReport | None:
        ctx = self.context
        verifier = ctx.registry.verifier
        ctx.events.emit(
            EventType.MAINTENANCE_SCAN,
            verifier.id,
            "Running maintenance scan",
            level=EventLevel.THOUGHT,
        )
        try:
            report = await ctx.oracle.maintenance_scan(ctx.state.workflow)
        except Exception as exc:
            logger.warning("Maintenance scan failed: {}", exc)
            ctx.events.emit(
                EventType.LOG,
                verifier.id,
                f"Maintenance scan failed: {exc}",
                level=EventLevel.WARNING,
            )
            return None

        ctx.metrics.record_tokens(verifier.id, report.tokens_used)
        degraded = report.status is MaintenanceStatus.DEGRADED
        ctx.events.emit(
            EventType.MAINTENANCE_REPORT,
            verifier.id,
            f"{report.status.value}: {report.message}",
            level=EventLevel.WARNING if degraded else EventLevel.SUCCESS,
            payload={"status": report.status.value},
        )
        self.reports.append(report)
        return report

    async def run(self, max_scans: int | None = None) -> list[MaintenanceReport]:
        """Scan while the workflow stays in MAINTENANCE, first scan immediately."""
        ctx = self.context
        reports: list[MaintenanceReport] = []
        scans = 0
        while ctx.state.phase is Phase.MAINTENANCE:
            if max_scans is not None and scans >= max_scans:
                break
            if scans:
                await asyncio.sleep(ctx.config.maintenance.interval_seconds)
                if ctx.state.phase is not Phase.MAINTENANCE:
                    break
            report = await self.scan_once()
            scans += 1
            if report is not None:
                reports.append(report)
        return reports
