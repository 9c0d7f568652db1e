"""Batch sync orchestration and series reconciliation."""

from mirrorsync.connectors.sync.orchestrator import BatchOutcome, BatchResult, BatchSyncOrchestrator
from mirrorsync.connectors.sync.series import OccurrenceView, SeriesReconciler, render_occurrence

__all__ = [
    "BatchOutcome",
    "BatchResult",
    "BatchSyncOrchestrator",
    "OccurrenceView",
    "SeriesReconciler",
    "render_occurrence",
]
