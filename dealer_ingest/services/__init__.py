"""Upload staging, job records, orchestration and progress reporting."""

from .chunks import ChunkAssembler, new_upload_id
from .dispatch import CeleryDispatcher, InlineDispatcher
from .job_store import JobStore
from .orchestrator import ImportOrchestrator
from .progress import EventChannel, ProgressReporter, ProgressTracker
from .service import IngestService
from .summary import render_summary_line

__all__ = [
    "ChunkAssembler",
    "new_upload_id",
    "JobStore",
    "ImportOrchestrator",
    "EventChannel",
    "ProgressReporter",
    "ProgressTracker",
    "InlineDispatcher",
    "CeleryDispatcher",
    "IngestService",
    "render_summary_line",
]
