# Path: core/pipeline/__init__.py
# Purpose: Package initializer for job orchestration.
# Layer: core/pipeline.
# Details: Exposes the pipeline, the job manager, and the progress channel types.

from .jobs import JobManager, JobRecord
from .orchestrator import AnalysisPipeline, JobRequest
from .progress import JobTracker, ProgressChannel, Subscription

__all__ = [
    "AnalysisPipeline",
    "JobManager",
    "JobRecord",
    "JobRequest",
    "JobTracker",
    "ProgressChannel",
    "Subscription",
]
