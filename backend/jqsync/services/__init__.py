"""
Service layer modules

Leases, run bookkeeping, catch-up planning, idempotent writes, SCD history
and the job runner that ties them together.
"""

from .job_runner import JobRunner, get_job_runner, run_job

__all__ = [
    "JobRunner",
    "get_job_runner",
    "run_job",
]
