"""
Pipeline stages for ingestion.

Each stage exposes one ``handle_*_job(job, payload)`` coroutine that the
dispatcher maps to a job kind.
"""

__all__ = ["contacts", "embed", "normalize", "normalizers", "sync"]
