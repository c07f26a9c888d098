"""
Exception taxonomy for the kintone -> Supabase user sync.

ConfigurationError and SyncInProgressError stop a request before any work is
done. ValidationError is per-record and never aborts a batch. UpstreamError
aborts the current page/batch. ConflictError is raised by the account store
when a user already exists and is treated as a skip by callers.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync errors"""


class ConfigurationError(SyncError):
    """Required credentials or settings are missing"""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message)
        self.missing = missing or []


class ValidationError(SyncError):
    """Malformed input (bad email, missing join key, unreadable CSV)"""


class UpstreamError(SyncError):
    """kintone or Supabase request failed"""

    def __init__(self, message: str, status_code: Optional[int] = None, service: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.service = service


class ConflictError(UpstreamError):
    """Account store reports the user already exists"""


class SyncInProgressError(SyncError):
    """Another run holds the sync lease"""

    def __init__(self, job_name: str, holder: Optional[str] = None):
        super().__init__(f"Sync '{job_name}' already in progress")
        self.job_name = job_name
        self.holder = holder
