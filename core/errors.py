"""
Error taxonomy for the session layer.

  ResolutionError      — channel metadata carries no identifying field
  CorruptedStateError  — a persisted blob could not be decoded (recovered locally)
  NoPendingStateError  — approvals submitted with nothing paused
  EngineTimeoutError   — the execution engine did not settle in time
  EngineFailureError   — the execution engine reported or raised a failure
  PersistenceIOError   — a store backend could not be reached
"""
from __future__ import annotations


class SessionRelayError(Exception):
    """Base exception for the session layer."""

    def __init__(self, message: str, subject_id: str = ""):
        self.subject_id = subject_id
        super().__init__(message)


class ResolutionError(SessionRelayError):
    pass


class CorruptedStateError(SessionRelayError):
    pass


class NoPendingStateError(SessionRelayError):
    def __init__(self, subject_id: str = ""):
        super().__init__(f"No pending state found for conversation {subject_id}", subject_id)


class EngineTimeoutError(SessionRelayError):
    def __init__(self, subject_id: str = "", timeout_s: float = 0.0):
        self.timeout_s = timeout_s
        super().__init__(f"Execution engine timed out after {timeout_s}s", subject_id)


class EngineFailureError(SessionRelayError):
    pass


class PersistenceIOError(SessionRelayError):
    def __init__(self, message: str, subject_id: str = "", backend: str = ""):
        self.backend = backend
        super().__init__(message, subject_id)
