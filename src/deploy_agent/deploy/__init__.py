"""Deployment protocol: authentication, materialization and promotion."""

from .auth import Authenticator, SignedRequest, compute_signature
from .orchestrator import ReleaseOrchestrator, validate_run_id

__all__ = [
    "Authenticator",
    "SignedRequest",
    "compute_signature",
    "ReleaseOrchestrator",
    "validate_run_id",
]
