# src/pos_fiscal/services/__init__.py
"""Business logic services for FBR invoice submission."""

from .authority import AuthorityClient
from .queue_worker import QueueWorker, RunSummary
from .reference_data import ReferenceDataCache, ReferenceDataSet
from .submission import SubmissionService, TenantContext
from .submission_queue import SubmissionQueue
from .vault import CredentialVault

__all__ = [
    "AuthorityClient",
    "CredentialVault",
    "QueueWorker",
    "ReferenceDataCache",
    "ReferenceDataSet",
    "RunSummary",
    "SubmissionQueue",
    "SubmissionService",
    "TenantContext",
]
