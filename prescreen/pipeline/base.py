"""
Pipeline contracts shared by the submission and fill orchestrators.

Every orchestrator call returns one of the result dataclasses below; routes
serialize them with to_dict(). Errors that should reach the caller are raised
as PrescreenError subclasses carrying the HTTP status to answer with.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional


# ── Errors ────────────────────────────────────────────────────────────────────

class PrescreenError(Exception):
    """Base error for pipeline failures that should surface to the caller."""
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(PrescreenError):
    """Bad input, raised before any side effect."""
    status_code = 400


class NotFoundError(PrescreenError):
    status_code = 404


class SubmissionFailedError(PrescreenError):
    """Altair rejected the whole submission; the attempted leads were saved as api_error."""
    status_code = 502

    def __init__(self, message, batch_id=None):
        super().__init__(message)
        self.batch_id = batch_id


# ── Caller identity ──────────────────────────────────────────────────────────

@dataclass
class Actor:
    """Who triggered a pipeline call; recorded on batches and audit entries."""
    user_id: Optional[str] = None
    email: Optional[str] = None
    role: str = 'viewer'
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    @property
    def label(self) -> Optional[str]:
        return self.email or self.user_id


SYSTEM_ACTOR = Actor(user_id='system', role='admin')


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass
class SubmissionResult:
    """Outcome of one submit_batch() call."""
    batch_id: Optional[int]
    total_submitted: int = 0
    qualified_count: int = 0
    failed_count: int = 0
    status: str = 'completed'
    skipped: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'batchId': self.batch_id,
            'totalSubmitted': self.total_submitted,
            'qualifiedCount': self.qualified_count,
            'failedCount': self.failed_count,
            'status': self.status,
        }
        if self.skipped:
            data['skipped'] = self.skipped
        return data


@dataclass
class BureauFillResult:
    """Per-bureau outcome inside one fill execution."""
    submitted: int = 0
    qualified: int = 0
    failed: int = 0
    batch_id: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'submitted': self.submitted,
            'qualified': self.qualified,
            'failed': self.failed,
        }
        if self.batch_id is not None:
            data['batchId'] = self.batch_id
        if self.error is not None or self.batch_id is not None:
            data['error'] = self.error
        return data


@dataclass
class FillResult:
    results: Dict[str, BureauFillResult] = field(default_factory=dict)
    total_updated: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'results': {bureau: r.to_dict() for bureau, r in self.results.items()},
            'totalUpdated': self.total_updated,
        }


@dataclass
class FillScan:
    """Leads that matched at least one bureau but are missing others."""
    leads: List[Dict[str, Any]] = field(default_factory=list)
    missing_by_bureau: Dict[str, List[Any]] = field(default_factory=dict)

    def summary(self) -> Dict[str, int]:
        return {
            'totalLeadsWithMissing': len(self.leads),
            'missingEq': len(self.missing_by_bureau.get('eq', [])),
            'missingTu': len(self.missing_by_bureau.get('tu', [])),
            'missingEx': len(self.missing_by_bureau.get('ex', [])),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {'summary': self.summary(), 'leads': self.leads}
