"""Result records, submission schema and the SQLite result store."""

from .errors import (
    ConflictError,
    EngineError,
    NotFoundError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from .locks import KeyedLocks
from .models import (
    Actor,
    CandidateId,
    Category,
    CouncilorTallies,
    MpTallies,
    PresidentialTallies,
    Result,
    ResultStatus,
    ResultSubmission,
    Role,
    Source,
    SubmissionChannel,
    Tallies,
    new_identifier,
    tallies_for,
    utcnow,
)
from .store import AuditEntry, GroupResolution, ResultStore

__all__ = [
    "Actor",
    "AuditEntry",
    "CandidateId",
    "Category",
    "ConflictError",
    "CouncilorTallies",
    "EngineError",
    "GroupResolution",
    "KeyedLocks",
    "MpTallies",
    "NotFoundError",
    "PermissionDeniedError",
    "PresidentialTallies",
    "Result",
    "ResultStatus",
    "ResultStore",
    "ResultSubmission",
    "Role",
    "Source",
    "StateError",
    "SubmissionChannel",
    "Tallies",
    "ValidationError",
    "new_identifier",
    "tallies_for",
    "utcnow",
]
