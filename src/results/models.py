"""Domain model for election result submissions.

A :class:`Result` is one submission of vote tallies for a polling center and
election category. Tallies are represented by a tagged union
(:class:`PresidentialTallies`, :class:`MpTallies`, :class:`CouncilorTallies`)
so a result always carries exactly the tally mapping of its own category.
Incoming payloads are checked by :class:`ResultSubmission` before they reach
the engine.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, NewType, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "Actor",
    "CandidateId",
    "Category",
    "CouncilorTallies",
    "MpTallies",
    "PresidentialTallies",
    "Result",
    "ResultStatus",
    "ResultSubmission",
    "Role",
    "Source",
    "SubmissionChannel",
    "Tallies",
    "new_identifier",
    "tallies_for",
    "utcnow",
]

CandidateId = NewType("CandidateId", str)


class Category(str, Enum):
    """Election category a result reports on."""

    PRESIDENT = "president"
    MP = "mp"
    COUNCILOR = "councilor"


class Source(str, Enum):
    """Origin of a result: collected internally or published officially."""

    INTERNAL = "internal"
    OFFICIAL = "official"


class ResultStatus(str, Enum):
    """Verification lifecycle states."""

    PENDING = "pending"
    VERIFIED = "verified"
    FLAGGED = "flagged"
    REJECTED = "rejected"


class SubmissionChannel(str, Enum):
    WHATSAPP = "whatsapp"
    PORTAL = "portal"
    USSD = "ussd"
    SMS = "sms"
    BOTH = "both"


class Role(str, Enum):
    AGENT = "agent"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"
    REVIEWER = "reviewer"
    OBSERVER = "observer"


@dataclass(frozen=True, slots=True)
class Actor:
    """Authenticated identity performing an operation."""

    id: str
    role: Role = Role.AGENT


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_identifier() -> str:
    return str(uuid.uuid4())


# ----------------------------------------------------------------------
# Vote tallies
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class _BaseTallies:
    votes: Mapping[CandidateId, int] = field(default_factory=dict)

    category: ClassVar[Category]

    def __post_init__(self) -> None:
        cleaned: Dict[CandidateId, int] = {}
        for candidate_id, count in dict(self.votes).items():
            key = str(candidate_id).strip()
            if not key:
                raise ValueError("Candidate identifiers must be non-empty.")
            if key in cleaned:
                raise ValueError(f"Candidate {key!r} appears more than once.")
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise ValueError(f"Vote count for {key!r} must be a non-negative integer.")
            cleaned[CandidateId(key)] = count
        object.__setattr__(self, "votes", cleaned)

    @property
    def total(self) -> int:
        return sum(self.votes.values())

    def as_dict(self) -> Dict[str, int]:
        return dict(self.votes)


@dataclass(frozen=True, slots=True)
class PresidentialTallies(_BaseTallies):
    category: ClassVar[Category] = Category.PRESIDENT


@dataclass(frozen=True, slots=True)
class MpTallies(_BaseTallies):
    category: ClassVar[Category] = Category.MP


@dataclass(frozen=True, slots=True)
class CouncilorTallies(_BaseTallies):
    category: ClassVar[Category] = Category.COUNCILOR


Tallies = Union[PresidentialTallies, MpTallies, CouncilorTallies]

_TALLY_TYPES: Mapping[Category, type] = {
    Category.PRESIDENT: PresidentialTallies,
    Category.MP: MpTallies,
    Category.COUNCILOR: CouncilorTallies,
}


def tallies_for(category: Category | str, votes: Mapping[str, int]) -> Tallies:
    """Build the tally variant matching ``category``."""

    return _TALLY_TYPES[Category(category)](votes=dict(votes))


# ----------------------------------------------------------------------
# Result record
# ----------------------------------------------------------------------
@dataclass(slots=True)
class Result:
    """Representation of a row stored in the ``results`` table."""

    id: str
    polling_center_id: str
    category: Category
    tallies: Tallies
    invalid_votes: int
    total_votes: int
    source: Source
    submission_channel: SubmissionChannel
    submitted_by: str
    constituency: Optional[str] = None
    comments: Optional[str] = None
    status: ResultStatus = ResultStatus.PENDING
    status_reason: Optional[str] = None
    verified_by: Optional[str] = None
    is_duplicate: bool = False
    duplicate_group_id: Optional[str] = None
    duplicate_reason: Optional[str] = None
    related_result_ids: Tuple[str, ...] = ()
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)
    verified_at: Optional[str] = None

    @property
    def sibling_key(self) -> Tuple[str, str, str]:
        """Key shared by results competing for the same tally."""

        return (self.polling_center_id, self.category.value, self.source.value)

    @property
    def totals_consistent(self) -> bool:
        return self.total_votes == self.invalid_votes + self.tallies.total

    def evolve(self, **changes: Any) -> "Result":
        return replace(self, **changes)

    def dict(self) -> Dict[str, object]:
        """Return a JSON-serialisable representation of the record."""

        raw = asdict(self)
        raw["category"] = self.category.value
        raw["source"] = self.source.value
        raw["submission_channel"] = self.submission_channel.value
        raw["status"] = self.status.value
        raw["votes"] = self.tallies.as_dict()
        raw["related_result_ids"] = list(self.related_result_ids)
        del raw["tallies"]
        return raw


class ResultSubmission(BaseModel):
    """Schema check applied to payloads arriving from the ingestion boundary."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    polling_center_id: str = Field(min_length=1)
    category: Category
    votes: Dict[str, int]
    invalid_votes: int = Field(ge=0)
    total_votes: Optional[int] = Field(default=None, ge=0)
    source: Source = Source.INTERNAL
    submission_channel: SubmissionChannel = SubmissionChannel.PORTAL
    constituency: Optional[str] = None
    comments: Optional[str] = None

    @field_validator("votes")
    @classmethod
    def _check_votes(cls, value: Dict[str, int]) -> Dict[str, int]:
        for candidate_id, count in value.items():
            if not str(candidate_id).strip():
                raise ValueError("candidate identifiers must be non-empty")
            if count < 0:
                raise ValueError(f"vote count for {candidate_id!r} must be non-negative")
        return value

    def expected_total(self) -> int:
        return self.invalid_votes + sum(self.votes.values())
