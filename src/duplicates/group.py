"""Explicit aggregate for a cluster of duplicate results.

Persistence encodes a group as the set of rows sharing a
``duplicate_group_id``. In business logic the group is handled as a
:class:`DuplicateGroup` so that linkage is always rewritten for every member
at once and ``related_result_ids`` stays symmetric.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from results import GroupResolution, Result, utcnow

__all__ = ["DuplicateGroup", "GroupState"]


class GroupState(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


@dataclass(frozen=True, slots=True)
class DuplicateGroup:
    id: str
    member_ids: Tuple[str, ...]
    resolution: Optional[GroupResolution] = None

    @classmethod
    def from_members(
        cls,
        group_id: str,
        members: Iterable[Result],
        resolution: Optional[GroupResolution] = None,
    ) -> "DuplicateGroup":
        return cls(
            id=group_id,
            member_ids=tuple(sorted({member.id for member in members})),
            resolution=resolution,
        )

    @property
    def state(self) -> GroupState:
        return GroupState.RESOLVED if self.resolution else GroupState.OPEN

    def __contains__(self, result_id: object) -> bool:
        return result_id in self.member_ids

    def __len__(self) -> int:
        return len(self.member_ids)

    def with_members(self, result_ids: Iterable[str]) -> "DuplicateGroup":
        merged = set(self.member_ids) | set(result_ids)
        return DuplicateGroup(id=self.id, member_ids=tuple(sorted(merged)), resolution=self.resolution)

    def reopened(self) -> "DuplicateGroup":
        return DuplicateGroup(id=self.id, member_ids=self.member_ids)

    def link(
        self,
        members: Mapping[str, Result],
        reasons: Optional[Mapping[str, str]] = None,
    ) -> List[Result]:
        """Return every member rewritten with symmetric linkage fields.

        ``members`` must contain a record for each id in the group. ``reasons``
        supplies a duplicate reason for members that do not have one yet.
        """

        missing = [member_id for member_id in self.member_ids if member_id not in members]
        if missing:
            raise KeyError(f"Group {self.id} is missing records for {missing}")

        reasons = reasons or {}
        timestamp = utcnow()
        linked: List[Result] = []
        for member_id in self.member_ids:
            record = members[member_id]
            related = tuple(other for other in self.member_ids if other != member_id)
            reason = record.duplicate_reason or reasons.get(member_id)
            changed = (
                not record.is_duplicate
                or record.duplicate_group_id != self.id
                or tuple(sorted(record.related_result_ids)) != related
                or reason != record.duplicate_reason
            )
            if not changed:
                linked.append(record)
                continue
            linked.append(
                record.evolve(
                    is_duplicate=True,
                    duplicate_group_id=self.id,
                    duplicate_reason=reason,
                    related_result_ids=related,
                    updated_at=timestamp,
                )
            )
        return linked

    def dict(self, members: Optional[Mapping[str, Result]] = None) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "id": self.id,
            "state": self.state.value,
            "member_ids": list(self.member_ids),
            "resolution": self.resolution.dict() if self.resolution else None,
        }
        if members is not None:
            payload["members"] = [members[member_id].dict() for member_id in self.member_ids]
        return payload
