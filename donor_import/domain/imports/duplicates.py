"""
Duplicate detection for cleaned donor rows and derivation of the action an
import takes for each row.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging

logger = logging.getLogger(__name__)

TIER_EXACT = "exact"
TIER_HIGH = "high"
TIER_LOW = "low"
_TIER_RANK = {TIER_EXACT: 0, TIER_HIGH: 1, TIER_LOW: 2}

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_SKIP = "skip"
ACTION_NEEDS_REVIEW = "needs_review"
ACTIONS = (ACTION_CREATE, ACTION_UPDATE, ACTION_SKIP, ACTION_NEEDS_REVIEW)


@dataclass
class ExistingRecord:
    """The fields of a stored (or earlier in-file) donor used for matching."""
    id: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    city: Optional[str] = None
    student_name: Optional[str] = None

    @classmethod
    def from_fields(cls, record_id: str, fields: Dict[str, Any]) -> "ExistingRecord":
        return cls(
            id=record_id,
            first_name=fields.get("first_name") or "",
            last_name=fields.get("last_name") or "",
            email=fields.get("email"),
            city=fields.get("city"),
            student_name=fields.get("student_name"),
        )


@dataclass
class DuplicateMatch:
    matched_record_id: str
    tier: str
    match_reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched_record_id": self.matched_record_id,
            "tier": self.tier,
            "match_reasons": list(self.match_reasons),
        }


def _norm(value: Optional[str]) -> str:
    return " ".join((value or "").split()).lower()


def find_matches(cleaned: Dict[str, Any], candidates: Iterable[ExistingRecord]) -> List[DuplicateMatch]:
    """
    Compare a cleaned record against candidate records.

    Tier per candidate, first rule that applies wins:
    1. same email (case-insensitive) -> exact
    2. same first + last name and same city or same student name -> high
    3. same first + last name -> low

    Every applicable reason is recorded on the match. Results are ordered by
    tier, then by candidate order.
    """
    email = _norm(cleaned.get("email"))
    first = _norm(cleaned.get("first_name"))
    last = _norm(cleaned.get("last_name"))
    city = _norm(cleaned.get("city"))
    student = _norm(cleaned.get("student_name"))
    has_name = bool(first and last)

    matches: List[DuplicateMatch] = []
    seen_ids = set()
    for candidate in candidates:
        if candidate.id in seen_ids:
            continue

        reasons: List[str] = []
        email_match = bool(email) and email == _norm(candidate.email)
        name_match = has_name and first == _norm(candidate.first_name) and last == _norm(candidate.last_name)
        if email_match:
            reasons.append("email exact")
        if name_match:
            reasons.append("name exact")
            if city and city == _norm(candidate.city):
                reasons.append("name + city")
            if student and student == _norm(candidate.student_name):
                reasons.append("name + student")

        if email_match:
            tier = TIER_EXACT
        elif name_match and len(reasons) > 1:
            tier = TIER_HIGH
        elif name_match:
            tier = TIER_LOW
        else:
            continue

        seen_ids.add(candidate.id)
        matches.append(DuplicateMatch(matched_record_id=candidate.id, tier=tier, match_reasons=reasons))

    matches.sort(key=lambda match: _TIER_RANK[match.tier])
    return matches


def resolve_action(
    matches: List[DuplicateMatch],
    skip_duplicates: bool,
    update_existing: bool,
) -> str:
    """
    Derive the action for a row without fatal errors.

    No matches -> create; skip_duplicates and any match -> skip;
    update_existing and an exact or high match -> update; otherwise the row
    needs review. A low-tier match is never applied automatically.
    """
    if not matches:
        return ACTION_CREATE
    if skip_duplicates:
        return ACTION_SKIP
    if update_existing and any(m.tier in (TIER_EXACT, TIER_HIGH) for m in matches):
        return ACTION_UPDATE
    return ACTION_NEEDS_REVIEW


def update_target(matches: List[DuplicateMatch]) -> Optional[str]:
    """Record id an ``update`` action applies to: the strongest exact/high match."""
    for match in matches:
        if match.tier in (TIER_EXACT, TIER_HIGH):
            return match.matched_record_id
    return None


class InFilePool:
    """
    Records created earlier in the same file, so later rows in the file are
    matched against them before anything is persisted.
    """

    def __init__(self):
        self._records: List[ExistingRecord] = []
        self._by_email: Dict[str, List[ExistingRecord]] = {}
        self._by_name: Dict[tuple, List[ExistingRecord]] = {}

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record_id: str, cleaned: Dict[str, Any]) -> None:
        record = ExistingRecord.from_fields(record_id, cleaned)
        self._records.append(record)
        email = _norm(record.email)
        if email:
            self._by_email.setdefault(email, []).append(record)
        name_key = (_norm(record.first_name), _norm(record.last_name))
        if all(name_key):
            self._by_name.setdefault(name_key, []).append(record)

    def candidates_for(self, cleaned: Dict[str, Any]) -> List[ExistingRecord]:
        found: List[ExistingRecord] = []
        email = _norm(cleaned.get("email"))
        if email:
            found.extend(self._by_email.get(email, []))
        name_key = (_norm(cleaned.get("first_name")), _norm(cleaned.get("last_name")))
        if all(name_key):
            found.extend(r for r in self._by_name.get(name_key, []) if r not in found)
        return found
