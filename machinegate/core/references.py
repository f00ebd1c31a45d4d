"""Reference validation for ids held by rules and requests.

Rules and approval requests refer to users, roles, departments, categories
and machines by id only. Before any write, the services ask this validator
whether those ids are well-formed and point at live records.
"""

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from machinegate.core.errors import NotFoundError, ValidationError
from machinegate.db.models import Category, Department, Machine, Role, User

logger = logging.getLogger(__name__)


class ReferenceKind(str, Enum):
    """Kinds of record a rule or request may reference."""

    USER = "user"
    ROLE = "role"
    DEPARTMENT = "department"
    CATEGORY = "category"
    MACHINE = "machine"


_MODELS = {
    ReferenceKind.USER: User,
    ReferenceKind.ROLE: Role,
    ReferenceKind.DEPARTMENT: Department,
    ReferenceKind.CATEGORY: Category,
    ReferenceKind.MACHINE: Machine,
}


def parse_uuid(value: Union[str, UUID, None], field: str) -> UUID:
    """Parse an id or raise a field-level VALIDATION_ERROR."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError.for_field(field, f"Invalid {field} format", code="INVALID_ID")


def normalize_id(value: Any) -> Optional[str]:
    """Canonical string form of an id, or None for empty values."""
    if value is None or value == "":
        return None
    try:
        return str(UUID(str(value)))
    except ValueError:
        return str(value)


def normalize_ids(values: Optional[Iterable[Any]]) -> List[str]:
    """Canonicalize and de-duplicate a list of ids, keeping order."""
    seen: Dict[str, None] = {}
    for value in values or []:
        normalized = normalize_id(value)
        if normalized is not None:
            seen.setdefault(normalized, None)
    return list(seen)


class ReferenceValidator:
    """Checks that referenced ids exist and are active."""

    def __init__(self, db: Session):
        self.db = db

    def exists(self, kind: Union[ReferenceKind, str], ref_id: Union[str, UUID, None]) -> bool:
        """Return True if ``ref_id`` is a live record of ``kind``."""
        if ref_id is None:
            return False
        try:
            parsed = ref_id if isinstance(ref_id, UUID) else UUID(str(ref_id))
        except ValueError:
            return False
        return bool(self._live_ids(ReferenceKind(kind), [parsed]))

    def exists_all(
        self,
        kind: Union[ReferenceKind, str],
        ids: Optional[Iterable[Union[str, UUID]]],
    ) -> Dict[str, List[str]]:
        """
        Check a batch of ids with one query.

        Returns:
            ``{"invalid": [...]}`` listing malformed, missing and inactive ids
            in input order. An empty list means every id is valid.
        """
        kind = ReferenceKind(kind)
        invalid: List[str] = []
        parsed: Dict[str, UUID] = {}

        for raw in ids or []:
            try:
                parsed[str(raw)] = raw if isinstance(raw, UUID) else UUID(str(raw))
            except ValueError:
                invalid.append(str(raw))

        if parsed:
            live = self._live_ids(kind, list(parsed.values()))
            invalid.extend(raw for raw, value in parsed.items() if value not in live)

        return {"invalid": invalid}

    def require(
        self,
        kind: Union[ReferenceKind, str],
        ref_id: Union[str, UUID, None],
        *,
        field: str,
        code: str,
    ):
        """Load a live record or raise NOT_FOUND with ``code``."""
        kind = ReferenceKind(kind)
        parsed = parse_uuid(ref_id, field)
        model = _MODELS[kind]
        record = self.db.query(model).filter(model.id == parsed).first()
        if record is None or not self._is_live(kind, record):
            raise NotFoundError(f"{kind.value.capitalize()} not found", code=code)
        return record

    def _live_ids(self, kind: ReferenceKind, ids: List[UUID]) -> set:
        model = _MODELS[kind]
        query = self.db.query(model.id).filter(model.id.in_(ids))
        if kind is ReferenceKind.MACHINE:
            query = query.filter(model.deleted_at.is_(None))
        else:
            query = query.filter(model.is_active.is_(True))
        return {row[0] for row in query.all()}

    @staticmethod
    def _is_live(kind: ReferenceKind, record) -> bool:
        if kind is ReferenceKind.MACHINE:
            return record.deleted_at is None
        return bool(record.is_active)
