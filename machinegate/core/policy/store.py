"""Policy rule store.

Create, update, soft-delete and list policy rules. Every write validates
its input and referenced ids first, then runs in a savepoint so that a
priority collision caught by the partial unique index surfaces as a
CONFLICT without discarding the caller's transaction.
"""

import logging
from typing import Any, Dict, List, Optional, Set, Union
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from machinegate.core.errors import ConflictError, NotFoundError, ValidationError
from machinegate.core.references import (
    ReferenceKind,
    ReferenceValidator,
    normalize_ids,
    parse_uuid,
)
from machinegate.db.base import utcnow
from .cache import RuleCache
from .rules import ActionType, PermissionLevel

logger = logging.getLogger(__name__)

# Rule column -> kind of record its ids refer to
SCOPE_REFERENCES = {
    "user_ids": ReferenceKind.USER,
    "role_ids": ReferenceKind.ROLE,
    "department_ids": ReferenceKind.DEPARTMENT,
    "category_ids": ReferenceKind.CATEGORY,
    "approver_roles": ReferenceKind.ROLE,
}

UPDATABLE_FIELDS = {
    "name",
    "description",
    "action",
    "permission",
    "user_ids",
    "role_ids",
    "department_ids",
    "category_ids",
    "approver_roles",
    "max_value",
    "priority",
    "is_active",
}

SORTABLE_FIELDS = {"priority", "created_at", "updated_at", "name", "action"}


class PolicyRuleService:
    """CRUD for policy rules."""

    def __init__(
        self,
        db: Session,
        cache: Optional[RuleCache] = None,
        references: Optional[ReferenceValidator] = None,
    ):
        self.db = db
        self.cache = cache
        self.references = references or ReferenceValidator(db)
        self._written_actions: Set[ActionType] = set()

    def create_rule(
        self,
        *,
        name: str,
        action: Union[ActionType, str],
        permission: Union[PermissionLevel, str],
        created_by: Union[str, UUID],
        description: Optional[str] = None,
        user_ids: Optional[List[str]] = None,
        role_ids: Optional[List[str]] = None,
        department_ids: Optional[List[str]] = None,
        category_ids: Optional[List[str]] = None,
        approver_roles: Optional[List[str]] = None,
        max_value: Optional[float] = None,
        priority: int = 0,
        is_active: bool = True,
    ) -> Dict[str, Any]:
        """
        Create a policy rule.

        Raises:
            ValidationError: Malformed fields or unknown referenced ids
            NotFoundError: Creator does not exist
            ConflictError: Another active rule for the action has this priority
        """
        from machinegate.db.models import PolicyRule

        data = self._validate({
            "name": name,
            "description": description,
            "action": action,
            "permission": permission,
            "user_ids": user_ids,
            "role_ids": role_ids,
            "department_ids": department_ids,
            "category_ids": category_ids,
            "approver_roles": approver_roles,
            "max_value": max_value,
            "priority": priority,
            "is_active": is_active,
        })
        creator = self.references.require(
            ReferenceKind.USER, created_by, field="created_by", code="USER_NOT_FOUND"
        )
        self._check_references(data)

        if data["is_active"]:
            self._check_priority_conflict(data["action"], data["priority"])

        rule = PolicyRule(created_by=creator.id, **data)
        try:
            with self.db.begin_nested():
                self.db.add(rule)
                self.db.flush()
        except IntegrityError as e:
            raise self._priority_conflict(data["action"], data["priority"]) from e

        self._invalidate(data["action"])
        logger.info(f"Policy rule {rule.id} created for {rule.action} (priority {rule.priority})")
        return self._rule_to_dict(rule)

    def update_rule(self, rule_id: Union[str, UUID], **changes: Any) -> Dict[str, Any]:
        """
        Update a policy rule.

        Only the given fields change; the merged result is validated as a
        whole, including priority uniqueness.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                "Unknown fields in update",
                details=[{"field": f, "message": "Field cannot be updated"} for f in sorted(unknown)],
            )

        rule = self._get(rule_id)
        merged = {field: getattr(rule, field) for field in UPDATABLE_FIELDS}
        merged.update(changes)
        data = self._validate(merged)
        self._check_references({k: v for k, v in data.items() if k in changes})

        if data["is_active"]:
            self._check_priority_conflict(data["action"], data["priority"], exclude_id=rule.id)

        previous_action = rule.action
        try:
            with self.db.begin_nested():
                for field, value in data.items():
                    setattr(rule, field, value)
                rule.updated_at = utcnow()
                self.db.flush()
        except IntegrityError as e:
            raise self._priority_conflict(data["action"], data["priority"]) from e

        self._invalidate(previous_action)
        self._invalidate(data["action"])
        logger.info(f"Policy rule {rule.id} updated: {', '.join(sorted(changes))}")
        return self._rule_to_dict(rule)

    def delete_rule(self, rule_id: Union[str, UUID]) -> Dict[str, Any]:
        """Soft-disable a rule. Rules are never hard-deleted."""
        rule = self._get(rule_id)
        rule.is_active = False
        rule.updated_at = utcnow()
        self.db.flush()

        self._invalidate(rule.action)
        logger.info(f"Policy rule {rule.id} disabled")
        return self._rule_to_dict(rule)

    def get_rule(self, rule_id: Union[str, UUID]) -> Dict[str, Any]:
        return self._rule_to_dict(self._get(rule_id))

    def list_rules(
        self,
        *,
        action: Optional[Union[ActionType, str]] = None,
        permission: Optional[Union[PermissionLevel, str]] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        sort_by: str = "priority",
        sort_order: str = "desc",
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        """
        List rules with filters and pagination.

        Default order is priority descending, newest first within a priority.
        """
        from machinegate.db.models import PolicyRule

        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError.for_field("sort_by", f"Cannot sort by {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError.for_field("sort_order", "sort_order must be asc or desc")
        if page < 1 or per_page < 1:
            raise ValidationError.for_field("page", "page and per_page must be positive")

        query = self.db.query(PolicyRule)
        if action:
            query = query.filter(PolicyRule.action == self._enum(ActionType, action, "action").value)
        if permission:
            query = query.filter(
                PolicyRule.permission == self._enum(PermissionLevel, permission, "permission").value
            )
        if is_active is not None:
            query = query.filter(PolicyRule.is_active.is_(is_active))
        if search:
            query = query.filter(or_(
                PolicyRule.name.icontains(search, autoescape=True),
                PolicyRule.description.icontains(search, autoescape=True),
            ))

        column = getattr(PolicyRule, sort_by)
        ordering = [column.desc() if sort_order == "desc" else column.asc()]
        if sort_by != "created_at":
            ordering.append(PolicyRule.created_at.desc())
        ordering.append(PolicyRule.id.asc())

        total = query.count()
        rows = query.order_by(*ordering).offset((page - 1) * per_page).limit(per_page).all()

        return {
            "items": [self._rule_to_dict(r) for r in rows],
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": (total + per_page - 1) // per_page,
        }

    def _get(self, rule_id: Union[str, UUID]):
        from machinegate.db.models import PolicyRule

        parsed = parse_uuid(rule_id, "rule_id")
        rule = self.db.query(PolicyRule).filter(PolicyRule.id == parsed).first()
        if not rule:
            raise NotFoundError(f"Policy rule {rule_id} not found", code="RULE_NOT_FOUND")
        return rule

    @staticmethod
    def _enum(enum_cls, value, field: str):
        try:
            return enum_cls(value)
        except ValueError:
            allowed = ", ".join(e.value for e in enum_cls)
            raise ValidationError.for_field(field, f"Invalid {field}: {value}. Must be one of: {allowed}")

    def _validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize rule fields, collecting every field error before raising."""
        errors: List[Dict[str, str]] = []
        cleaned = dict(data)

        name = (data.get("name") or "").strip()
        if not name:
            errors.append({"field": "name", "message": "Name is required"})
        cleaned["name"] = name

        for field, enum_cls in (("action", ActionType), ("permission", PermissionLevel)):
            try:
                cleaned[field] = enum_cls(data.get(field)).value
            except ValueError:
                errors.append({"field": field, "message": f"Invalid {field}: {data.get(field)}"})

        for field in SCOPE_REFERENCES:
            value = data.get(field)
            if value is not None and not isinstance(value, (list, tuple, set)):
                errors.append({"field": field, "message": f"{field} must be a list"})
                value = None
            cleaned[field] = normalize_ids(value)

        if cleaned.get("permission") == PermissionLevel.REQUIRES_APPROVAL.value and not cleaned["approver_roles"]:
            errors.append({
                "field": "approver_roles",
                "message": "Approver roles are required when permission is REQUIRES_APPROVAL",
            })

        priority = data.get("priority")
        if priority is None:
            priority = 0
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 0:
            errors.append({"field": "priority", "message": "Priority must be a non-negative integer"})
        cleaned["priority"] = priority

        max_value = data.get("max_value")
        if max_value is not None:
            if isinstance(max_value, bool) or not isinstance(max_value, (int, float)) or max_value < 0:
                errors.append({"field": "max_value", "message": "max_value must be a non-negative number"})
            else:
                max_value = float(max_value)
        cleaned["max_value"] = max_value

        cleaned["is_active"] = True if data.get("is_active") is None else bool(data["is_active"])

        if errors:
            raise ValidationError("Invalid policy rule", details=errors)
        return cleaned

    def _check_references(self, data: Dict[str, Any]) -> None:
        """Reject scoping sets that name missing or inactive records."""
        errors = []
        for field, kind in SCOPE_REFERENCES.items():
            ids = data.get(field)
            if not ids:
                continue
            invalid = self.references.exists_all(kind, ids)["invalid"]
            if invalid:
                errors.append({
                    "field": field,
                    "message": f"Unknown or inactive {kind.value} ids: {', '.join(invalid)}",
                })
        if errors:
            raise ValidationError("Rule references unknown records", code="INVALID_REFERENCES", details=errors)

    def _check_priority_conflict(self, action: str, priority: int, exclude_id: Optional[UUID] = None) -> None:
        """Application-level check; the partial unique index backs it up."""
        from machinegate.db.models import PolicyRule

        if priority == 0:
            return

        query = self.db.query(PolicyRule.id).filter(
            PolicyRule.action == action,
            PolicyRule.priority == priority,
            PolicyRule.is_active.is_(True),
        )
        if exclude_id is not None:
            query = query.filter(PolicyRule.id != exclude_id)
        if query.first() is not None:
            raise self._priority_conflict(action, priority)

    @staticmethod
    def _priority_conflict(action: str, priority: int) -> ConflictError:
        return ConflictError(
            f"An active rule for {action} already uses priority {priority}",
            code="DUPLICATE_PRIORITY",
            details=[{"field": "priority", "message": "Priority must be unique among active rules"}],
        )

    def refresh_cache(self) -> None:
        """Invalidate every action this service wrote. Call after commit."""
        if self.cache is not None:
            for action in self._written_actions:
                self.cache.invalidate(action)
        self._written_actions.clear()

    def _invalidate(self, action: Optional[str]) -> None:
        if not action:
            return
        self._written_actions.add(ActionType(action))
        if self.cache is not None:
            self.cache.invalidate(ActionType(action))

    def _rule_to_dict(self, rule) -> Dict[str, Any]:
        """Convert a PolicyRule model to dictionary."""
        return {
            "id": str(rule.id),
            "name": rule.name,
            "description": rule.description,
            "action": rule.action,
            "permission": rule.permission,
            "user_ids": list(rule.user_ids or []),
            "role_ids": list(rule.role_ids or []),
            "department_ids": list(rule.department_ids or []),
            "category_ids": list(rule.category_ids or []),
            "approver_roles": list(rule.approver_roles or []),
            "max_value": rule.max_value,
            "priority": rule.priority,
            "is_active": rule.is_active,
            "created_by": str(rule.created_by) if rule.created_by else None,
            "created_at": rule.created_at.isoformat() if rule.created_at else None,
            "updated_at": rule.updated_at.isoformat() if rule.updated_at else None,
        }
