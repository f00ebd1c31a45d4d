"""Tests for the domain error taxonomy."""

import pytest

from machinegate.core.errors import (
    ConflictError,
    ForbiddenError,
    GateError,
    InternalError,
    NotFoundError,
    ValidationError,
)


class TestErrors:

    @pytest.mark.parametrize("cls,category,status", [
        (ValidationError, "VALIDATION_ERROR", 400),
        (ForbiddenError, "FORBIDDEN", 403),
        (NotFoundError, "NOT_FOUND", 404),
        (ConflictError, "CONFLICT", 409),
        (InternalError, "INTERNAL", 500),
    ])
    def test_categories(self, cls, category, status):
        error = cls("boom")
        assert isinstance(error, GateError)
        assert error.category == category
        assert error.status_code == status
        assert error.code == category

    def test_specific_code(self):
        error = ConflictError("Already pending", code="PENDING_APPROVAL_EXISTS")
        assert error.to_dict() == {
            "error": "CONFLICT",
            "code": "PENDING_APPROVAL_EXISTS",
            "message": "Already pending",
            "details": [],
        }

    def test_field_validation(self):
        error = ValidationError.for_field("priority", "Priority must be an integer", code="INVALID_PRIORITY")
        assert error.details == [{"field": "priority", "message": "Priority must be an integer"}]
        assert error.code == "INVALID_PRIORITY"
        assert str(error) == "Priority must be an integer"
