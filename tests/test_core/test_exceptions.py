import pytest
from core.exceptions import (
    AlreadyCheckedInTodayError,
    AlreadyJoinedError,
    AuthorizationError,
    ConflictError,
    DuplicateRequestError,
    EmptyContentError,
    EngagementAPIException,
    ForbiddenError,
    InvalidParentError,
    InvalidTargetError,
    NotFoundError,
    ParticipationClosedError,
    TransportError,
    ValidationError,
)
from core.models import Outcome


class TestCustomExceptions:
    """Test custom exception classes."""

    def test_validation_error(self):
        """Test ValidationError creation and properties."""
        error = ValidationError("Invalid input")
        assert str(error) == "Invalid input"
        assert error.status_code == 400
        assert error.error_code == "VALIDATION_ERROR"
        assert error.details == {}

    def test_validation_family(self):
        """Specific input errors keep the validation status code."""
        for error, code in [
            (InvalidTargetError("u-1"), "INVALID_TARGET"),
            (EmptyContentError(), "EMPTY_CONTENT"),
            (InvalidParentError("c-1", "replies cannot be nested"), "INVALID_PARENT"),
        ]:
            assert isinstance(error, ValidationError)
            assert error.status_code == 400
            assert error.error_code == code

    def test_conflict_family(self):
        """Test conflict errors and their details."""
        error = DuplicateRequestError("u-1", "u-2")
        assert isinstance(error, ConflictError)
        assert error.status_code == 409
        assert error.details == {"sender_id": "u-1", "recipient_id": "u-2"}

        error = AlreadyJoinedError("ch-1", "u-1")
        assert error.error_code == "ALREADY_JOINED"
        assert not error.benign

        error = ParticipationClosedError("ch-1", "completed")
        assert "completed" in error.message

    def test_second_check_in_is_benign(self):
        """Test AlreadyCheckedInTodayError is flagged benign."""
        error = AlreadyCheckedInTodayError("ch-1", "2024-03-01")
        assert isinstance(error, ConflictError)
        assert error.benign
        assert error.details["local_date"] == "2024-03-01"

    def test_forbidden_error(self):
        """Test ForbiddenError creation and properties."""
        error = ForbiddenError("pin comment", "only the challenge creator may pin comments")
        assert isinstance(error, AuthorizationError)
        assert error.status_code == 403
        assert error.error_code == "FORBIDDEN"

    def test_not_found_error(self):
        """Test NotFoundError creation and properties."""
        error = NotFoundError("Challenge", "ch-9")
        assert str(error) == "Challenge not found: ch-9"
        assert error.status_code == 404
        assert error.details == {"entity": "Challenge", "id": "ch-9"}

    def test_transport_error(self):
        """Test TransportError creation and properties."""
        error = TransportError("join_challenge", "timeout")
        assert error.status_code == 503
        assert error.error_code == "TRANSPORT_ERROR"

    def test_all_inherit_from_base(self):
        """Catching the base class catches every engagement error."""
        with pytest.raises(EngagementAPIException):
            raise ParticipationClosedError("ch-1", "abandoned")


class TestOutcomeFromException:
    """Test the failed Outcome built from an exception."""

    def test_not_found_outcome(self):
        """The outcome carries the error fields and the exception's status."""
        outcome = Outcome.fail(NotFoundError("Comment", "c-1"))

        assert outcome.success is False
        assert outcome.http_status == 404
        assert outcome.model_dump(exclude={"data"}) == {
            "success": False,
            "error_code": "NOT_FOUND",
            "message": "Comment not found: c-1",
            "details": {"entity": "Comment", "id": "c-1"},
            "benign": False,
        }

    def test_benign_conflict_outcome(self):
        outcome = Outcome.fail(AlreadyCheckedInTodayError("ch-1", "2024-03-01"))

        assert outcome.http_status == 409
        assert outcome.error_code == "ALREADY_CHECKED_IN_TODAY"
        assert outcome.benign is True
