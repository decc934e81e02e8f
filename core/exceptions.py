"""
Custom Exception Classes for the Challenge Engagement API.

This module defines the error taxonomy used by every service in the
engagement core. Services raise these exceptions; the command bus turns them
into failed `Outcome` values, and the HTTP layer maps any that escape into
JSON error responses.

Key Components:
- `EngagementAPIException`: The base exception class from which all other
  custom exceptions in this module inherit. It carries a message, an error
  code, optional details and the HTTP status code used when it reaches a
  client.
- Taxonomy roots: `ValidationError` (malformed or missing input),
  `ConflictError` (a business rule rejects the change, e.g. duplicate join),
  `AuthorizationError` (acting on someone else's record), `NotFoundError`
  (referencing a missing record) and `TransportError` (the store call failed).
- Specific errors: each named rule violation (`DuplicateRequestError`,
  `AlreadyCheckedInTodayError`, `InvalidParentError`, ...) subclasses one of
  the roots so callers can catch broadly or narrowly.

Architectural Design:
- Hierarchy of Exceptions: catching `ConflictError` handles every conflict,
  while catching `AlreadyCheckedInTodayError` handles just that one.
- Rich Error Information: every exception exposes a stable `error_code` and a
  `details` dictionary that is safe to return to clients.
- Benign errors: `benign = True` marks violations the UI should present as a
  no-op notice rather than a failure (e.g. a second check-in on the same day).
"""

from typing import Optional, Dict, Any


class EngagementAPIException(Exception):
    """Base exception class for the Engagement API"""

    status_code = 500
    benign = False

    def __init__(
        self,
        message: str,
        error_code: str = "ENGAGEMENT_API_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


# Validation -----------------------------------------------------------------


class ValidationError(EngagementAPIException):
    """Raised when input validation fails"""

    status_code = 400

    def __init__(
        self,
        message: str,
        error_code: str = "VALIDATION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code, details)


class InvalidTargetError(ValidationError):
    """Raised when a user tries to befriend themselves"""

    def __init__(self, user_id: str):
        super().__init__(
            "You cannot send a friend request to yourself",
            "INVALID_TARGET",
            {"user_id": user_id},
        )


class EmptyContentError(ValidationError):
    """Raised when a comment has no content"""

    def __init__(self):
        super().__init__("Comment content cannot be empty", "EMPTY_CONTENT")


class InvalidParentError(ValidationError):
    """Raised when a reply targets something other than a top-level comment"""

    def __init__(self, parent_id: str, reason: str):
        super().__init__(
            f"Invalid parent comment {parent_id}: {reason}",
            "INVALID_PARENT",
            {"parent_id": parent_id, "reason": reason},
        )


# Conflicts ------------------------------------------------------------------


class ConflictError(EngagementAPIException):
    """Raised when a business rule rejects the requested change"""

    status_code = 409

    def __init__(
        self,
        message: str,
        error_code: str = "CONFLICT",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code, details)


class DuplicateRequestError(ConflictError):
    """Raised when a pending friend request already exists for the pair"""

    def __init__(self, sender_id: str, recipient_id: str):
        super().__init__(
            "A friend request already exists between these users",
            "DUPLICATE_REQUEST",
            {"sender_id": sender_id, "recipient_id": recipient_id},
        )


class AlreadyFriendsError(ConflictError):
    """Raised when requesting friendship with an existing friend"""

    def __init__(self, user_id: str, friend_id: str):
        super().__init__(
            "Already friends with this user",
            "ALREADY_FRIENDS",
            {"user_id": user_id, "friend_id": friend_id},
        )


class AlreadyResolvedError(ConflictError):
    """Raised when acting on a friend request that is no longer pending"""

    def __init__(self, request_id: str, status: str):
        super().__init__(
            f"Friend request {request_id} is already {status}",
            "ALREADY_RESOLVED",
            {"request_id": request_id, "status": status},
        )


class AlreadyJoinedError(ConflictError):
    """Raised when joining a challenge that already has a participation record"""

    def __init__(self, challenge_id: str, user_id: str):
        super().__init__(
            "You have already joined this challenge",
            "ALREADY_JOINED",
            {"challenge_id": challenge_id, "user_id": user_id},
        )


class AlreadyCheckedInTodayError(ConflictError):
    """Raised on a second check-in within the same calendar day"""

    benign = True

    def __init__(self, challenge_id: str, local_date: str):
        super().__init__(
            "Already checked in today",
            "ALREADY_CHECKED_IN_TODAY",
            {"challenge_id": challenge_id, "local_date": local_date},
        )


class ParticipationClosedError(ConflictError):
    """Raised when mutating a completed or abandoned participation"""

    def __init__(self, challenge_id: str, status: str):
        super().__init__(
            f"Participation is {status} and can no longer change",
            "PARTICIPATION_CLOSED",
            {"challenge_id": challenge_id, "status": status},
        )


# Authorization / lookup / transport ----------------------------------------


class AuthorizationError(EngagementAPIException):
    """Raised when the actor may not perform the operation"""

    status_code = 403

    def __init__(
        self,
        message: str,
        error_code: str = "AUTHORIZATION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, error_code, details)


class ForbiddenError(AuthorizationError):
    """Raised when acting on another user's request, comment or pin"""

    def __init__(self, action: str, reason: str):
        super().__init__(
            f"Not allowed to {action}: {reason}",
            "FORBIDDEN",
            {"action": action, "reason": reason},
        )


class NotFoundError(EngagementAPIException):
    """Raised when a referenced record does not exist"""

    status_code = 404

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} not found: {entity_id}",
            "NOT_FOUND",
            {"entity": entity, "id": entity_id},
        )


class TransportError(EngagementAPIException):
    """Raised when the underlying store call fails or times out"""

    status_code = 503

    def __init__(self, operation: str, reason: str):
        super().__init__(
            f"Store operation '{operation}' failed: {reason}",
            "TRANSPORT_ERROR",
            {"operation": operation, "reason": reason},
        )
