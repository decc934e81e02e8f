"""
Procedure Dispatch Service.

This module provides the `CommandBus`, the single entry point for every
mutation and read of the engagement core.

Key Components:
- `Procedure`: A registered operation. It has a name, a pydantic params
  model, an async handler, a mutation flag and, for mutations, an event
  builder that describes what changed.
- `CommandBus.call(name, params, actor_id)`: Validates the params, runs the
  handler and always returns an `Outcome`. Business-rule violations are
  returned as failed outcomes (`error_code`, `message`, `details`) instead of
  being raised.

Architectural Design:
- One Contract: comment deletion is a procedure like every other mutation.
- Transport Failures: database driver errors become `TransportError`. Reads
  are retried once on a transport failure; mutations never are, because a
  second attempt could apply the change twice.
- Audit Trail: one log line per call (procedure, actor, success, error code).
- Change Notification: after a successful mutation the bus publishes the
  resulting `ChangeEvent`s on the change provider.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import DBAPIError, IntegrityError

from core.exceptions import (
    AuthorizationError,
    ConflictError,
    EngagementAPIException,
    NotFoundError,
    TransportError,
    ValidationError,
)
from core.models import Outcome, RequestStatus
from providers.change_provider import ChangeEvent, ChangeProvider

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Params models
# ---------------------------------------------------------------------------


class Params(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class NoParams(Params):
    pass


class TargetUserParams(Params):
    target_id: str = Field(min_length=1)


class SendRequestParams(TargetUserParams):
    message: Optional[str] = Field(default=None, max_length=500)


class RequestIdParams(Params):
    request_id: str = Field(min_length=1)


class FriendIdParams(Params):
    friend_id: str = Field(min_length=1)


class FriendRequestsParams(Params):
    status: RequestStatus = RequestStatus.PENDING


class SearchParams(Params):
    query: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=50)
    offset: int = Field(default=0, ge=0)


class SuggestionParams(Params):
    limit: int = Field(default=10, ge=1, le=50)


class ChallengeParams(Params):
    challenge_id: str = Field(min_length=1)


class CheckInParams(ChallengeParams):
    note: Optional[str] = None


class AddCommentParams(ChallengeParams):
    # Blank content is reported as EMPTY_CONTENT by the comment service
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=False)

    content: str
    parent_id: Optional[str] = None


class CommentIdParams(Params):
    comment_id: str = Field(min_length=1)


class PageParams(Params):
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


class GlobalLeaderboardParams(PageParams):
    timeframe: str = "all-time"


class ChallengeLeaderboardParams(PageParams):
    challenge_id: str = Field(min_length=1)


class SnapshotParams(Params):
    view: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

Handler = Callable[[Optional[str], Any], Awaitable[Any]]
EventBuilder = Callable[[Optional[str], Any, Any], List[ChangeEvent]]


@dataclass
class Procedure:
    name: str
    params: Type[BaseModel]
    handler: Handler
    mutation: bool = False
    requires_actor: bool = True
    events: Optional[EventBuilder] = None


def to_data(value: Any) -> Any:
    """Convert handler results into JSON-compatible data"""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [to_data(v) for v in value]
    if isinstance(value, dict):
        return {k: to_data(v) for k, v in value.items()}
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _friendship_event(action: str):
    def build(actor_id, params, result) -> List[ChangeEvent]:
        return [
            ChangeEvent(
                entity_type="friendships",
                action=action,
                record_id=getattr(result, "id", None),
                user_ids=[result.sender_id, result.recipient_id],
            )
        ]

    return build


def _participation_event(action: str):
    def build(actor_id, params, result) -> List[ChangeEvent]:
        return [
            ChangeEvent(
                entity_type="participation",
                action=action,
                record_id=result.id,
                challenge_id=result.challenge_id,
                user_ids=[result.user_id],
            )
        ]

    return build


def _comment_event(entity_type: str, action: str, id_field: str = "id"):
    def build(actor_id, params, result) -> List[ChangeEvent]:
        data = result if isinstance(result, dict) else result.model_dump()
        return [
            ChangeEvent(
                entity_type=entity_type,
                action=action,
                record_id=data[id_field],
                challenge_id=data.get("challenge_id"),
                user_ids=[actor_id],
            )
        ]

    return build


def _removed_friend_event(actor_id, params, result) -> List[ChangeEvent]:
    return [
        ChangeEvent(
            entity_type="friendships",
            action="removed",
            user_ids=[result["user_id"], result["friend_id"]],
        )
    ]


class CommandBus:
    """Validates, dispatches and audits procedure calls"""

    def __init__(
        self,
        friendships,
        participation,
        comments,
        leaderboards,
        provider: Optional[ChangeProvider] = None,
    ):
        self.friendships = friendships
        self.participation = participation
        self.comments = comments
        self.leaderboards = leaderboards
        self.provider = provider
        self._procedures: Dict[str, Procedure] = {}
        self._register_defaults()

    def register(self, procedure: Procedure) -> None:
        if procedure.name in self._procedures:
            raise ValueError(f"Procedure already registered: {procedure.name}")
        self._procedures[procedure.name] = procedure

    @property
    def procedure_names(self) -> List[str]:
        return sorted(self._procedures)

    def get(self, name: str) -> Optional[Procedure]:
        return self._procedures.get(name)

    async def call(
        self,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> Outcome:
        """Run a procedure and return its outcome; never raises for rule violations"""
        start_time = time.time()
        procedure = self._procedures.get(name)
        try:
            if procedure is None:
                raise NotFoundError("Procedure", name)
            if procedure.requires_actor and not actor_id:
                raise AuthorizationError(
                    "An acting user is required", "MISSING_ACTOR", {"procedure": name}
                )
            command = self._validate(procedure, params or {})
            result = await self._dispatch(procedure, actor_id, command)
            outcome = Outcome.ok(to_data(result))
        except EngagementAPIException as exc:
            outcome = Outcome.fail(exc)
            result = None

        duration = time.time() - start_time
        logger.info(
            f"procedure={name} actor={actor_id} success={outcome.success} "
            f"error_code={outcome.error_code} duration={duration:.3f}s",
            extra={
                "procedure": name,
                "actor_id": actor_id,
                "success": outcome.success,
                "error_code": outcome.error_code,
                "duration": duration,
            },
        )

        if outcome.success and procedure.mutation and procedure.events:
            await self._publish(procedure.events(actor_id, command, result))
        return outcome

    def _validate(self, procedure: Procedure, params: Dict[str, Any]) -> BaseModel:
        try:
            return procedure.params.model_validate(params)
        except PydanticValidationError as e:
            errors = [
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in e.errors()
            ]
            raise ValidationError(
                f"Invalid parameters for {procedure.name}",
                details={"errors": errors},
            )

    async def _dispatch(self, procedure: Procedure, actor_id, command) -> Any:
        attempts = 1 if procedure.mutation else 2
        for attempt in range(1, attempts + 1):
            try:
                return await self._invoke(procedure, actor_id, command)
            except TransportError:
                if attempt == attempts:
                    raise
                logger.warning(f"Retrying read {procedure.name} after transport error")

    async def _invoke(self, procedure: Procedure, actor_id, command) -> Any:
        try:
            return await procedure.handler(actor_id, command)
        except IntegrityError as e:
            logger.warning(f"Constraint violation in {procedure.name}: {e.orig}")
            raise ConflictError(
                "The change conflicts with existing data",
                details={"procedure": procedure.name},
            )
        except DBAPIError as e:
            logger.error(f"Store failure in {procedure.name}: {e}")
            raise TransportError(procedure.name, str(e.orig or e))

    async def _publish(self, events: List[ChangeEvent]) -> None:
        if self.provider is None:
            return
        for event in events:
            await self.provider.publish(event)

    def _register_defaults(self) -> None:
        f, p, c, lb = self.friendships, self.participation, self.comments, self.leaderboards

        procedures = [
            # Friendships
            Procedure(
                "send_friend_request",
                SendRequestParams,
                lambda a, x: f.send_request(a, x.target_id, x.message),
                mutation=True,
                events=_friendship_event("requested"),
            ),
            Procedure(
                "accept_friend_request",
                RequestIdParams,
                lambda a, x: f.accept_request(a, x.request_id),
                mutation=True,
                events=_friendship_event("accepted"),
            ),
            Procedure(
                "reject_friend_request",
                RequestIdParams,
                lambda a, x: f.reject_request(a, x.request_id),
                mutation=True,
                events=_friendship_event("rejected"),
            ),
            Procedure(
                "cancel_friend_request",
                RequestIdParams,
                lambda a, x: f.cancel_request(a, x.request_id),
                mutation=True,
                events=_friendship_event("cancelled"),
            ),
            Procedure(
                "remove_friend",
                FriendIdParams,
                lambda a, x: f.remove_friend(a, x.friend_id),
                mutation=True,
                events=_removed_friend_event,
            ),
            Procedure("get_friends", NoParams, lambda a, x: f.get_friends(a)),
            Procedure(
                "get_friend_requests",
                FriendRequestsParams,
                lambda a, x: f.get_friend_requests(a, x.status.value),
            ),
            Procedure(
                "get_friendship_status",
                TargetUserParams,
                lambda a, x: f.get_friendship_status(a, x.target_id),
            ),
            Procedure(
                "search_users",
                SearchParams,
                lambda a, x: f.search_users(a, x.query, x.limit, x.offset),
            ),
            Procedure(
                "get_friend_suggestions",
                SuggestionParams,
                lambda a, x: f.get_friend_suggestions(a, x.limit),
            ),
            # Participation
            Procedure(
                "join_challenge",
                ChallengeParams,
                lambda a, x: p.join(a, x.challenge_id),
                mutation=True,
                events=_participation_event("joined"),
            ),
            Procedure(
                "check_in_challenge",
                CheckInParams,
                lambda a, x: p.check_in(a, x.challenge_id, x.note),
                mutation=True,
                events=_participation_event("checked_in"),
            ),
            Procedure(
                "leave_challenge",
                ChallengeParams,
                lambda a, x: p.leave(a, x.challenge_id),
                mutation=True,
                events=_participation_event("left"),
            ),
            Procedure(
                "get_participation",
                ChallengeParams,
                lambda a, x: p.get_participation(a, x.challenge_id),
            ),
            Procedure(
                "get_challenge_history",
                ChallengeParams,
                lambda a, x: p.get_history(a, x.challenge_id),
            ),
            Procedure(
                "get_challenge_participants",
                ChallengeParams,
                lambda a, x: p.list_participants(x.challenge_id),
                requires_actor=False,
            ),
            Procedure(
                "get_challenge_stats",
                ChallengeParams,
                lambda a, x: p.get_challenge_stats(x.challenge_id),
                requires_actor=False,
            ),
            # Comments
            Procedure(
                "add_comment",
                AddCommentParams,
                lambda a, x: c.post(a, x.challenge_id, x.content, x.parent_id),
                mutation=True,
                events=_comment_event("comments", "created"),
            ),
            Procedure(
                "toggle_comment_like",
                CommentIdParams,
                lambda a, x: c.toggle_like(a, x.comment_id),
                mutation=True,
                events=_comment_event("likes", "toggled", "comment_id"),
            ),
            Procedure(
                "toggle_comment_pin",
                CommentIdParams,
                lambda a, x: c.toggle_pin(a, x.comment_id),
                mutation=True,
                events=_comment_event("comments", "pinned", "comment_id"),
            ),
            Procedure(
                "delete_comment",
                CommentIdParams,
                lambda a, x: c.delete(a, x.comment_id),
                mutation=True,
                events=_comment_event("comments", "deleted", "comment_id"),
            ),
            Procedure(
                "get_challenge_comments",
                ChallengeParams,
                lambda a, x: c.list_comments(x.challenge_id, a),
                requires_actor=False,
            ),
            # Leaderboards
            Procedure(
                "get_global_leaderboard",
                GlobalLeaderboardParams,
                lambda a, x: lb.get_global(a, x.timeframe, x.limit, x.offset),
                requires_actor=False,
            ),
            Procedure(
                "get_streak_leaderboard",
                PageParams,
                lambda a, x: lb.get_streak(a, x.limit, x.offset),
                requires_actor=False,
            ),
            Procedure(
                "get_challenge_leaderboard",
                ChallengeLeaderboardParams,
                lambda a, x: lb.get_challenge(x.challenge_id, a, x.limit, x.offset),
                requires_actor=False,
            ),
            Procedure(
                "snapshot_leaderboard",
                SnapshotParams,
                lambda a, x: lb.take_snapshot(x.view),
                mutation=True,
                requires_actor=False,
            ),
        ]
        for procedure in procedures:
            self.register(procedure)
