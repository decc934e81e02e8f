"""
Friendship Management Service.

This module provides the `FriendshipService`, which owns the friend-request
lifecycle and the symmetric friendship relation.

Key Components:
- Request lifecycle: `send_request` creates a pending request, the recipient
  resolves it with `accept_request` or `reject_request`, and the sender may
  withdraw it with `cancel_request`. Accepting materializes a `Friendship` in
  the same transaction.
- Friend lists: `get_friends`, `get_friend_requests` and
  `get_friendship_status` (the per-pair state as seen by one user:
  none, request_sent, request_received or friends).
- Discovery: `search_users` and `get_friend_suggestions`.

Architectural Design:
- One Transaction per Mutation: every mutation reads, validates and writes
  inside a single session transaction, so a failed call leaves no trace.
- Store-Backed Invariants: the pending-pair partial unique index and the
  sorted friendship pair make duplicates impossible even when two requests
  race; a unique violation is reported as `DuplicateRequestError`.
- Conditional Resolution: accept, reject and cancel only write while the row
  is still pending. When two resolutions race, exactly one applies and the
  other gets `AlreadyResolvedError`.
- Typed Failures: every rule violation is raised as a specific exception from
  `core.exceptions`; nothing is silently ignored.
"""

import logging
from typing import Dict, List, Optional, Set

from sqlalchemy import case, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select

from core.database import async_session
from core.exceptions import (
    AlreadyFriendsError,
    AlreadyResolvedError,
    DuplicateRequestError,
    ForbiddenError,
    InvalidTargetError,
    NotFoundError,
    ValidationError,
)
from core.models import (
    FriendRequest,
    FriendRequestLists,
    FriendRequestView,
    Friendship,
    FriendshipState,
    FriendshipStatusView,
    FriendSuggestion,
    FriendView,
    RequestStatus,
    UserProfile,
    UserSearchPage,
    UserSearchResult,
    pair_key,
    utc_now,
)
from services.directory_service import load_user_summaries

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
MAX_PAGE_SIZE = 50


class FriendshipService:
    """Service that owns friend requests and friendships"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or async_session

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def send_request(
        self, actor_id: str, target_id: str, message: Optional[str] = None
    ) -> FriendRequestView:
        """
        Send a friend request from actor to target.

        Raises:
            InvalidTargetError: target is the actor
            NotFoundError: target user does not exist
            AlreadyFriendsError: the two users are already friends
            DuplicateRequestError: a pending request exists in either direction
        """
        if target_id == actor_id:
            raise InvalidTargetError(actor_id)
        if message is not None and len(message) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message must be at most {MAX_MESSAGE_LENGTH} characters",
                details={"field": "message"},
            )

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    if await session.get(UserProfile, target_id) is None:
                        raise NotFoundError("User", target_id)

                    if await self._find_friendship(session, actor_id, target_id):
                        raise AlreadyFriendsError(actor_id, target_id)

                    if await self._find_pending(session, actor_id, target_id):
                        raise DuplicateRequestError(actor_id, target_id)

                    request = FriendRequest(
                        sender_id=actor_id,
                        recipient_id=target_id,
                        pair_key=pair_key(actor_id, target_id),
                        message=message,
                    )
                    session.add(request)
                    await session.flush()
            except IntegrityError:
                logger.info(
                    f"Concurrent friend request between {actor_id} and {target_id}"
                )
                raise DuplicateRequestError(actor_id, target_id)

        logger.info(f"Friend request {request.id} sent from {actor_id} to {target_id}")
        return FriendRequestView.from_record(request)

    async def accept_request(self, actor_id: str, request_id: str) -> FriendRequestView:
        """Accept a pending request addressed to the actor and create the friendship"""
        async with self._session_factory() as session:
            async with session.begin():
                request = await self._load_for_recipient(
                    session, actor_id, request_id, "accept friend request"
                )
                await self._resolve(session, request, RequestStatus.ACCEPTED)

                if not await self._find_friendship(
                    session, request.sender_id, request.recipient_id
                ):
                    low, high = sorted((request.sender_id, request.recipient_id))
                    session.add(Friendship(user_low_id=low, user_high_id=high))

        logger.info(f"Friend request {request_id} accepted by {actor_id}")
        return FriendRequestView.from_record(request)

    async def reject_request(self, actor_id: str, request_id: str) -> FriendRequestView:
        """Reject a pending request addressed to the actor"""
        async with self._session_factory() as session:
            async with session.begin():
                request = await self._load_for_recipient(
                    session, actor_id, request_id, "reject friend request"
                )
                await self._resolve(session, request, RequestStatus.REJECTED)

        logger.info(f"Friend request {request_id} rejected by {actor_id}")
        return FriendRequestView.from_record(request)

    async def cancel_request(self, actor_id: str, request_id: str) -> FriendRequestView:
        """Withdraw a pending request the actor sent"""
        async with self._session_factory() as session:
            async with session.begin():
                request = await session.get(FriendRequest, request_id)
                if request is None:
                    raise NotFoundError("FriendRequest", request_id)
                if request.sender_id != actor_id:
                    raise ForbiddenError(
                        "cancel friend request", "only the sender may cancel"
                    )
                if request.status != RequestStatus.PENDING:
                    raise AlreadyResolvedError(request_id, request.status)
                result = await session.exec(
                    delete(FriendRequest)
                    .where(
                        FriendRequest.id == request_id,
                        FriendRequest.status == RequestStatus.PENDING.value,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await self._raise_resolved(session, request_id)

        logger.info(f"Friend request {request_id} cancelled by {actor_id}")
        return FriendRequestView.from_record(request)

    async def remove_friend(self, actor_id: str, friend_id: str) -> Dict[str, str]:
        """Remove the friendship between actor and friend; request history is untouched"""
        async with self._session_factory() as session:
            async with session.begin():
                friendship = await self._find_friendship(session, actor_id, friend_id)
                if friendship is None:
                    raise NotFoundError("Friendship", friend_id)
                await session.delete(friendship)

        logger.info(f"Friendship between {actor_id} and {friend_id} removed")
        return {"user_id": actor_id, "friend_id": friend_id}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_friends(self, actor_id: str) -> List[FriendView]:
        async with self._session_factory() as session:
            result = await session.exec(
                select(Friendship).where(
                    or_(
                        Friendship.user_low_id == actor_id,
                        Friendship.user_high_id == actor_id,
                    )
                )
            )
            friendships = result.all()
            users = await load_user_summaries(
                session, [f.other(actor_id) for f in friendships]
            )

        friends = []
        for friendship in friendships:
            user = users.get(friendship.other(actor_id))
            if user is None:
                continue
            friends.append(
                FriendView(
                    **user.model_dump(),
                    friendship_id=friendship.id,
                    since=friendship.created_at,
                )
            )
        return sorted(friends, key=lambda f: f.username.lower())

    async def get_friend_requests(
        self, actor_id: str, status: str = RequestStatus.PENDING.value
    ) -> FriendRequestLists:
        """Requests the actor received and sent with the given status"""
        if status not in {s.value for s in RequestStatus}:
            raise ValidationError(
                f"Unknown request status: {status}", details={"field": "status"}
            )

        async with self._session_factory() as session:
            received = (
                await session.exec(
                    select(FriendRequest)
                    .where(
                        FriendRequest.recipient_id == actor_id,
                        FriendRequest.status == status,
                    )
                    .order_by(col(FriendRequest.created_at).desc())
                )
            ).all()
            sent = (
                await session.exec(
                    select(FriendRequest)
                    .where(
                        FriendRequest.sender_id == actor_id,
                        FriendRequest.status == status,
                    )
                    .order_by(col(FriendRequest.created_at).desc())
                )
            ).all()
            users = await load_user_summaries(
                session,
                [r.sender_id for r in received] + [r.recipient_id for r in sent],
            )

        return FriendRequestLists(
            received=[
                FriendRequestView.from_record(r, sender=users.get(r.sender_id))
                for r in received
            ],
            sent=[
                FriendRequestView.from_record(r, recipient=users.get(r.recipient_id))
                for r in sent
            ],
        )

    async def get_friendship_status(
        self, actor_id: str, target_id: str
    ) -> FriendshipStatusView:
        """Relationship between actor and target as seen by the actor"""
        async with self._session_factory() as session:
            if await self._find_friendship(session, actor_id, target_id):
                return FriendshipStatusView(
                    user_id=target_id, status=FriendshipState.FRIENDS
                )

            pending = await self._find_pending(session, actor_id, target_id)
            if pending is None:
                return FriendshipStatusView(user_id=target_id, status=FriendshipState.NONE)

            state = (
                FriendshipState.REQUEST_SENT
                if pending.sender_id == actor_id
                else FriendshipState.REQUEST_RECEIVED
            )
            return FriendshipStatusView(
                user_id=target_id, status=state, request_id=pending.id
            )

    async def search_users(
        self, actor_id: str, query: str, limit: int = 10, offset: int = 0
    ) -> UserSearchPage:
        """
        Case-insensitive search on username and display name.

        Friends come first, then prefix matches on the username, then prefix
        matches on the display name, then everything else by username. The
        ordering and the page window are applied by the database.
        """
        term = (query or "").strip()
        if not term:
            raise ValidationError("Search query cannot be empty", details={"field": "query"})
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        escaped = _escape_like(term)
        contains = f"%{escaped}%"
        prefix = f"{escaped}%"

        async with self._session_factory() as session:
            friend_ids = await self._friend_ids(session, actor_id)
            pending_ids = await self._sent_pending_ids(session, actor_id)

            conditions = (
                UserProfile.user_id != actor_id,
                or_(
                    col(UserProfile.username).ilike(contains, escape="\\"),
                    col(UserProfile.display_name).ilike(contains, escape="\\"),
                ),
            )
            total = (
                await session.exec(
                    select(func.count()).select_from(UserProfile).where(*conditions)
                )
            ).one()
            result = await session.exec(
                select(UserProfile)
                .where(*conditions)
                .order_by(
                    case((col(UserProfile.user_id).in_(friend_ids), 0), else_=1),
                    case(
                        (col(UserProfile.username).ilike(prefix, escape="\\"), 0),
                        (col(UserProfile.display_name).ilike(prefix, escape="\\"), 1),
                        else_=2,
                    ),
                    func.lower(UserProfile.username),
                )
                .offset(offset)
                .limit(limit)
            )
            profiles = result.all()

        page = [
            UserSearchResult(
                user_id=p.user_id,
                username=p.username,
                display_name=p.display_name,
                avatar_url=p.avatar_url,
                bio=p.bio,
                is_friend=p.user_id in friend_ids,
                has_pending_request=p.user_id in pending_ids,
            )
            for p in profiles
        ]
        return UserSearchPage(users=page, total=total)

    async def get_friend_suggestions(
        self, actor_id: str, limit: int = 10
    ) -> List[FriendSuggestion]:
        """
        Suggest public users who are not already connected to the actor.

        Friends, the actor, and anyone with a pending request in either
        direction are excluded. Candidates are ordered by number of mutual
        friends, then username. Friends of friends are ranked first; the rest
        of the page is filled by the database in username order.
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        async with self._session_factory() as session:
            friend_ids = await self._friend_ids(session, actor_id)
            pending_ids = await self._pending_ids(session, actor_id)
            excluded = friend_ids | pending_ids | {actor_id}
            public_candidates = (
                UserProfile.is_public == True,  # noqa: E712
                col(UserProfile.user_id).not_in(excluded),
            )

            # Friendships touching any of the actor's friends
            mutuals: Dict[str, Set[str]] = {}
            if friend_ids:
                result = await session.exec(
                    select(Friendship).where(
                        or_(
                            col(Friendship.user_low_id).in_(friend_ids),
                            col(Friendship.user_high_id).in_(friend_ids),
                        )
                    )
                )
                for friendship in result.all():
                    for friend in (friendship.user_low_id, friendship.user_high_id):
                        if friend in friend_ids:
                            other = friendship.other(friend)
                            if other not in excluded:
                                mutuals.setdefault(other, set()).add(friend)

            second_degree: List[UserProfile] = []
            if mutuals:
                result = await session.exec(
                    select(UserProfile).where(
                        *public_candidates, col(UserProfile.user_id).in_(list(mutuals))
                    )
                )
                second_degree = sorted(
                    result.all(),
                    key=lambda p: (-len(mutuals[p.user_id]), p.username.lower()),
                )[:limit]

            others: List[UserProfile] = []
            remaining = limit - len(second_degree)
            if remaining > 0:
                result = await session.exec(
                    select(UserProfile)
                    .where(
                        *public_candidates,
                        col(UserProfile.user_id).not_in(list(mutuals)),
                    )
                    .order_by(func.lower(UserProfile.username))
                    .limit(remaining)
                )
                others = result.all()

        return [
            FriendSuggestion(
                user_id=p.user_id,
                username=p.username,
                display_name=p.display_name,
                avatar_url=p.avatar_url,
                bio=p.bio,
                mutual_friends_count=len(mutuals.get(p.user_id, ())),
            )
            for p in second_degree + list(others)
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_for_recipient(
        self, session, actor_id: str, request_id: str, action: str
    ) -> FriendRequest:
        request = await session.get(FriendRequest, request_id)
        if request is None:
            raise NotFoundError("FriendRequest", request_id)
        if request.recipient_id != actor_id:
            raise ForbiddenError(action, "only the recipient may resolve a request")
        if request.status != RequestStatus.PENDING:
            raise AlreadyResolvedError(request_id, request.status)
        return request

    async def _resolve(self, session, request: FriendRequest, status: RequestStatus) -> None:
        """
        Move a request out of pending with a conditional update.

        The pending check in `_load_for_recipient` happens before the write, so
        the update only applies while the row is still pending. When another
        call resolved the request in between, nothing is written.
        """
        now = utc_now()
        result = await session.exec(
            update(FriendRequest)
            .where(
                FriendRequest.id == request.id,
                FriendRequest.status == RequestStatus.PENDING.value,
            )
            .values(status=status.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._raise_resolved(session, request.id)

        session.expunge(request)
        request.status = status.value
        request.updated_at = now

    async def _raise_resolved(self, session, request_id: str) -> None:
        result = await session.exec(
            select(FriendRequest.status).where(FriendRequest.id == request_id)
        )
        current = result.first()
        if current is None:
            raise NotFoundError("FriendRequest", request_id)
        raise AlreadyResolvedError(request_id, current)

    async def _find_friendship(
        self, session, user_a: str, user_b: str
    ) -> Optional[Friendship]:
        low, high = sorted((user_a, user_b))
        result = await session.exec(
            select(Friendship).where(
                Friendship.user_low_id == low, Friendship.user_high_id == high
            )
        )
        return result.first()

    async def _find_pending(
        self, session, user_a: str, user_b: str
    ) -> Optional[FriendRequest]:
        result = await session.exec(
            select(FriendRequest).where(
                FriendRequest.pair_key == pair_key(user_a, user_b),
                FriendRequest.status == RequestStatus.PENDING.value,
            )
        )
        return result.first()

    async def _friend_ids(self, session, user_id: str) -> Set[str]:
        result = await session.exec(
            select(Friendship).where(
                or_(Friendship.user_low_id == user_id, Friendship.user_high_id == user_id)
            )
        )
        return {f.other(user_id) for f in result.all()}

    async def _sent_pending_ids(self, session, user_id: str) -> Set[str]:
        result = await session.exec(
            select(FriendRequest).where(
                FriendRequest.sender_id == user_id,
                FriendRequest.status == RequestStatus.PENDING.value,
            )
        )
        return {r.recipient_id for r in result.all()}

    async def _pending_ids(self, session, user_id: str) -> Set[str]:
        result = await session.exec(
            select(FriendRequest).where(
                or_(
                    FriendRequest.sender_id == user_id,
                    FriendRequest.recipient_id == user_id,
                ),
                FriendRequest.status == RequestStatus.PENDING.value,
            )
        )
        return {
            r.recipient_id if r.sender_id == user_id else r.sender_id
            for r in result.all()
        }


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
