"""
Challenge Comment Service.

Threaded comments on challenges: top-level comments and one level of replies,
per-user likes and creator pins.

Key Components:
- `post`: validates content and the optional parent. A reply's parent must be
  a top-level comment of the same challenge, which caps threads at depth one.
- `toggle_like`: flips the actor's like. `likes_count` is rewritten as the size
  of the like set after every toggle. The comment row is locked first, so
  concurrent toggles on one comment count one after another and the count
  cannot drift from the likes.
- `toggle_pin`: challenge creator only.
- `delete`: author or challenge creator; deleting a top-level comment removes
  its replies and every affected like.
- `list_comments`: pinned first, then newest first; replies oldest first.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, delete, select

from core.config import get_settings
from core.database import async_session
from core.exceptions import (
    EmptyContentError,
    ForbiddenError,
    InvalidParentError,
    NotFoundError,
    ValidationError,
)
from core.models import (
    ChallengeComment,
    CommentLike,
    LikeState,
    PinState,
    Reply,
    TopLevelComment,
    UserSummary,
    utc_now,
)
from services.directory_service import load_user_summaries, require_challenge

logger = logging.getLogger(__name__)


class CommentService:
    """Service for challenge comments, likes and pins"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        max_length: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session_factory = session_factory or async_session
        self._max_length = max_length
        self._clock = clock or utc_now

    @property
    def max_length(self) -> int:
        return self._max_length or get_settings().comment_max_length

    async def post(
        self,
        actor_id: str,
        challenge_id: str,
        content: str,
        parent_id: Optional[str] = None,
    ):
        """Create a top-level comment or a reply and return its view"""
        content = (content or "").strip()
        if not content:
            raise EmptyContentError()
        if len(content) > self.max_length:
            raise ValidationError(
                f"Comment must be at most {self.max_length} characters",
                details={"field": "content", "max_length": self.max_length},
            )

        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                await require_challenge(session, challenge_id)

                if parent_id is not None:
                    parent = await session.get(ChallengeComment, parent_id)
                    if parent is None:
                        raise InvalidParentError(parent_id, "parent does not exist")
                    if parent.challenge_id != challenge_id:
                        raise InvalidParentError(
                            parent_id, "parent belongs to another challenge"
                        )
                    if parent.parent_id is not None:
                        raise InvalidParentError(parent_id, "replies cannot be nested")

                comment = ChallengeComment(
                    challenge_id=challenge_id,
                    user_id=actor_id,
                    content=content,
                    parent_id=parent_id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(comment)
                await session.flush()

            users = await load_user_summaries(session, [actor_id])

        logger.info(f"Comment {comment.id} posted on {challenge_id} by {actor_id}")
        return _to_view(comment, users.get(actor_id), liked=False)

    async def toggle_like(self, actor_id: str, comment_id: str) -> LikeState:
        challenge_id = None
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    comment = await session.get(
                        ChallengeComment, comment_id, with_for_update=True
                    )
                    if comment is None:
                        raise NotFoundError("Comment", comment_id)
                    challenge_id = comment.challenge_id

                    existing = await session.get(CommentLike, (comment_id, actor_id))
                    if existing is not None:
                        await session.delete(existing)
                        is_liked = False
                    else:
                        session.add(CommentLike(comment_id=comment_id, user_id=actor_id))
                        is_liked = True
                    await session.flush()

                    comment.likes_count = await _count_likes(session, comment_id)
                    comment.updated_at = self._clock()
                    session.add(comment)
                    likes_count = comment.likes_count
            except IntegrityError:
                # Another request inserted the same like first
                logger.info(f"Concurrent like on {comment_id} by {actor_id}")
                async with session.begin():
                    likes_count = await _count_likes(session, comment_id)
                return LikeState(
                    comment_id=comment_id,
                    challenge_id=challenge_id,
                    is_liked=True,
                    likes_count=likes_count,
                )

        logger.debug(f"Comment {comment_id} like toggled by {actor_id}: {is_liked}")
        return LikeState(
            comment_id=comment_id,
            challenge_id=challenge_id,
            is_liked=is_liked,
            likes_count=likes_count,
        )

    async def toggle_pin(self, actor_id: str, comment_id: str) -> PinState:
        async with self._session_factory() as session:
            async with session.begin():
                comment = await session.get(ChallengeComment, comment_id)
                if comment is None:
                    raise NotFoundError("Comment", comment_id)
                challenge = await require_challenge(session, comment.challenge_id)
                if challenge.created_by != actor_id:
                    raise ForbiddenError(
                        "pin comment", "only the challenge creator may pin comments"
                    )
                comment.is_pinned = not comment.is_pinned
                comment.updated_at = self._clock()
                session.add(comment)

        logger.info(f"Comment {comment_id} pinned={comment.is_pinned} by {actor_id}")
        return PinState(
            comment_id=comment_id,
            challenge_id=comment.challenge_id,
            is_pinned=comment.is_pinned,
        )

    async def delete(self, actor_id: str, comment_id: str) -> Dict[str, object]:
        """Delete a comment; a top-level comment takes its replies with it"""
        async with self._session_factory() as session:
            async with session.begin():
                comment = await session.get(ChallengeComment, comment_id)
                if comment is None:
                    raise NotFoundError("Comment", comment_id)
                if comment.user_id != actor_id:
                    challenge = await require_challenge(session, comment.challenge_id)
                    if challenge.created_by != actor_id:
                        raise ForbiddenError(
                            "delete comment",
                            "only the author or the challenge creator may delete",
                        )

                challenge_id = comment.challenge_id
                doomed = [comment_id]
                if comment.parent_id is None:
                    result = await session.exec(
                        select(ChallengeComment.id).where(
                            ChallengeComment.parent_id == comment_id
                        )
                    )
                    doomed.extend(result.all())

                await session.exec(
                    delete(CommentLike).where(col(CommentLike.comment_id).in_(doomed))
                )
                await session.exec(
                    delete(ChallengeComment).where(col(ChallengeComment.id).in_(doomed))
                )

        logger.info(
            f"Comment {comment_id} deleted by {actor_id} "
            f"({len(doomed) - 1} replies removed)"
        )
        return {
            "comment_id": comment_id,
            "challenge_id": challenge_id,
            "deleted_ids": doomed,
        }

    async def list_comments(
        self, challenge_id: str, viewer_id: Optional[str] = None
    ) -> List[TopLevelComment]:
        async with self._session_factory() as session:
            await require_challenge(session, challenge_id)
            result = await session.exec(
                select(ChallengeComment).where(
                    ChallengeComment.challenge_id == challenge_id
                )
            )
            comments = result.all()
            users = await load_user_summaries(session, [c.user_id for c in comments])

            liked: Set[str] = set()
            if viewer_id and comments:
                result = await session.exec(
                    select(CommentLike.comment_id).where(
                        CommentLike.user_id == viewer_id,
                        col(CommentLike.comment_id).in_([c.id for c in comments]),
                    )
                )
                liked = set(result.all())

        top_level = [c for c in comments if c.parent_id is None]
        replies: Dict[str, List[ChallengeComment]] = {}
        for comment in comments:
            if comment.parent_id is not None:
                replies.setdefault(comment.parent_id, []).append(comment)

        top_level.sort(key=lambda c: c.created_at, reverse=True)
        top_level.sort(key=lambda c: not c.is_pinned)

        thread = []
        for comment in top_level:
            view = _to_view(comment, users.get(comment.user_id), comment.id in liked)
            view.replies = [
                _to_view(r, users.get(r.user_id), r.id in liked)
                for r in sorted(replies.get(comment.id, []), key=lambda r: r.created_at)
            ]
            thread.append(view)
        return thread


async def _count_likes(session, comment_id: str) -> int:
    result = await session.exec(
        select(func.count()).select_from(CommentLike).where(
            CommentLike.comment_id == comment_id
        )
    )
    return result.one()


def _to_view(comment: ChallengeComment, user: Optional[UserSummary], liked: bool):
    fields = dict(
        id=comment.id,
        challenge_id=comment.challenge_id,
        user_id=comment.user_id,
        content=comment.content,
        likes_count=comment.likes_count,
        is_pinned=comment.is_pinned,
        is_liked=liked,
        created_at=comment.created_at,
        updated_at=comment.updated_at,
        user=user,
    )
    if comment.parent_id is None:
        return TopLevelComment(**fields)
    return Reply(parent_id=comment.parent_id, **fields)
