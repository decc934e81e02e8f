"""
Unit tests for CommentService

Tests posting, likes, pins, deletion and thread ordering.
"""
import pytest
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from core.exceptions import (
    EmptyContentError,
    ForbiddenError,
    InvalidParentError,
    NotFoundError,
    ValidationError,
)
from core.models import ChallengeComment, CommentLike, Reply, TopLevelComment


class TestPost:
    """Test posting comments and replies"""

    @pytest.mark.asyncio
    async def test_post_strips_content(self, comment_service):
        comment = await comment_service.post("u-bob", "ch-10", "  Day one done!  ")

        assert isinstance(comment, TopLevelComment)
        assert comment.content == "Day one done!"
        assert comment.likes_count == 0
        assert comment.user.username == "bob"

    @pytest.mark.asyncio
    async def test_blank_content_rejected(self, comment_service):
        with pytest.raises(EmptyContentError) as exc_info:
            await comment_service.post("u-bob", "ch-10", "   \n ")
        assert exc_info.value.error_code == "EMPTY_CONTENT"

    @pytest.mark.asyncio
    async def test_content_length_limit(self, comment_service):
        with pytest.raises(ValidationError):
            await comment_service.post("u-bob", "ch-10", "x" * 2001)

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, comment_service):
        with pytest.raises(NotFoundError):
            await comment_service.post("u-bob", "ch-missing", "hello")

    @pytest.mark.asyncio
    async def test_reply_to_top_level(self, comment_service):
        parent = await comment_service.post("u-bob", "ch-10", "question?")

        reply = await comment_service.post("u-alice", "ch-10", "answer", parent.id)

        assert isinstance(reply, Reply)
        assert reply.parent_id == parent.id

    @pytest.mark.asyncio
    async def test_reply_to_reply_rejected(self, comment_service):
        """Threads are one level deep"""
        parent = await comment_service.post("u-bob", "ch-10", "question?")
        reply = await comment_service.post("u-alice", "ch-10", "answer", parent.id)

        with pytest.raises(InvalidParentError):
            await comment_service.post("u-carol", "ch-10", "nested", reply.id)

    @pytest.mark.asyncio
    async def test_reply_across_challenges_rejected(self, comment_service):
        parent = await comment_service.post("u-bob", "ch-10", "question?")

        with pytest.raises(InvalidParentError):
            await comment_service.post("u-carol", "ch-3", "wrong place", parent.id)

    @pytest.mark.asyncio
    async def test_reply_to_missing_parent(self, comment_service):
        with pytest.raises(InvalidParentError):
            await comment_service.post("u-carol", "ch-10", "orphan", "missing")


class TestLikes:
    """Test like toggling"""

    @pytest.mark.asyncio
    async def test_toggle_twice_restores_state(self, comment_service):
        comment = await comment_service.post("u-bob", "ch-10", "nice")

        liked = await comment_service.toggle_like("u-carol", comment.id)
        assert liked.is_liked is True
        assert liked.likes_count == 1
        assert liked.challenge_id == "ch-10"

        unliked = await comment_service.toggle_like("u-carol", comment.id)
        assert unliked.is_liked is False
        assert unliked.likes_count == 0

    @pytest.mark.asyncio
    async def test_count_matches_distinct_likers(self, comment_service):
        comment = await comment_service.post("u-bob", "ch-10", "nice")
        for user_id in ("u-alice", "u-bob", "u-carol"):
            await comment_service.toggle_like(user_id, comment.id)
        state = await comment_service.toggle_like("u-bob", comment.id)

        assert state.likes_count == 2
        thread = await comment_service.list_comments("ch-10", "u-alice")
        assert thread[0].likes_count == 2
        assert thread[0].is_liked is True

    @pytest.mark.asyncio
    async def test_like_locks_comment_before_counting(self, comment_service, monkeypatch):
        """Toggles on one comment are serialized on the comment row"""
        comment = await comment_service.post("u-bob", "ch-10", "nice")
        locked = []
        get = AsyncSession.get

        async def recording_get(session, entity, ident, **kwargs):
            if kwargs.get("with_for_update"):
                locked.append((entity, ident))
            return await get(session, entity, ident, **kwargs)

        monkeypatch.setattr(AsyncSession, "get", recording_get)
        await comment_service.toggle_like("u-carol", comment.id)

        assert locked == [(ChallengeComment, comment.id)]

    @pytest.mark.asyncio
    async def test_like_unknown_comment(self, comment_service):
        with pytest.raises(NotFoundError):
            await comment_service.toggle_like("u-bob", "missing")


class TestPinAndDelete:
    """Test creator privileges and cascading deletes"""

    @pytest.mark.asyncio
    async def test_only_creator_may_pin(self, comment_service):
        comment = await comment_service.post("u-bob", "ch-10", "pin me")

        with pytest.raises(ForbiddenError):
            await comment_service.toggle_pin("u-bob", comment.id)

        state = await comment_service.toggle_pin("u-alice", comment.id)
        assert state.is_pinned is True
        state = await comment_service.toggle_pin("u-alice", comment.id)
        assert state.is_pinned is False

    @pytest.mark.asyncio
    async def test_delete_requires_author_or_creator(self, comment_service):
        comment = await comment_service.post("u-bob", "ch-10", "mine")

        with pytest.raises(ForbiddenError):
            await comment_service.delete("u-carol", comment.id)

        result = await comment_service.delete("u-alice", comment.id)
        assert result["deleted_ids"] == [comment.id]

    @pytest.mark.asyncio
    async def test_delete_cascades_to_replies_and_likes(self, comment_service, seeded):
        parent = await comment_service.post("u-bob", "ch-10", "parent")
        reply = await comment_service.post("u-carol", "ch-10", "reply", parent.id)
        await comment_service.toggle_like("u-alice", parent.id)
        await comment_service.toggle_like("u-alice", reply.id)

        result = await comment_service.delete("u-bob", parent.id)

        assert sorted(result["deleted_ids"]) == sorted([parent.id, reply.id])
        assert await comment_service.list_comments("ch-10") == []
        async with seeded() as session:
            likes = (await session.exec(select(CommentLike))).all()
        assert likes == []

    @pytest.mark.asyncio
    async def test_deleting_reply_keeps_parent(self, comment_service):
        parent = await comment_service.post("u-bob", "ch-10", "parent")
        reply = await comment_service.post("u-carol", "ch-10", "reply", parent.id)

        await comment_service.delete("u-carol", reply.id)

        thread = await comment_service.list_comments("ch-10")
        assert [c.id for c in thread] == [parent.id]
        assert thread[0].replies == []


class TestListComments:
    """Test thread ordering"""

    @pytest.mark.asyncio
    async def test_pinned_first_then_newest(self, comment_service, clock):
        first = await comment_service.post("u-bob", "ch-10", "first")
        clock.advance(minutes=1)
        second = await comment_service.post("u-carol", "ch-10", "second")
        clock.advance(minutes=1)
        third = await comment_service.post("u-bob", "ch-10", "third")
        await comment_service.toggle_pin("u-alice", first.id)

        thread = await comment_service.list_comments("ch-10")

        assert [c.id for c in thread] == [first.id, third.id, second.id]
        assert thread[0].is_pinned

    @pytest.mark.asyncio
    async def test_replies_oldest_first(self, comment_service, clock):
        parent = await comment_service.post("u-bob", "ch-10", "parent")
        clock.advance(minutes=1)
        early = await comment_service.post("u-carol", "ch-10", "early", parent.id)
        clock.advance(minutes=1)
        late = await comment_service.post("u-alice", "ch-10", "late", parent.id)

        thread = await comment_service.list_comments("ch-10")

        assert len(thread) == 1
        assert [r.id for r in thread[0].replies] == [early.id, late.id]
