"""
Unit tests for Change Provider

Tests subscription filtering and delivery of the in-process provider.
"""
import pytest
from unittest.mock import Mock

from providers.change_provider import ChangeEvent, InProcessChangeProvider


class TestChangeEvent:
    """Test event filter matching"""

    def test_matches_without_filters(self):
        event = ChangeEvent(entity_type="comments", action="created")
        assert event.matches(None)
        assert event.matches({})

    def test_matches_challenge_filter(self):
        event = ChangeEvent(entity_type="comments", action="created", challenge_id="ch-1")
        assert event.matches({"challenge_id": "ch-1"})
        assert not event.matches({"challenge_id": "ch-2"})

    def test_user_filter_checks_affected_users(self):
        event = ChangeEvent(
            entity_type="friendships", action="accepted", user_ids=["u-a", "u-b"]
        )
        assert event.matches({"user_id": "u-b"})
        assert not event.matches({"user_id": "u-c"})


class TestInProcessChangeProvider:
    """Test InProcessChangeProvider"""

    @pytest.fixture
    def provider(self):
        return InProcessChangeProvider()

    def test_properties(self, provider):
        assert provider.source_name == "in_process"
        assert provider.subscription_count == 0

    def test_unknown_entity_type_rejected(self, provider):
        with pytest.raises(ValueError):
            provider.subscribe("avatars", None, Mock())

    @pytest.mark.asyncio
    async def test_publish_delivers_to_matching_subscriptions(self, provider):
        comments = Mock()
        other_challenge = Mock()
        likes = Mock()
        provider.subscribe("comments", {"challenge_id": "ch-1"}, comments)
        provider.subscribe("comments", {"challenge_id": "ch-2"}, other_challenge)
        provider.subscribe("likes", None, likes)

        event = ChangeEvent(entity_type="comments", action="created", challenge_id="ch-1")
        delivered = await provider.publish(event)

        assert delivered == 1
        comments.assert_called_once_with(event)
        other_challenge.assert_not_called()
        likes.assert_not_called()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, provider):
        callback = Mock()
        token = provider.subscribe("participation", None, callback)

        assert provider.unsubscribe(token) is True
        assert provider.unsubscribe(token) is False
        assert await provider.publish(ChangeEvent(entity_type="participation", action="joined")) == 0
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_others(self, provider):
        failing = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        provider.subscribe("likes", None, failing)
        provider.subscribe("likes", None, healthy)

        delivered = await provider.publish(ChangeEvent(entity_type="likes", action="toggled"))

        assert delivered == 1
        healthy.assert_called_once()

    @pytest.mark.asyncio
    async def test_callback_may_unsubscribe_during_publish(self, provider):
        tokens = []

        def once(event):
            provider.unsubscribe(tokens[0])

        tokens.append(provider.subscribe("friendships", None, once))

        assert await provider.publish(ChangeEvent(entity_type="friendships", action="removed")) == 1
        assert provider.subscription_count == 0
