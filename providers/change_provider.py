"""
Change Provider Classes

Change notification providers. A provider fans published `ChangeEvent`s out to
the subscriptions whose entity type and filter match; subscribers treat each
notification as "something changed, refetch".
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from core.models import utc_now

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("participation", "comments", "likes", "friendships")


class ChangeEvent(BaseModel):
    """Notification that a record of some entity type changed"""

    entity_type: str
    action: str
    record_id: Optional[str] = None
    challenge_id: Optional[str] = None
    user_ids: List[str] = []
    occurred_at: datetime = Field(default_factory=utc_now)

    def matches(self, filters: Optional[Dict[str, Any]]) -> bool:
        """True when every filter field equals the event's value"""
        for key, expected in (filters or {}).items():
            if key == "user_id":
                if expected not in self.user_ids:
                    return False
            elif getattr(self, key, None) != expected:
                return False
        return True


@dataclass
class Subscription:
    token: str
    entity_type: str
    filters: Dict[str, Any]
    callback: Callable[[ChangeEvent], None]


class ChangeProvider(ABC):
    """Abstract base class for change providers"""

    @abstractmethod
    def subscribe(
        self,
        entity_type: str,
        filters: Optional[Dict[str, Any]],
        callback: Callable[[ChangeEvent], None],
    ) -> str:
        """Register a callback and return its subscription token"""
        pass

    @abstractmethod
    def unsubscribe(self, token: str) -> bool:
        """Release a subscription; returns False for unknown tokens"""
        pass

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> int:
        """Deliver an event and return the number of callbacks notified"""
        pass

    @property
    @abstractmethod
    def source_name(self) -> str:
        """Source identifier for this provider"""
        pass


class InProcessChangeProvider(ChangeProvider):
    """Change provider that delivers events to subscribers in this process"""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    def source_name(self) -> str:
        return "in_process"

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        entity_type: str,
        filters: Optional[Dict[str, Any]],
        callback: Callable[[ChangeEvent], None],
    ) -> str:
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")

        token = str(uuid.uuid4())
        self._subscriptions[token] = Subscription(
            token=token,
            entity_type=entity_type,
            filters=dict(filters or {}),
            callback=callback,
        )
        logger.debug(f"Subscribed {token} to {entity_type} with filters {filters}")
        return token

    def unsubscribe(self, token: str) -> bool:
        if self._subscriptions.pop(token, None) is None:
            logger.warning(f"Unsubscribe for unknown token {token}")
            return False
        logger.debug(f"Unsubscribed {token}")
        return True

    async def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        # Copy so callbacks may unsubscribe while we iterate
        for subscription in list(self._subscriptions.values()):
            if subscription.entity_type != event.entity_type:
                continue
            if not event.matches(subscription.filters):
                continue
            try:
                subscription.callback(event)
                delivered += 1
            except Exception as cb_error:
                logger.error(f"Callback error for subscription {subscription.token}: {cb_error}")

        logger.debug(
            f"Published {event.entity_type}/{event.action} "
            f"({event.record_id}) to {delivered} subscribers"
        )
        return delivered
