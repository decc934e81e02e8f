"""
Realtime Change Reconciliation Service.

This module provides the `RealtimeReconciler`, which keeps in-memory views in
step with changes made by other sessions.

Key Components:
- `RealtimeReconciler`: Holds one scoped subscription per `session_id`. Each
  subscription registers on the `ChangeProvider` for a set of entity types
  and a filter (for example `{"challenge_id": ...}`). A notification carries
  no diff; it schedules a refresh of the session's view.
- Views: `CollectionView` keeps records keyed by id and merges incoming data
  so that the most recent authoritative write wins. `ParticipantsView` and
  `CommentThreadView` bind it to the participation and comment services, and
  `apply_result` merges the data a procedure call returned. `build_view`
  creates the view a WebSocket client asks for.
- Refresh Hook: `on_refresh` receives the view after every successful
  refresh, which is how the WebSocket pushes the merged records to clients.

Architectural Design:
- Scoped Lifetime: `subscription()` is an async context manager. The provider
  handles are released on every exit path, including errors and task
  cancellation, so a dropped WebSocket never leaks subscriptions.
- Coalescing: notifications that arrive while a refresh is running mark the
  view dirty and produce exactly one follow-up refresh.
- Latest Write Wins: a refetch that started before a direct mutation response
  was applied cannot overwrite that newer record, and a stale direct response
  cannot overwrite a newer refetched one.
- In-Memory State: suitable for a single-instance deployment, like the
  provider it sits on.
"""

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from core.models import ParticipationView, Reply, TopLevelComment
from providers.change_provider import ChangeEvent, ChangeProvider

logger = logging.getLogger(__name__)

_sequence = itertools.count(1)

VIEW_KINDS = ("participants", "comments")
PARTICIPATION_PROCEDURES = ("join_challenge", "check_in_challenge", "leave_challenge")


def updated_at_of(record: Any) -> datetime:
    return record.updated_at


def thread_version(comment: TopLevelComment) -> datetime:
    """A thread is as new as its newest comment or reply"""
    return max([comment.updated_at] + [r.updated_at for r in comment.replies])


class CollectionView:
    """
    In-memory collection of records merged by id.

    `loader` fetches the authoritative list. `apply_direct` merges the record
    returned by a mutation without waiting for the notification round trip.
    """

    entity_types: List[str] = []

    def __init__(
        self,
        loader: Callable[[], Awaitable[List[Any]]],
        version: Callable[[Any], datetime] = updated_at_of,
    ):
        self._loader = loader
        self._version = version
        self._records: Dict[str, Any] = {}
        self._applied_at: Dict[str, int] = {}
        self.refresh_count = 0

    def records(self) -> List[Any]:
        return list(self._records.values())

    def get(self, record_id: str) -> Optional[Any]:
        return self._records.get(record_id)

    def apply_direct(self, record: Any) -> bool:
        """Merge a mutation response; returns False when a newer copy is held"""
        existing = self._records.get(record.id)
        if existing is not None and self._version(existing) > self._version(record):
            return False
        self._records[record.id] = record
        self._applied_at[record.id] = next(_sequence)
        return True

    def apply_result(self, procedure: str, data: Any) -> bool:
        """Merge the data of a successful procedure call, when it concerns this view"""
        return False

    def discard(self, record_id: str) -> None:
        self._records.pop(record_id, None)
        self._applied_at[record_id] = next(_sequence)

    async def refresh(self) -> None:
        started = next(_sequence)
        fetched = await self._loader()
        self.merge(fetched, started)
        self.refresh_count += 1

    def merge(self, fetched: Iterable[Any], started: int) -> None:
        """
        Merge a fetch that began at sequence `started`.

        Records applied directly after the fetch began are only replaced by
        copies at least as new, and are not dropped when the fetch lacks them.
        """
        seen = set()
        for record in fetched:
            seen.add(record.id)
            existing = self._records.get(record.id)
            if (
                existing is not None
                and self._applied_at.get(record.id, 0) > started
                and self._version(existing) > self._version(record)
            ):
                continue
            if record.id not in self._records and self._applied_at.get(record.id, 0) > started:
                # Deleted by a direct mutation after this fetch began
                continue
            self._records[record.id] = record

        for record_id in list(self._records):
            if record_id not in seen and self._applied_at.get(record_id, 0) <= started:
                del self._records[record_id]


class ParticipantsView(CollectionView):
    """Participants of one challenge"""

    entity_types = ["participation"]

    def __init__(self, participation_service, challenge_id: str):
        self.challenge_id = challenge_id
        super().__init__(lambda: participation_service.list_participants(challenge_id))

    def records(self) -> List[ParticipationView]:
        return sorted(
            self._records.values(),
            key=lambda p: (-p.progress, p.started_at, p.user_id),
        )

    def apply_result(self, procedure: str, data: Any) -> bool:
        if procedure not in PARTICIPATION_PROCEDURES or not isinstance(data, dict):
            return False
        record = ParticipationView.model_validate(data)
        if record.challenge_id != self.challenge_id:
            return False
        existing = self.get(record.id)
        if record.user is None and existing is not None:
            record = record.model_copy(update={"user": existing.user})
        return self.apply_direct(record)


class CommentThreadView(CollectionView):
    """Comment thread of one challenge as seen by one viewer"""

    entity_types = ["comments", "likes"]

    def __init__(self, comment_service, challenge_id: str, viewer_id: Optional[str] = None):
        self.challenge_id = challenge_id
        super().__init__(
            lambda: comment_service.list_comments(challenge_id, viewer_id),
            version=thread_version,
        )

    def records(self) -> List[TopLevelComment]:
        newest_first = sorted(self._records.values(), key=lambda c: c.created_at, reverse=True)
        return sorted(newest_first, key=lambda c: not c.is_pinned)

    def apply_direct(self, record: Any) -> bool:
        if isinstance(record, Reply):
            parent = self.get(record.parent_id)
            if parent is None:
                return False
            replies = [r for r in parent.replies if r.id != record.id] + [record]
            replies.sort(key=lambda r: r.created_at)
            return super().apply_direct(parent.model_copy(update={"replies": replies}))
        return super().apply_direct(record)

    def apply_result(self, procedure: str, data: Any) -> bool:
        if not isinstance(data, dict) or data.get("challenge_id") != self.challenge_id:
            return False
        if procedure == "add_comment":
            model = Reply if data.get("parent_id") else TopLevelComment
            return self.apply_direct(model.model_validate(data))
        if procedure == "delete_comment":
            for comment_id in data.get("deleted_ids", []):
                self._drop(comment_id)
            return True
        return False

    def _drop(self, comment_id: str) -> None:
        if comment_id in self._records:
            self.discard(comment_id)
            return
        for parent in self.records():
            if any(r.id == comment_id for r in parent.replies):
                replies = [r for r in parent.replies if r.id != comment_id]
                self._records[parent.id] = parent.model_copy(update={"replies": replies})
                self._applied_at[parent.id] = next(_sequence)
                return


def build_view(
    kind: str,
    challenge_id: str,
    participation_service,
    comment_service,
    viewer_id: Optional[str] = None,
) -> CollectionView:
    """View named by a client subscription request"""
    if kind == "participants":
        return ParticipantsView(participation_service, challenge_id)
    if kind == "comments":
        return CommentThreadView(comment_service, challenge_id, viewer_id)
    raise ValueError(f"Unknown view: {kind}")


@dataclass
class SessionState:
    session_id: str
    entity_types: List[str]
    filters: Dict[str, Any]
    view: Optional[CollectionView]
    listener: Optional[Callable[[ChangeEvent], None]] = None
    on_refresh: Optional[Callable[[CollectionView], None]] = None
    tokens: List[str] = field(default_factory=list)
    refresh_task: Optional[asyncio.Task] = None
    dirty: bool = False
    notifications: int = 0
    last_event_at: Optional[datetime] = None


class RealtimeReconciler:
    """Service that manages scoped change subscriptions per session"""

    def __init__(self, provider: ChangeProvider):
        self.provider = provider
        # Maps session_id to its live subscription state
        self.sessions: Dict[str, SessionState] = {}

    @asynccontextmanager
    async def subscription(
        self,
        session_id: str,
        entity_types: Iterable[str],
        filters: Optional[Dict[str, Any]] = None,
        view: Optional[CollectionView] = None,
        listener: Optional[Callable[[ChangeEvent], None]] = None,
        on_refresh: Optional[Callable[[CollectionView], None]] = None,
    ):
        """
        Subscribe a session for the duration of the `async with` block.

        Args:
            session_id: Unique session identifier
            entity_types: Entity types to watch
            filters: Event fields that must match, e.g. {"challenge_id": "..."}
            view: View refreshed on every notification
            listener: Called with each matching event, e.g. to forward it
            on_refresh: Called with the view after each successful refresh
        """
        if session_id in self.sessions:
            logger.warning(f"Session {session_id} already subscribed, replacing")
            self.close_session(session_id)

        state = SessionState(
            session_id=session_id,
            entity_types=list(entity_types),
            filters=dict(filters or {}),
            view=view,
            listener=listener,
            on_refresh=on_refresh,
        )
        self.sessions[session_id] = state
        try:
            for entity_type in state.entity_types:
                state.tokens.append(
                    self.provider.subscribe(
                        entity_type, state.filters, self._callback_for(state)
                    )
                )
            logger.info(
                f"Session {session_id} subscribed to {state.entity_types} "
                f"with filters {state.filters}"
            )
            yield state
        finally:
            self._release(state)

    def _callback_for(self, state: SessionState) -> Callable[[ChangeEvent], None]:
        def on_change(event: ChangeEvent):
            state.notifications += 1
            state.last_event_at = event.occurred_at
            if state.view is not None:
                self._schedule_refresh(state)
            if state.listener is not None:
                state.listener(event)

        return on_change

    def _schedule_refresh(self, state: SessionState) -> None:
        if state.refresh_task is not None and not state.refresh_task.done():
            state.dirty = True
            return
        state.refresh_task = asyncio.get_running_loop().create_task(
            self._run_refresh(state)
        )

    async def _run_refresh(self, state: SessionState) -> None:
        while True:
            state.dirty = False
            try:
                await state.view.refresh()
            except Exception as e:
                logger.error(f"Refresh failed for session {state.session_id}: {e}")
            else:
                if state.on_refresh is not None:
                    state.on_refresh(state.view)
            if not state.dirty:
                break

    def _release(self, state: SessionState) -> None:
        for token in state.tokens:
            self.provider.unsubscribe(token)
        state.tokens.clear()
        if state.refresh_task is not None and not state.refresh_task.done():
            state.refresh_task.cancel()
        if self.sessions.get(state.session_id) is state:
            del self.sessions[state.session_id]
            logger.info(f"Session {state.session_id} released")

    async def wait_idle(self, session_id: str) -> None:
        """Wait until the session's pending refreshes have finished"""
        state = self.sessions.get(session_id)
        while state is not None and state.refresh_task is not None and not state.refresh_task.done():
            await asyncio.shield(state.refresh_task)

    def close_session(self, session_id: str) -> bool:
        state = self.sessions.get(session_id)
        if state is None:
            logger.warning(f"No active subscription found for session {session_id}")
            return False
        self._release(state)
        return True

    def close_all(self) -> int:
        session_ids = list(self.sessions.keys())
        for session_id in session_ids:
            self.close_session(session_id)
        logger.info(f"Closed {len(session_ids)} realtime sessions")
        return len(session_ids)

    def get_active_sessions(self) -> Dict[str, Dict[str, Any]]:
        return {
            session_id: {
                "session_id": session_id,
                "entity_types": state.entity_types,
                "filters": state.filters,
                "notifications": state.notifications,
                "refreshing": state.refresh_task is not None and not state.refresh_task.done(),
                "view_type": state.view.__class__.__name__ if state.view else None,
            }
            for session_id, state in self.sessions.items()
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_sessions": len(self.sessions),
            "total_subscriptions": sum(len(s.tokens) for s in self.sessions.values()),
            "total_notifications": sum(s.notifications for s in self.sessions.values()),
            "provider": self.provider.source_name,
            "active_session_ids": list(self.sessions.keys()),
        }
