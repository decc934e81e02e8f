"""
Challenge Participation Service.

This module provides the `ParticipationService`, the state machine behind
joining a challenge, checking in daily and leaving.

Key Components:
- Lifecycle: a participation starts `active` on `join` and ends either
  `completed` (progress reaches 100) or `abandoned` (`leave`). Both end states
  are final; one participation record exists per user and challenge for its
  whole lifetime.
- Check-ins: at most one per calendar day, where the day is taken in the
  configured check-in timezone. Progress is derived from the check-in count
  (`count * 100 / duration_days`, capped at 100) so repeated division never
  accumulates rounding error. The streak grows when the previous check-in was
  on the previous calendar day and restarts at 1 otherwise.
- Reads: the caller's participation, its check-in history, the participants
  of a challenge and the challenge statistics.

Architectural Design:
- Injectable Clock: the service reads the time through a `clock` callable
  returning naive UTC, so tests can step through days deterministically.
- Store Constraints: the unique (challenge, user) pair and the unique
  (participation, local_date) check-in turn concurrent duplicates into
  `AlreadyJoinedError` / `AlreadyCheckedInTodayError` instead of corrupt state.
- Conditional Transitions: `check_in` and `leave` update the row only while it
  is still active and unchanged since it was read, so a `leave` racing the
  completing check-in can never reopen or relabel a completed participation.
- Derived Aggregates: `compute_stats` is a pure reduction over the
  participation rows and is never persisted.
"""

import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select

from core.config import checkin_timezone
from core.database import async_session
from core.exceptions import (
    AlreadyCheckedInTodayError,
    AlreadyJoinedError,
    ConflictError,
    NotFoundError,
    ParticipationClosedError,
    ValidationError,
)
from core.models import (
    ChallengeStats,
    CheckIn,
    CheckInRecord,
    Participation,
    ParticipationHistory,
    ParticipationStatus,
    ParticipationView,
    utc_now,
)
from services.directory_service import load_user_summaries, require_challenge

logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 2000


def local_date_of(moment: datetime, tz: tzinfo) -> date:
    """Calendar date of a naive UTC timestamp in the given timezone"""
    return moment.replace(tzinfo=timezone.utc).astimezone(tz).date()


def progress_for(check_in_count: int, duration_days: int) -> float:
    return min(100.0, check_in_count * 100.0 / duration_days)


def compute_stats(challenge_id: str, records: Iterable[Participation]) -> ChallengeStats:
    """Reduce participation rows to challenge statistics"""
    records = list(records)
    stats = ChallengeStats(challenge_id=challenge_id, participant_count=len(records))
    for record in records:
        if record.status == ParticipationStatus.ACTIVE:
            stats.active_count += 1
        elif record.status == ParticipationStatus.COMPLETED:
            stats.completed_count += 1
        elif record.status == ParticipationStatus.ABANDONED:
            stats.abandoned_count += 1
    if records:
        stats.average_progress = sum(r.progress for r in records) / len(records)
    return stats


class ParticipationService:
    """Service that tracks challenge participation and check-ins"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
    ):
        self._session_factory = session_factory or async_session
        self._clock = clock or utc_now
        self._tz = tz

    @property
    def timezone(self) -> tzinfo:
        return self._tz or checkin_timezone()

    async def join(self, actor_id: str, challenge_id: str) -> ParticipationView:
        """
        Join a challenge.

        Raises:
            NotFoundError: the challenge does not exist
            AlreadyJoinedError: a participation already exists, in any state
        """
        now = self._clock()
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    await require_challenge(session, challenge_id)
                    if await self._find(session, actor_id, challenge_id):
                        raise AlreadyJoinedError(challenge_id, actor_id)

                    record = Participation(
                        challenge_id=challenge_id,
                        user_id=actor_id,
                        started_at=now,
                        updated_at=now,
                    )
                    session.add(record)
                    await session.flush()
            except IntegrityError:
                raise AlreadyJoinedError(challenge_id, actor_id)

        logger.info(f"User {actor_id} joined challenge {challenge_id}")
        return ParticipationView.from_record(record)

    async def check_in(
        self, actor_id: str, challenge_id: str, note: Optional[str] = None
    ) -> ParticipationView:
        """
        Record today's check-in.

        Raises:
            NotFoundError: the actor has not joined the challenge
            ParticipationClosedError: the participation is no longer active
            AlreadyCheckedInTodayError: a check-in already exists for today
        """
        if note is not None:
            note = note.strip() or None
            if note and len(note) > MAX_NOTE_LENGTH:
                raise ValidationError(
                    f"Note must be at most {MAX_NOTE_LENGTH} characters",
                    details={"field": "note"},
                )

        now = self._clock()
        tz = self.timezone
        today = local_date_of(now, tz)

        async with self._session_factory() as session:
            try:
                async with session.begin():
                    challenge = await require_challenge(session, challenge_id)
                    record = await self._find(session, actor_id, challenge_id)
                    if record is None:
                        raise NotFoundError("Participation", challenge_id)
                    if record.status != ParticipationStatus.ACTIVE:
                        raise ParticipationClosedError(challenge_id, record.status)

                    previous = (
                        local_date_of(record.last_check_in, tz)
                        if record.last_check_in
                        else None
                    )
                    if previous == today:
                        raise AlreadyCheckedInTodayError(challenge_id, today.isoformat())

                    check_in_count = record.check_in_count + 1
                    progress = progress_for(check_in_count, challenge.duration_days)
                    changes = {
                        "check_in_count": check_in_count,
                        "check_in_streak": (
                            record.check_in_streak + 1
                            if previous == today - timedelta(days=1)
                            else 1
                        ),
                        "progress": progress,
                        "last_check_in": now,
                        "updated_at": now,
                    }
                    if progress >= 100.0:
                        changes["status"] = ParticipationStatus.COMPLETED.value
                        changes["completed_at"] = now

                    await self._update_active(session, record, changes, today)
                    session.add(
                        CheckIn(
                            participation_id=record.id,
                            checked_in_at=now,
                            local_date=today,
                            note=note,
                            progress_after=progress,
                        )
                    )
                    await session.flush()
            except IntegrityError:
                raise AlreadyCheckedInTodayError(challenge_id, today.isoformat())

        logger.info(
            f"User {actor_id} checked in to {challenge_id}: "
            f"count={record.check_in_count} streak={record.check_in_streak} "
            f"status={record.status}"
        )
        return ParticipationView.from_record(record)

    async def leave(self, actor_id: str, challenge_id: str) -> ParticipationView:
        """Abandon an active participation; progress and streak are kept as they are"""
        now = self._clock()
        async with self._session_factory() as session:
            async with session.begin():
                record = await self._find(session, actor_id, challenge_id)
                if record is None:
                    raise NotFoundError("Participation", challenge_id)
                if record.status != ParticipationStatus.ACTIVE:
                    raise ParticipationClosedError(challenge_id, record.status)
                await self._update_active(
                    session,
                    record,
                    {"status": ParticipationStatus.ABANDONED.value, "updated_at": now},
                )

        logger.info(f"User {actor_id} left challenge {challenge_id}")
        return ParticipationView.from_record(record)

    async def get_participation(self, actor_id: str, challenge_id: str) -> ParticipationView:
        async with self._session_factory() as session:
            record = await self._find(session, actor_id, challenge_id)
            if record is None:
                raise NotFoundError("Participation", challenge_id)
            return ParticipationView.from_record(record)

    async def get_history(self, actor_id: str, challenge_id: str) -> ParticipationHistory:
        """The actor's participation with its check-ins, oldest first"""
        async with self._session_factory() as session:
            record = await self._find(session, actor_id, challenge_id)
            if record is None:
                raise NotFoundError("Participation", challenge_id)
            result = await session.exec(
                select(CheckIn)
                .where(CheckIn.participation_id == record.id)
                .order_by(col(CheckIn.checked_in_at))
            )
            history = [
                CheckInRecord(
                    checked_in_at=c.checked_in_at,
                    local_date=c.local_date,
                    note=c.note,
                    progress_after=c.progress_after,
                )
                for c in result.all()
            ]
        return ParticipationHistory(
            participation=ParticipationView.from_record(record), history=history
        )

    async def list_participants(self, challenge_id: str) -> List[ParticipationView]:
        """Participants ordered by progress, earliest starters first on ties"""
        async with self._session_factory() as session:
            await require_challenge(session, challenge_id)
            result = await session.exec(
                select(Participation)
                .where(Participation.challenge_id == challenge_id)
                .order_by(
                    col(Participation.progress).desc(),
                    col(Participation.started_at),
                    col(Participation.user_id),
                )
            )
            records = result.all()
            users = await load_user_summaries(session, [r.user_id for r in records])
        return [ParticipationView.from_record(r, users.get(r.user_id)) for r in records]

    async def get_challenge_stats(self, challenge_id: str) -> ChallengeStats:
        async with self._session_factory() as session:
            await require_challenge(session, challenge_id)
            result = await session.exec(
                select(Participation).where(Participation.challenge_id == challenge_id)
            )
            return compute_stats(challenge_id, result.all())

    async def _find(
        self, session, user_id: str, challenge_id: str
    ) -> Optional[Participation]:
        result = await session.exec(
            select(Participation).where(
                Participation.challenge_id == challenge_id,
                Participation.user_id == user_id,
            )
        )
        return result.first()

    async def _update_active(
        self,
        session,
        record: Participation,
        changes: Dict[str, Any],
        today: Optional[date] = None,
    ) -> None:
        """
        Write `changes` only while the row is still active and holds the check-in
        count it was read with, then reload `record` from the store.

        When another call changed the row in between, nothing is written and the
        failure reflects what that call did.
        """
        result = await session.exec(
            update(Participation)
            .where(
                Participation.id == record.id,
                Participation.status == ParticipationStatus.ACTIVE.value,
                Participation.check_in_count == record.check_in_count,
            )
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        await session.refresh(record)
        if result.rowcount == 1:
            return

        if record.status != ParticipationStatus.ACTIVE:
            raise ParticipationClosedError(record.challenge_id, record.status)
        if (
            today is not None
            and record.last_check_in is not None
            and local_date_of(record.last_check_in, self.timezone) == today
        ):
            raise AlreadyCheckedInTodayError(record.challenge_id, today.isoformat())
        raise ConflictError(
            "Participation changed while it was being updated",
            "CONCURRENT_UPDATE",
            {"challenge_id": record.challenge_id},
        )
