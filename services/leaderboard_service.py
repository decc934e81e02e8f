"""
Leaderboard Ranking Service.

This module turns participation data into ranked standings.

Key Components:
- `rank`: A pure function. Entries are ordered by score (highest first), then
  by earliest `started_at`, then by `user_id`, which gives a total order so
  the output does not depend on the input order. `change` is the previous
  rank minus the current one (positive means the user moved up) and is 0 for
  users with no previous rank.
- `LeaderboardService`: Builds the three named views over `rank`:
    - `global`: total `points_reward` of completed challenges, optionally
      limited to a weekly or monthly window on `completed_at`.
    - `streak`: the best live check-in streak of each user. A streak whose
      last check-in is older than yesterday has lapsed and counts as 0; users
      without a live streak are left out.
    - `challenge:<id>`: the progress of each participant in one challenge.
- Snapshots: `take_snapshot` stores the current ranks of a view. Rank changes
  are measured against the most recent snapshot of the same view.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select

from core.config import checkin_timezone, get_settings
from core.database import async_session
from core.exceptions import ValidationError
from core.models import (
    Challenge,
    LeaderboardEntry,
    LeaderboardPage,
    LeaderboardSnapshot,
    Participation,
    ParticipationStatus,
    utc_now,
)
from services.directory_service import load_user_summaries, require_challenge
from services.participation_service import local_date_of

logger = logging.getLogger(__name__)

TIMEFRAMES = {"all-time": None, "weekly": timedelta(days=7), "monthly": timedelta(days=30)}
MAX_PAGE_SIZE = 100


@dataclass
class Standing:
    """A user's score in one leaderboard view, before ranking"""

    user_id: str
    score: float
    started_at: datetime


def rank(
    entries: Iterable[Standing], previous_ranks: Optional[Dict[str, int]] = None
) -> List[LeaderboardEntry]:
    previous_ranks = previous_ranks or {}
    ordered = sorted(entries, key=lambda e: (-e.score, e.started_at, e.user_id))

    ranked = []
    for position, entry in enumerate(ordered, start=1):
        previous = previous_ranks.get(entry.user_id)
        ranked.append(
            LeaderboardEntry(
                user_id=entry.user_id,
                score=entry.score,
                rank=position,
                change=previous - position if previous is not None else 0,
            )
        )
    return ranked


def badge_for(view: str, position: int) -> Optional[str]:
    if view.startswith("challenge:"):
        return {1: "gold", 2: "silver", 3: "bronze"}.get(position)
    if position == 1:
        return "legend"
    if position <= 3:
        return "master"
    if position <= 10:
        return "expert"
    return None


def parse_view(view_key: str) -> Tuple[str, Optional[str]]:
    """
    Split a view key into its kind and argument.

    `global` and `global:<timeframe>` select the points view, `streak` the
    streak view and `challenge:<id>` a single challenge.
    """
    kind, _, argument = view_key.partition(":")
    if kind == "global":
        timeframe = argument or "all-time"
        if timeframe not in TIMEFRAMES:
            raise ValidationError(
                f"Unknown timeframe: {timeframe}", details={"field": "timeframe"}
            )
        return kind, timeframe
    if kind == "streak" and not argument:
        return kind, None
    if kind == "challenge" and argument:
        return kind, argument
    raise ValidationError(f"Unknown leaderboard view: {view_key}", details={"view": view_key})


class LeaderboardService:
    """Computes leaderboard views on demand"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
    ):
        self._session_factory = session_factory or async_session
        self._clock = clock or utc_now
        self._tz = tz

    async def get_global(
        self,
        actor_id: Optional[str] = None,
        timeframe: str = "all-time",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> LeaderboardPage:
        return await self.get_view(f"global:{timeframe}", actor_id, limit, offset)

    async def get_streak(
        self, actor_id: Optional[str] = None, limit: Optional[int] = None, offset: int = 0
    ) -> LeaderboardPage:
        return await self.get_view("streak", actor_id, limit, offset)

    async def get_challenge(
        self,
        challenge_id: str,
        actor_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> LeaderboardPage:
        return await self.get_view(f"challenge:{challenge_id}", actor_id, limit, offset)

    async def get_view(
        self,
        view_key: str,
        actor_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> LeaderboardPage:
        """Rank a view and return one page of it plus the actor's own entry"""
        kind, argument = parse_view(view_key)
        view_key = f"{kind}:{argument}" if argument else kind
        if limit is None:
            limit = get_settings().leaderboard_page_size
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        async with self._session_factory() as session:
            standings = await self._standings(session, kind, argument)
            previous = await self._previous_ranks(session, view_key)
            ranked = rank(standings, previous)
            for entry in ranked:
                entry.badge = badge_for(view_key, entry.rank)

            page = ranked[offset : offset + limit]
            own = next((e for e in ranked if e.user_id == actor_id), None)
            wanted = [e.user_id for e in page] + ([own.user_id] if own else [])
            users = await load_user_summaries(session, wanted)

        for entry in page:
            entry.user = users.get(entry.user_id)
        if own is not None:
            own.user = users.get(own.user_id)

        return LeaderboardPage(
            view=view_key,
            entries=page,
            user_rank=own,
            total=len(ranked),
            timeframe=argument if kind == "global" else None,
        )

    async def take_snapshot(self, view_key: str) -> Dict[str, object]:
        """Persist the current ranks of a view as the baseline for rank changes"""
        kind, argument = parse_view(view_key)
        view_key = f"{kind}:{argument}" if argument else kind
        taken_at = self._clock()

        async with self._session_factory() as session:
            async with session.begin():
                ranked = rank(await self._standings(session, kind, argument))
                for entry in ranked:
                    session.add(
                        LeaderboardSnapshot(
                            view_key=view_key,
                            user_id=entry.user_id,
                            rank=entry.rank,
                            score=entry.score,
                            taken_at=taken_at,
                        )
                    )

        logger.info(f"Leaderboard snapshot of {view_key} taken with {len(ranked)} entries")
        return {"view": view_key, "entries": len(ranked), "taken_at": taken_at}

    async def _standings(self, session, kind: str, argument: Optional[str]) -> List[Standing]:
        if kind == "global":
            return await self._global_standings(session, TIMEFRAMES[argument])
        if kind == "streak":
            return await self._streak_standings(session)
        return await self._challenge_standings(session, argument)

    async def _global_standings(
        self, session, window: Optional[timedelta]
    ) -> List[Standing]:
        result = await session.exec(
            select(Participation, Challenge).where(
                Participation.challenge_id == Challenge.id
            )
        )
        cutoff = self._clock() - window if window else None

        scores: Dict[str, float] = {}
        first_started: Dict[str, datetime] = {}
        for participation, challenge in result.all():
            user_id = participation.user_id
            if user_id not in first_started or participation.started_at < first_started[user_id]:
                first_started[user_id] = participation.started_at
            if participation.status != ParticipationStatus.COMPLETED:
                continue
            if cutoff and (participation.completed_at is None or participation.completed_at < cutoff):
                continue
            scores[user_id] = scores.get(user_id, 0) + challenge.points_reward

        return [Standing(u, s, first_started[u]) for u, s in scores.items()]

    async def _streak_standings(self, session) -> List[Standing]:
        tz = self._tz or checkin_timezone()
        yesterday = local_date_of(self._clock(), tz) - timedelta(days=1)

        result = await session.exec(
            select(Participation).where(col(Participation.last_check_in).is_not(None))
        )
        best: Dict[str, Standing] = {}
        for participation in result.all():
            if local_date_of(participation.last_check_in, tz) < yesterday:
                continue
            if participation.check_in_streak <= 0:
                continue
            candidate = Standing(
                participation.user_id,
                participation.check_in_streak,
                participation.started_at,
            )
            current = best.get(participation.user_id)
            if current is None or (-candidate.score, candidate.started_at) < (
                -current.score,
                current.started_at,
            ):
                best[participation.user_id] = candidate
        return list(best.values())

    async def _challenge_standings(self, session, challenge_id: str) -> List[Standing]:
        await require_challenge(session, challenge_id)
        result = await session.exec(
            select(Participation).where(Participation.challenge_id == challenge_id)
        )
        return [Standing(p.user_id, p.progress, p.started_at) for p in result.all()]

    async def _previous_ranks(self, session, view_key: str) -> Dict[str, int]:
        latest = (
            await session.exec(
                select(func.max(LeaderboardSnapshot.taken_at)).where(
                    LeaderboardSnapshot.view_key == view_key
                )
            )
        ).one()
        if latest is None:
            return {}
        result = await session.exec(
            select(LeaderboardSnapshot).where(
                LeaderboardSnapshot.view_key == view_key,
                LeaderboardSnapshot.taken_at == latest,
            )
        )
        return {s.user_id: s.rank for s in result.all()}
