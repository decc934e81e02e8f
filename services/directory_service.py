"""
User and Challenge Directory Service.

Read-only lookups of user identity records and challenge definitions. Both
are owned by external systems (account signup and challenge authoring); the
engagement core only ever reads them.
"""

import logging
from typing import Dict, Iterable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from core.database import async_session
from core.exceptions import NotFoundError
from core.models import Challenge, UserProfile, UserSummary

logger = logging.getLogger(__name__)


class DirectoryService:
    """Lookup of users and challenges"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or async_session

    async def get_user(self, user_id: str) -> UserSummary:
        async with self._session_factory() as session:
            profile = await session.get(UserProfile, user_id)
            if profile is None:
                raise NotFoundError("User", user_id)
            return UserSummary.from_profile(profile)

    async def get_users(self, user_ids: Iterable[str]) -> Dict[str, UserSummary]:
        """Resolve many users at once; unknown ids are omitted"""
        async with self._session_factory() as session:
            return await load_user_summaries(session, user_ids)

    async def user_exists(self, user_id: str) -> bool:
        async with self._session_factory() as session:
            return await session.get(UserProfile, user_id) is not None

    async def get_challenge(self, challenge_id: str) -> Challenge:
        async with self._session_factory() as session:
            challenge = await session.get(Challenge, challenge_id)
            if challenge is None:
                raise NotFoundError("Challenge", challenge_id)
            return challenge


async def load_user_summaries(session, user_ids: Iterable[str]) -> Dict[str, UserSummary]:
    """Batch-load user summaries inside an existing session"""
    ids = {user_id for user_id in user_ids if user_id}
    if not ids:
        return {}
    result = await session.exec(select(UserProfile).where(UserProfile.user_id.in_(ids)))
    return {p.user_id: UserSummary.from_profile(p) for p in result.all()}


async def require_challenge(session, challenge_id: str) -> Challenge:
    """Fetch a challenge inside an existing session or raise NotFoundError"""
    challenge = await session.get(Challenge, challenge_id)
    if challenge is None:
        logger.debug(f"Challenge {challenge_id} not found")
        raise NotFoundError("Challenge", challenge_id)
    return challenge
