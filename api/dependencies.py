from typing import Optional

from fastapi import Header

from core.config import get_settings
from providers.change_provider import InProcessChangeProvider
from services.command_bus import CommandBus
from services.comment_service import CommentService
from services.directory_service import DirectoryService
from services.friendship_service import FriendshipService
from services.leaderboard_service import LeaderboardService
from services.participation_service import ParticipationService
from services.realtime_service import RealtimeReconciler

change_provider = InProcessChangeProvider()
directory_service = DirectoryService()
friendship_service = FriendshipService()
participation_service = ParticipationService()
comment_service = CommentService()
leaderboard_service = LeaderboardService()
realtime_reconciler = RealtimeReconciler(change_provider)
command_bus = CommandBus(
    friendship_service,
    participation_service,
    comment_service,
    leaderboard_service,
    provider=change_provider,
)


def get_command_bus() -> CommandBus:
    return command_bus


def get_directory_service() -> DirectoryService:
    return directory_service


def get_realtime_reconciler() -> RealtimeReconciler:
    return realtime_reconciler


async def get_actor_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    """Id of the acting user, authenticated upstream"""
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def is_valid_api_key(api_key: Optional[str]) -> bool:
    """Check a key against API_KEY; without one configured, any pk_ key is accepted"""
    if not api_key:
        return False
    expected_key = get_settings().api_key
    if expected_key is None:
        return api_key.startswith("pk_")
    return api_key == expected_key
