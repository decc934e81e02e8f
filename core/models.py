"""
Core data models for the Challenge Engagement API

Defines the SQLModel tables backing the engagement core and the pydantic view
models returned to callers.
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, PrivateAttr
from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    """Current time as naive UTC, the storage convention for every DateTime column"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key for an unordered pair of users"""
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EXTREME = "extreme"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ParticipationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class FriendshipState(str, Enum):
    NONE = "none"
    REQUEST_SENT = "request_sent"
    REQUEST_RECEIVED = "request_received"
    FRIENDS = "friends"


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


class UserProfile(SQLModel, table=True):
    """
    Read-only user identity record. Accounts are created at signup by the
    external auth service.
    """

    user_id: str = Field(primary_key=True, max_length=64)
    username: str = Field(index=True, unique=True, max_length=255)
    display_name: Optional[str] = Field(default=None, max_length=255)
    avatar_url: Optional[str] = Field(default=None, max_length=1024)
    bio: Optional[str] = Field(default=None, max_length=1024)
    is_public: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)


class Challenge(SQLModel, table=True):
    """Creator-defined challenge; immutable from the engagement core"""

    __table_args__ = (
        CheckConstraint("duration_days > 0", name="ck_challenge_duration_positive"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    title: str = Field(max_length=255)
    description: Optional[str] = Field(default=None)
    duration_days: int
    points_reward: int = Field(default=0)
    difficulty: str = Field(default=Difficulty.MEDIUM.value, max_length=20)
    category: Optional[str] = Field(default=None, max_length=100)
    created_by: str = Field(index=True, max_length=64)
    is_public: bool = Field(default=True)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)


class FriendRequest(SQLModel, table=True):
    __tablename__ = "friend_requests"
    __table_args__ = (
        # At most one pending request per unordered pair
        Index(
            "uq_friend_requests_pending_pair",
            "pair_key",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        CheckConstraint("sender_id <> recipient_id", name="ck_request_not_self"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    sender_id: str = Field(index=True, max_length=64)
    recipient_id: str = Field(index=True, max_length=64)
    pair_key: str = Field(max_length=140)
    status: str = Field(default=RequestStatus.PENDING.value, max_length=20)
    message: Optional[str] = Field(default=None, max_length=500)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)


class Friendship(SQLModel, table=True):
    """Symmetric friendship stored once per pair with the ids sorted"""

    __tablename__ = "friendships"
    __table_args__ = (
        UniqueConstraint("user_low_id", "user_high_id", name="uq_friendship_pair"),
        CheckConstraint("user_low_id < user_high_id", name="ck_friendship_ordered"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    user_low_id: str = Field(index=True, max_length=64)
    user_high_id: str = Field(index=True, max_length=64)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)

    def other(self, user_id: str) -> str:
        return self.user_high_id if user_id == self.user_low_id else self.user_low_id


class Participation(SQLModel, table=True):
    __tablename__ = "challenge_participants"
    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_participation_pair"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    challenge_id: str = Field(index=True, max_length=64)
    user_id: str = Field(index=True, max_length=64)
    progress: float = Field(default=0.0)
    check_in_count: int = Field(default=0)
    status: str = Field(default=ParticipationStatus.ACTIVE.value, max_length=20)
    started_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    last_check_in: Optional[datetime] = Field(default=None, sa_type=DateTime)
    check_in_streak: int = Field(default=0)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)


class CheckIn(SQLModel, table=True):
    __tablename__ = "check_ins"
    __table_args__ = (
        UniqueConstraint("participation_id", "local_date", name="uq_check_in_day"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    participation_id: str = Field(index=True, max_length=64)
    checked_in_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)
    local_date: date
    note: Optional[str] = Field(default=None, max_length=2000)
    progress_after: float = Field(default=0.0)


class ChallengeComment(SQLModel, table=True):
    __tablename__ = "challenge_comments"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    challenge_id: str = Field(index=True, max_length=64)
    user_id: str = Field(index=True, max_length=64)
    content: str
    parent_id: Optional[str] = Field(default=None, index=True, max_length=64)
    likes_count: int = Field(default=0)
    is_pinned: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)


class CommentLike(SQLModel, table=True):
    __tablename__ = "comment_likes"

    comment_id: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(primary_key=True, max_length=64)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)


class LeaderboardSnapshot(SQLModel, table=True):
    """Ranks of one leaderboard view captured at a point in time"""

    __tablename__ = "leaderboard_snapshots"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=64)
    view_key: str = Field(index=True, max_length=100)
    user_id: str = Field(max_length=64)
    rank: int
    score: float
    taken_at: datetime = Field(index=True, sa_type=DateTime)


# ---------------------------------------------------------------------------
# View models
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    user_id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserSummary":
        return cls(
            user_id=profile.user_id,
            username=profile.username,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            bio=profile.bio,
        )


class FriendView(UserSummary):
    friendship_id: str
    since: datetime


class UserSearchResult(UserSummary):
    is_friend: bool = False
    has_pending_request: bool = False


class FriendSuggestion(UserSummary):
    mutual_friends_count: int = 0


class FriendRequestView(BaseModel):
    id: str
    sender_id: str
    recipient_id: str
    status: str
    message: Optional[str] = None
    created_at: datetime
    sender: Optional[UserSummary] = None
    recipient: Optional[UserSummary] = None

    @classmethod
    def from_record(
        cls,
        request: FriendRequest,
        sender: Optional[UserSummary] = None,
        recipient: Optional[UserSummary] = None,
    ) -> "FriendRequestView":
        return cls(
            id=request.id,
            sender_id=request.sender_id,
            recipient_id=request.recipient_id,
            status=request.status,
            message=request.message,
            created_at=request.created_at,
            sender=sender,
            recipient=recipient,
        )


class FriendRequestLists(BaseModel):
    received: List[FriendRequestView] = []
    sent: List[FriendRequestView] = []


class UserSearchPage(BaseModel):
    users: List[UserSearchResult]
    total: int


class FriendshipStatusView(BaseModel):
    user_id: str
    status: FriendshipState
    request_id: Optional[str] = None


class ParticipationView(BaseModel):
    id: str
    challenge_id: str
    user_id: str
    progress: float
    display_progress: int
    check_in_count: int
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    last_check_in: Optional[datetime] = None
    check_in_streak: int
    updated_at: datetime
    user: Optional[UserSummary] = None

    @classmethod
    def from_record(
        cls, record: Participation, user: Optional[UserSummary] = None
    ) -> "ParticipationView":
        return cls(
            id=record.id,
            challenge_id=record.challenge_id,
            user_id=record.user_id,
            progress=record.progress,
            display_progress=display_progress(record.progress),
            check_in_count=record.check_in_count,
            status=record.status,
            started_at=record.started_at,
            completed_at=record.completed_at,
            last_check_in=record.last_check_in,
            check_in_streak=record.check_in_streak,
            updated_at=record.updated_at,
            user=user,
        )


class CheckInRecord(BaseModel):
    checked_in_at: datetime
    local_date: date
    note: Optional[str] = None
    progress_after: float


class ParticipationHistory(BaseModel):
    participation: ParticipationView
    history: List[CheckInRecord]


class ChallengeStats(BaseModel):
    challenge_id: str
    participant_count: int = 0
    active_count: int = 0
    completed_count: int = 0
    abandoned_count: int = 0
    average_progress: float = 0.0


class CommentBase(BaseModel):
    id: str
    challenge_id: str
    user_id: str
    content: str
    likes_count: int
    is_pinned: bool
    is_liked: bool = False
    created_at: datetime
    updated_at: datetime
    user: Optional[UserSummary] = None


class Reply(CommentBase):
    """A reply to a top-level comment; replies never carry children"""

    parent_id: str


class TopLevelComment(CommentBase):
    replies: List[Reply] = []


class LikeState(BaseModel):
    comment_id: str
    challenge_id: Optional[str] = None
    is_liked: bool
    likes_count: int


class PinState(BaseModel):
    comment_id: str
    challenge_id: Optional[str] = None
    is_pinned: bool


class LeaderboardEntry(BaseModel):
    user_id: str
    score: float
    rank: int
    change: int = 0
    badge: Optional[str] = None
    user: Optional[UserSummary] = None


class LeaderboardPage(BaseModel):
    view: str
    entries: List[LeaderboardEntry]
    user_rank: Optional[LeaderboardEntry] = None
    total: int
    timeframe: Optional[str] = None


class Outcome(BaseModel):
    """Typed result envelope returned by every procedure"""

    success: bool
    data: Any = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = {}
    benign: bool = False

    _http_status: int = PrivateAttr(default=200)

    @property
    def http_status(self) -> int:
        """Status code to use when the outcome is served as a plain REST response"""
        return self._http_status

    @classmethod
    def ok(cls, data: Any = None) -> "Outcome":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc) -> "Outcome":
        outcome = cls(
            success=False,
            error_code=exc.error_code,
            message=exc.message,
            details=exc.details,
            benign=exc.benign,
        )
        outcome._http_status = exc.status_code
        return outcome


def display_progress(progress: float) -> int:
    """Progress rounded for display; stored progress keeps full precision"""
    return int(round(min(max(progress, 0.0), 100.0)))
