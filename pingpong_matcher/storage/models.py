"""Data models for profiles, availability slots, matches and messages"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..utils.timezone import parse_timestamp, to_iso


class MatchStatus:
    """Allowed values of matches.status"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    ALL = (PENDING, CONFIRMED, CANCELLED)
    TERMINAL = (CONFIRMED, CANCELLED)


class ChangeType:
    """Kinds of change delivered by the realtime feed"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    ALL = (INSERT, UPDATE, DELETE)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


@dataclass
class Profile:
    """A player's profile, keyed by the auth user id"""
    user_id: str
    nickname: Optional[str] = None
    level: Optional[int] = None
    area_code: Optional[str] = None
    gender: Optional[str] = None
    hand: Optional[str] = None
    play_style: Optional[str] = None
    years: Optional[int] = None
    purpose: List[str] = field(default_factory=list)
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        return cls(
            user_id=row["user_id"],
            nickname=row.get("nickname"),
            level=_optional_int(row.get("level")),
            area_code=row.get("area_code"),
            gender=row.get("gender"),
            hand=row.get("hand"),
            play_style=row.get("play_style"),
            years=_optional_int(row.get("years")),
            purpose=list(row.get("purpose") or []),
            avatar_url=row.get("avatar_url"),
            bio=row.get("bio"),
            created_at=parse_timestamp(row.get("created_at")),
        )

    @property
    def display_name(self) -> str:
        return self.nickname or self.user_id[:8]

    def __hash__(self):
        return hash(self.user_id)

    def __eq__(self, other):
        if not isinstance(other, Profile):
            return False
        return self.user_id == other.user_id


@dataclass
class AvailabilitySlot:
    """A time range a player has posted as free for practice"""
    id: int
    user_id: Optional[str]
    start_at: datetime
    end_at: datetime
    area_code: Optional[str] = None
    venue_hint: Optional[str] = None
    is_recurring: bool = False
    recur_dow: Optional[int] = None
    recur_start: Optional[str] = None
    recur_end: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AvailabilitySlot":
        return cls(
            id=int(row["id"]),
            user_id=row.get("user_id"),
            start_at=parse_timestamp(row["start_at"]),
            end_at=parse_timestamp(row["end_at"]),
            area_code=row.get("area_code"),
            venue_hint=row.get("venue_hint"),
            is_recurring=bool(row.get("is_recurring")),
            recur_dow=_optional_int(row.get("recur_dow")),
            recur_start=row.get("recur_start"),
            recur_end=row.get("recur_end"),
            created_at=parse_timestamp(row.get("created_at")),
        )

    @staticmethod
    def insert_payload(
        user_id: str,
        start_at: datetime,
        end_at: datetime,
        area_code: str,
        venue_hint: Optional[str] = None,
        is_recurring: bool = False,
    ) -> Dict[str, Any]:
        return {
            "user_id": user_id,
            "start_at": to_iso(start_at),
            "end_at": to_iso(end_at),
            "area_code": area_code,
            "venue_hint": venue_hint or None,
            "is_recurring": bool(is_recurring),
        }

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, AvailabilitySlot):
            return False
        return self.id == other.id


@dataclass
class Match:
    """
    A proposed practice session between two players

    user_a is the proposer and user_b the invitee. Only user_b moves the
    status out of pending, and only once.
    """
    id: int
    user_a: Optional[str]
    user_b: Optional[str]
    start_at: Optional[datetime]
    end_at: Optional[datetime]
    venue_text: Optional[str] = None
    status: str = MatchStatus.PENDING
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Match":
        return cls(
            id=int(row["id"]),
            user_a=row.get("user_a"),
            user_b=row.get("user_b"),
            start_at=parse_timestamp(row.get("start_at")),
            end_at=parse_timestamp(row.get("end_at")),
            venue_text=row.get("venue_text"),
            status=row.get("status") or MatchStatus.PENDING,
            created_at=parse_timestamp(row.get("created_at")),
        )

    @staticmethod
    def insert_payload(
        proposer_id: str,
        opponent_id: str,
        start_at: datetime,
        end_at: datetime,
        venue_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "user_a": proposer_id,
            "user_b": opponent_id,
            "start_at": to_iso(start_at),
            "end_at": to_iso(end_at),
            "venue_text": venue_text or None,
            "status": MatchStatus.PENDING,
        }

    @property
    def is_pending(self) -> bool:
        return self.status == MatchStatus.PENDING

    def involves(self, user_id: str) -> bool:
        return user_id in (self.user_a, self.user_b)

    def opponent_of(self, user_id: str) -> Optional[str]:
        """Return the other participant's id"""
        if user_id == self.user_a:
            return self.user_b
        if user_id == self.user_b:
            return self.user_a
        return None

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, Match):
            return False
        return self.id == other.id


@dataclass
class Message:
    """A chat entry; immutable once sent"""
    id: int
    match_id: Optional[int]
    sender_id: Optional[str]
    body: str
    sent_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Message":
        return cls(
            id=int(row["id"]),
            match_id=_optional_int(row.get("match_id")),
            sender_id=row.get("sender_id"),
            body=row.get("body") or "",
            sent_at=parse_timestamp(row.get("sent_at")),
        )

    @staticmethod
    def insert_payload(match_id: int, sender_id: str, body: str) -> Dict[str, Any]:
        # sent_at is defaulted by the database
        return {"match_id": match_id, "sender_id": sender_id, "body": body}

    def __hash__(self):
        return hash(self.id)

    def __eq__(self, other):
        if not isinstance(other, Message):
            return False
        return self.id == other.id


@dataclass
class ChangeEvent:
    """A normalized push notification from the change feed"""
    change_type: str
    new: Optional[Dict[str, Any]]
    old: Optional[Dict[str, Any]]

    @property
    def row(self) -> Optional[Dict[str, Any]]:
        """The row the change applies to (old for deletes)"""
        if self.change_type == ChangeType.DELETE:
            return self.old or self.new
        return self.new
