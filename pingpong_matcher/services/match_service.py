"""Match service: proposals, accept/decline and the live match list"""
from datetime import datetime, timezone
from typing import List, Optional, Union

from .realtime import LiveCollection, Scope
from ..storage.backend import Backend
from ..storage.mirror import LocalMirror
from ..storage.models import Match, MatchStatus
from ..utils.logger import setup_logger
from ..utils.timezone import DEFAULT_DISPLAY_TZ, parse_local

logger = setup_logger(__name__)

MATCHES_TABLE = "matches"

# Matches without a start time sort first
UNSCHEDULED = datetime.min.replace(tzinfo=timezone.utc)

DateInput = Union[str, datetime]


class MatchRuleError(ValueError):
    """A proposal or status change the match rules don't allow"""


def match_sort_key(match: Match) -> datetime:
    return match.start_at or UNSCHEDULED


class MatchService:
    """Service for the signed-in user's matches"""

    def __init__(self, backend: Backend, display_tz: str = DEFAULT_DISPLAY_TZ):
        """
        Initialize match service

        Args:
            backend: Backend instance
            display_tz: Zone that naive user input is interpreted in
        """
        self.backend = backend
        self.display_tz = display_tz
        self.collection: LiveCollection[Match] = LiveCollection(
            backend,
            LocalMirror(sort_key=match_sort_key, name="matches"),
            Match.from_row,
            name="matches",
        )

    @property
    def matches(self) -> List[Match]:
        return self.collection.mirror.items

    def get(self, match_id: int) -> Optional[Match]:
        return self.collection.mirror.get(match_id)

    async def open(self, user_id: str):
        """Mirror every match the user takes part in, live"""
        scope = Scope(
            table=MATCHES_TABLE,
            order_by="start_at",
            clauses=(("user_a", user_id), ("user_b", user_id)),
        )
        await self.collection.open(scope)

    async def refresh(self):
        await self.collection.refresh()

    async def close(self):
        await self.collection.close()

    async def propose(
        self,
        user_id: str,
        opponent_id: str,
        start: Optional[DateInput],
        end: Optional[DateInput],
        venue: Optional[str] = None,
    ) -> Match:
        """
        Propose a practice session to another player

        Raises:
            MatchRuleError: missing times, end not after start, or self-proposal
            RequestError: the insert failed
        """
        if not start or not end:
            raise MatchRuleError("A proposal needs a start and an end")
        if not opponent_id or opponent_id == user_id:
            raise MatchRuleError("Choose another player to propose to")

        start_at = parse_local(start, self.display_tz)
        end_at = parse_local(end, self.display_tz)
        if end_at <= start_at:
            raise MatchRuleError("End must be after start")

        payload = Match.insert_payload(
            proposer_id=user_id,
            opponent_id=opponent_id,
            start_at=start_at,
            end_at=end_at,
            venue_text=(venue or "").strip() or None,
        )
        row = await self.backend.insert_row(MATCHES_TABLE, payload)
        match = Match.from_row(row)
        self.collection.apply_local_insert(match, row)
        logger.info(f"Proposed match {match.id} to {opponent_id}")
        return match

    async def accept(self, user_id: str, match_id: int) -> Match:
        """Accept a pending proposal (invitee only)"""
        return await self._respond(user_id, match_id, MatchStatus.CONFIRMED)

    async def decline(self, user_id: str, match_id: int) -> Match:
        """Decline a pending proposal (invitee only)"""
        return await self._respond(user_id, match_id, MatchStatus.CANCELLED)

    async def _respond(self, user_id: str, match_id: int, status: str) -> Match:
        """
        Move a match out of pending

        The update is filtered on status = pending and user_b = user_id, so
        the backend applies it at most once even if two responses race.
        """
        known = self.get(match_id)
        if known is not None:
            check_can_respond(known, user_id)

        rows = await self.backend.update_rows(
            MATCHES_TABLE,
            {"status": status},
            eq={"id": match_id, "user_b": user_id, "status": MatchStatus.PENDING},
        )
        if not rows:
            raise MatchRuleError(f"Match {match_id} is not a pending proposal to you")

        match = Match.from_row(rows[0])
        self.collection.apply_local_update(match, rows[0])
        logger.info(f"Match {match_id} is now {status}")
        return match


def check_can_respond(match: Match, user_id: str):
    """
    Raise MatchRuleError unless user_id may accept or decline this match
    """
    if not match.involves(user_id):
        raise MatchRuleError(f"Match {match.id} does not involve you")
    if match.user_b != user_id:
        raise MatchRuleError("Only the invited player can accept or decline")
    if not match.is_pending:
        raise MatchRuleError(f"Match {match.id} is already {match.status}")
