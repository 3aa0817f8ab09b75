"""iCalendar export of confirmed practice sessions"""
from datetime import timedelta
from pathlib import Path
from typing import Dict, Iterable, Optional

from icalendar import Calendar, Event

from ..storage.models import Match, MatchStatus, Profile
from ..utils.logger import setup_logger
from ..utils.timezone import now_utc

logger = setup_logger(__name__)

DEFAULT_DURATION = timedelta(hours=1)
UID_DOMAIN = "pingpong-matcher"


def build_calendar(
    matches: Iterable[Match],
    user_id: str,
    profiles: Optional[Dict[str, Profile]] = None,
    display_tz: str = "Asia/Tokyo",
) -> Calendar:
    """
    Build a calendar holding the user's confirmed matches

    Args:
        matches: Matches to consider; pending, cancelled, unscheduled and
            other players' matches are skipped
        user_id: Whose calendar this is
        profiles: Optional user_id -> Profile map for opponent names
        display_tz: Value for the X-WR-TIMEZONE hint

    Returns:
        icalendar Calendar
    """
    profiles = profiles or {}
    cal = Calendar()
    cal.add("prodid", "-//pingpong-matcher//practice sessions//")
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")
    cal.add("method", "PUBLISH")
    cal.add("x-wr-calname", "Table tennis practice")
    cal.add("x-wr-timezone", display_tz)

    stamp = now_utc()
    count = 0
    for match in matches:
        if match.status != MatchStatus.CONFIRMED or match.start_at is None:
            continue
        if not match.involves(user_id):
            continue
        cal.add_component(_create_event(match, user_id, profiles, stamp))
        count += 1

    logger.info(f"Built calendar with {count} confirmed match(es)")
    return cal


def _create_event(match: Match, user_id: str, profiles: Dict[str, Profile], stamp) -> Event:
    opponent_id = match.opponent_of(user_id)
    opponent = profiles.get(opponent_id)
    opponent_name = opponent.display_name if opponent else (opponent_id or "?")[:8]

    event = Event()
    event.add("summary", f"Table tennis with {opponent_name}")
    event.add("dtstart", match.start_at)
    event.add("dtend", match.end_at or match.start_at + DEFAULT_DURATION)
    event.add("dtstamp", stamp)
    if match.venue_text:
        event.add("location", match.venue_text)
    # Stable per match so re-exports update events instead of duplicating them
    event.add("uid", f"match-{match.id}@{UID_DOMAIN}")
    return event


def write_calendar(cal: Calendar, path: str) -> Path:
    """Write a calendar to disk, creating parent directories"""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(cal.to_ical())
    logger.info(f"Wrote calendar to {target}")
    return target
