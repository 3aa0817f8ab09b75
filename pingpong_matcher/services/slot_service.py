"""Availability slot service"""
from datetime import datetime
from typing import List, Optional, Union

from ..storage.backend import Backend
from ..storage.mirror import LocalMirror
from ..storage.models import AvailabilitySlot
from ..utils.logger import setup_logger
from ..utils.timezone import DEFAULT_DISPLAY_TZ, parse_local

logger = setup_logger(__name__)

SLOTS_TABLE = "availability_slots"

DateInput = Union[str, datetime]


class SlotService:
    """Service for the signed-in user's posted availability"""

    def __init__(self, backend: Backend, display_tz: str = DEFAULT_DISPLAY_TZ):
        """
        Initialize slot service

        Args:
            backend: Backend instance
            display_tz: Zone that naive user input is interpreted in
        """
        self.backend = backend
        self.display_tz = display_tz
        self.mirror: LocalMirror[AvailabilitySlot] = LocalMirror(
            sort_key=lambda slot: slot.start_at,
            name="slots",
        )

    @property
    def slots(self) -> List[AvailabilitySlot]:
        return self.mirror.items

    async def load(self, user_id: str) -> List[AvailabilitySlot]:
        """Fetch the user's slots, ordered by start time"""
        rows = await self.backend.fetch_rows(SLOTS_TABLE, eq={"user_id": user_id}, order_by="start_at")
        self.mirror.load_initial(AvailabilitySlot.from_row(row) for row in rows)
        return self.mirror.items

    async def add(
        self,
        user_id: str,
        start: Optional[DateInput],
        end: Optional[DateInput],
        area_code: Optional[str],
        venue_hint: Optional[str] = None,
        is_recurring: bool = False,
    ) -> AvailabilitySlot:
        """
        Post a new availability slot

        Raises:
            ValueError: start, end or area is missing, or end is not after start
            RequestError: the insert failed
        """
        area_code = (area_code or "").strip()
        if not start or not end or not area_code:
            raise ValueError("Start, end and area are required")

        start_at = parse_local(start, self.display_tz)
        end_at = parse_local(end, self.display_tz)
        if end_at <= start_at:
            raise ValueError("End must be after start")

        payload = AvailabilitySlot.insert_payload(
            user_id=user_id,
            start_at=start_at,
            end_at=end_at,
            area_code=area_code,
            venue_hint=(venue_hint or "").strip() or None,
            is_recurring=is_recurring,
        )
        row = await self.backend.insert_row(SLOTS_TABLE, payload)
        slot = AvailabilitySlot.from_row(row)
        self.mirror.apply_local_insert(slot)
        logger.info(f"Added slot {slot.id} ({slot.start_at.isoformat()} - {slot.end_at.isoformat()})")
        return slot

    async def delete(self, user_id: str, slot_id: int) -> bool:
        """
        Delete one of the user's slots

        The delete is scoped to user_id so another player's slot is never touched.
        """
        await self.backend.delete_rows(SLOTS_TABLE, eq={"id": slot_id, "user_id": user_id})
        removed = self.mirror.apply_local_delete(slot_id)
        logger.info(f"Deleted slot {slot_id}")
        return removed

    def clear(self):
        self.mirror.reset()
