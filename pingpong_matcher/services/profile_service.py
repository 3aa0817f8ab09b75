"""Profile service: creating, editing and browsing player profiles"""
from typing import Any, Dict, List, Mapping, Optional

from ..storage.backend import Backend
from ..storage.models import Profile
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

PROFILES_TABLE = "profiles"

# Columns the profile form may write
EDITABLE_FIELDS = (
    "nickname", "level", "area_code", "gender", "hand",
    "play_style", "years", "purpose", "avatar_url", "bio",
)
INT_FIELDS = ("level", "years")


def _user_id(user: Any) -> str:
    return user["id"] if isinstance(user, dict) else user.id


def _user_metadata(user: Any) -> Dict[str, Any]:
    meta = user.get("user_metadata") if isinstance(user, dict) else getattr(user, "user_metadata", None)
    return meta or {}


def parse_purpose(value: Any) -> Optional[List[str]]:
    """Turn 'rally, match practice' into ['rally', 'match practice']; blank -> None"""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value]
    else:
        items = [part.strip() for part in str(value).split(",")]
    items = [item for item in items if item]
    return items or None


def build_profile_patch(form: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Coerce raw form values into a profiles update

    Blank strings become None, level/years become ints, purpose becomes a
    list. Keys that are not editable columns are ignored.

    Raises:
        ValueError: level or years is not a whole number
    """
    patch: Dict[str, Any] = {}
    for key in EDITABLE_FIELDS:
        if key not in form:
            continue
        value = form[key]
        if isinstance(value, str):
            value = value.strip()
        if key == "purpose":
            patch[key] = parse_purpose(value)
        elif value == "" or value is None:
            patch[key] = None
        elif key in INT_FIELDS:
            try:
                patch[key] = int(value)
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be a whole number, got {value!r}")
        else:
            patch[key] = value
    return patch


class ProfileService:
    """Service for the signed-in user's profile and other players' profiles"""

    def __init__(self, backend: Backend, browse_limit: int = 50):
        """
        Initialize profile service

        Args:
            backend: Backend instance
            browse_limit: Maximum number of other players fetched by browse()
        """
        self.backend = backend
        self.browse_limit = browse_limit
        self.profile: Optional[Profile] = None

    async def ensure_profile(self, user: Any) -> Profile:
        """
        Return the user's profile, creating it on first sign-in

        Args:
            user: Auth user (object with .id/.user_metadata, or the same as a dict)
        """
        user_id = _user_id(user)
        rows = await self.backend.fetch_rows(PROFILES_TABLE, eq={"user_id": user_id}, limit=1)
        if rows:
            self.profile = Profile.from_row(rows[0])
            return self.profile

        meta = _user_metadata(user)
        payload = {
            "user_id": user_id,
            "nickname": meta.get("name"),
            "avatar_url": meta.get("avatar_url"),
        }
        row = await self.backend.insert_row(PROFILES_TABLE, payload)
        logger.info(f"Created profile for user {user_id}")
        self.profile = Profile.from_row(row)
        return self.profile

    async def save_profile(self, user_id: str, form: Mapping[str, Any]) -> Profile:
        """Validate and save profile form values"""
        patch = build_profile_patch(form)
        if not patch:
            raise ValueError("Nothing to update")

        rows = await self.backend.update_rows(PROFILES_TABLE, patch, eq={"user_id": user_id})
        if not rows:
            raise ValueError(f"No profile found for user {user_id}")
        self.profile = Profile.from_row(rows[0])
        logger.info(f"Saved profile fields {sorted(patch)} for user {user_id}")
        return self.profile

    async def browse(self, user_id: str, query: str = "") -> List[Profile]:
        """
        List other players, optionally narrowed by nickname or area code

        Args:
            user_id: The signed-in user, excluded from results
            query: Substring to look for in nickname or area code
        """
        rows = await self.backend.fetch_rows(
            PROFILES_TABLE,
            neq={"user_id": user_id},
            limit=self.browse_limit,
        )
        profiles = [Profile.from_row(row) for row in rows]
        query = query.strip()
        if query:
            profiles = [
                p for p in profiles
                if query in (p.nickname or "") or query in (p.area_code or "")
            ]
        return profiles

    async def get_profiles(self, user_ids: List[str]) -> Dict[str, Profile]:
        """Look up profiles by user id (used to label opponents)"""
        wanted = sorted({uid for uid in user_ids if uid})
        if not wanted:
            return {}
        rows = await self.backend.fetch_rows(
            PROFILES_TABLE,
            any_of=[("user_id", uid) for uid in wanted],
        )
        return {row["user_id"]: Profile.from_row(row) for row in rows}

    def clear(self):
        self.profile = None
