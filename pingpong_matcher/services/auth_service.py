"""Auth session service: magic links, session restore, sign-out"""
from typing import Any, Optional

from supabase import AsyncClient

from ..storage.backend import RequestError
from ..utils.events import EventEmitter
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

SIGNED_IN = "signed_in"
SIGNED_OUT = "signed_out"

# gotrue events that carry a usable session
_SESSION_EVENTS = {"INITIAL_SESSION", "SIGNED_IN", "TOKEN_REFRESHED", "USER_UPDATED"}


class AuthService:
    """
    Forwards sign-in/out to supabase auth and publishes the resulting state

    Listeners register on `events` for SIGNED_IN (called with the user) and
    SIGNED_OUT (no arguments). Each transition is published once.
    """

    def __init__(self, client: AsyncClient, events: Optional[EventEmitter] = None):
        """
        Initialize auth service

        Args:
            client: supabase AsyncClient owned by the composition root
            events: Emitter to publish on; a new one is created if omitted
        """
        self.client = client
        self.events = events or EventEmitter()
        self.current_user: Optional[Any] = None
        self._auth_subscription = None

    @property
    def user_id(self) -> Optional[str]:
        return self.current_user.id if self.current_user is not None else None

    def start(self):
        """Start listening to auth state changes"""
        if self._auth_subscription is None:
            self._auth_subscription = self.client.auth.on_auth_state_change(self._on_auth_change)

    def stop(self):
        """Stop listening to auth state changes"""
        if self._auth_subscription is not None:
            self._auth_subscription.unsubscribe()
            self._auth_subscription = None

    async def send_magic_link(self, email: str, redirect_to: str):
        """
        Email a sign-in link

        Raises:
            ValueError: email is blank
            RequestError: the auth server rejected the request
        """
        email = (email or "").strip()
        if not email:
            raise ValueError("Enter an email address")
        try:
            await self.client.auth.sign_in_with_otp({
                "email": email,
                "options": {"email_redirect_to": redirect_to, "should_create_user": True},
            })
        except Exception as e:
            raise RequestError("magic link", "auth", str(e)) from e
        logger.info(f"Magic link sent to {email}")

    async def restore_session(self, access_token: str, refresh_token: str) -> Any:
        """
        Resume a session from stored tokens

        Returns:
            The signed-in user

        Raises:
            RequestError: the tokens were rejected
        """
        try:
            response = await self.client.auth.set_session(access_token, refresh_token)
        except Exception as e:
            raise RequestError("restore session", "auth", str(e)) from e
        user = getattr(response, "user", None)
        if user is None:
            raise RequestError("restore session", "auth", "no user in session")
        self._set_user(user)
        return user

    async def sign_out(self):
        """
        Sign out everywhere, falling back to this client only

        Local state is cleared even when both attempts fail.
        """
        try:
            await self.client.auth.sign_out({"scope": "global"})
        except Exception as e:
            logger.warning(f"Global sign-out failed, falling back to local: {e}")
            try:
                await self.client.auth.sign_out({"scope": "local"})
            except Exception as e:
                logger.error(f"Local sign-out failed: {e}")
        finally:
            self._set_user(None)

    def _on_auth_change(self, event: str, session: Any):
        user = getattr(session, "user", None) if session is not None else None
        logger.debug(f"Auth event {event}")
        if event in _SESSION_EVENTS and user is not None:
            self._set_user(user)
        elif event == "SIGNED_OUT" or session is None:
            self._set_user(None)

    def _set_user(self, user: Optional[Any]):
        previous = self.user_id
        self.current_user = user
        new_id = self.user_id
        if new_id == previous:
            return
        if previous is not None:
            logger.info(f"Signed out user {previous}")
            self.events.emit(SIGNED_OUT)
        if new_id is not None:
            logger.info(f"Signed in as {new_id}")
            self.events.emit(SIGNED_IN, user)
