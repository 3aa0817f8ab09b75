"""Main entry point for the pingpong matcher client"""
import asyncio
import signal
import sys
from typing import Any, Callable, List, Optional, Set

from supabase import AsyncClient, acreate_client

from .config import Config
from .storage.backend import Backend, RequestError
from .storage.models import ChangeType, Match, Message
from .services.auth_service import SIGNED_IN, SIGNED_OUT, AuthService
from .services.chat_service import ChatService
from .services.match_service import MatchService
from .services.profile_service import ProfileService
from .services.slot_service import SlotService
from .utils.events import EventEmitter
from .utils.logger import setup_logger
from .utils.timezone import format_local

logger = setup_logger(__name__)


class PingPongApp:
    """
    Composition root: owns the one backend client and every service

    Services never reach for a global client; they get the Backend built
    here. Session changes arrive through the auth service's emitter.
    """

    def __init__(self, config: Config, client: AsyncClient, backend: Optional[Backend] = None):
        """
        Wire up services around an already created client

        Args:
            config: Loaded configuration
            client: supabase AsyncClient, shared by every service
            backend: Row access to use instead of one built on client
        """
        self.config = config
        self.client = client
        self.running = False
        self._tasks: Set[asyncio.Task] = set()
        self.load_error: Optional[RequestError] = None
        # Sign-out and sign-in work run one after another, in event order
        self._session_lock = asyncio.Lock()

        self.backend = backend or Backend(client)
        self.events = EventEmitter()
        self.auth = AuthService(client, self.events)
        self.profiles = ProfileService(self.backend, browse_limit=config.profile_browse_limit)
        self.slots = SlotService(self.backend, display_tz=config.display_timezone)
        self.matches = MatchService(self.backend, display_tz=config.display_timezone)
        self.chat = ChatService(self.backend)

        self._unsubscribers: List[Callable[[], None]] = [
            self.events.on(SIGNED_IN, self._on_signed_in),
            self.events.on(SIGNED_OUT, self._on_signed_out),
            self.matches.collection.add_listener(self._log_match_change),
            self.chat.collection.add_listener(self._log_message),
        ]

    @classmethod
    async def create(cls, config: Optional[Config] = None) -> "PingPongApp":
        """Load configuration and connect the backend client"""
        config = config or Config()
        client = await acreate_client(config.supabase_url, config.supabase_anon_key)
        return cls(config, client)

    @property
    def user_id(self) -> Optional[str]:
        return self.auth.user_id

    def require_user(self) -> str:
        """Return the signed-in user's id or raise RuntimeError"""
        if self.user_id is None:
            raise RuntimeError("Not signed in")
        return self.user_id

    async def connect(self) -> bool:
        """
        Start following auth state and resume a stored session if configured

        Returns:
            True if a user is signed in

        Raises:
            RequestError: the signed-in user's data could not be loaded
        """
        self.auth.start()
        if self.config.has_stored_session and self.user_id is None:
            try:
                await self.auth.restore_session(self.config.access_token, self.config.refresh_token)
            except RequestError as e:
                logger.error(f"Could not restore session: {e}")
        await self.wait_idle()
        if self.load_error is not None:
            raise self.load_error
        return self.user_id is not None

    async def load_user_data(self, user: Any):
        """Profile, slots and the live match list for a newly signed-in user"""
        async with self._session_lock:
            self.load_error = None
            try:
                profile = await self.profiles.ensure_profile(user)
                await self.slots.load(profile.user_id)
                await self.matches.open(profile.user_id)
            except RequestError as e:
                self.load_error = e
                raise
            logger.info(
                f"Ready as {profile.display_name}: {len(self.slots.slots)} slot(s), "
                f"{len(self.matches.matches)} match(es)"
            )

    async def clear_user_data(self):
        """Tear down subscriptions and forget everything about the last user"""
        async with self._session_lock:
            self.load_error = None
            await self.chat.close_chat()
            await self.matches.close()
            self.slots.clear()
            self.profiles.clear()

    async def wait_idle(self):
        """Wait for session-change work started by auth events"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def start(self):
        """Run until interrupted, following matches and the open chat"""
        self.running = True
        self.install_signal_handlers()
        logger.info("Starting pingpong matcher...")

        try:
            signed_in = await self.connect()
            if not signed_in:
                logger.warning("Not signed in. Run 'pingpong-matcher login EMAIL' first.")

            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.shutdown()

    def stop(self):
        self.running = False

    async def shutdown(self):
        """Release subscriptions and listeners"""
        logger.info("Stopping services...")
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.auth.stop()
        await self.wait_idle()
        await self.clear_user_data()
        logger.info("Stopped")

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def _on_signed_in(self, user: Any):
        self._spawn(self.load_user_data(user), "load user data")

    def _on_signed_out(self):
        self._spawn(self.clear_user_data(), "clear user data")

    def _spawn(self, coro, label: str):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def done(t: asyncio.Task):
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Failed to {label}: {t.exception()}")

        task.add_done_callback(done)

    def _log_match_change(self, change_type: str, match: Optional[Match]):
        if match is None:
            return
        when = format_local(match.start_at, self.config.display_timezone)
        if change_type == ChangeType.INSERT and match.user_b == self.user_id and match.is_pending:
            logger.info(f"New proposal #{match.id} for {when}")
        elif change_type == ChangeType.UPDATE:
            logger.info(f"Match #{match.id} ({when}) is {match.status}")

    def _log_message(self, change_type: str, message: Optional[Message]):
        if change_type == ChangeType.INSERT and message is not None and message.sender_id != self.user_id:
            logger.info(f"Message in match #{message.match_id}: {message.body}")


async def main():
    """Main entry point"""
    try:
        app = await PingPongApp.create()
        await app.start()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
