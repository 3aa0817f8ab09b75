"""Tests for auth state publishing and the composition root."""

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest

from conftest import ALICE, BOB, FakeBackend, match_row, message_row
from pingpong_matcher.cli import build_parser, run_chat, run_command
from pingpong_matcher.main import PingPongApp
from pingpong_matcher.services.auth_service import SIGNED_IN, SIGNED_OUT, AuthService
from pingpong_matcher.storage.backend import RequestError


class FakeAuthSubscription:
    def __init__(self) -> None:
        self.active = True

    def unsubscribe(self) -> None:
        self.active = False


class FakeAuth:
    """The slice of supabase's async auth client the app touches."""

    def __init__(self) -> None:
        self.callbacks: list = []
        self.subscriptions: List[FakeAuthSubscription] = []
        self.sign_out_scopes: List[str] = []
        self.fail_global_sign_out = False
        self.otp_requests: List[Dict[str, Any]] = []
        self.valid_tokens = {("access", "refresh"): user(ALICE)}

    def on_auth_state_change(self, callback):
        self.callbacks.append(callback)
        sub = FakeAuthSubscription()
        self.subscriptions.append(sub)
        return sub

    def fire(self, event: str, session) -> None:
        for callback, sub in zip(self.callbacks, self.subscriptions):
            if sub.active:
                callback(event, session)

    async def sign_in_with_otp(self, credentials: Dict[str, Any]) -> None:
        self.otp_requests.append(credentials)

    async def set_session(self, access_token: str, refresh_token: str):
        found = self.valid_tokens.get((access_token, refresh_token))
        if found is None:
            raise ValueError("Invalid Refresh Token")
        return SimpleNamespace(user=found, session=SimpleNamespace(user=found))

    async def sign_out(self, options: Dict[str, str]) -> None:
        self.sign_out_scopes.append(options["scope"])
        if options["scope"] == "global" and self.fail_global_sign_out:
            raise ConnectionError("offline")


def user(user_id: str) -> SimpleNamespace:
    return SimpleNamespace(id=user_id, user_metadata={"name": user_id.split("-")[-1].title()})


@pytest.fixture
def fake_client() -> SimpleNamespace:
    return SimpleNamespace(auth=FakeAuth())


class TestAuthService:
    def test_publishes_each_transition_once(self, fake_client) -> None:
        auth = AuthService(fake_client)
        seen = []
        auth.events.on(SIGNED_IN, lambda u: seen.append(("in", u.id)))
        auth.events.on(SIGNED_OUT, lambda: seen.append(("out",)))
        auth.start()

        session = SimpleNamespace(user=user(ALICE))
        fake_client.auth.fire("INITIAL_SESSION", session)
        fake_client.auth.fire("TOKEN_REFRESHED", session)
        fake_client.auth.fire("SIGNED_IN", SimpleNamespace(user=user(BOB)))
        fake_client.auth.fire("SIGNED_OUT", None)

        assert seen == [("in", ALICE), ("out",), ("in", BOB), ("out",)]

    def test_stop_unsubscribes(self, fake_client) -> None:
        auth = AuthService(fake_client)
        auth.start()
        auth.stop()
        fake_client.auth.fire("SIGNED_IN", SimpleNamespace(user=user(ALICE)))
        assert auth.current_user is None

    async def test_magic_link(self, fake_client) -> None:
        auth = AuthService(fake_client)
        await auth.send_magic_link(" a@example.com ", "http://localhost:3000/")
        request = fake_client.auth.otp_requests[0]
        assert request["email"] == "a@example.com"
        assert request["options"]["email_redirect_to"] == "http://localhost:3000/"

        with pytest.raises(ValueError):
            await auth.send_magic_link("  ", "http://localhost:3000/")

    async def test_restore_session_rejects_bad_tokens(self, fake_client) -> None:
        with pytest.raises(RequestError):
            await AuthService(fake_client).restore_session("bad", "tokens")

    async def test_sign_out_falls_back_to_local(self, fake_client) -> None:
        auth = AuthService(fake_client)
        await auth.restore_session("access", "refresh")
        fake_client.auth.fail_global_sign_out = True

        await auth.sign_out()
        assert fake_client.auth.sign_out_scopes == ["global", "local"]
        assert auth.current_user is None


def app_config(**overrides) -> SimpleNamespace:
    values = dict(
        access_token="access",
        refresh_token="refresh",
        has_stored_session=True,
        auth_redirect_url="http://localhost:3000/",
        display_timezone="Asia/Tokyo",
        profile_browse_limit=50,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestPingPongApp:
    async def test_connect_restores_session_and_loads_data(self, fake_client, backend: FakeBackend) -> None:
        backend.seed("matches", match_row(1, "2025-03-01T10:00:00Z", user_a=BOB, user_b=ALICE))
        app = PingPongApp(app_config(), fake_client, backend=backend)

        assert await app.connect() is True
        assert app.user_id == ALICE
        assert app.profiles.profile.nickname == "Alice"
        assert [m.id for m in app.matches.matches] == [1]
        assert len(backend.active_subscriptions("matches")) == 2

    async def test_connect_without_session(self, fake_client, backend: FakeBackend) -> None:
        app = PingPongApp(app_config(has_stored_session=False), fake_client, backend=backend)
        assert await app.connect() is False
        assert backend.calls == []

    async def test_sign_out_tears_everything_down(self, fake_client, backend: FakeBackend) -> None:
        backend.seed("matches", match_row(1, "2025-03-01T10:00:00Z", user_a=BOB, user_b=ALICE))
        app = PingPongApp(app_config(), fake_client, backend=backend)
        await app.connect()
        await app.chat.open_chat(ALICE, 1)

        await app.auth.sign_out()
        await app.wait_idle()

        assert app.matches.matches == []
        assert not app.chat.is_open
        assert app.profiles.profile is None
        assert backend.active_subscriptions() == []

    async def test_switching_user_reloads_for_new_user(self, fake_client, backend: FakeBackend) -> None:
        backend.seed(
            "matches",
            match_row(1, "2025-03-01T10:00:00Z", user_a=BOB, user_b=ALICE),
            match_row(2, "2025-03-02T10:00:00Z", user_a="user-dave", user_b="user-erin"),
        )
        app = PingPongApp(app_config(), fake_client, backend=backend)
        await app.connect()

        fake_client.auth.fire("SIGNED_IN", SimpleNamespace(user=user("user-dave")))
        await app.wait_idle()

        assert app.user_id == "user-dave"
        assert [m.id for m in app.matches.matches] == [2]
        assert sorted(s.filter for s in backend.active_subscriptions("matches")) == [
            "user_a=eq.user-dave",
            "user_b=eq.user-dave",
        ]

    async def test_failed_load_is_raised_from_connect(self, fake_client, backend: FakeBackend) -> None:
        backend.fail_next("fetch", "profiles")
        app = PingPongApp(app_config(), fake_client, backend=backend)
        with pytest.raises(RequestError):
            await app.connect()
        assert app.profiles.profile is None
        assert isinstance(app.load_error, RequestError)

    async def test_cli_command_fails_when_matches_cannot_load(self, fake_client, backend: FakeBackend) -> None:
        backend.fail_next("fetch", "matches")
        app = PingPongApp(app_config(), fake_client, backend=backend)
        args = build_parser().parse_args(["matches"])

        with pytest.raises(RequestError):
            await run_command(args, app)
        assert backend.active_subscriptions() == []

    async def test_signing_in_again_after_failed_load(self, fake_client, backend: FakeBackend) -> None:
        backend.fail_next("fetch", "matches")
        app = PingPongApp(app_config(), fake_client, backend=backend)
        with pytest.raises(RequestError):
            await app.connect()

        await app.auth.sign_out()
        await app.wait_idle()
        assert app.load_error is None
        assert await app.connect() is True
        assert app.load_error is None

    async def test_shutdown(self, fake_client, backend: FakeBackend) -> None:
        app = PingPongApp(app_config(), fake_client, backend=backend)
        await app.connect()
        await app.shutdown()

        assert backend.active_subscriptions() == []
        assert not fake_client.auth.subscriptions[0].active
        assert app.events.handler_count(SIGNED_IN) == 0


class TestChatFollow:
    async def start_following(self, app: PingPongApp, monkeypatch) -> asyncio.Task:
        monkeypatch.setattr(app, "install_signal_handlers", lambda: None)
        await app.connect()
        task = asyncio.ensure_future(run_chat(app, ALICE, build_parser().parse_args(["chat", "1", "--follow"])))
        while not app.running:
            await asyncio.sleep(0)
        return task

    async def test_prints_new_messages_until_stopped(self, fake_client, backend: FakeBackend, monkeypatch, capsys) -> None:
        app = PingPongApp(app_config(), fake_client, backend=backend)
        task = await self.start_following(app, monkeypatch)

        backend.push("messages", "insert", new=message_row(5, 1, "2025-03-01T10:00:00Z", sender=BOB, body="ready?"))
        app.stop()
        await task
        backend.push("messages", "insert", new=message_row(6, 1, "2025-03-01T10:01:00Z", sender=BOB, body="hello?"))

        out = capsys.readouterr().out
        assert "ready?" in out
        assert "hello?" not in out

    async def test_cancellation_propagates(self, fake_client, backend: FakeBackend, monkeypatch) -> None:
        app = PingPongApp(app_config(), fake_client, backend=backend)
        task = await self.start_following(app, monkeypatch)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
