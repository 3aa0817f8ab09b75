"""Command-line front end"""
import argparse
import asyncio
import sys
from typing import List

from .config import Config
from .main import PingPongApp
from .services.calendar_export import build_calendar, write_calendar
from .services.match_service import MatchRuleError
from .storage.backend import RequestError
from .storage.models import ChangeType, Match
from .utils.logger import setup_logger
from .utils.timezone import format_local

logger = setup_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pingpong-matcher",
        description="Find table tennis practice partners"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Email yourself a sign-in link")
    login.add_argument("email")

    sub.add_parser("run", help="Stay connected and log match and chat activity")

    profile = sub.add_parser("profile", help="Show or edit your profile")
    for name in ("nickname", "level", "area-code", "gender", "hand", "play-style", "years", "purpose", "avatar-url", "bio"):
        profile.add_argument(f"--{name}", help=f"Set {name.replace('-', ' ')}")

    slots = sub.add_parser("slots", help="List your availability")
    slots_sub = slots.add_subparsers(dest="slots_command")
    slot_add = slots_sub.add_parser("add", help="Post an availability slot")
    slot_add.add_argument("start", help="Local start, e.g. 2025-03-01T18:00")
    slot_add.add_argument("end", help="Local end")
    slot_add.add_argument("area", help="Area code")
    slot_add.add_argument("--venue", help="Venue hint")
    slot_add.add_argument("--recurring", action="store_true", help="Repeats weekly")
    slot_delete = slots_sub.add_parser("delete", help="Delete a slot")
    slot_delete.add_argument("slot_id", type=int)

    players = sub.add_parser("players", help="Browse other players")
    players.add_argument("query", nargs="?", default="", help="Nickname or area code")

    propose = sub.add_parser("propose", help="Propose a session to a player")
    propose.add_argument("user_id", help="Opponent's user id")
    propose.add_argument("start")
    propose.add_argument("end")
    propose.add_argument("--venue")

    for name in ("accept", "decline"):
        respond = sub.add_parser(name, help=f"{name.capitalize()} a pending proposal")
        respond.add_argument("match_id", type=int)

    sub.add_parser("matches", help="List your matches")

    chat = sub.add_parser("chat", help="Show a match's chat")
    chat.add_argument("match_id", type=int)
    chat.add_argument("--send", help="Send a message first")
    chat.add_argument("--follow", action="store_true", help="Keep printing new messages")

    export = sub.add_parser("export-ics", help="Write confirmed matches to an .ics file")
    export.add_argument("path")

    return parser


def format_match(match: Match, user_id: str, tz: str) -> str:
    role = "proposed" if match.user_a == user_id else "invited"
    venue = f" @ {match.venue_text}" if match.venue_text else ""
    return (
        f"#{match.id} {format_local(match.start_at, tz)} - {format_local(match.end_at, tz)}"
        f"{venue} [{match.status}] ({role}, vs {match.opponent_of(user_id)})"
    )


async def run_command(args: argparse.Namespace, app: PingPongApp) -> int:
    tz = app.config.display_timezone

    if args.command == "login":
        await app.auth.send_magic_link(args.email, app.config.auth_redirect_url)
        print("Magic link sent. Check your email.")
        return 0

    if args.command == "run":
        await app.start()
        return 0

    try:
        if not await app.connect():
            print("Not signed in. Set SUPABASE_ACCESS_TOKEN and SUPABASE_REFRESH_TOKEN, or run 'login'.")
            return 1
        user_id = app.require_user()

        if args.command == "profile":
            form = {
                key: value for key, value in (
                    (name, getattr(args, name)) for name in (
                        "nickname", "level", "area_code", "gender", "hand",
                        "play_style", "years", "purpose", "avatar_url", "bio",
                    )
                ) if value is not None
            }
            profile = await app.profiles.save_profile(user_id, form) if form else app.profiles.profile
            if profile is None:
                print("Profile could not be loaded")
                return 1
            for key, value in vars(profile).items():
                print(f"{key:12s} {value if value not in (None, []) else '-'}")

        elif args.command == "slots":
            if args.slots_command == "add":
                slot = await app.slots.add(
                    user_id, args.start, args.end, args.area,
                    venue_hint=args.venue, is_recurring=args.recurring,
                )
                print(f"Added slot #{slot.id}")
            elif args.slots_command == "delete":
                await app.slots.delete(user_id, args.slot_id)
                print(f"Deleted slot #{args.slot_id}")
            for slot in app.slots.slots:
                print(
                    f"#{slot.id} {format_local(slot.start_at, tz)} - {format_local(slot.end_at, tz)} "
                    f"{slot.area_code or '-'} {slot.venue_hint or ''}"
                    f"{' (weekly)' if slot.is_recurring else ''}"
                )

        elif args.command == "players":
            found = await app.profiles.browse(user_id, args.query)
            print(f"{len(found)} player(s)")
            for p in found:
                purpose = ",".join(p.purpose) or "-"
                print(f"{p.user_id}  {p.display_name}  level={p.level or '-'}  area={p.area_code or '-'}  {purpose}")

        elif args.command == "propose":
            match = await app.matches.propose(user_id, args.user_id, args.start, args.end, venue=args.venue)
            print(f"Proposed {format_match(match, user_id, tz)}")

        elif args.command in ("accept", "decline"):
            respond = app.matches.accept if args.command == "accept" else app.matches.decline
            match = await respond(user_id, args.match_id)
            print(f"Updated {format_match(match, user_id, tz)}")

        elif args.command == "matches":
            for match in app.matches.matches:
                print(format_match(match, user_id, tz))

        elif args.command == "chat":
            await run_chat(app, user_id, args)

        elif args.command == "export-ics":
            opponents: List[str] = [m.opponent_of(user_id) for m in app.matches.matches]
            profiles = await app.profiles.get_profiles(opponents)
            cal = build_calendar(app.matches.matches, user_id, profiles, display_tz=tz)
            path = write_calendar(cal, args.path)
            print(f"Wrote {path}")

        return 0
    finally:
        await app.shutdown()


async def run_chat(app: PingPongApp, user_id: str, args: argparse.Namespace):
    tz = app.config.display_timezone

    def show(message):
        who = "me" if message.sender_id == user_id else (message.sender_id or "?")[:8]
        print(f"[{format_local(message.sent_at, tz)}] {who}: {message.body}")

    await app.chat.open_chat(user_id, args.match_id)
    if args.send:
        await app.chat.send(args.send)
    for message in app.chat.messages:
        show(message)

    if args.follow:
        remove = app.chat.collection.add_listener(
            lambda change_type, message: show(message) if change_type == ChangeType.INSERT and message else None
        )
        print("Following chat, Ctrl+C to stop")
        app.running = True
        app.install_signal_handlers()
        try:
            while app.running:
                await asyncio.sleep(1)
        finally:
            remove()


def main(argv=None):
    """Main entry point"""
    args = build_parser().parse_args(argv)

    try:
        config = Config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    async def runner() -> int:
        app = await PingPongApp.create(config)
        return await run_command(args, app)

    try:
        code = asyncio.run(runner())
    except (RequestError, MatchRuleError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
