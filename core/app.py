import argparse
import asyncio
import signal
import sys
from datetime import datetime
from typing import Dict, List, Optional

from dotenv import load_dotenv

from core.client import ChatClient
from core.query_cache import CacheEntry
from runtime.version import as_string
from services.actor.errors import ChatError, ErrorKind
from services.actor.models import Message
from shared.config.client import ClientConfig, load_client_config
from shared.logging.logger import get_logger
from shared.storage.session_store import Session, SessionStore

log = get_logger("core.app", runtime="dinichat-cli")

ERROR_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.USERNAME_TAKEN: "This username is already taken. Please choose a different username.",
    ErrorKind.IDENTITY_CONFLICT: (
        "You already have a different username. "
        "Please use your existing username or clear your session (/leave)."
    ),
    ErrorKind.UNAUTHORIZED: "Authentication error. Please restart and try again.",
    ErrorKind.NETWORK_UNAVAILABLE: "Network error. Please check your connection and try again.",
    ErrorKind.BACKEND_NOT_READY: "Unable to connect to the chat service. Please wait a moment and try again.",
}


def describe_error(error: ChatError) -> str:
    return ERROR_MESSAGES.get(error.kind, f"Something went wrong: {error.detail or error.kind.value}")


# ----------------------------------------------------------------------
# RENDERING
# ----------------------------------------------------------------------

class MessagePrinter:
    """
    Prints messages newer than the last one shown.

    Cache listeners run synchronously, so snapshots are queued and
    rendered by `run()`, which may await profile lookups.
    """

    def __init__(self, client: ChatClient, out=None):
        self._client = client
        self._out = out or sys.stdout
        self._queue: "asyncio.Queue[List[Message]]" = asyncio.Queue()
        self._last_id: Optional[int] = None
        self._error_shown = False

    def on_update(self, entry: CacheEntry) -> None:
        if entry.error is not None and not self._error_shown:
            self._error_shown = True
            self._write(f"! {describe_error(entry.error)}")
        if entry.error is None:
            self._error_shown = False
        if entry.has_value:
            self._queue.put_nowait(list(entry.value))

    async def run(self) -> None:
        while True:
            messages = await self._queue.get()
            fresh = [m for m in messages if self._last_id is None or m.id > self._last_id]
            for message in fresh:
                self._write(await self._format(message))
                self._last_id = message.id

    async def _format(self, message: Message) -> str:
        try:
            profile = await self._client.user_profile(message.author_id)
        except ChatError:
            profile = None

        author = profile.username if profile else message.author_id[:8]
        stamp = datetime.fromtimestamp(message.timestamp / 1_000_000_000).strftime("%H:%M")

        extras = []
        if message.media:
            extras.append(f"{len(message.media)} attachment(s)")
        if message.emoji_ids:
            extras.append(" ".join(f":{e}:" for e in message.emoji_ids))

        suffix = f" [{'; '.join(extras)}]" if extras else ""
        return f"[{stamp}] {author}: {message.content}{suffix}"

    def _write(self, line: str) -> None:
        self._out.write(line + "\n")
        self._out.flush()


# ----------------------------------------------------------------------
# INTENTS
# ----------------------------------------------------------------------

async def _ensure_session(
    client: ChatClient,
    store: SessionStore,
    config: ClientConfig,
    username: Optional[str],
) -> Optional[Session]:
    session = store.load()
    if session is not None and (not username or username == session.username):
        log.info(f"Resuming session for {session.username}")
        return session

    if not username:
        print("No saved session; pass --username to join.")
        return None

    try:
        session = await client.mutations.join(username, config.default_username_color)
    except ChatError as e:
        print(describe_error(e))
        return None

    store.save(session)
    print(f"Welcome to Dini GC, {session.username}!")
    return session


async def _handle_line(
    client: ChatClient,
    store: SessionStore,
    session: Session,
    line: str,
) -> Optional[Session]:
    """
    Apply one line of input. Returns the (possibly updated) session, or
    None when the user asked to leave.
    """
    text = line.strip()
    if not text:
        return session

    if text in ("/quit", "/exit"):
        return None

    if text == "/leave":
        store.clear()
        print("Session cleared.")
        return None

    try:
        if text.startswith("/nick "):
            session = await client.mutations.update_profile(session, username=text[6:])
            store.save(session)
            print(f"You are now {session.username}.")
        elif text.startswith("/color "):
            session = await client.mutations.update_profile(session, color=text[7:].strip())
            store.save(session)
            print("Color updated.")
        else:
            await client.mutations.send_message(session, text)
    except ChatError as e:
        print(describe_error(e))
    except ValueError as e:
        print(str(e))

    return session


async def _read_lines(queue: "asyncio.Queue[Optional[str]]") -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            await queue.put(None)
            return
        await queue.put(line)


# ----------------------------------------------------------------------
# MAIN
# ----------------------------------------------------------------------

async def main(stop_event: asyncio.Event, args: argparse.Namespace) -> None:
    load_dotenv()
    log.info(as_string())

    config = load_client_config()
    if args.actor_url:
        config.actor.url = args.actor_url

    store = SessionStore(args.session or config.session_path)

    async with ChatClient(config) as client:
        session = await _ensure_session(client, store, config, args.username)
        if session is None:
            return

        printer = MessagePrinter(client)
        handle = client.watch_messages(printer.on_update)

        lines: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        tasks = [
            asyncio.create_task(printer.run()),
            asyncio.create_task(_read_lines(lines)),
        ]
        stop_task = asyncio.create_task(stop_event.wait())

        try:
            while session is not None:
                next_line = asyncio.create_task(lines.get())
                done, _ = await asyncio.wait(
                    {next_line, stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if stop_task in done:
                    next_line.cancel()
                    break

                line = next_line.result()
                if line is None:
                    break
                session = await _handle_line(client, store, session, line)
        finally:
            handle.close()
            stop_task.cancel()
            for task in tasks:
                task.cancel()
            await asyncio.gather(stop_task, *tasks, return_exceptions=True)

    log.info("Chat client stopped")


# ----------------------------------------------------------------------
# SIGNAL HANDLING
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    def _handler(signum, frame):
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="dinichat", description="Terminal client for Dini GC")
    parser.add_argument("--username", help="join (or switch to) this username")
    parser.add_argument("--actor-url", help="override the actor base URL")
    parser.add_argument("--session", help="path of the session record")
    return parser.parse_args(argv)


def run(argv: Optional[List[str]] = None):
    args = _parse_args(argv)
    stop_event = asyncio.Event()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _install_signal_handlers(loop, stop_event)

    try:
        loop.run_until_complete(main(stop_event, args))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutting down")

    finally:
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))

        loop.run_until_complete(loop.shutdown_asyncgens())
        asyncio.set_event_loop(None)
        loop.close()


if __name__ == "__main__":
    run()
    sys.exit(0)
