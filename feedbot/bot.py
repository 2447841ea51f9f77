"""Inbound command handling for the Telegram bot.

The bot long-polls for updates on its own thread. It only talks to the rest
of the system through the store (subscriptions, feed registry) and the
Telegram client used to reply.
"""

import html
import threading
from datetime import UTC, datetime
from enum import Enum

from bs4 import BeautifulSoup

from .errors import FeedbotError
from .logging_config import create_execution_logger
from .models import Feed, User
from .store import SQLiteStore
from .telegram import TelegramClient

COMMAND_HELP = "/help"
COMMAND_STOP = "/stop"
COMMAND_START = "/start"
COMMAND_IMPORT = "/import"
COMMAND_EXPORT = "/export"

MSG_START = """Welcome!
Use commands:
/import - for load OPML-file
/export - for get your subscriptions as OPML-file
/stop - for stop send updates
"""

MSG_HELP = """Use commands:
/import - for load OPML-file
/export - for get your subscriptions as OPML-file
/stop - for stop send updates
"""

MSG_IMPORT = "Send me an OPML-file with the feeds to subscribe to."
MSG_STOP = "Updates stopped, removed {count} subscriptions."
MSG_EXPORT_EMPTY = "You have no subscriptions yet, use /import."
MSG_IMPORTED = "Subscribed to {count} new feeds."
MSG_IMPORT_FAILED = "Can't read this file, please send a valid OPML-file."
MSG_ERROR = "Something went wrong, please try again later."

MENU = {
    "keyboard": [
        [{"text": COMMAND_HELP}],
        [{"text": COMMAND_IMPORT}],
        [{"text": COMMAND_EXPORT}],
        [{"text": COMMAND_STOP}],
    ],
    "resize_keyboard": True,
}


class ChatState(Enum):
    IDLE = "idle"
    AWAITING_IMPORT = "awaiting_import"


def parse_opml(content: bytes | str) -> list[Feed]:
    """Extract feeds (xmlUrl outlines) from an OPML document.

    Raises:
        ValueError: If the document has no <opml> root
    """
    soup = BeautifulSoup(content, "html.parser")
    if soup.find("opml") is None:
        raise ValueError("not an OPML document")

    feeds = []
    seen = set()
    # html.parser lowercases attribute names
    for outline in soup.find_all("outline"):
        url = (outline.get("xmlurl") or "").strip()
        if not url or url in seen:
            continue
        seen.add(url)
        title = outline.get("title") or outline.get("text") or url
        feeds.append(Feed(title=title.strip(), url=url))
    return feeds


def build_opml(feeds: list[Feed], title: str = "feedbot subscriptions") -> str:
    """Render feeds as an OPML 2.0 document."""
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<opml version="2.0">',
        "  <head>",
        f"    <title>{html.escape(title)}</title>",
        f"    <dateCreated>{datetime.now(UTC).strftime('%a, %d %b %Y %H:%M:%S GMT')}</dateCreated>",
        "  </head>",
        "  <body>",
    ]
    for feed in feeds:
        name = html.escape(feed.title or feed.url)
        url = html.escape(feed.url)
        lines.append(
            f'    <outline type="rss" text="{name}" title="{name}" xmlUrl="{url}"/>'
        )
    lines.extend(["  </body>", "</opml>", ""])
    return "\n".join(lines)


class CommandBot:
    """Routes private-chat commands to subscription store operations."""

    def __init__(
        self,
        client: TelegramClient,
        store: SQLiteStore,
        stop_event: threading.Event | None = None,
    ):
        self.client = client
        self.store = store
        self._stop = stop_event or threading.Event()
        self._states: dict[int, ChatState] = {}
        self._offset = 0
        self.logger = create_execution_logger("bot")
        self._handlers = {
            COMMAND_START: self.on_start,
            COMMAND_HELP: self.on_help,
            COMMAND_STOP: self.on_stop,
            COMMAND_IMPORT: self.on_import,
            COMMAND_EXPORT: self.on_export,
        }

    def run(self) -> None:
        """Long-poll for updates until stop() is called."""
        self.logger.info("Telegram bot started")
        while not self._stop.is_set():
            self.poll_once()
        self.logger.info("Telegram bot stopped")

    def stop(self) -> None:
        self._stop.set()

    def poll_once(self, timeout: float | None = None) -> int:
        """Fetch one batch of updates and handle them. Returns the batch size."""
        try:
            updates = self.client.get_updates(self._offset, timeout)
        except FeedbotError as e:
            self.logger.warning(f"Failed to get updates: {e}", error=str(e))
            # back off before polling again, wakes up early on stop
            self._stop.wait(5)
            return 0

        for update in updates:
            self._offset = max(self._offset, int(update.get("update_id", 0)) + 1)
            message = update.get("message")
            if not message:
                continue
            try:
                self.handle_message(message)
            except Exception as e:
                # one bad update must not end the polling loop
                self.logger.error(
                    f"Failed to handle update {update.get('update_id')}: {e}",
                    error=str(e),
                    exc_info=True,
                )
        return len(updates)

    def state(self, chat_id: int) -> ChatState:
        return self._states.get(chat_id, ChatState.IDLE)

    def handle_message(self, message: dict) -> None:
        """Dispatch one incoming message."""
        chat = message.get("chat") or {}
        if chat.get("type") != "private":
            return

        chat_id = int(chat["id"])
        text = (message.get("text") or "").strip()

        if text.startswith("/"):
            command, _, payload = text.partition(" ")
            # "/start@my_bot" addresses the bot explicitly
            command = command.split("@", 1)[0]
            handler = self._handlers.get(command)
            if handler is not None:
                self.logger.log_command(command, chat_id, payload)
                self._states[chat_id] = ChatState.IDLE
                try:
                    handler(message, payload)
                except FeedbotError as e:
                    self.logger.error(
                        f"Command {command} failed: {e}",
                        command=command,
                        chat_id=chat_id,
                        error=str(e),
                    )
                    self._reply(message, MSG_ERROR)
                return

        if message.get("document"):
            self.on_document(message)
            return

        self.logger.debug(f"Telegram receive unknown text: {text}", chat_id=chat_id)

    def on_start(self, message: dict, payload: str) -> None:
        sender = message.get("from") or {}
        self.store.save_user(
            User(
                id=int(message["chat"]["id"]),
                first_name=sender.get("first_name", ""),
                last_name=sender.get("last_name", ""),
                username=sender.get("username", ""),
            )
        )
        self._reply(message, MSG_START, reply_markup=MENU)

    def on_help(self, message: dict, payload: str) -> None:
        self._reply(message, MSG_HELP, reply_markup=MENU)

    def on_stop(self, message: dict, payload: str) -> None:
        count = self.store.unsubscribe(int(message["chat"]["id"]))
        self._reply(message, MSG_STOP.format(count=count))

    def on_import(self, message: dict, payload: str) -> None:
        self._states[int(message["chat"]["id"])] = ChatState.AWAITING_IMPORT
        self._reply(message, MSG_IMPORT)

    def on_export(self, message: dict, payload: str) -> None:
        chat_id = int(message["chat"]["id"])
        feeds = []
        for name in self.store.subscriptions(chat_id):
            feeds.append(self.store.feed(name) or Feed(title=name, url=name))

        if not feeds:
            self._reply(message, MSG_EXPORT_EMPTY)
            return

        self.client.send_document(
            chat_id, "subscriptions.opml", build_opml(feeds).encode("utf-8")
        )

    def on_document(self, message: dict) -> None:
        """Import an OPML-file when the chat asked for it with /import."""
        chat_id = int(message["chat"]["id"])
        document = message["document"]
        self.logger.debug(
            f"Telegram message receive document: '{document.get('file_name')}', "
            f"with size: '{document.get('file_size')}'",
            chat_id=chat_id,
        )
        if self.state(chat_id) is not ChatState.AWAITING_IMPORT:
            return

        self._states[chat_id] = ChatState.IDLE
        try:
            content = self.client.download_file(document["file_id"])
            feeds = parse_opml(content)
        except (FeedbotError, ValueError) as e:
            self.logger.warning(
                f"Import failed: {e}", chat_id=chat_id, error=str(e)
            )
            self._reply(message, MSG_IMPORT_FAILED)
            return

        added = 0
        try:
            for feed in feeds:
                self.store.save_feed(feed)
                if self.store.subscribe(chat_id, feed.url):
                    added += 1
        except FeedbotError as e:
            self.logger.error(
                f"Import failed after {added} subscriptions: {e}",
                chat_id=chat_id,
                error=str(e),
            )
            self._reply(message, MSG_ERROR)
            return

        self.logger.info(
            f"Imported {len(feeds)} feeds", chat_id=chat_id, added=added
        )
        self._reply(message, MSG_IMPORTED.format(count=added))

    def _reply(self, message: dict, text: str, reply_markup: dict | None = None) -> None:
        try:
            self.client.send_text(
                message["chat"]["id"], text, reply_markup=reply_markup, parse_mode=""
            )
        except FeedbotError as e:
            self.logger.warning(
                f"Failed to reply: {e}", chat_id=message["chat"]["id"], error=str(e)
            )
