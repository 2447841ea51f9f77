"""Telegram Bot API client for feedbot."""

import html
import time
from typing import Any

import requests
from bs4 import BeautifulSoup
from bs4.element import CData, Comment, Declaration, Doctype, ProcessingInstruction

from .config import TelegramConfig
from .errors import TelegramError
from .logging_config import create_execution_logger
from .models import FeedItem


# Non-text nodes that must not reach the message body
_MARKUP_NODES = (CData, Comment, Declaration, Doctype, ProcessingInstruction)


def recipient(channel_id: str) -> str:
    """Normalize a destination: numeric chat ids pass through, names get an @."""
    channel_id = channel_id.strip()
    if channel_id.lstrip("-").isdigit() or channel_id.startswith("@"):
        return channel_id
    return "@" + channel_id


def tag_link_only(html_text: str) -> str:
    """Sanitize markup down to <a href> tags.

    Telegram's HTML mode supports very few tags and feeds can carry anything,
    so every other element is unwrapped to its text, script/style blocks are
    removed with their content and comments or declarations are dropped. Text
    comes out with <, > and & escaped as the HTML parse mode expects.
    """
    soup = BeautifulSoup(html_text, "html.parser")

    for tag in soup(["script", "style"]):
        tag.decompose()

    for node in soup.find_all(string=lambda s: isinstance(s, _MARKUP_NODES)):
        if isinstance(node, CData):
            node.replace_with(str(node))
        else:
            node.extract()

    for tag in soup.find_all(True):
        if tag.name == "a" and tag.get("href"):
            tag.attrs = {"href": tag["href"]}
        else:
            tag.unwrap()

    return str(soup)


def format_message(item: FeedItem, with_enclosure: bool = True) -> str:
    """Build the HTML message for a feed item.

    Title (linked when the item has a link), a blank line, the sanitized
    description, and the enclosure URL after another blank line.
    """
    description = item.description.strip()
    description = description.removeprefix("<![CDATA[").removesuffix("]]>")

    # escaped tags in the source would survive sanitizing, unescape first
    message = tag_link_only(html.unescape(description)).strip()

    title = item.title.strip()
    if title:
        if item.link:
            link = html.escape(item.link, quote=True)
            message = f'<a href="{link}">{html.escape(title, quote=False)}</a>\n\n' + message
        else:
            message = f"{html.escape(title, quote=False)}\n\n" + message

    if with_enclosure and item.enclosure_url:
        message += f"\n\n{item.enclosure_url}"

    return message


class TelegramClient:
    """Sends messages and reads updates through the Telegram Bot API."""

    def __init__(self, config: TelegramConfig, execution_id: str | None = None):
        """Initialize the client. An empty token makes send() a no-op."""
        self.config = config
        self.logger = create_execution_logger("telegram", execution_id)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "feedbot/1.0"})

        self.logger.info(
            "TelegramClient initialized",
            server=config.server,
            configured=self.configured,
            retry_attempts=config.retry_attempts,
        )

    @property
    def configured(self) -> bool:
        return bool(self.config.bot_token)

    def send(self, channel_id: str, item: FeedItem) -> None:
        """Deliver a feed item to a channel or chat.

        Does nothing when the client has no token or channel_id is empty.

        Raises:
            TelegramError: If the Bot API request fails
        """
        if not self.configured or not channel_id:
            self.logger.debug(
                "Telegram delivery skipped, client or channel not configured",
                item_title=item.title,
            )
            return

        message = format_message(item)
        try:
            self.send_text(recipient(channel_id), message)
        except TelegramError as e:
            raise TelegramError(f"can't send item {item.guid} to {channel_id}: {e}") from e

        self.logger.info(
            "Message sent successfully", chat_id=channel_id, item_title=item.title
        )

    def send_text(
        self,
        chat_id: int | str,
        text: str,
        reply_markup: dict | None = None,
        parse_mode: str | None = None,
        disable_preview: bool = True,
    ) -> dict:
        """Send a text message and return the Bot API message object.

        parse_mode None uses the configured mode, an empty string sends plain text.
        """
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_preview,
        }
        if parse_mode is None:
            parse_mode = self.config.parse_mode
        if parse_mode:
            payload["parse_mode"] = parse_mode
        if reply_markup is not None:
            payload["reply_markup"] = reply_markup
        return self._request("sendMessage", json_payload=payload)

    def send_document(
        self, chat_id: int | str, filename: str, content: bytes, caption: str = ""
    ) -> dict:
        """Upload a file to a chat."""
        data = {"chat_id": str(chat_id)}
        if caption:
            data["caption"] = caption
        return self._request(
            "sendDocument", data=data, files={"document": (filename, content)}
        )

    def get_updates(self, offset: int = 0, timeout: float | None = None) -> list[dict]:
        """Long-poll for new updates starting at offset."""
        poll_timeout = int(self.config.timeout if timeout is None else timeout)
        payload = {
            "offset": offset,
            "timeout": poll_timeout,
            "allowed_updates": ["message"],
        }
        return self._request(
            "getUpdates", json_payload=payload, http_timeout=poll_timeout + 10
        ) or []

    def download_file(self, file_id: str) -> bytes:
        """Fetch the content of a file a user sent to the bot."""
        file_info = self._request("getFile", json_payload={"file_id": file_id})
        file_path = file_info.get("file_path") if file_info else None
        if not file_path:
            raise TelegramError(f"no file path for file {file_id}")

        url = f"{self.config.server}/file/bot{self.config.bot_token}/{file_path}"
        try:
            response = self.session.get(url, timeout=30)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TelegramError(self._redact(f"file download failed: {e}")) from e
        return response.content

    def handle_rate_limit(self, retry_count: int, retry_after: float | None = None) -> None:
        """
        Handle rate limiting with exponential backoff.

        Args:
            retry_count: Current retry attempt number
            retry_after: Delay suggested by the Bot API, if any
        """
        backoff_time = retry_after or self.config.backoff_factor**retry_count
        self.logger.warning(
            f"Rate limited, waiting {backoff_time} seconds before retry {retry_count + 1}",
            retry_count=retry_count,
            backoff_time=backoff_time,
        )
        time.sleep(backoff_time)

    def _request(
        self,
        method: str,
        json_payload: dict | None = None,
        data: dict | None = None,
        files: dict | None = None,
        http_timeout: float = 30,
    ) -> Any:
        """Call a Bot API method with retry on rate limiting.

        Returns:
            The "result" field of the Bot API response

        Raises:
            TelegramError: On transport errors or an unsuccessful response
        """
        url = f"{self.config.server}/bot{self.config.bot_token}/{method}"

        for attempt in range(self.config.retry_attempts):
            self.logger.debug(
                f"Calling Telegram API {method} (attempt {attempt + 1})",
                attempt=attempt + 1,
            )
            try:
                response = self.session.post(
                    url, json=json_payload, data=data, files=files, timeout=http_timeout
                )
            except requests.RequestException as e:
                raise TelegramError(self._redact(f"{method} request failed: {e}")) from e

            try:
                body = response.json()
            except ValueError:
                body = {}

            if response.status_code == 429 and attempt < self.config.retry_attempts - 1:
                retry_after = (body.get("parameters") or {}).get("retry_after")
                self.handle_rate_limit(attempt, retry_after)
                continue

            if response.status_code != 200 or not body.get("ok"):
                description = body.get("description") or response.text
                raise TelegramError(
                    self._redact(
                        f"Bot API error {response.status_code} on {method}: {description}"
                    )
                )
            return body.get("result")

        raise TelegramError(f"Max retry attempts reached for {method}")

    def _redact(self, message: str) -> str:
        if self.config.bot_token:
            return message.replace(self.config.bot_token, "***")
        return message
