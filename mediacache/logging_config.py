"""
Logging configuration for media-cache.
Handles per-job log files with size rotation, and notification handlers.
"""

import json
import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

import requests

from mediacache.config import LoggingConfig, NotificationConfig

# Aggregate run outcomes; sits just above WARNING so notification handlers
# set to "summary" receive it alongside errors but never per-item noise.
SUMMARY = logging.WARNING + 1
logging.addLevelName(SUMMARY, 'SUMMARY')

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"

LEVEL_MAPPING = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "summary": SUMMARY,
}

# Delivery failures log here; notification handlers drop records from this logger.
_NOTIFY_LOGGER = logging.getLogger("mediacache.notify")


class NotificationFilter(logging.Filter):
    """Pass only what belongs on the notification channel.

    That is the run summary plus records explicitly flagged with
    ``extra={"notify": True}``. Per-item errors stay in the job log; their
    count reaches the channel through the summary.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Return True to allow the record, False to suppress it."""
        return record.levelno == SUMMARY or bool(getattr(record, "notify", False))


class NotificationHandler(logging.Handler):
    """Base handler for fire-and-forget delivery with bounded retry.

    Delivery failures are logged through a logger this handler ignores and
    are never raised into the job.
    """

    channel_name = "notification"

    def __init__(self, max_retries: int = 3, retry_delay: float = 2, timeout: float = 30):
        super().__init__()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.addFilter(NotificationFilter())

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == _NOTIFY_LOGGER.name:
            return
        if record.levelno == SUMMARY:
            text = "Media Cache Summary:\n" + record.getMessage()
        else:
            text = f"Media Cache {record.levelname}: {record.getMessage()}"
        self.deliver(text)

    def deliver(self, text: str) -> bool:
        """Send text, retrying a fixed number of times with a fixed delay.

        Returns:
            True if the message was accepted by the remote end.
        """
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self._post(text)
                if response.ok:
                    return True
                last_error = f"HTTP {response.status_code}"
            except requests.RequestException as e:
                last_error = f"{type(e).__name__}: {e}"

            if attempt < self.max_retries:
                time.sleep(self.retry_delay)

        _NOTIFY_LOGGER.warning(
            f"Failed to send {self.channel_name} notification after {self.max_retries} attempts: {last_error}"
        )
        return False

    def _post(self, text: str) -> requests.Response:
        raise NotImplementedError


class TelegramHandler(NotificationHandler):
    """Logging handler that sends messages to a Telegram chat."""

    channel_name = "Telegram"

    def __init__(self, bot_token: str, chat_id: str, **kwargs):
        super().__init__(**kwargs)
        self.bot_token = bot_token
        self.chat_id = chat_id

    def _post(self, text: str) -> requests.Response:
        return requests.post(
            TELEGRAM_API_URL.format(token=self.bot_token),
            data={"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"},
            timeout=self.timeout,
        )


class WebhookHandler(NotificationHandler):
    """Logging handler for Discord-style JSON webhooks."""

    channel_name = "webhook"

    def __init__(self, webhook_url: str, **kwargs):
        super().__init__(**kwargs)
        self.webhook_url = webhook_url

    def _post(self, text: str) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        return requests.post(
            self.webhook_url,
            data=json.dumps({"content": text}),
            headers=headers,
            timeout=self.timeout,
        )


class LoggingManager:
    """Manages logging configuration and setup for one job."""

    def __init__(self, logs_folder: str, job_name: str, log_level: str = "",
                 max_log_bytes: int = 10 * 1024 * 1024, max_log_files: int = 5):
        self.logs_folder = Path(logs_folder)
        self.job_name = job_name
        self.log_level = log_level
        self.max_log_bytes = max_log_bytes
        self.max_log_files = max_log_files
        self.logger = logging.getLogger()
        self.summary_messages: List[str] = []
        self._handlers: List[logging.Handler] = []

    @classmethod
    def from_config(cls, logs_folder: str, job_name: str, config: LoggingConfig,
                    verbose: bool = False) -> 'LoggingManager':
        return cls(
            logs_folder=logs_folder,
            job_name=job_name,
            log_level="debug" if verbose else config.log_level,
            max_log_bytes=config.max_log_bytes,
            max_log_files=config.max_log_files,
        )

    @property
    def log_file(self) -> Path:
        return self.logs_folder / f"{self.job_name}.log"

    def setup_logging(self, console: bool = True) -> None:
        """Set up the job log file, console output and log level."""
        self._ensure_logs_folder()
        self._setup_log_file()
        if console:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            self._add_handler(console_handler)
        self._set_log_level()
        # Suppress noisy HTTP request logs from urllib3/requests
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("requests").setLevel(logging.WARNING)
        logging.getLogger("plexapi").setLevel(logging.WARNING)

    def _ensure_logs_folder(self) -> None:
        """Ensure the logs folder exists."""
        if not self.logs_folder.exists():
            try:
                self.logs_folder.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                raise PermissionError(f"{self.logs_folder} not writable, please fix the variable accordingly.")

    def _setup_log_file(self) -> None:
        """Append to the job's log file, rotating it above the size threshold."""
        file_handler = RotatingFileHandler(
            self.log_file,
            maxBytes=self.max_log_bytes,
            backupCount=self.max_log_files,
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        self._add_handler(file_handler)

    def _set_log_level(self) -> None:
        """Set the logging level."""
        level = LEVEL_MAPPING.get(self.log_level.lower()) if self.log_level else logging.INFO
        if level is None or level == SUMMARY:
            logging.warning(f"Invalid log_level: {self.log_level}. Using default level: INFO")
            level = logging.INFO
        self.logger.setLevel(level)

    def setup_notification_handlers(self, notification_config: NotificationConfig,
                                    quiet: bool = False) -> None:
        """Set up notification handlers based on configuration.

        Args:
            notification_config: Delivery channel settings.
            quiet: Only forward errors, not run summaries.
        """
        notification_type = notification_config.notification_type
        if notification_type == "none":
            return

        retry = {
            "max_retries": notification_config.max_retries,
            "retry_delay": notification_config.retry_delay,
            "timeout": notification_config.timeout,
        }
        level_str = "error" if quiet else notification_config.level

        if notification_type in ("telegram", "both"):
            if notification_config.telegram_bot_token and notification_config.telegram_chat_id:
                handler = TelegramHandler(
                    notification_config.telegram_bot_token,
                    notification_config.telegram_chat_id,
                    **retry,
                )
                self._set_handler_level(handler, level_str)
                self._add_handler(handler)
            else:
                logging.warning("Telegram notifications enabled but bot token or chat id is missing")

        if notification_type in ("webhook", "both"):
            if notification_config.webhook_url:
                handler = WebhookHandler(notification_config.webhook_url, **retry)
                self._set_handler_level(handler, level_str)
                self._add_handler(handler)
            else:
                logging.warning("Webhook notifications enabled but webhook_url is missing")

    def _set_handler_level(self, handler: logging.Handler, level_str: str) -> None:
        """Set the level for a notification handler (defaults to ERROR)."""
        level = LEVEL_MAPPING.get(level_str.lower()) if level_str else None
        if level is None:
            if level_str:
                logging.warning(f"Invalid notification level: {level_str}. Using default level: ERROR")
            level = logging.ERROR
        handler.setLevel(level)

    def _add_handler(self, handler: logging.Handler) -> None:
        self.logger.addHandler(handler)
        self._handlers.append(handler)

    def add_summary_message(self, message: str) -> None:
        """Add a message to the run summary."""
        self.summary_messages.append(message)

    def log_summary(self) -> Optional[str]:
        """Log the summary message at SUMMARY level (one record per run)."""
        if not self.summary_messages:
            return None
        if len(self.summary_messages) == 1:
            summary_message = self.summary_messages[0]
        else:
            summary_message = '\n  ' + '\n  '.join(self.summary_messages)
        self.logger.log(SUMMARY, summary_message)
        self.summary_messages = []
        return summary_message

    def shutdown(self) -> None:
        """Detach and close the handlers this manager installed."""
        for handler in self._handlers:
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []
