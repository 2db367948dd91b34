import logging
from typing import Any, Dict, Optional

import requests

from .config import TelegramConfig
from .models import DistributionRecord, DistributionRequest, to_ui_amount

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class TelegramNotifier:
    """Sends run summaries to the admin Telegram chat; does nothing when unconfigured."""

    def __init__(self, config: Optional[TelegramConfig] = None, session: Optional[requests.Session] = None,
                 timeout: float = 10.0):
        config = config or TelegramConfig()
        self.bot_token = config.bot_token
        self.admin_chat_id = config.admin_chat_id
        self.enabled = config.enabled
        self.session = session or requests.Session()
        self.timeout = timeout

        if not self.enabled:
            logger.debug("Telegram notifications disabled: missing bot token or admin chat id")
        else:
            logger.info(f"Telegram notifier initialized. Admin chat ID: {self.admin_chat_id}")

    def send_message(self, message: str) -> Dict[str, Any]:
        """Send a message to the admin chat.

        Returns:
            Dict with `sent` and, on failure, `error`
        """
        if not self.enabled:
            logger.debug(f"Telegram notification skipped (not configured): {message}")
            return {"sent": False, "error": "Telegram notifications not configured", "message": message}

        payload = {
            "chat_id": self.admin_chat_id,
            "text": message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            response = self.session.post(f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage",
                                         json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Error sending Telegram notification: {e}")
            return {"sent": False, "error": str(e), "message": message}

        if response.status_code != 200:
            error = f"Telegram returned HTTP {response.status_code}: {response.text[:200]}"
            logger.error(f"Failed to send Telegram notification. {error}")
            return {"sent": False, "error": error, "status_code": response.status_code, "message": message}

        logger.info("Telegram notification sent")
        return {"sent": True, "message": message}

    def notify_distribution_start(self, request: DistributionRequest, dry_run: bool = False) -> Dict[str, Any]:
        run_type = "DRY RUN" if dry_run else "LIVE"
        amount = to_ui_amount(request.allocated_amount, request.decimals)
        message = f"🚀 <b>DISTRIBUTION STARTED</b> ({run_type})\n\n"
        message += f"Request: <code>{request.id}</code>\n"
        message += f"Token: <code>{request.mint}</code>\n"
        message += f"Sending {amount} to {len(request.entries)} recipients ({request.mode.value})"
        return self.send_message(message)

    def notify_distribution_result(self, record: DistributionRecord) -> Dict[str, Any]:
        request = record.request
        if record.is_terminal and record.failed_count == 0:
            message = "✅ <b>DISTRIBUTION COMPLETED</b>\n\n"
        elif record.is_terminal:
            message = "⚠️ <b>DISTRIBUTION COMPLETED WITH FAILURES</b>\n\n"
        else:
            message = "⏸ <b>DISTRIBUTION INCOMPLETE</b>\n\n"

        message += f"Request: <code>{request.id}</code>\n"
        message += f"Confirmed: {record.confirmed_count}/{len(request.entries)} "
        message += f"({to_ui_amount(record.confirmed_amount, request.decimals)} tokens)\n"
        if record.failed_count:
            message += f"Failed: {record.failed_count}\n"
        if record.pending_count:
            message += f"Unresolved: {record.pending_count} (resume with --resume {request.id})\n"
        return self.send_message(message)

    def notify_failure(self, context: str, error: Exception) -> Dict[str, Any]:
        message = f"❌ <b>DISTRIBUTION FAILED</b>\n\n{context}\nError: {error}"
        return self.send_message(message)
