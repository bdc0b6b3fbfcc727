"""
Welcome notifications for donors created by an import.
"""
import logging
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)


class WelcomeNotifier(Protocol):
    def __call__(self, record_id: str, record: Dict[str, Any]) -> None:
        ...


class LoggingWelcomeNotifier:
    """Records welcome-notification requests in the log; delivery is handled elsewhere."""

    def __init__(self):
        self.sent = 0

    def __call__(self, record_id: str, record: Dict[str, Any]) -> None:
        email = record.get("email")
        if not email:
            return
        self.sent += 1
        logger.info("Welcome notification requested for donor %s <%s>", record_id, email)
