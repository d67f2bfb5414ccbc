"""
Fire-and-forget delivery of user-facing workflow notifications
"""

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Channel = Callable[[str, str, Dict[str, Any]], None]


def log_channel(user_id: str, kind: str, payload: Dict[str, Any]) -> None:
    """Default channel: record the message in the service log"""
    logger.info(f"Notify {user_id} [{kind}]: {payload.get('message', '')}")


class NotificationDispatcher:
    """Sends notifications over every configured channel.

    A failing channel is logged and skipped; callers never see the error,
    so a committed transition is never undone by a delivery problem.
    """

    def __init__(self, channels: Optional[List[Channel]] = None):
        self.channels = list(channels) if channels is not None else [log_channel]

    def notify(self, user_id: Optional[str], kind: str, payload: Dict[str, Any]) -> None:
        if not user_id:
            return
        for channel in self.channels:
            try:
                channel(user_id, kind, payload)
            except Exception as e:
                logger.error(f"Notification {kind} to {user_id} failed: {e}", exc_info=True)


dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency returning the process-wide dispatcher"""
    return dispatcher
