"""
Executor capabilities plugged into a JobQueue.

An executor performs the side effect for one payload and either returns a
receipt (or None) or raises ExecutionError.
"""

import logging
from typing import Optional, Protocol

import requests

from .clients import ClientError, HomeAssistantClient, SlackClient
from .errors import ExecutionError
from .models import DeliveryPayload, TriggerPayload

logger = logging.getLogger("relayq.executors")

SEVERITY_EMOJI = {
    "info": ":information_source:",
    "warning": ":warning:",
    "error": ":rotating_light:",
}


class Executor(Protocol):
    def execute(self, payload, timeout: Optional[float] = None) -> Optional[str]:
        ...


class Notifier(Protocol):
    def emit(self, summary: str, success: bool) -> None:
        ...


def build_blocks(payload: DeliveryPayload) -> list:
    emoji = SEVERITY_EMOJI.get(payload.severity, SEVERITY_EMOJI["info"])
    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{payload.title or payload.source}", "emoji": True},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"{emoji} {payload.message}"},
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": payload.source}],
        },
    ]
    return blocks


class DeliveryExecutor:
    """Sends a notification to the chat channel; the message ts is the receipt."""

    def __init__(self, chat: SlackClient, default_timeout: float = 10):
        self.chat = chat
        self.default_timeout = default_timeout

    def execute(self, payload: DeliveryPayload, timeout: Optional[float] = None) -> Optional[str]:
        if not isinstance(payload, DeliveryPayload):
            raise ExecutionError(f"DeliveryExecutor cannot handle {type(payload).__name__}")
        fallback = f"{payload.title or payload.source}: {payload.message}"
        try:
            return self.chat.post(
                fallback,
                blocks=build_blocks(payload),
                timeout=timeout or self.default_timeout,
            )
        except requests.Timeout as e:
            raise ExecutionError(f"Chat delivery timed out: {e}") from e
        except (requests.RequestException, ClientError, ValueError) as e:
            raise ExecutionError(f"Chat delivery failed: {e}") from e


class TriggerExecutor:
    def __init__(self, home_assistant: HomeAssistantClient, default_timeout: float = 10):
        self.home_assistant = home_assistant
        self.default_timeout = default_timeout

    def execute(self, payload: TriggerPayload, timeout: Optional[float] = None) -> None:
        if not isinstance(payload, TriggerPayload):
            raise ExecutionError(f"TriggerExecutor cannot handle {type(payload).__name__}")
        try:
            self.home_assistant.trigger_automation(
                payload.automation_id, timeout=timeout or self.default_timeout
            )
        except requests.Timeout as e:
            raise ExecutionError(f"Automation {payload.automation_id} timed out: {e}") from e
        except (requests.RequestException, ClientError) as e:
            raise ExecutionError(str(e)) from e
        return None


class ChatNotifier:
    """Completion side-channel. Never raises."""

    def __init__(self, chat: SlackClient, timeout: float = 10):
        self.chat = chat
        self.timeout = timeout

    def emit(self, summary: str, success: bool) -> None:
        prefix = ":white_check_mark:" if success else ":x:"
        try:
            self.chat.post(f"{prefix} {summary}", timeout=self.timeout)
        except (requests.RequestException, ClientError, ValueError) as e:
            logger.error("Failed to send completion notice: %s", e)


class LogNotifier:
    """Fallback side-channel when no chat backend is configured."""

    def emit(self, summary: str, success: bool) -> None:
        if success:
            logger.info(summary)
        else:
            logger.warning(summary)
