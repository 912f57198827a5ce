"""
HTTP clients for the two delivery backends.

- SlackClient: posts chat messages (bot token or incoming webhook)
- HomeAssistantClient: fires automations through the Home Assistant REST API
"""

import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger("relayq.clients")

SLACK_POST_URL = "https://slack.com/api/chat.postMessage"


class ClientError(Exception):
    pass


class SlackClient:
    """
    Minimal Slack sender.

    With a bot token and channel id, messages go through chat.postMessage and
    the message timestamp is returned. Otherwise the incoming webhook URL is
    used, which gives no message id back.
    """

    def __init__(
        self,
        bot_token: str = None,
        channel_id: str = None,
        webhook_url: str = None,
        session: requests.Session = None,
    ):
        if not webhook_url and not (bot_token and channel_id):
            raise ValueError("Slack needs a bot token and channel id, or a webhook URL")
        self.bot_token = bot_token
        self.channel_id = channel_id
        self.webhook_url = webhook_url
        self.session = session or requests.Session()

    def post(self, text: str, blocks: List[Dict[str, Any]] = None, timeout: float = 30) -> Optional[str]:
        """
        Send a message.

        Returns:
            The Slack message timestamp, or None when sent via webhook

        Raises:
            ClientError: Slack rejected the message
            requests.RequestException: network failure or timeout
        """
        body: Dict[str, Any] = {"text": text}
        if blocks:
            body["blocks"] = blocks

        if self.bot_token and self.channel_id:
            body["channel"] = self.channel_id
            response = self.session.post(
                SLACK_POST_URL,
                headers={
                    "Authorization": f"Bearer {self.bot_token}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=timeout,
            )
            data = response.json()
            if not data.get("ok"):
                raise ClientError(f"Slack API error: {data.get('error', 'unknown')}")
            return data.get("ts")

        response = self.session.post(self.webhook_url, json=body, timeout=timeout)
        if response.status_code != 200:
            raise ClientError(f"Slack webhook returned {response.status_code}: {response.text[:200]}")
        return None


class HomeAssistantClient:
    def __init__(self, url: str, token: str, verify_ssl: bool = True,
                 session: requests.Session = None):
        self.url = url.rstrip("/")
        self.token = token
        self.verify_ssl = verify_ssl
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    def trigger_automation(self, automation_id: str, timeout: float = 10) -> None:
        response = self.session.post(
            f"{self.url}/api/services/automation/trigger",
            headers=self._headers(),
            json={"entity_id": automation_id},
            timeout=timeout,
            verify=self.verify_ssl,
        )
        if not response.ok:
            raise ClientError(
                f"Failed to trigger automation {automation_id}: "
                f"HTTP {response.status_code} {_error_message(response)}"
            )

    def validate_connection(self, timeout: float = 10) -> bool:
        try:
            response = self.session.get(
                f"{self.url}/api/",
                headers=self._headers(),
                timeout=timeout,
                verify=self.verify_ssl,
            )
        except requests.RequestException as e:
            logger.warning("Home Assistant unreachable at %s: %s", self.url, e)
            return False
        return response.ok


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("message", data))
    return str(data)
