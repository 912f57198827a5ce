import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

DEFAULT_CONFIG = {
    "backoff_base_delay": "60",
    "max_retries_default": "3",
    "timeout_seconds": "10",
    "scheduler_interval": "30",
    "retention_days": "30",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

DEFAULT_DB_FILE = "relayq.db"


@dataclass
class Settings:
    db_path: str = DEFAULT_DB_FILE
    slack_bot_token: Optional[str] = None
    slack_channel_id: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    ha_url: Optional[str] = None
    ha_token: Optional[str] = None

    @property
    def chat_configured(self) -> bool:
        return bool(self.slack_webhook_url or (self.slack_bot_token and self.slack_channel_id))

    @property
    def home_assistant_configured(self) -> bool:
        return bool(self.ha_url and self.ha_token)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Read connection settings from the environment (and `.env`, if present)."""
    load_dotenv(env_file)
    return Settings(
        db_path=os.getenv("RELAYQ_DB", DEFAULT_DB_FILE),
        slack_bot_token=os.getenv("SLACK_BOT_TOKEN") or None,
        slack_channel_id=os.getenv("SLACK_CHANNEL_ID") or None,
        slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL") or None,
        ha_url=os.getenv("HA_URL") or None,
        ha_token=os.getenv("HA_TOKEN") or None,
    )
