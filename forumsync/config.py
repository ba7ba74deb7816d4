"""Application configuration"""

import enum
from typing import Dict, List, Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings

from forumsync.errors import ConfigurationError


class ChannelType(str, enum.Enum):
    """Kind of forum channel being mirrored"""

    FEATURE = "feature"
    BUG = "bug"


class ChannelConfig(BaseModel):
    """Binding of one Discord forum channel to a Linear team"""

    channel_id: int
    guild_id: int
    channel_type: ChannelType
    linear_team_id: str
    # Primary label applied to every issue created from this channel
    linear_label_id: str
    # Discord forum tag id -> additional Linear label id
    tag_label_map: Dict[str, str] = {}


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./forumsync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Discord
    discord_token: Optional[str] = None
    discord_api_url: str = "https://discord.com/api/v10"
    # Set to false to run the API + poller without a gateway connection.
    gateway_enabled: bool = True

    # Linear
    linear_api_key: Optional[str] = None
    linear_api_url: str = "https://api.linear.app/graphql"

    # Monitored forum channels, as a JSON list.
    #
    # Example:
    # [{"channel_id": 111, "guild_id": 222, "channel_type": "feature",
    #   "linear_team_id": "team-uuid", "linear_label_id": "label-uuid",
    #   "tag_label_map": {"333": "label-ux"}}]
    channels: List[ChannelConfig] = []

    # Sync
    poll_interval_seconds: int = 30
    backfill_enabled: bool = True
    backfill_delay_seconds: float = 0.5
    first_message_attempts: int = 3
    first_message_retry_delay_seconds: float = 2.0
    # Before creating an issue, ask Linear whether one already links back to the thread.
    verify_backlink_before_create: bool = False

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

    def channel_config(self, channel_id: int) -> Optional[ChannelConfig]:
        for channel in self.channels:
            if channel.channel_id == int(channel_id):
                return channel
        return None

    def is_monitored_channel(self, channel_id: int) -> bool:
        return self.channel_config(channel_id) is not None

    def unique_team_ids(self) -> List[str]:
        """Linear team ids in configuration order, without duplicates."""
        seen: List[str] = []
        for channel in self.channels:
            if channel.linear_team_id not in seen:
                seen.append(channel.linear_team_id)
        return seen

    def validate_for_startup(self):
        """Fail fast on configuration the sync engine cannot run without."""
        if not self.linear_api_key:
            raise ConfigurationError("LINEAR_API_KEY must be set")
        if not self.discord_token:
            raise ConfigurationError("DISCORD_TOKEN must be set")
        if not self.channels:
            raise ConfigurationError("CHANNELS must list at least one forum channel")
        ids = [c.channel_id for c in self.channels]
        if len(ids) != len(set(ids)):
            raise ConfigurationError("CHANNELS contains the same channel_id more than once")


settings = Settings()
