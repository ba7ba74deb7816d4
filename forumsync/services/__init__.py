"""Services"""

from forumsync.services.discord_client import DiscordClient
from forumsync.services.linear_client import LinearClient
from forumsync.services.mapping_store import MappingStore

__all__ = ["DiscordClient", "LinearClient", "MappingStore"]
