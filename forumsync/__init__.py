"""Discord forum <-> Linear issue sync service"""

__version__ = "1.0.0"
