from whispo.core.config import McpConfig, WhispoConfig
from whispo.core.models import ActiveApplication, GlossaryEntry, HistoryItem, Profile

__all__ = ["WhispoConfig", "McpConfig", "ActiveApplication", "GlossaryEntry", "HistoryItem", "Profile"]
