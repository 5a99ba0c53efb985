"""CRM collaborator interface and the HighLevel implementation."""

from convoflow.crm.cache import TTLCache
from convoflow.crm.client import CRMClient, HighLevelClient

__all__ = ["CRMClient", "HighLevelClient", "TTLCache"]
