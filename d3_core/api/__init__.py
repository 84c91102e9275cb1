"""
External API Module
Provides connectors for endpoints outside Supabase
"""

from .base_connector import BaseAPIConnector, APIConfig
from .passage_connector import PassageConnector

__all__ = [
    "BaseAPIConnector",
    "APIConfig",
    "PassageConnector",
]
