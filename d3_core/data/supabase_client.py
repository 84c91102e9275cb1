# =============================================================================
# d3_core/data/supabase_client.py
# Supabase Client Configuration for the D3 offline core
# =============================================================================

from __future__ import annotations
import os
from typing import Optional, Tuple
import logging

from d3_core.errors import ConfigurationError

logger = logging.getLogger(__name__)


def get_supabase_credentials() -> Tuple[str, str]:
    """
    Resolve Supabase credentials.

    Expects secrets in .streamlit/secrets.toml:
        [supabase]
        url = "https://your-project.supabase.co"
        key = "your-anon-key"

    Falls back to the SUPABASE_URL / SUPABASE_KEY environment variables.

    Returns:
        (url, key)

    Raises:
        ConfigurationError: if neither source provides both values
    """
    url: Optional[str] = None
    key: Optional[str] = None

    try:
        import streamlit as st
        if "supabase" in st.secrets:
            url = st.secrets["supabase"].get("url")
            key = st.secrets["supabase"].get("key")
    except Exception as e:
        logger.debug(f"Streamlit secrets not available: {e}")

    url = url or os.getenv("SUPABASE_URL")
    key = key or os.getenv("SUPABASE_KEY")

    if not url:
        raise ConfigurationError("Supabase URL is not configured", config_key="supabase.url", expected_type="str")
    if not key:
        raise ConfigurationError("Supabase key is not configured", config_key="supabase.key", expected_type="str")
    return url, key


def get_supabase_client():
    """
    Initialize and return a Supabase client.

    Returns:
        supabase.Client

    Raises:
        ConfigurationError: if credentials are missing or the client cannot be built
    """
    from supabase import create_client, Client

    url, key = get_supabase_credentials()
    try:
        client: Client = create_client(url, key)
    except Exception as e:
        raise ConfigurationError(f"Failed to initialize Supabase client: {e}", config_key="supabase") from e
    logger.info("Supabase client initialized")
    return client


# Global client reference for reuse across the offline layer
_supabase_client = None


def get_cached_supabase_client():
    """Get the shared Supabase client, creating it on first use."""
    global _supabase_client
    if _supabase_client is None:
        _supabase_client = get_supabase_client()
    return _supabase_client


def reset_supabase_client() -> None:
    """Forget the shared client (e.g. after a credential change)."""
    global _supabase_client
    _supabase_client = None
