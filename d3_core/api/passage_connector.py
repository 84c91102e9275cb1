"""
Scripture Passage Connector
Fetches rendered passage HTML from the app's passage proxy endpoint
"""
from typing import Any, Dict, Optional
import logging

import requests

from d3_core.errors import ConfigurationError, RemoteUnknown
from d3_core.offline.models import Passage
from d3_core.offline.settings import DEFAULT_BIBLE_ID, OfflineSettings

from .base_connector import BaseAPIConnector, APIConfig

logger = logging.getLogger(__name__)


class PassageConnector(BaseAPIConnector):
    """
    Connector for the passage proxy.

    GET {base_url}/{endpoint}?ref=JHN.3.16&bibleId=2692

    The proxy answers either ``{reference, html, text}`` or the wrapped form
    ``{youversion: {reference, content}}``; both are accepted.
    Resolving free-text references is the proxy's job, not this connector's.
    """

    DEFAULT_ENDPOINT = "passage"

    def __init__(
        self,
        config: APIConfig,
        endpoint: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(config, session=session)
        self.endpoint = endpoint or self.DEFAULT_ENDPOINT

    @classmethod
    def from_settings(cls, settings: OfflineSettings, session: Optional[requests.Session] = None) -> "PassageConnector":
        """
        Raises:
            ConfigurationError: if no passage_base_url is configured
        """
        if not settings.passage_base_url:
            raise ConfigurationError(
                "passage_base_url is not configured", config_key="passage_base_url", expected_type="str"
            )
        config = APIConfig(
            api_name="Passage API",
            base_url=settings.passage_base_url,
            timeout=settings.request_timeout,
            additional_params={"bibleId": settings.bible_id},
        )
        return cls(config, session=session)

    def _set_auth_header(self):
        """Bearer token for proxies that require one"""
        self.session.headers["Authorization"] = f"Bearer {self.config.api_key}"

    def validate_response(self, payload: Any) -> bool:
        return self._extract_html(payload) is not None

    @staticmethod
    def _extract_html(payload: Any) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        html = payload.get("html")
        if isinstance(html, str) and html:
            return html
        wrapped = payload.get("youversion")
        if isinstance(wrapped, dict):
            content = wrapped.get("content")
            if isinstance(content, str) and content:
                return content
        return None

    def read_passage(self, bible_id: Optional[int], reference: str) -> Passage:
        """
        Fetch one passage.

        Args:
            bible_id: Bible version id (default from config, then 2692)
            reference: Reference such as "JHN.3.16"

        Returns:
            Passage with reference, html and optional plain text

        Raises:
            RemoteError: on transport failure, a rejected request or a malformed body
        """
        default_id = (self.config.additional_params or {}).get("bibleId", DEFAULT_BIBLE_ID)
        params: Dict[str, Any] = {"ref": reference, "bibleId": bible_id or default_id}

        response = self._make_request(self.endpoint, params=params)

        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteUnknown(
                f"Passage response for {reference} is not JSON", operation="read_passage"
            ) from e

        html = self._extract_html(payload)
        if html is None:
            raise RemoteUnknown(f"Passage response for {reference} has no html", operation="read_passage")

        wrapped = payload.get("youversion") if isinstance(payload.get("youversion"), dict) else {}
        resolved = payload.get("reference") or wrapped.get("reference") or reference
        logger.debug(f"Fetched passage {reference} ({len(html)} chars)")
        return Passage(reference=str(resolved), html=html, text=payload.get("text"))
