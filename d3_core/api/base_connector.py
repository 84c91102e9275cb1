"""
Base API Connector Class for external HTTP endpoints
Provides the shared session, configuration and error mapping
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any
from dataclasses import dataclass
import logging

import requests

from d3_core.errors import classify_error

logger = logging.getLogger(__name__)


@dataclass
class APIConfig:
    """Configuration for API connection"""
    api_name: str
    base_url: str
    api_key: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    timeout: float = 15
    additional_params: Optional[Dict[str, Any]] = None


class BaseAPIConnector(ABC):
    """Abstract base class for all API connectors"""

    def __init__(self, config: APIConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

        # Set default headers
        if config.headers:
            self.session.headers.update(config.headers)

        # Add API key to headers if provided
        if config.api_key:
            self._set_auth_header()

    @abstractmethod
    def _set_auth_header(self):
        """Set authentication header based on API requirements"""
        pass

    @abstractmethod
    def validate_response(self, payload: Any) -> bool:
        """Validate a decoded API response body"""
        pass

    def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict] = None,
        data: Optional[Dict] = None
    ) -> requests.Response:
        """
        Make HTTP request with error handling

        Args:
            endpoint: API endpoint (appended to base_url)
            method: HTTP method (GET, POST, etc.)
            params: Query parameters
            data: Request body data

        Returns:
            Response object

        Raises:
            RemoteError: NetworkUnreachable, RemoteRejected or RemoteUnknown
        """
        url = f"{self.config.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=data,
                timeout=self.config.timeout
            )
            response.raise_for_status()
            return response

        except requests.exceptions.RequestException as e:
            error = classify_error(e, operation=f"{self.config.api_name} {method} {endpoint}")
            logger.debug(f"API request failed for {self.config.api_name}: {error}")
            raise error from e

    def close(self) -> None:
        self.session.close()
