"""
Cliente REST mínimo para Azure AD Graph (usuarios del tenant CRM Online)
"""
import logging
from typing import Any, Callable, Dict, Optional

import httpx

from .exceptions import CrmTransportError

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.windows.net"
GRAPH_API_VERSION = "1.5"


class GraphClient:
    """
    Acceso a feeds de Graph (users, groups, ...) con token Bearer

    El token lo entrega access_token_provider (OAuth2 resuelto por el llamador).
    """

    def __init__(
        self,
        access_token_provider: Callable[[], str],
        tenant: str = "myorganization",
        timeout: int = 300,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token_provider = access_token_provider
        self.tenant = tenant
        client_kwargs: Dict[str, Any] = {"timeout": timeout, "verify": True}
        if transport is not None:
            client_kwargs["transport"] = transport
        self.client = httpx.Client(**client_kwargs)

    def _url(self, feed: str, key: Optional[str] = None) -> str:
        path = f"{feed}('{key}')" if key else feed
        return f"{GRAPH_BASE_URL}/{self.tenant}/{path}?api-version={GRAPH_API_VERSION}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token_provider()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise CrmTransportError(
                f"Respuesta REST inválida: HTTP {response.status_code}",
                response.status_code,
                response.content,
            ) from e

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        logger.info(f"{method} Graph {url}")
        try:
            return self.client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise CrmTransportError(f"Timeout al contactar Graph: {url}") from e
        except httpx.RequestError as e:
            raise CrmTransportError(f"Error de conexión a Graph: {e}") from e

    def get(self, feed: str, key: Optional[str] = None) -> Dict[str, Any]:
        """Lee un feed completo o un objeto por clave."""
        return self._decode(self._request("GET", self._url(feed, key)))

    def add(self, feed: str, entity: Dict[str, Any]) -> Dict[str, Any]:
        """Crea un objeto en el feed."""
        return self._decode(self._request("POST", self._url(feed), json=entity))

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
