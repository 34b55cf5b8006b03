from typing import Any, Dict, NamedTuple, Optional
import logging

import httpx
from settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class TidioAPIError(Exception):
    """Non-success response from the Tidio API."""

    def __init__(self, message: str, status_code: int, response_data: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data


class ProjectKey(NamedTuple):
    public_key: str
    access_token: str
    refresh_token: str


class TidioClient:
    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or default_settings
        self.api = self.settings.TIDIO_API_URL.rstrip('/')
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.settings.TIDIO_HTTP_TIMEOUT, transport=self._transport)

    async def _post(self, path: str, failure: str, **kwargs) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(kwargs.pop("headers", {}))
        async with self._client() as client:
            resp = await client.post(f"{self.api}{path}", headers=headers, **kwargs)
        if not resp.is_success:
            try:
                data = resp.json()
            except ValueError:
                data = None
            logger.warning(f"Tidio API {path} returned {resp.status_code}")
            raise TidioAPIError(f"{failure}: {resp.status_code}", resp.status_code, data)
        return resp.json()

    async def exchange_refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """Trade a refresh token for a fresh access+refresh token pair."""
        body = {
            "grant_type": "refresh_token",
            "client_id": self.settings.TIDIO_OAUTH_CLIENT_ID,
            "refresh_token": refresh_token,
        }
        return await self._post("/platforms/oauth/access_token", "Failed to exchange refresh token", json=body)

    async def integrate_project(self, access_token: str) -> Dict[str, Any]:
        return await self._post(
            "/platforms/wordpress/integrate",
            "Failed to integrate project",
            headers={"Authorization": f"Bearer {access_token}"},
        )

    async def get_project_public_key(self, refresh_token: str) -> ProjectKey:
        tokens = await self.exchange_refresh_token(refresh_token)
        access_token = tokens.get("access_token")
        if not access_token:
            raise TidioAPIError("Tidio did not return an access token", 200, tokens)

        integration = await self.integrate_project(access_token)
        public_key = integration.get("projectPublicKey")
        if not public_key:
            raise TidioAPIError("Tidio did not return a project public key", 200, integration)

        return ProjectKey(public_key, access_token, tokens.get("refresh_token") or refresh_token)
