import logging

import httpx

from .errors import NetworkError

logger = logging.getLogger(__name__)


class ApiClient:
    """Cookie-carrying JSON client for the budget API.

    Every HTTP status is returned to the caller as a response; only failures
    that never produced one are raised, as ``NetworkError``.
    """

    def __init__(self, base_url, timeout=10.0, transport=None, client=None):
        if client is None:
            client = httpx.AsyncClient(
                base_url=base_url,
                timeout=timeout,
                transport=transport,
                headers={"Accept": "application/json"},
            )
        self._client = client

    @property
    def cookies(self):
        return self._client.cookies

    async def request(self, method, url, body=None):
        kwargs = {}
        if body is not None:
            kwargs["json"] = body
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {url} failed: {type(exc).__name__}: {exc}") from exc

    async def get_json(self, url):
        response = await self.request("GET", url)
        if not response.is_success:
            logger.warning("GET %s returned %s", url, response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("GET %s returned a body that is not JSON", url)
            return None

    async def login(self, username, password):
        response = await self.request("POST", "/api/auth/login", {"username": username, "password": password})
        return response.is_success

    async def logout(self):
        response = await self.request("POST", "/api/auth/logout")
        return response.is_success

    async def ping(self):
        try:
            response = await self.request("GET", "/api/status")
        except NetworkError:
            return False
        return response.is_success

    async def aclose(self):
        await self._client.aclose()


def response_id(response):
    """Server-assigned id from a create response, or None."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("id"), int):
        return payload["id"]
    return None
