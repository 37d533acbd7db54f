"""
HTTP client for the bridge daemon's local control port.
"""

from typing import Any, Optional

import httpx

from popcorn import __version__
from popcorn.errors import ConnectionError, PopcornError
from popcorn.models.envelope import Envelope
from popcorn.transport.envelope import parse_envelope

DEFAULT_HOST = "127.0.0.1"
TOKEN_HEADER = "X-Popcorn-Token"


class BridgeHttpClient:
    def __init__(self, port: int, token: Optional[str] = None, host: str = DEFAULT_HOST, timeout: float = 3.0):
        self._port = port
        self._token = token
        self._client = httpx.AsyncClient(
            base_url=f"http://{host}:{port}",
            headers={"User-Agent": f"popcorn-bridge/{__version__}", "Accept": "application/json"},
            timeout=timeout,
        )

    @property
    def port(self) -> int:
        return self._port

    def set_token(self, token: str) -> None:
        self._token = token

    def _auth_headers(self, authenticated: bool) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if authenticated and self._token:
            headers[TOKEN_HEADER] = self._token
        return headers

    async def _request(
        self, method: str, path: str, body: Optional[dict[str, Any]] = None, authenticated: bool = True,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, json=body, headers=self._auth_headers(authenticated))
        except httpx.TransportError as e:
            raise ConnectionError(f"Bridge on port {self._port} unreachable: {e}") from e
        if resp.status_code >= 400:
            raise PopcornError("http_error", f"HTTP {resp.status_code}: {resp.text[:200]}",
                               {"status": resp.status_code, "path": path})
        return resp.json()

    async def health(self) -> dict[str, Any]:
        """GET /health — unauthenticated discovery; picks up the token."""
        data = await self._request("GET", "/health", authenticated=False)
        if isinstance(data, dict) and data.get("token") and not self._token:
            self._token = data["token"]
        return data

    async def poll(self) -> list[Envelope]:
        """GET /poll — drain envelopes queued for the extension."""
        data = await self._request("GET", "/poll")
        envelopes = []
        for raw in data.get("messages", []):
            envelope = parse_envelope(raw)
            if envelope is not None:
                envelopes.append(envelope)
        return envelopes

    async def post_result(self, envelope: Envelope) -> dict[str, Any]:
        return await self._request("POST", "/result", {"message": envelope.model_dump(mode="json")})

    async def post_demo(self, envelope: Envelope) -> dict[str, Any]:
        return await self._request("POST", "/demo", {"message": envelope.model_dump(mode="json")})

    async def get_config(self) -> dict[str, Any]:
        data = await self._request("GET", "/config")
        return data.get("config", {})

    async def set_config(self, config: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/config", {"config": config})

    async def list_plans(self) -> list[str]:
        data = await self._request("GET", "/plans")
        return data.get("plans", [])

    async def get_plan(self, plan_name: str) -> dict[str, Any]:
        data = await self._request("GET", f"/plans/{plan_name}")
        return data.get("plan", {})

    async def shutdown(self) -> dict[str, Any]:
        return await self._request("POST", "/shutdown")

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BridgeHttpClient":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()
