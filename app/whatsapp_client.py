from __future__ import annotations

import httpx

from app.circuit_breaker import CircuitBreaker
from app.config import Settings

WHATSAPP_GATEWAY = "whatsapp-gateway"


class WhatsappGatewayError(RuntimeError):
    def __init__(self, message: str, *, status_code: int = 502, code: str = "whatsapp_gateway_error") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class EvolutionClient:
    """Instance status calls against the Evolution WhatsApp gateway, all routed through one breaker."""

    def __init__(
        self,
        settings: Settings,
        breaker: CircuitBreaker,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.breaker = breaker
        self._transport = transport

    async def _request(self, method: str, path: str, *, params: dict | None = None) -> dict | list:
        return await self.breaker.execute(self._send, method, path, params)

    async def _send(self, method: str, path: str, params: dict | None) -> dict | list:
        url = f"{self.settings.evolution_api_url.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.settings.evolution_timeout_seconds, transport=self._transport) as client:
                resp = await client.request(
                    method,
                    url,
                    params=params,
                    headers={"apikey": self.settings.evolution_api_key},
                )
        except httpx.HTTPError as exc:
            raise WhatsappGatewayError(f"gateway_http_error: {exc}", code="gateway_http_error") from exc
        if resp.status_code >= 400:
            message = resp.text
            try:
                parsed = resp.json()
                if isinstance(parsed, dict):
                    raw = parsed.get("response", {}).get("message") if isinstance(parsed.get("response"), dict) else None
                    message = str(raw or parsed.get("message") or parsed.get("error") or message)
            except ValueError:
                pass
            raise WhatsappGatewayError(message, status_code=resp.status_code)
        if resp.content:
            return resp.json()
        return {}

    async def fetch_instance(self, instance_name: str) -> dict | None:
        body = await self._request("GET", "/instance/fetchInstances", params={"instanceName": instance_name})
        if isinstance(body, list):
            return body[0] if body else None
        return body or None

    async def connection_state(self, instance_name: str) -> str:
        body = await self._request("GET", f"/instance/connectionState/{instance_name}")
        instance = body.get("instance") if isinstance(body, dict) else None
        state = instance.get("state") if isinstance(instance, dict) else None
        if not state:
            raise WhatsappGatewayError(f"no connection state for instance {instance_name}", code="gateway_bad_response")
        return str(state)
