"""Thin httpx wrapper translating HTTP outcomes into agent errors."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx

from libra.integrations.contracts import (
    AgentDependencyError,
    AgentNotFoundError,
    AgentRateLimitedError,
    AgentTimeoutError,
    AgentValidationError,
)

DEFAULT_HEADERS = {"Accept": "application/json", "User-Agent": "libra/0.1"}


def _parse_retry_after_ms(headers: Mapping[str, str]) -> int | None:
    retry_after = headers.get("Retry-After")
    if not retry_after:
        return None
    try:
        return max(0, int(float(retry_after) * 1000))
    except ValueError:
        return None


class AgentHttpClient:
    """JSON GET/POST helper shared by the bundled agents."""

    def __init__(
        self,
        agent: str,
        *,
        base_url: str,
        timeout_ms: int = 10_000,
        headers: Mapping[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.agent = agent
        self._timeout_ms = max(200, int(timeout_ms))
        merged = dict(DEFAULT_HEADERS)
        merged.update(headers or {})
        timeout = httpx.Timeout(
            self._timeout_ms / 1000, connect=min(self._timeout_ms / 1000, 5.0)
        )
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=merged, timeout=timeout
        )
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_json(
        self, path: str, *, params: Any = None, headers: Mapping[str, str] | None = None
    ) -> Any:
        return await self._request("GET", path, params=params, headers=headers)

    async def post_json(
        self,
        path: str,
        payload: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        return await self._request("POST", path, json=dict(payload), headers=headers)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise AgentTimeoutError(self.agent, self._timeout_ms, cause=exc) from exc
        except httpx.HTTPError as exc:
            raise AgentDependencyError(self.agent, cause=exc) from exc

        status_code = response.status_code
        if status_code < 400:
            if status_code == httpx.codes.NO_CONTENT or not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise AgentValidationError(
                    self.agent, f"{self.agent} returned invalid JSON", cause=exc
                ) from exc
        if status_code == httpx.codes.NOT_FOUND:
            raise AgentNotFoundError(self.agent, status_code=status_code)
        if status_code == httpx.codes.TOO_MANY_REQUESTS:
            raise AgentRateLimitedError(
                self.agent,
                retry_after_ms=_parse_retry_after_ms(response.headers),
                status_code=status_code,
            )
        if status_code >= 500:
            raise AgentDependencyError(self.agent, status_code=status_code)
        raise AgentValidationError(
            self.agent,
            f"{self.agent} rejected the request ({status_code})",
            status_code=status_code,
        )


__all__ = ["AgentHttpClient", "DEFAULT_HEADERS"]
