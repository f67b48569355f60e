import json
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx

from chatrelay.logging_config import logger
from chatrelay.models import CompletionResult

from .exceptions import (
    StreamTransportError,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTimeout,
    UpstreamUnauthorized,
    UpstreamUnavailable,
)


class CompletionUpstream(Protocol):
    """
    What the relay engine needs from a completion backend.
    """

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> CompletionResult: ...

    def stream(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[bytes]: ...


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _extract_error_message(text: str) -> str:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text
    if isinstance(parsed, dict):
        err = parsed.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(parsed.get("message"), str):
            return parsed["message"]
    return text


def classify_upstream_status(
    status_code: int, text: str, headers: Optional[httpx.Headers] = None
) -> UpstreamError:
    """
    Map an upstream HTTP error status onto the relay error taxonomy.
    """
    detail = _extract_error_message(text) or f"HTTP {status_code}"
    if status_code in (401, 403):
        return UpstreamUnauthorized(
            "Invalid upstream API key", upstream_status=status_code
        )
    if status_code == 429:
        retry_after = _parse_retry_after(headers.get("retry-after") if headers else None)
        return UpstreamRateLimited(
            "Rate limit exceeded for upstream", retry_after=retry_after
        )
    if status_code in (408, 504):
        return UpstreamTimeout("Upstream request timeout", upstream_status=status_code)
    if status_code >= 500:
        return UpstreamUnavailable(
            f"Upstream service error: {detail}", upstream_status=status_code
        )
    return UpstreamError(
        f"Upstream rejected the request: {detail}", upstream_status=status_code
    )


class OpenRouterClient:
    """
    httpx-based client for an OpenRouter-compatible chat completions API.

    The caller owns the AsyncClient lifecycle; this class only shapes
    requests and translates failures.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        api_key: Optional[str],
        base_url: str,
        model: str,
        referer: Optional[str] = None,
        title: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: float = 30.0,
    ) -> None:
        self.client = client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.referer = referer
        self.title = title
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise UpstreamUnauthorized("Upstream API key not configured")
        headers: Dict[str, str] = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers

    def _body(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str],
        max_tokens: Optional[int],
        temperature: Optional[float],
        stream: bool,
    ) -> Dict[str, Any]:
        return {
            "model": model or self.model,
            "messages": messages,
            "max_tokens": max_tokens if max_tokens is not None else self.max_tokens,
            "temperature": temperature if temperature is not None else self.temperature,
            "stream": stream,
        }

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> CompletionResult:
        url = f"{self.base_url}/chat/completions"
        body = self._body(
            messages,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=False,
        )
        headers = self._headers()
        try:
            resp = await self.client.post(url, headers=headers, json=body, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            logger.warning("Upstream request timeout for %s: %s", url, exc)
            raise UpstreamTimeout("Upstream request timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("Upstream transport error for %s: %s", url, exc)
            raise UpstreamUnavailable(f"Upstream connection failed: {exc}") from exc

        if resp.status_code >= 400:
            logger.warning(
                "Upstream HTTP error %s for %s; response=%s",
                resp.status_code,
                url,
                resp.text,
            )
            raise classify_upstream_status(resp.status_code, resp.text, resp.headers)

        try:
            data = resp.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Malformed upstream completion payload from %s", url)
            raise UpstreamUnavailable("Malformed upstream response") from exc
        if not isinstance(text, str):
            raise UpstreamUnavailable("Malformed upstream response")

        return CompletionResult(
            text=text,
            usage=data.get("usage") if isinstance(data.get("usage"), dict) else None,
            model=data.get("model") or body["model"],
        )

    async def stream(
        self,
        messages: List[Dict[str, str]],
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[bytes]:
        """
        Yield raw body chunks of a streaming completion.

        HTTP errors before the first byte raise the classified upstream
        error; transport errors once the body is flowing raise
        StreamTransportError.
        """
        url = f"{self.base_url}/chat/completions"
        body = self._body(
            messages,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            stream=True,
        )
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        logger.info("stream: opening POST %s (model=%s)", url, body["model"])
        try:
            async with self.client.stream(
                "POST", url, headers=headers, json=body, timeout=self.timeout
            ) as resp:
                if resp.status_code >= 400:
                    text = (await resp.aread()).decode("utf-8", errors="ignore")
                    logger.warning(
                        "Upstream streaming HTTP error %s for %s; response=%s",
                        resp.status_code,
                        url,
                        text,
                    )
                    raise classify_upstream_status(resp.status_code, text, resp.headers)

                chunk_count = 0
                try:
                    async for chunk in resp.aiter_bytes():
                        if not chunk:
                            continue
                        chunk_count += 1
                        if chunk_count == 1:
                            logger.info("stream: received first chunk from %s", url)
                        yield chunk
                except httpx.HTTPError as exc:
                    logger.warning(
                        "Upstream streaming transport error for %s after %d chunks: %s",
                        url,
                        chunk_count,
                        exc,
                    )
                    raise StreamTransportError(
                        f"Upstream stream interrupted: {exc}"
                    ) from exc
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout("Upstream request timeout") from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Upstream connection failed: {exc}") from exc

    async def list_models(self) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/models"
        try:
            resp = await self.client.get(url, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeout("Upstream request timeout") from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"Upstream connection failed: {exc}") from exc
        if resp.status_code >= 400:
            raise classify_upstream_status(resp.status_code, resp.text, resp.headers)
        try:
            data = resp.json().get("data", [])
        except (ValueError, AttributeError) as exc:
            raise UpstreamUnavailable("Malformed upstream response") from exc
        models = [m for m in data if isinstance(m, dict)] if isinstance(data, list) else []
        logger.info("Retrieved %d models from upstream", len(models))
        return models

    def info(self) -> Dict[str, Any]:
        return {
            "service": "OpenRouter AI Service",
            "model": self.model,
            "baseURL": self.base_url,
            "status": "active" if self.api_key else "unconfigured",
            "features": ["chat", "streaming", "multiple-models"],
        }


__all__ = ["CompletionUpstream", "OpenRouterClient", "classify_upstream_status"]
