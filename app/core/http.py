import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from .config import settings

_DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}
_api_football_client: httpx.AsyncClient | None = None
_llm_clients: dict[str, httpx.AsyncClient] = {}


def _http_limits() -> httpx.Limits:
    return httpx.Limits(max_connections=20, max_keepalive_connections=10)


def api_football_client() -> httpx.AsyncClient:
    global _api_football_client
    if _api_football_client is None or _api_football_client.is_closed:
        _api_football_client = httpx.AsyncClient(
            base_url=settings.api_football_base,
            headers={
                "x-apisports-key": settings.api_football_key,
                "x-rapidapi-host": settings.api_football_host,
            },
            timeout=httpx.Timeout(20.0),
            limits=_http_limits(),
        )
    return _api_football_client


def _llm_base(backend: str) -> str:
    if backend == "together":
        return settings.together_base
    if backend == "synthetic":
        return settings.synthetic_base
    raise ValueError(f"unknown LLM backend {backend}")


def llm_client(backend: str) -> httpx.AsyncClient:
    """Shared client per LLM backend; per-call deadlines are applied by the provider."""
    client = _llm_clients.get(backend)
    if client is None or client.is_closed:
        client = httpx.AsyncClient(
            base_url=_llm_base(backend),
            headers={
                "Authorization": f"Bearer {settings.provider_key(backend)}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(settings.llm_reasoning_timeout_seconds, connect=10.0),
            limits=_http_limits(),
        )
        _llm_clients[backend] = client
    return client


async def init_http_clients() -> None:
    api_football_client()
    for backend in ("together", "synthetic"):
        if settings.provider_key(backend):
            llm_client(backend)


async def close_http_clients() -> None:
    global _api_football_client
    if _api_football_client is not None and not _api_football_client.is_closed:
        await _api_football_client.aclose()
    for client in list(_llm_clients.values()):
        if not client.is_closed:
            await client.aclose()
    _api_football_client = None
    _llm_clients.clear()


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())
    except Exception:
        return None


def _backoff_delay(attempt: int, base: float, cap: float, retry_after: float | None) -> float:
    delay = min(cap, base * (2 ** attempt))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


async def request_with_retries(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict | None = None,
    retries: int = 3,
    backoff_base: float = 0.5,
    backoff_max: float = 8.0,
    retry_statuses: set[int] | None = None,
    retry_exceptions: tuple[type[BaseException], ...] = (httpx.RequestError,),
    _sleep=asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    statuses = retry_statuses or _DEFAULT_RETRY_STATUSES
    for attempt in range(retries + 1):
        try:
            response = await client.request(method, url, params=params, **kwargs)
        except retry_exceptions:
            if attempt >= retries:
                raise
            await _sleep(_backoff_delay(attempt, backoff_base, backoff_max, None))
            continue

        if response.status_code in statuses:
            if attempt >= retries:
                return response
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            await response.aclose()
            await _sleep(_backoff_delay(attempt, backoff_base, backoff_max, retry_after))
            continue
        return response

    raise RuntimeError("request_with_retries: exhausted retries")
