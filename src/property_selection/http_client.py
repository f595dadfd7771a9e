import asyncio
import logging
import random
from urllib.parse import urlencode

import httpx

from property_selection.constants import MAX_GET_URL_LENGTH, QUERY_MAX_RETRIES, QUERY_TIMEOUT_S
from property_selection.errors import Cancelled, QueryError, parse_arcgis_error


logger = logging.getLogger("psel.http")

RETRY_STATUS = {429, 500, 502, 503, 504}


class RetryConfig:
    def __init__(self, retries=QUERY_MAX_RETRIES, base_delay=0.2, factor=2.0, jitter=0.1):
        self.retries = retries
        self.base_delay = base_delay
        self.factor = factor
        self.jitter = jitter


def compute_backoff_delays(
    retries, base_delay=0.2, factor=2.0, jitter=0.1, rand_fn=None
):
    delays = []
    current = base_delay
    rand_fn = rand_fn or random.random
    for _ in range(retries):
        noise = (rand_fn() * 2 - 1) * jitter
        delays.append(max(0.0, current + noise))
        current *= factor
    return delays


async def race_with_token(awaitable, token):
    """Await ``awaitable`` unless ``token`` is cancelled first.

    On cancellation the pending work is cancelled and ``Cancelled`` raised.
    """

    if token is None:
        return await awaitable
    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise Cancelled("request was cancelled")
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task in done:
        return task.result()
    await asyncio.gather(task, return_exceptions=True)
    raise Cancelled("request was cancelled")


class AsyncHttpClient:
    """JSON client for ArcGIS REST endpoints."""

    def __init__(
        self,
        timeout=QUERY_TIMEOUT_S,
        retry_config=None,
        transport=None,
        sleep_fn=None,
        max_get_url_length=MAX_GET_URL_LENGTH,
    ):
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self.max_get_url_length = max_get_url_length
        self._transport = transport
        self._sleep = sleep_fn or asyncio.sleep
        self._client = None

    def _ensure_client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
                headers={"User-Agent": "property-selection", "Accept": "application/json"},
            )
        return self._client

    def _build_request(self, client, url, params):
        params = dict(params or {})
        params.setdefault("f", "json")
        if len(url) + 1 + len(urlencode(params)) > self.max_get_url_length:
            return client.build_request("POST", url, data=params)
        return client.build_request("GET", url, params=params)

    async def get_json(self, url, params=None, token=None):
        """Fetch ``url`` and return the decoded JSON object.

        Raises ``QueryError`` on transport, HTTP or ArcGIS errors and
        ``Cancelled`` when ``token`` is aborted.
        """

        client = self._ensure_client()
        delays = compute_backoff_delays(
            self.retry_config.retries,
            self.retry_config.base_delay,
            self.retry_config.factor,
            self.retry_config.jitter,
        )
        attempts = len(delays) + 1
        last_error = None
        for attempt in range(attempts):
            if token is not None:
                token.raise_if_cancelled()
            request = self._build_request(client, url, params)
            try:
                response = await race_with_token(client.send(request), token)
            except httpx.HTTPError as exc:
                last_error = QueryError(f"Request failed: {exc}", url=url)
                logger.debug("query transport error", extra={"url": url, "attempt": attempt})
                if attempt < len(delays):
                    await race_with_token(self._sleep(delays[attempt]), token)
                    continue
                raise last_error from exc
            status = response.status_code
            if status in RETRY_STATUS and attempt < len(delays):
                logger.debug("retrying query", extra={"url": url, "status": status})
                await race_with_token(self._sleep(delays[attempt]), token)
                continue
            if status >= 400:
                raise QueryError(f"HTTP {status}", url=url, status=status)
            try:
                payload = response.json()
            except ValueError as exc:
                raise QueryError("Invalid JSON response", url=url, status=status) from exc
            if not isinstance(payload, dict):
                raise QueryError("Unexpected response payload", url=url, status=status)
            if payload.get("error"):
                raise QueryError(
                    parse_arcgis_error(payload, "Query failed"), url=url, status=status
                )
            return payload
        raise last_error or QueryError("Query failed", url=url)

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
