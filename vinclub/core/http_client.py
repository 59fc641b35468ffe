"""
Resilient HTTP client for carrier API calls

- Bounded timeout on every request
- Exponential backoff with jitter on timeouts, connect errors and 5xx/429
- Per-host circuit breaker so a dead carrier fails fast

Callers never hold a database transaction open while using this client.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    """Raised when the circuit for a host is open and the request is rejected."""
    def __init__(self, host: str, remaining: float):
        self.host = host
        self.remaining = remaining
        super().__init__(f"Circuit breaker OPEN for {host} ({remaining:.1f}s until retry)")


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 2
    base_delay: float = 0.5           # Base delay in seconds
    max_delay: float = 10.0           # Maximum delay cap
    exponential_base: float = 2.0
    jitter_factor: float = 0.5        # Random jitter (0-1)

    retryable_status_codes: tuple = (408, 429, 500, 502, 503, 504)


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5        # Failures before opening circuit
    success_threshold: int = 1        # Successes to close circuit
    timeout_seconds: float = 60.0     # Time before half-open test


@dataclass
class HostState:
    """Circuit breaker state for a single host."""
    circuit_state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0


class ResilientHTTPClient:
    """
    Async HTTP client with retry and circuit breaking.

    Returns the final httpx.Response for any status once retries are spent;
    status interpretation is left to the caller. Transport errors are
    re-raised after the last attempt.

    Usage:
        async with ResilientHTTPClient() as client:
            response = await client.get("https://api.example.com/data")
    """

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        timeout: float = 15.0,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.circuit_config = circuit_config or CircuitBreakerConfig()
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._host_states: Dict[str, HostState] = {}

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                transport=self._transport,
            )
        return self

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_host(self, url: str) -> str:
        return urlparse(url).netloc

    def _get_host_state(self, host: str) -> HostState:
        if host not in self._host_states:
            self._host_states[host] = HostState()
        return self._host_states[host]

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Delay for the given attempt: min(base * exp_base^attempt ± jitter, max_delay).
        """
        cfg = self.retry_config
        delay = cfg.base_delay * (cfg.exponential_base ** attempt)
        delay += delay * cfg.jitter_factor * (2 * random.random() - 1)
        return max(0.0, min(delay, cfg.max_delay))

    def _check_circuit_breaker(self, host: str) -> None:
        """Raise CircuitOpenError unless the circuit lets this request through."""
        state = self._get_host_state(host)
        cfg = self.circuit_config

        if state.circuit_state != CircuitState.OPEN:
            return

        elapsed = time.time() - state.last_failure_time
        if elapsed > cfg.timeout_seconds:
            logger.info(f"[CIRCUIT] {host}: Moving to HALF_OPEN for test request")
            state.circuit_state = CircuitState.HALF_OPEN
            state.success_count = 0
            return

        remaining = cfg.timeout_seconds - elapsed
        logger.warning(f"[CIRCUIT] {host}: OPEN, rejecting request ({remaining:.1f}s until retry)")
        raise CircuitOpenError(host, remaining)

    def _record_success(self, host: str) -> None:
        state = self._get_host_state(host)
        state.failure_count = 0

        if state.circuit_state == CircuitState.HALF_OPEN:
            state.success_count += 1
            if state.success_count >= self.circuit_config.success_threshold:
                logger.info(f"[CIRCUIT] {host}: Closing circuit after {state.success_count} successes")
                state.circuit_state = CircuitState.CLOSED

    def _record_failure(self, host: str) -> None:
        state = self._get_host_state(host)
        state.failure_count += 1
        state.last_failure_time = time.time()
        state.success_count = 0

        if state.circuit_state == CircuitState.HALF_OPEN:
            logger.warning(f"[CIRCUIT] {host}: Test request failed, reopening circuit")
            state.circuit_state = CircuitState.OPEN
        elif state.failure_count >= self.circuit_config.failure_threshold:
            logger.error(f"[CIRCUIT] {host}: Opening circuit after {state.failure_count} failures")
            state.circuit_state = CircuitState.OPEN

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with retry and circuit breaking.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Target URL
            **kwargs: Additional arguments passed to httpx

        Returns:
            The last httpx.Response received

        Raises:
            CircuitOpenError: Host circuit is open
            httpx.TimeoutException / httpx.TransportError: All attempts failed at transport level
        """
        if not self._client:
            await self.init()

        host = self._get_host(url)
        cfg = self.retry_config
        self._check_circuit_breaker(host)

        last_exception: Optional[Exception] = None

        for attempt in range(cfg.max_retries + 1):
            try:
                logger.debug(f"[HTTP] {method} {url} (attempt {attempt + 1}/{cfg.max_retries + 1})")
                response = await self._client.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                self._record_failure(host)
                last_exception = e
                if attempt < cfg.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(f"[HTTP] {host}: {type(e).__name__}, retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue
                break

            if response.status_code in cfg.retryable_status_codes:
                self._record_failure(host)
                if attempt < cfg.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        f"[HTTP] {host}: Status {response.status_code}, "
                        f"retrying in {delay:.1f}s (attempt {attempt + 1})"
                    )
                    await asyncio.sleep(delay)
                    continue
                return response

            self._record_success(host)
            return response

        logger.error(f"[HTTP] {host}: All {cfg.max_retries + 1} attempts failed")
        raise last_exception

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)


def get_carrier_client(
    timeout: float,
    max_retries: int,
    api_key: str = "",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ResilientHTTPClient:
    """
    Client configured for a carrier REST API.

    Label creation is idempotent on the carrier side (keyed by reference),
    so retrying POSTs is safe.
    """
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return ResilientHTTPClient(
        retry_config=RetryConfig(max_retries=max_retries),
        circuit_config=CircuitBreakerConfig(failure_threshold=5, timeout_seconds=60.0),
        timeout=timeout,
        default_headers=headers,
        transport=transport,
    )
