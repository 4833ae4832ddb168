"""Metadata API client implementation."""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from romshelf.api.cache import ResponseCache, cache_key
from romshelf.api.error_handler import (
    APIError,
    AuthenticationError,
    MalformedQueryError,
    MissingCredentialsError,
    PayloadTooLargeError,
    RateLimitedError,
    TokenExpiredError,
    handle_http_status,
)
from romshelf.api.gate import RequestGate
from romshelf.api.platforms import PlatformRegistry
from romshelf.api.query_builder import platforms_page_query
from romshelf.api.response_parser import ResponseError

logger = logging.getLogger(__name__)

PLATFORM_PAGE_SIZE = 500


class MetadataClient:
    """
    Client for the game metadata API.

    Handles authentication, caching and the retry policy for every query;
    admission control is delegated to the RequestGate.

    Retry policy per call:
    - 401: re-authenticate once and repeat, not counted as a retry
    - 429: report to the gate, back off (2s doubling); after max_retries
      give up with an empty result
    - 413: raise PayloadTooLargeError
    - 400 and any other failure: log a warning, return an empty result
    """

    DEFAULT_BASE_URL = "https://api.igdb.com/v4"
    DEFAULT_TOKEN_URL = "https://id.twitch.tv/oauth2/token"

    def __init__(
        self,
        config: Dict[str, Any],
        gate: RequestGate,
        client: Optional[httpx.AsyncClient] = None,
        cache: Optional[ResponseCache] = None
    ):
        """
        Initialize API client.

        Args:
            config: Configuration dictionary
            gate: RequestGate every outbound query goes through
            client: Optional httpx.AsyncClient; one is created when omitted
            cache: Optional ResponseCache for query results
        """
        api_config = config.get('metadata_api', {})
        self.client_id = api_config.get('client_id') or ''
        self.client_secret = api_config.get('client_secret') or ''
        self.base_url = (api_config.get('base_url') or self.DEFAULT_BASE_URL).rstrip('/')
        self.token_url = api_config.get('token_url') or self.DEFAULT_TOKEN_URL
        self.request_timeout = api_config.get('request_timeout', 15)
        self._timeout = httpx.Timeout(
            connect=5.0,
            read=self.request_timeout,
            write=5.0,
            pool=5.0
        )

        rate_config = config.get('rate_limit', {})
        self.max_retries = rate_config.get('max_retries', 5)
        self.initial_backoff = rate_config.get('initial_backoff_seconds', 2)

        self.offline = bool(config.get('runtime', {}).get('offline_mode', False))

        self.gate = gate
        self.cache = cache
        self._owns_client = client is None
        self.client = client if client is not None else httpx.AsyncClient()

        self.access_token: Optional[str] = None
        self._auth_lock = asyncio.Lock()

        # Metrics
        self.api_calls = 0
        self.failed_calls = 0

    def _headers(self) -> Dict[str, str]:
        return {
            'Client-ID': self.client_id,
            'Authorization': f"Bearer {self.access_token}",
            'Accept': 'application/json',
        }

    async def authenticate(self, force: bool = False, stale_token: Optional[str] = None) -> Optional[str]:
        """
        Obtain an access token with the client-credentials grant.

        Args:
            force: Request a new token even if one is held
            stale_token: Token that was just rejected; if another task has
                already replaced it, the newer token is kept

        Returns:
            Access token, or None in offline mode

        Raises:
            MissingCredentialsError: If client id or secret is missing
            AuthenticationError: If the token endpoint rejects the request
        """
        if self.offline:
            return None

        async with self._auth_lock:
            if self.access_token and not force:
                return self.access_token
            if force and self.access_token and self.access_token != stale_token:
                return self.access_token

            if not self.client_id or not self.client_secret:
                raise MissingCredentialsError(
                    "metadata_api.client_id and metadata_api.client_secret are required in online mode"
                )

            params = {
                'client_id': self.client_id,
                'client_secret': self.client_secret,
                'grant_type': 'client_credentials',
            }
            logger.debug(f"Requesting access token from {self.token_url}")

            try:
                response = await self.client.post(self.token_url, params=params, timeout=self._timeout)
            except httpx.HTTPError as e:
                raise AuthenticationError(f"Token request failed: {e}") from e

            if response.status_code != 200:
                raise AuthenticationError(
                    f"Token request rejected: HTTP {response.status_code}",
                    response.status_code
                )

            try:
                token = response.json().get('access_token')
            except (ValueError, AttributeError) as e:
                raise AuthenticationError(f"Invalid token response: {e}") from e
            if not token:
                raise AuthenticationError("Token response did not contain an access token")

            self.access_token = token
            logger.info("Authenticated with metadata API")
            return token

    async def _post(self, endpoint: str, body: str) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/{endpoint}"
        self.api_calls += 1

        start_time = time.time()
        response = await self.client.post(
            url,
            content=body.encode('utf-8'),
            headers=self._headers(),
            timeout=self._timeout
        )
        if logger.isEnabledFor(logging.DEBUG):
            elapsed_time = time.time() - start_time
            logger.debug(f"API Response ({endpoint}): {response.status_code} in {elapsed_time:.2f}s")

        handle_http_status(response.status_code, context=endpoint)

        data = response.json()
        if not isinstance(data, list):
            raise ResponseError(f"Expected a JSON list from {endpoint}")
        return data

    async def query(self, endpoint: str, body: str) -> List[Dict[str, Any]]:
        """
        Run a query, answering from the cache when possible.

        Args:
            endpoint: API endpoint name (e.g. 'games')
            body: Query text

        Returns:
            List of raw records; empty when offline, when nothing matched or
            when the call failed recoverably

        Raises:
            PayloadTooLargeError: Upstream rejected the body size
            AuthenticationError: Credentials rejected twice in a row
            MissingCredentialsError: Online mode without credentials
        """
        if self.offline:
            return []

        key = cache_key(endpoint, body)
        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached is not None:
                logger.debug(f"Cache hit for {endpoint} query")
                return cached

        if not self.access_token:
            await self.authenticate()

        retries = 0
        delay = self.initial_backoff
        reauthenticated = False

        while True:
            token = self.access_token
            try:
                data = await self.gate.submit(lambda: self._post(endpoint, body), label=endpoint)
            except TokenExpiredError as e:
                if reauthenticated:
                    raise AuthenticationError(f"Access token rejected after renewal ({endpoint})", 401) from e
                reauthenticated = True
                logger.info("Access token expired, renewing")
                await self.authenticate(force=True, stale_token=token)
                continue
            except RateLimitedError:
                self.gate.record_rate_limit()
                retries += 1
                if retries > self.max_retries:
                    self.failed_calls += 1
                    logger.warning(f"Rate limited on {endpoint} after {self.max_retries} retries, giving up")
                    return []
                logger.warning(f"Rate limited on {endpoint}, retrying in {delay:.1f}s ({retries}/{self.max_retries})")
                await asyncio.sleep(delay)
                delay *= 2
                continue
            except PayloadTooLargeError:
                self.failed_calls += 1
                logger.error(f"Query payload too large for {endpoint}")
                raise
            except AuthenticationError:
                raise
            except MalformedQueryError as e:
                self.failed_calls += 1
                logger.warning(f"Malformed query rejected by {endpoint}: {e}")
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug(f"Query body: {body}")
                return []
            except (APIError, ResponseError, httpx.HTTPError, ValueError) as e:
                self.failed_calls += 1
                logger.warning(f"Query to {endpoint} failed: {e}")
                return []
            break

        if self.cache is not None:
            await self.cache.set(key, data)
        return data

    async def fetch_platforms(self) -> List[Dict[str, Any]]:
        """Page through the platform listing."""
        if self.offline:
            logger.info("Offline mode enabled, skipping platform listing")
            return []

        platforms: List[Dict[str, Any]] = []
        offset = 0
        while True:
            page = await self.query('platforms', platforms_page_query(offset, PLATFORM_PAGE_SIZE))
            platforms.extend(page)
            if len(page) < PLATFORM_PAGE_SIZE:
                break
            offset += PLATFORM_PAGE_SIZE

        logger.info(f"Fetched {len(platforms)} platforms from metadata API")
        return platforms

    async def fetch_platform_registry(self) -> PlatformRegistry:
        return PlatformRegistry.from_records(await self.fetch_platforms())

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    def get_stats(self) -> Dict[str, Any]:
        return {
            'api_calls': self.api_calls,
            'failed_calls': self.failed_calls,
            'authenticated': self.access_token is not None,
            'offline': self.offline,
        }
