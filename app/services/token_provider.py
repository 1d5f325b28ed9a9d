"""Keka access token acquisition and caching."""

import asyncio
import logging
import time
from typing import Callable, Optional

import httpx

from app.config import settings
from app.database.cache import CacheBackend
from app.services.encryption_service import EncryptionService
from app.services.exceptions import AuthError

logger = logging.getLogger(__name__)

TOKEN_CACHE_KEY = "keka_access_token"


class Credential:
    """A bearer token plus where it was resolved from."""

    MEMORY = "memory"
    CACHE = "cache"
    REMOTE = "remote"

    def __init__(self, value: str, acquired_at: float, ttl_seconds: int, source: str):
        self.value = value
        self.acquired_at = acquired_at
        self.ttl_seconds = ttl_seconds
        self.source = source

    @property
    def expires_at(self) -> float:
        return self.acquired_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def with_source(self, source: str) -> "Credential":
        return Credential(self.value, self.acquired_at, self.ttl_seconds, source)

    def __repr__(self) -> str:
        return f"<Credential {self.value[:8]}... source={self.source}>"


class TokenProvider:
    """Owns the process-wide Keka token slot and its durable cache mirror.

    Lookup order is in-memory slot, durable cache, then a credential
    exchange against the Keka auth endpoint. Every exchange overwrites both
    slots.
    """

    def __init__(
        self,
        cache: CacheBackend,
        encryption_service: EncryptionService,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        api_key: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time
    ):
        """Initialize token provider.

        Args:
            cache: Durable cache backend.
            encryption_service: Used to encrypt the cached token at rest.
            token_url: Auth endpoint (defaults to settings.keka_token_url).
            client_id: Keka client id (defaults to settings).
            client_secret: Keka client secret (defaults to settings).
            api_key: Keka API key (defaults to settings).
            ttl_seconds: Token lifetime (defaults to settings.token_ttl_seconds).
            transport: Optional httpx transport, mainly for tests.
            clock: Time source returning epoch seconds.
        """
        self.cache = cache
        self.encryption_service = encryption_service
        self.token_url = token_url or settings.keka_token_url
        self.client_id = client_id or settings.keka_client_id
        self.client_secret = client_secret or settings.keka_client_secret
        self.api_key = api_key or settings.keka_api_key
        self.ttl_seconds = ttl_seconds or settings.token_ttl_seconds
        self._transport = transport
        self._clock = clock
        self._credential: Optional[Credential] = None
        self._lock = asyncio.Lock()

    async def get_token(self) -> Credential:
        """Resolve a usable token.

        Returns:
            Credential whose ``source`` tells whether a network call was made.

        Raises:
            AuthError: If a credential exchange was needed and failed.
        """
        async with self._lock:
            now = self._clock()
            if self._credential and not self._credential.is_expired(now):
                return self._credential.with_source(Credential.MEMORY)

            cached = await self._load_cached()
            if cached:
                self._credential = cached
                return cached

            return await self._acquire()

    async def refresh_token(self) -> Credential:
        """Force a credential exchange, replacing both slots.

        Raises:
            AuthError: If the exchange fails.
        """
        async with self._lock:
            return await self._acquire()

    def peek_token(self) -> Optional[str]:
        """Return the in-memory token without triggering acquisition."""
        return self._credential.value if self._credential else None

    def peek_credential(self) -> Optional[Credential]:
        return self._credential

    def invalidate(self) -> None:
        """Forget the in-memory token (the cache entry is left alone)."""
        self._credential = None

    async def has_cached_token(self) -> bool:
        return self._credential is not None or await self.cache.get(TOKEN_CACHE_KEY) is not None

    async def _load_cached(self) -> Optional[Credential]:
        encrypted = await self.cache.get(TOKEN_CACHE_KEY)
        if not encrypted:
            return None

        value = self.encryption_service.try_decrypt(encrypted)
        if not value:
            logger.warning("Discarding cached Keka token that could not be decrypted")
            await self.cache.delete(TOKEN_CACHE_KEY)
            return None

        # The cache entry carries its own expiry; treat it as freshly read
        return Credential(value, self._clock(), self.ttl_seconds, Credential.CACHE)

    async def _acquire(self) -> Credential:
        value = await self._request_token()
        credential = Credential(value, self._clock(), self.ttl_seconds, Credential.REMOTE)

        self._credential = credential
        await self.cache.setex(
            TOKEN_CACHE_KEY,
            self.ttl_seconds,
            self.encryption_service.encrypt(value)
        )
        logger.info(f"Keka access token fetched and stored: {value[:8]}...")
        return credential

    async def _request_token(self) -> str:
        """Exchange client credentials for an access token.

        Raises:
            AuthError: If credentials are missing, the request fails, or no
                token is returned.
        """
        missing = [
            name for name, value in (
                ("KEKA_CLIENT_ID", self.client_id),
                ("KEKA_CLIENT_SECRET", self.client_secret),
                ("KEKA_API_KEY", self.api_key),
            ) if not value
        ]
        if missing:
            raise AuthError(f"Missing Keka credentials: {', '.join(missing)}")

        form = {
            "grant_type": "kekaapi",
            "scope": "kekaapi",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "api_key": self.api_key,
        }

        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                response = await client.post(
                    self.token_url,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"}
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Keka token error {e.response.status_code}: {e.response.text}")
            raise AuthError(f"Token exchange failed with HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Keka token error: {e}")
            raise AuthError(f"Token exchange failed: {e}") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthError("No access token received from Keka API")
        return token
