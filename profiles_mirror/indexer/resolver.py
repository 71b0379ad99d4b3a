"""
Origin resolvers for profile payloads.

Both backends share the fetch pipeline in OriginResolver: blacklist check,
size-bounded streaming fetch, JSON parse, field validation, caching. They only
differ in how bytes are streamed from and pinned to the content store.
"""
import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod

import requests
import structlog
from prometheus_client import Counter, Histogram

from profiles_mirror.indexer.cache import LRUCache, RetrievalCache
from profiles_mirror.indexer.errors import (
    BlacklistedError,
    ConfigError,
    MalformedPayload,
    OriginUnavailable,
    PayloadTooLarge,
    PayloadValidationError,
    PinError,
)
from profiles_mirror.indexer.validator import ProfileLimits, ProfilePayload, ProfileValidator

log = structlog.get_logger()

BLACKLISTED = Counter('profiles_blacklisted_total', 'CIDs added to the blacklist', ['reason'])
FETCH_TIME = Histogram('profiles_origin_fetch_seconds', 'Time to fetch a payload from the origin')

CHUNK_SIZE = 8192


class OriginResolver(ABC):
    """Fetches, validates, caches and pins profile payloads."""

    def __init__(self, limits: ProfileLimits, max_profile_size: int,
                 cache_max_size: int = 25000, blacklist_max_size: int = 100000):
        self.validator = ProfileValidator(limits)
        self.max_profile_size = max_profile_size
        self.profile_cache: RetrievalCache[str, ProfilePayload] = RetrievalCache(
            cache_max_size, self.fetch_profile_from_origin
        )
        self.blacklist: LRUCache[str, bool] = LRUCache(blacklist_max_size)
        self.session = requests.Session()

    # Backend hooks

    @abstractmethod
    def _open_stream(self, cid: str, timeout_ms: int) -> requests.Response:
        """Start a streaming download of the raw payload bytes."""

    @abstractmethod
    def _pin_bytes(self, data: bytes) -> str:
        """Store and pin the serialized payload, returning its CID."""

    @abstractmethod
    def _check_health(self) -> bool:
        pass

    # Blacklist

    def add_to_blacklist(self, cid: str, reason: str = "validation"):
        log.info("cid_blacklisted", cid=cid, reason=reason)
        BLACKLISTED.labels(reason=reason).inc()
        self.blacklist.set(cid, True)

    def is_blacklisted(self, cid: str) -> bool:
        return self.blacklist.get(cid) is not None

    # Fetch pipeline

    def _read_bounded(self, cid: str, response: requests.Response, deadline: float) -> bytes:
        """Read the body up to the size budget, giving up once ``deadline`` (monotonic) passes."""
        data = bytearray()
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if time.monotonic() > deadline:
                    raise OriginUnavailable(cid, "Fetch deadline exceeded")
                if len(data) + len(chunk) > self.max_profile_size:
                    self.add_to_blacklist(cid, reason="oversized")
                    raise PayloadTooLarge(cid, f"Response size exceeds {self.max_profile_size} byte limit")
                data.extend(chunk)
        finally:
            response.close()
        return bytes(data)

    def _fetch_bytes(self, cid: str, timeout_ms: int) -> bytes:
        deadline = time.monotonic() + timeout_ms / 1000
        try:
            response = self._open_stream(cid, timeout_ms)
            if response.status_code != 200:
                response.close()
                raise OriginUnavailable(cid, f"Origin returned status {response.status_code}")
            return self._read_bounded(cid, response, deadline)
        except requests.RequestException as e:
            raise OriginUnavailable(cid, f"Failed to fetch profile: {e}") from e

    def _parse(self, cid: str, data: bytes) -> ProfilePayload:
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            self.add_to_blacklist(cid, reason="malformed")
            raise MalformedPayload(cid, "Invalid JSON data") from e

        profile, errors = self.validator.validate(raw)
        if errors:
            self.add_to_blacklist(cid, reason="validation")
            raise PayloadValidationError(cid, errors)
        return profile

    async def fetch_profile_from_origin(self, cid: str, timeout_ms: int) -> ProfilePayload:
        if self.is_blacklisted(cid):
            raise BlacklistedError(cid)

        log.info("origin_fetch", cid=cid, timeout_ms=timeout_ms)
        started = time.monotonic()
        try:
            data = await asyncio.wait_for(asyncio.to_thread(self._fetch_bytes, cid, timeout_ms), timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise OriginUnavailable(cid, f"Fetch exceeded {timeout_ms}ms") from e
        finally:
            FETCH_TIME.observe(time.monotonic() - started)
        return self._parse(cid, data)

    async def get_cached_profile(self, cid: str, timeout_ms: int) -> ProfilePayload:
        if self.is_blacklisted(cid):
            raise BlacklistedError(cid)
        return await self.profile_cache.get(cid, timeout_ms)

    def invalidate(self, cid: str):
        self.profile_cache.delete(cid)

    # Pinning and health

    async def pin(self, payload) -> str:
        if isinstance(payload, ProfilePayload):
            payload = payload.to_json()
        profile, errors = self.validator.validate(payload)
        if errors:
            raise PayloadValidationError("", errors)

        data = json.dumps(profile.to_json()).encode("utf-8")
        try:
            cid = await asyncio.to_thread(self._pin_bytes, data)
        except requests.RequestException as e:
            log.error("pin_failed", error=str(e))
            raise PinError(f"Failed to pin profile: {e}") from e

        self.profile_cache.set(cid, profile)
        log.info("profile_pinned", cid=cid)
        return cid

    async def is_healthy(self) -> bool:
        try:
            return await asyncio.to_thread(self._check_health)
        except requests.RequestException as e:
            log.error("storage_unhealthy", error=str(e))
            return False


class KuboResolver(OriginResolver):
    """Talks to an IPFS (Kubo) node over its HTTP RPC API."""

    def __init__(self, api_url: str, **kwargs):
        super().__init__(**kwargs)
        self.api_url = api_url.rstrip("/")

    def _open_stream(self, cid: str, timeout_ms: int) -> requests.Response:
        return self.session.post(
            f"{self.api_url}/cat",
            params={"arg": cid, "timeout": f"{timeout_ms}ms"},
            stream=True,
            timeout=timeout_ms / 1000,
        )

    def _pin_bytes(self, data: bytes) -> str:
        resp = self.session.post(f"{self.api_url}/add", files={"file": data}, timeout=30)
        resp.raise_for_status()
        cid = resp.json()["Hash"]
        log.info("profile_added", cid=cid)

        resp = self.session.post(f"{self.api_url}/pin/add", params={"arg": cid}, timeout=30)
        resp.raise_for_status()
        return cid

    def _check_health(self) -> bool:
        resp = self.session.post(f"{self.api_url}/id", timeout=5)
        return resp.status_code == 200


class GatewayResolver(OriginResolver):
    """Reads through a public IPFS gateway and pins via a pinning service API."""

    def __init__(self, gateway_url: str, pinning_api_url: str, api_key: str, api_secret: str, **kwargs):
        super().__init__(**kwargs)
        self.gateway_url = gateway_url.rstrip("/")
        self.pinning_api_url = pinning_api_url
        self.auth_header = f"Bearer {api_key}:{api_secret}"

    def _open_stream(self, cid: str, timeout_ms: int) -> requests.Response:
        return self.session.get(f"{self.gateway_url}/{cid}", stream=True, timeout=timeout_ms / 1000)

    def _pin_bytes(self, data: bytes) -> str:
        resp = self.session.post(
            self.pinning_api_url,
            files={"file": (f"{uuid.uuid4()}.json", data, "application/json")},
            headers={"Authorization": self.auth_header},
            timeout=30,
        )
        if resp.status_code != 200:
            raise PinError(f"Pinning API returned an error: {resp.status_code} {resp.reason} - {resp.text}")
        return resp.json()["cid"]

    def _check_health(self) -> bool:
        resp = self.session.head(self.gateway_url, timeout=5)
        return resp.status_code < 500


def create_resolver(cfg) -> OriginResolver:
    """Build the backend selected by STORAGE_BACKEND."""
    common = dict(
        limits=ProfileLimits.from_config(cfg),
        max_profile_size=cfg.max_profile_size,
        cache_max_size=cfg.cache_max_size,
        blacklist_max_size=cfg.blacklist_max_size,
    )
    if cfg.storage_backend == "kubo":
        return KuboResolver(cfg.ipfs_api_url, **common)
    if cfg.storage_backend == "gateway":
        return GatewayResolver(
            cfg.ipfs_gateway, cfg.pinning_api_url, cfg.pinning_api_key, cfg.pinning_api_secret, **common
        )
    raise ConfigError(f"Unknown storage backend {cfg.storage_backend!r}")
