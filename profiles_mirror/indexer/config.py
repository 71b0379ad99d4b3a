"""
Profiles Mirror Configuration
"""
import os
from dataclasses import dataclass
from dotenv import load_dotenv

from profiles_mirror.indexer.errors import ConfigError

load_dotenv()

BACKENDS = ("kubo", "gateway")


@dataclass
class Config:
    # Database
    db_host: str = os.getenv("DB_HOST", "localhost")
    db_port: int = int(os.getenv("DB_PORT", "5432"))
    db_name: str = os.getenv("DB_NAME", "profiles")
    db_user: str = os.getenv("DB_USER", "profiles")
    db_password: str = os.getenv("DB_PASSWORD", "")
    db_pool_size: int = int(os.getenv("DB_POOL_SIZE", "8"))

    # Chain RPC
    rpc_url: str = os.getenv("RPC_URL", "https://rpc.aboutcircles.com/")
    rpc_auth: str = os.getenv("RPC_AUTH", "")
    ws_url: str = os.getenv("WS_URL", "wss://rpc.aboutcircles.com/ws/")

    # Content store
    storage_backend: str = os.getenv("STORAGE_BACKEND", "kubo")
    ipfs_api_url: str = os.getenv("IPFS_API_URL", "http://localhost:5001/api/v0")
    ipfs_gateway: str = os.getenv("IPFS_GATEWAY", "")
    pinning_api_url: str = os.getenv("PINNING_API_URL", "https://api.filebase.com/v1/ipfs/pin")
    pinning_api_key: str = os.getenv("PINNING_API_KEY", "")
    pinning_api_secret: str = os.getenv("PINNING_API_SECRET", "")

    # Profile limits
    max_name_length: int = int(os.getenv("MAX_NAME_LENGTH", "36"))
    description_length: int = int(os.getenv("DESCRIPTION_LENGTH", "500"))
    image_url_length: int = int(os.getenv("IMAGE_URL_LENGTH", "2000"))
    max_image_size_kb: int = int(os.getenv("MAX_IMAGE_SIZE_KB", "150"))
    default_timeout_ms: int = int(os.getenv("DEFAULT_TIMEOUT", "1")) * 1000
    max_batch_size: int = int(os.getenv("MAX_BATCH_SIZE", "50"))

    # Caches
    cache_max_size: int = int(os.getenv("CACHE_MAX_SIZE", "25000"))
    blacklist_max_size: int = int(os.getenv("BLACKLIST_MAX_SIZE", "100000"))

    # Indexer settings
    reorg_depth: int = int(os.getenv("REORG_DEPTH", "12"))
    poll_interval: float = float(os.getenv("POLL_INTERVAL", "5"))
    catchup_concurrency: int = int(os.getenv("CATCHUP_CONCURRENCY", "8"))
    catchup_batch_blocks: int = int(os.getenv("CATCHUP_BATCH_BLOCKS", "100000"))
    ws_reconnect_delay: float = float(os.getenv("WS_RECONNECT_DELAY", "1"))
    ws_reconnect_max_delay: float = float(os.getenv("WS_RECONNECT_MAX_DELAY", "60"))
    ws_max_reconnect_attempts: int = int(os.getenv("WS_MAX_RECONNECT_ATTEMPTS", "20"))
    rpc_retry_delay: float = float(os.getenv("RPC_RETRY_DELAY", "1"))
    replay_attempts: int = int(os.getenv("REPLAY_ATTEMPTS", "5"))

    # API
    api_port: int = int(os.getenv("API_PORT", "3000"))
    cors_origin: str = os.getenv("CORS_ORIGIN", "*")
    search_max_results: int = int(os.getenv("SEARCH_MAX_RESULTS", "100"))

    # Metrics
    metrics_port: int = int(os.getenv("METRICS_PORT", "9100"))

    @property
    def db_dsn(self) -> str:
        return f"host={self.db_host} port={self.db_port} dbname={self.db_name} user={self.db_user} password={self.db_password}"

    @property
    def max_image_bytes(self) -> int:
        return self.max_image_size_kb * 1024

    @property
    def max_profile_size(self) -> int:
        """Byte budget for a single payload fetch."""
        return self.max_name_length + self.description_length + self.image_url_length + self.max_image_bytes

    @property
    def fetch_timeout_ms(self) -> int:
        return self.default_timeout_ms // 2

    def validate(self) -> "Config":
        if self.storage_backend not in BACKENDS:
            raise ConfigError(f"STORAGE_BACKEND must be one of {', '.join(BACKENDS)}, got {self.storage_backend!r}")
        if self.storage_backend == "gateway":
            if not self.ipfs_gateway:
                raise ConfigError("IPFS_GATEWAY is required when used with the pinning API")
            if not self.pinning_api_url:
                raise ConfigError("PINNING_API_URL is required when used with the pinning API")
            if not self.pinning_api_key or not self.pinning_api_secret:
                raise ConfigError("Pinning API key and secret are required")
        for name in ("max_name_length", "description_length", "image_url_length", "max_image_size_kb",
                     "default_timeout_ms", "cache_max_size", "blacklist_max_size", "catchup_concurrency", "catchup_batch_blocks",
                     "search_max_results", "max_batch_size", "replay_attempts"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.reorg_depth < 0:
            raise ConfigError("reorg_depth must not be negative")
        return self


config = Config()
