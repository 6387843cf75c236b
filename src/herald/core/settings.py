"""Application settings and configuration.

Every tunable of the federation engine lives here. Settings are loaded from
environment variables (or a ``.env`` file) with defaults suitable for a
single-instance deployment.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Federation-specific values use the ``HERALD_`` prefix; database, security
    and CORS values keep their conventional names.
    """

    # Application metadata
    app_name: str = Field(default="Herald", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    # Public origin of this instance, used to mint actor and activity ids
    base_url: str = Field(default="http://localhost:8000", alias="HERALD_BASE_URL")
    user_agent: str = Field(default="Herald/0.1 (+federation)", alias="HERALD_USER_AGENT")

    # Security and authentication
    secret_key: str = Field(alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")
    operator_role: str = Field(default="operator", alias="HERALD_OPERATOR_ROLE")

    # Database configuration
    database_url: str = Field(default="sqlite:///./herald.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Request signing
    key_size: int = Field(default=2048, alias="HERALD_KEY_SIZE")
    signature_max_skew_seconds: int = Field(default=300, alias="HERALD_SIGNATURE_MAX_SKEW_SECONDS")

    # Outbound HTTP
    request_timeout_seconds: float = Field(default=30.0, alias="HERALD_REQUEST_TIMEOUT_SECONDS")
    actor_fetch_timeout_seconds: float = Field(
        default=10.0,
        alias="HERALD_ACTOR_FETCH_TIMEOUT_SECONDS",
    )

    # Remote identity cache
    actor_cache_ttl_seconds: int = Field(default=86_400, alias="HERALD_ACTOR_CACHE_TTL_SECONDS")
    actor_cache_prewarm_limit: int = Field(default=50, alias="HERALD_ACTOR_CACHE_PREWARM_LIMIT")
    resolve_concurrency: int = Field(default=5, alias="HERALD_RESOLVE_CONCURRENCY")

    # Domain blocklist seed, merged with the blocked_domains table
    blocked_domains: list[str] = Field(default_factory=list, alias="BLOCKED_DOMAINS")

    # Fan-out and delivery
    fanout_batch_size: int = Field(default=100, alias="HERALD_FANOUT_BATCH_SIZE")
    batch_failure_threshold: float = Field(default=0.5, alias="HERALD_BATCH_FAILURE_THRESHOLD")
    delivery_concurrency: int = Field(default=5, alias="HERALD_DELIVERY_CONCURRENCY")
    delivery_chunk_pause_seconds: float = Field(
        default=0.5,
        alias="HERALD_DELIVERY_CHUNK_PAUSE_SECONDS",
    )
    retry_base_seconds: float = Field(default=5.0, alias="HERALD_RETRY_BASE_SECONDS")
    retry_cap_seconds: float = Field(default=3600.0, alias="HERALD_RETRY_CAP_SECONDS")
    max_resolution_attempts: int = Field(default=8, alias="HERALD_MAX_RESOLUTION_ATTEMPTS")

    # Queue partitioning and worker loop
    partition_count: int = Field(default=4, alias="HERALD_PARTITION_COUNT")
    claim_limit: int = Field(default=10, alias="HERALD_CLAIM_LIMIT")
    processing_lease_seconds: int = Field(default=600, alias="HERALD_PROCESSING_LEASE_SECONDS")
    worker_enabled: bool = Field(default=True, alias="HERALD_WORKER_ENABLED")
    worker_poll_interval_seconds: float = Field(
        default=5.0,
        alias="HERALD_WORKER_POLL_INTERVAL_SECONDS",
    )

    # Health thresholds
    health_window_minutes: int = Field(default=10, alias="HERALD_HEALTH_WINDOW_MINUTES")
    health_queue_warn: int = Field(default=500, alias="HERALD_HEALTH_QUEUE_WARN")
    health_queue_fail: int = Field(default=1000, alias="HERALD_HEALTH_QUEUE_FAIL")
    health_db_latency_warn_ms: float = Field(
        default=500.0,
        alias="HERALD_HEALTH_DB_LATENCY_WARN_MS",
    )
    health_error_rate_warn: float = Field(default=0.5, alias="HERALD_HEALTH_ERROR_RATE_WARN")

    # CORS configuration
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def public_base_url(self) -> str:
        """Return the base URL without a trailing slash."""
        return self.base_url.rstrip("/")


settings = Settings()  # type: ignore[call-arg]
