"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.

Feed tunables are not read from here directly by the engine; call
``settings.feed_config()`` and inject the resulting ``FeedConfig``.
"""
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings


class FeedConfig(BaseModel):
    """Immutable knobs shared by the feed service, builders and scorer."""

    model_config = ConfigDict(frozen=True)

    max_feed_size: int = 200
    cache_ttl_seconds: int = 60 * 15
    cache_timeout_seconds: float = 0.5
    high_engagement_threshold: float = 25.0
    high_engagement_min_likes: int = 5
    high_engagement_min_impressions: int = 200
    candidate_multiplier: int = 3        # widen the net before engagement filtering
    recency_window_days: float = 30.0
    preference_weight: float = 0.2
    preference_source_limit: int = 50
    followed_memorial_limit: int = 500
    geo_bucket_precision: int = 2        # ~1.1 km bins
    default_locale: str = "en-US"
    share_base_url: str = "https://share.welcometotheafterlife.app"
    ios_app_schema: str = "theafterlife"
    android_app_schema: str = "com.thehereafter.afterlife"


class Settings(BaseSettings):
    # ── Database (MySQL-protocol compatible) ───────────────────────────────
    db_host: str = "mysql"
    db_port: int = 3306
    db_user: str = "root"
    db_password: str = ""
    db_database: str = "memorials"
    database_url_override: str = ""

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+aiomysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_database}"
        )

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379

    # ── Feed engine ────────────────────────────────────────────────────────
    feed_max_size: int = 200
    feed_cache_ttl: int = 900            # 15 min TTL for materialized lanes
    feed_high_engagement_threshold: float = 25.0
    feed_high_engagement_min_likes: int = 5
    feed_high_engagement_min_impressions: int = 200
    feed_candidate_multiplier: int = 3
    feed_recency_window_days: float = 30.0
    feed_preference_weight: float = 0.2
    feed_preference_source_limit: int = 50
    feed_followed_memorial_limit: int = 500
    geo_bucket_precision: int = 2
    cache_timeout_seconds: float = 0.5
    default_locale: str = "en-US"

    # ── Share links ────────────────────────────────────────────────────────
    share_base_url: str = "https://share.welcometotheafterlife.app"
    ios_app_schema: str = "theafterlife"
    android_app_schema: str = "com.thehereafter.afterlife"

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "memorial-feed"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def feed_config(self) -> FeedConfig:
        return FeedConfig(
            max_feed_size=self.feed_max_size,
            cache_ttl_seconds=self.feed_cache_ttl,
            cache_timeout_seconds=self.cache_timeout_seconds,
            high_engagement_threshold=self.feed_high_engagement_threshold,
            high_engagement_min_likes=self.feed_high_engagement_min_likes,
            high_engagement_min_impressions=self.feed_high_engagement_min_impressions,
            candidate_multiplier=self.feed_candidate_multiplier,
            recency_window_days=self.feed_recency_window_days,
            preference_weight=self.feed_preference_weight,
            preference_source_limit=self.feed_preference_source_limit,
            followed_memorial_limit=self.feed_followed_memorial_limit,
            geo_bucket_precision=self.geo_bucket_precision,
            default_locale=self.default_locale,
            share_base_url=self.share_base_url,
            ios_app_schema=self.ios_app_schema,
            android_app_schema=self.android_app_schema,
        )


settings = Settings()
