import json
import logging
import os
import tempfile
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

VIDEO_FORMAT_CHAIN = (
    "bestvideo[vcodec^=avc1]+bestaudio[ext=m4a]/"
    "bestvideo[ext=mp4]+bestaudio[ext=m4a]/"
    "bestvideo+bestaudio/best"
)


class RedisConfig(BaseModel):
    enabled: bool = Field(default=False, description="Use Redis for the probe cache")
    url: str = Field(default="redis://redis:6379", description="Redis connection URL")
    socket_timeout: int = Field(default=5, description="Redis socket timeout in seconds")
    probe_cache_ttl: int = Field(default=300, ge=1, description="Probe cache TTL in seconds")


class RateLimitConfig(BaseModel):
    enabled: bool = Field(default=True, description="Enable rate limiting")
    max_requests: int = Field(default=30, ge=1, description="Max requests per window")
    window_seconds: int = Field(default=60, ge=1, description="Rate limit window in seconds")
    sweep_interval_seconds: int = Field(default=300, ge=1, description="Stale entry sweep interval")
    use_peer_address: bool = Field(default=False, description="Fall back to the socket peer address before 'unknown'")


class ExtractorConfig(BaseModel):
    binary: str = Field(default="yt-dlp", description="Extractor executable")
    extra_paths: list = Field(
        default_factory=lambda: [os.path.join("~", ".deno", "bin")],
        description="Directories prepended to PATH for the extractor and its JS runtime",
    )
    js_runtime: Optional[str] = Field(default=None, description="JS runtime (e.g., deno:/usr/local/bin/deno)")
    socket_timeout: int = Field(default=10, ge=1, description="Socket timeout for yt-dlp")
    probe_timeout_seconds: float = Field(default=30.0, gt=0, description="Metadata probe timeout")
    download_timeout_seconds: float = Field(default=600.0, gt=0, description="Download timeout")
    terminate_grace_seconds: float = Field(default=5.0, gt=0, description="Wait after SIGTERM before SIGKILL")
    temp_dir: str = Field(default_factory=tempfile.gettempdir, description="Directory for downloaded files")
    video_format: str = Field(default=VIDEO_FORMAT_CHAIN, description="Format chain for video downloads")
    audio_format: str = Field(default="mp3", description="Target codec for audio extraction")
    stderr_max_lines: int = Field(default=50, ge=1, description="Extractor stderr lines kept for errors")


class RelayConfig(BaseModel):
    chunk_size: int = Field(default=256 * 1024, ge=1024, description="Read size for relayed bodies")
    upstream_timeout: float = Field(default=30.0, gt=0, description="Upstream connect/read timeout")


class PolicyConfig(BaseModel):
    allowed_source_domains: list = Field(
        default=[
            "youtube.com", "youtu.be",
            "twitter.com", "x.com",
            "instagram.com", "threads.net",
            "facebook.com", "fb.watch",
            "tiktok.com",
            "xiaohongshu.com", "xhslink.com",
            "bilibili.com", "b23.tv",
            "vimeo.com", "dailymotion.com",
            "reddit.com", "twitch.tv", "soundcloud.com",
        ],
        description="Source platforms accepted by /resolve and /extract-stream",
    )
    tracking_param_domains: list = Field(
        default=["xiaohongshu.com", "xhslink.com", "twitter.com", "x.com"],
        description="Platforms whose query strings are stripped",
    )
    allowed_relay_domains: list = Field(
        default=[
            "googlevideo.com", "ytimg.com",
            "twimg.com",
            "cdninstagram.com", "fbcdn.net",
            "tiktokcdn.com", "tiktokcdn-us.com", "tiktokv.com",
            "xhscdn.com",
            "bilivideo.com", "bilivideo.cn",
            "vimeocdn.com", "akamaized.net",
            "dmcdn.net", "redd.it", "sndcdn.com",
        ],
        description="CDN domains accepted by /relay",
    )


class SecurityConfig(BaseModel):
    enable_ssrf_protection: bool = Field(default=True, description="Enable SSRF protection on /relay")
    resolve_dns: bool = Field(default=True, description="Also block relay hosts resolving to private IPs")
    trusted_relay_hosts: list = Field(default=[], description="Exact hostnames exempt from relay checks")


class ResolverConfig(BaseModel):
    api_url: str = Field(default="http://localhost:9000", description="Upstream resolver (Cobalt-style) API")
    app_url: str = Field(default="http://localhost:8000", description="Public URL of this service")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="[%(request_id)s] %(message)s", description="Log format")
    enable_rich: bool = Field(default=True, description="Enable rich console logging")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class I18nConfig(BaseModel):
    default_locale: str = Field(default="en", description="Default locale")
    supported_locales: list = Field(default=["en", "zh"], description="Supported locales")


class ApiConfig(BaseModel):
    title: str = Field(default="vidrelay", description="API title")
    description: str = Field(default="yt-dlp download relay", description="API description")
    version: str = Field(default="1.0.0", description="API version")
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    debug: bool = Field(default=False, description="Enable debug mode")


class Config(BaseSettings):
    """Main configuration model"""

    model_config = SettingsConfigDict(
        env_prefix="VIDRELAY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    api: ApiConfig = Field(default_factory=ApiConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    i18n: I18nConfig = Field(default_factory=I18nConfig)

    @classmethod
    def load_from_file(cls, config_path: str = "config.json") -> "Config":
        """Load configuration from JSON file, environment filling the gaps"""
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_data = json.load(f)
            logger.info(f"Configuration loaded from {config_path}")
            return cls(**config_data)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config from {config_path}: {str(e)}")
            logger.info("Using environment/default configuration")
            return cls()


def load_config() -> Config:
    """Load configuration with priority: config.json > env vars > defaults"""
    config_path = os.getenv("CONFIG_PATH", "config.json")

    if os.path.exists(config_path):
        return Config.load_from_file(config_path)

    logger.debug(f"Config file not found at {config_path}, using environment variables")
    return Config()


# Global config instance
config = load_config()
