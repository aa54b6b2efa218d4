"""Configuration management for the assistant gateway."""

import os
from typing import Optional
from pydantic import BaseModel, Field

from .errors import BackendUnconfigured
from .models import CostAlertPolicy, RateLimitConfig, RuntimeMode

AI_KEY_ENV_VARS = ("GOOGLE_AI_API_KEY", "NEXT_PUBLIC_GOOGLE_AI_API_KEY")
DEFAULT_AI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


class GatewayConfig(BaseModel):
    """Main configuration for the assistant gateway."""

    # Server settings
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    environment: RuntimeMode = RuntimeMode.DEVELOPMENT
    log_level: str = "INFO"

    # Credentials
    service_api_key: Optional[str] = None
    api_key_header: str = "x-api-key"
    ai_api_key: Optional[str] = None
    admin_api_key: Optional[str] = None
    admin_key_header: str = "x-admin-key"

    # AI backend
    ai_model: str = "gemini-pro"
    ai_base_url: str = DEFAULT_AI_BASE_URL
    ai_timeout: float = Field(default=30.0, gt=0)

    # Bucket store
    redis_url: str = "redis://localhost:6379"
    redis_password: Optional[str] = None
    redis_tls: bool = False
    redis_socket_timeout: float = Field(default=1.0, gt=0)

    # Rate limiting
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    bucket_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)

    # Metrics settings
    cost_alert_threshold: float = Field(default=50.0, ge=0)
    cost_alert_policy: CostAlertPolicy = CostAlertPolicy.PER_CALL
    metrics_debug: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment == RuntimeMode.PRODUCTION

    @property
    def admin_key(self) -> Optional[str]:
        """Admin credential, unusable when unset or equal to the service key."""
        if not self.admin_api_key or self.admin_api_key == self.service_api_key:
            return None
        return self.admin_api_key

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Create configuration from environment variables."""
        config = cls()

        if host := os.getenv("GATEWAY_HOST"):
            config.host = host
        if port := os.getenv("GATEWAY_PORT"):
            config.port = int(port)
        if level := os.getenv("LOG_LEVEL"):
            config.log_level = level.upper()

        env = os.getenv("GATEWAY_ENV") or os.getenv("NODE_ENV") or os.getenv("ENVIRONMENT")
        if env:
            try:
                config.environment = RuntimeMode(env.strip().lower())
            except ValueError:
                config.environment = RuntimeMode.DEVELOPMENT

        config.service_api_key = os.getenv("SERVICE_API_KEY") or None
        if header := os.getenv("GATEWAY_API_KEY_HEADER"):
            config.api_key_header = header.lower()
        config.ai_api_key = try_get_ai_key()
        config.admin_api_key = os.getenv("ADMIN_API_KEY") or None

        if model := os.getenv("AI_MODEL"):
            config.ai_model = model
        if base_url := os.getenv("AI_BASE_URL"):
            config.ai_base_url = base_url
        if timeout := os.getenv("AI_TIMEOUT_SECONDS"):
            config.ai_timeout = float(timeout)

        if redis_url := os.getenv("REDIS_URL"):
            config.redis_url = redis_url
        config.redis_password = os.getenv("REDIS_PASSWORD") or None
        config.redis_tls = _env_flag("REDIS_TLS_ENABLED")
        if socket_timeout := os.getenv("REDIS_SOCKET_TIMEOUT"):
            config.redis_socket_timeout = float(socket_timeout)

        capacity = os.getenv("RATE_LIMIT_CAPACITY")
        refill = os.getenv("RATE_LIMIT_REFILL_PER_SECOND")
        if capacity or refill:
            config.rate_limit = RateLimitConfig(
                capacity=int(capacity) if capacity else config.rate_limit.capacity,
                refill_per_second=float(refill) if refill else config.rate_limit.refill_per_second,
            )

        if threshold := os.getenv("COST_ALERT_THRESHOLD"):
            config.cost_alert_threshold = float(threshold)
        if policy := os.getenv("COST_ALERT_POLICY"):
            config.cost_alert_policy = CostAlertPolicy(policy.strip().lower())
        config.metrics_debug = _env_flag("METRICS_DEBUG")

        return config


def try_get_ai_key() -> Optional[str]:
    """Return the AI backend credential from the environment, if any."""
    for name in AI_KEY_ENV_VARS:
        if value := os.getenv(name):
            return value
    return None


def get_ai_key() -> str:
    """Return the AI backend credential or raise BackendUnconfigured."""
    key = try_get_ai_key()
    if not key:
        raise BackendUnconfigured()
    return key


# Global configuration instance
_config: Optional[GatewayConfig] = None


def get_config() -> GatewayConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = GatewayConfig.from_env()
    return _config


def set_config(config: Optional[GatewayConfig]) -> None:
    """Set the global configuration instance (None re-reads the environment)."""
    global _config
    _config = config
