import logging
import warnings

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Environment
    environment: str = "development"  # development | test | production
    log_level: str = "INFO"

    # Server
    brokerage_host: str = "0.0.0.0"
    brokerage_port: int = 8000

    # Database (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/brokerage.db"

    # Operator auth
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_hours: int = 24

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Pricing and revenue split
    platform_fee_pct: float = 0.05
    seller_share_pct: float = 0.80  # of cost; the worker reward is the remainder
    base_execution_fee: float = 0.01
    min_charge_cents: int = 50
    stripe_secret_key: str = ""  # empty = simulated processor
    crypto_fee_pct: float = 0.03

    # API key defaults
    default_rate_limit_per_minute: int = 60
    default_rate_limit_per_hour: int = 1000
    default_daily_budget: float = 100.0

    # Workers and tasks
    worker_error_threshold: int = 5
    default_agent_daily_budget: float = 100.0
    task_budget_agent_pct: float = 0.10
    task_budget_revenue_pct: float = 0.05

    # Execution engine
    execution_workers: int = 4
    execution_queue_maxsize: int = 1000
    simulated_failure_rate: float = 0.05
    simulated_latency_ms_min: int = 100
    simulated_latency_ms_max: int = 500
    target_timeout_seconds: float = 30.0

    # Credit wallet
    wallet_signup_credits: float = 10.0

    # Pending payments
    payment_max_retries: int = 5
    payment_retry_base_seconds: int = 300
    payment_retry_max_seconds: int = 3600
    payment_batch_size: int = 10
    # A row left in "processing" longer than this by a crashed pass is claimed again
    payment_claim_lease_seconds: int = 600

    # Demand radar
    signal_batch_size: int = 50
    volume_ceiling: int = 500
    auto_generate_offers: bool = True
    featured_score_threshold: float = 85.0

    # Background loops
    background_jobs_enabled: bool = True
    demand_interval_seconds: int = 300
    market_scan_interval_seconds: int = 3600
    payment_queue_interval_seconds: int = 60

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()

# Warn on insecure defaults (logged at startup, not a hard error for dev convenience)
_logger = logging.getLogger("brokerage.config")
_INSECURE_SECRETS = {
    "dev-secret-change-in-production",
    "change-me-to-a-random-string",
}


def validate_security_posture(cfg: Settings) -> None:
    is_prod = cfg.environment.lower() in {"production", "prod"}

    if cfg.jwt_secret_key in _INSECURE_SECRETS:
        if is_prod:
            raise RuntimeError(
                "FATAL: JWT_SECRET_KEY is set to an insecure default. "
                "Set a strong random secret via the JWT_SECRET_KEY environment variable before deploying to production."
            )
        warnings.warn(
            "JWT_SECRET_KEY is set to the default insecure value. "
            "Set a strong random secret via the JWT_SECRET_KEY environment variable for production.",
            stacklevel=1,
        )

    if cfg.cors_origins == "*":
        if is_prod:
            raise RuntimeError(
                "FATAL: CORS_ORIGINS cannot be '*' in production. "
                "Set explicit trusted origins via the CORS_ORIGINS environment variable."
            )
        _logger.warning(
            "CORS_ORIGINS is set to '*' (allow all). "
            "Configure specific origins for production via the CORS_ORIGINS environment variable."
        )

    if is_prod and not cfg.stripe_secret_key:
        _logger.warning("STRIPE_SECRET_KEY is not set: payments run in simulated mode")


validate_security_posture(settings)
