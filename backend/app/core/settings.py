import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _getenv_csv_set(name: str) -> set[str]:
    raw = _getenv(name)
    if raw is None:
        return set()
    parts = [p.strip().lower() for p in raw.split(",")]
    return {p for p in parts if p}


_DEV_JWT_SECRET = "dev-only-jwt-secret-change-me-0123456789"


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./sql_app.db") or "sqlite:///./sql_app.db"
        self.db_auto_create = _getenv_bool("DB_AUTO_CREATE", default=True)
        self.db_retry_attempts = max(1, _getenv_int("DB_RETRY_ATTEMPTS", 3))
        self.db_retry_delay_s = max(0.0, _getenv_float("DB_RETRY_DELAY_S", 0.05))

        self.jwt_secret = _getenv("JWT_SECRET") or _DEV_JWT_SECRET
        self.jwt_algorithm = _getenv("JWT_ALGORITHM", "HS256") or "HS256"
        self.access_token_ttl_minutes = _getenv_int("ACCESS_TOKEN_TTL_MINUTES", 120)
        self.invite_expiry_hours = _getenv_int("INVITE_EXPIRY_HOURS", 24)
        self.invite_token_ttl_days = _getenv_int("INVITE_TOKEN_TTL_DAYS", 7)
        self.bcrypt_rounds = _getenv_int("BCRYPT_ROUNDS", 12)

        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")
        self.frontend_url = _getenv("FRONTEND_URL", "http://localhost:3000") or "http://localhost:3000"
        self.admin_emails = _getenv_csv_set("ADMIN_EMAILS")

        self.lemonsqueezy_api_key = _getenv("LEMONSQUEEZY_API_KEY")
        self.lemonsqueezy_store_id = _getenv("LEMONSQUEEZY_STORE_ID")
        self.lemonsqueezy_webhook_secret = _getenv("LEMONSQUEEZY_WEBHOOK_SECRET")
        self.lemonsqueezy_variant_starter = _getenv("LEMONSQUEEZY_VARIANT_STARTER")
        self.lemonsqueezy_variant_pro = _getenv("LEMONSQUEEZY_VARIANT_PRO")
        self.lemonsqueezy_variant_team = _getenv("LEMONSQUEEZY_VARIANT_TEAM")
        self.lemonsqueezy_variant_credits_50 = _getenv("LEMONSQUEEZY_VARIANT_CREDITS_50")
        self.lemonsqueezy_variant_credits_100 = _getenv("LEMONSQUEEZY_VARIANT_CREDITS_100")
        self.lemonsqueezy_variant_pay_per_image = _getenv("LEMONSQUEEZY_VARIANT_PAY_PER_IMAGE")

        self.smtp_host = _getenv("SMTP_HOST")
        self.smtp_port = _getenv_int("SMTP_PORT", 587)
        self.smtp_user = _getenv("SMTP_USER")
        self.smtp_password = _getenv("SMTP_PASSWORD")
        self.smtp_from_address = _getenv("SMTP_FROM_ADDRESS", "noreply@example.com") or "noreply@example.com"

        self.scheduler_enabled = _getenv_bool("SCHEDULER_ENABLED", default=True)
        self.invite_sweep_interval_minutes = max(1, _getenv_int("INVITE_SWEEP_INTERVAL_MINUTES", 60))
        self.purchase_reconcile_interval_minutes = max(1, _getenv_int("PURCHASE_RECONCILE_INTERVAL_MINUTES", 15))
        self.pending_purchase_ttl_hours = max(1, _getenv_int("PENDING_PURCHASE_TTL_HOURS", 24))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)

    def lemonsqueezy_variants(self) -> dict[str, str | None]:
        return {
            "starter": self.lemonsqueezy_variant_starter,
            "pro": self.lemonsqueezy_variant_pro,
            "team": self.lemonsqueezy_variant_team,
            "extra_credits_50": self.lemonsqueezy_variant_credits_50,
            "extra_credits_100": self.lemonsqueezy_variant_credits_100,
            "pay_per_image": self.lemonsqueezy_variant_pay_per_image,
        }

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:3000", "http://localhost:8000"]
        if raw.strip() == "*":
            return ["*"]
        origins = [o.strip() for o in raw.split(",") if o.strip()]
        return origins

    def validate(self) -> None:
        if self.is_production and self.jwt_secret == _DEV_JWT_SECRET:
            raise RuntimeError("JWT_SECRET must be set in production")


settings = Settings()
