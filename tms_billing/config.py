import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Mapping

from dotenv import load_dotenv

load_dotenv()

PAYPAL_SANDBOX_BASE = "https://api-m.sandbox.paypal.com"
PAYPAL_LIVE_BASE = "https://api-m.paypal.com"


def _env(environ: Mapping[str, str], name: str, default: str = "") -> str:
    """Read `name`, falling back to the `VITE_`-prefixed key the frontend build uses."""
    value = environ.get(name)
    if value is None or not value.strip():
        value = environ.get(f"VITE_{name}")
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = _env(environ, name, str(default))
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        return default


def _is_truthy(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_csv(raw: str) -> list[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./billing.db"
    log_level: str = "INFO"
    app_env: str = "development"

    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_base: str = "https://api.razorpay.com/v1"
    razorpay_startup_plan_id: str = ""
    razorpay_startup_plan_id_monthly: str = ""
    razorpay_startup_plan_id_yearly: str = ""

    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_environment: str = "sandbox"
    paypal_webhook_id: str = ""

    frontend_url: str = "http://localhost:5173"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    gateway_timeout_seconds: int = 15
    trial_days: int = 7

    resend_api_key: str = ""
    resend_from_email: str = "billing@trackmystartup.com"
    resend_from_name: str = "TrackMyStartup"

    verify_rate_limit: int = 20
    verify_rate_window_seconds: int = 900
    plan_change_rate_limit: int = 8
    plan_change_rate_window_seconds: int = 900
    webhook_rate_limit: int = 120
    webhook_rate_window_seconds: int = 60
    rate_limit_backend: str = "database"
    trust_proxy_headers: bool = False
    trusted_proxy_ips: list[str] = field(default_factory=list)

    @property
    def razorpay_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @property
    def paypal_configured(self) -> bool:
        return bool(self.paypal_client_id and self.paypal_client_secret)

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_environment.lower() == "production":
            return PAYPAL_LIVE_BASE
        return PAYPAL_SANDBOX_BASE

    def default_startup_plan_id(self, interval: str = "monthly") -> str:
        if interval == "yearly":
            return self.razorpay_startup_plan_id_yearly or self.razorpay_startup_plan_id
        return self.razorpay_startup_plan_id_monthly or self.razorpay_startup_plan_id

    def trial_period_seconds(self, trial_days: int | None = None, trial_seconds: int | None = None) -> int:
        if trial_seconds is not None:
            return max(0, int(trial_seconds))
        # Outside production a short trial keeps the sandbox charge flow testable.
        if not self.is_production:
            return 120
        return int(trial_days or self.trial_days) * 24 * 60 * 60


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    return Settings(
        database_url=_env(env, "DATABASE_URL", "sqlite:///./billing.db"),
        log_level=_env(env, "LOG_LEVEL", "INFO"),
        app_env=_env(env, "APP_ENV", _env(env, "NODE_ENV", "development")),
        razorpay_key_id=_env(env, "RAZORPAY_KEY_ID"),
        razorpay_key_secret=_env(env, "RAZORPAY_KEY_SECRET"),
        razorpay_webhook_secret=_env(env, "RAZORPAY_WEBHOOK_SECRET"),
        razorpay_api_base=_env(env, "RAZORPAY_API_BASE", "https://api.razorpay.com/v1").rstrip("/"),
        razorpay_startup_plan_id=_env(env, "RAZORPAY_STARTUP_PLAN_ID"),
        razorpay_startup_plan_id_monthly=_env(env, "RAZORPAY_STARTUP_PLAN_ID_MONTHLY"),
        razorpay_startup_plan_id_yearly=_env(env, "RAZORPAY_STARTUP_PLAN_ID_YEARLY"),
        paypal_client_id=_env(env, "PAYPAL_CLIENT_ID"),
        paypal_client_secret=_env(env, "PAYPAL_CLIENT_SECRET"),
        paypal_environment=_env(env, "PAYPAL_ENVIRONMENT", "sandbox"),
        paypal_webhook_id=_env(env, "PAYPAL_WEBHOOK_ID"),
        frontend_url=_env(env, "FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        cors_origins=_parse_csv(_env(env, "CORS_ORIGINS", "*")) or ["*"],
        gateway_timeout_seconds=_env_int(env, "GATEWAY_TIMEOUT_SECONDS", 15),
        trial_days=_env_int(env, "TRIAL_DAYS", 7),
        resend_api_key=_env(env, "RESEND_API_KEY"),
        resend_from_email=_env(env, "RESEND_FROM_EMAIL", "billing@trackmystartup.com"),
        resend_from_name=_env(env, "RESEND_FROM_NAME", "TrackMyStartup"),
        verify_rate_limit=_env_int(env, "VERIFY_RATE_LIMIT", 20),
        verify_rate_window_seconds=_env_int(env, "VERIFY_RATE_WINDOW_SECONDS", 900),
        plan_change_rate_limit=_env_int(env, "PLAN_CHANGE_RATE_LIMIT", 8),
        plan_change_rate_window_seconds=_env_int(env, "PLAN_CHANGE_RATE_WINDOW_SECONDS", 900),
        webhook_rate_limit=_env_int(env, "WEBHOOK_RATE_LIMIT", 120),
        webhook_rate_window_seconds=_env_int(env, "WEBHOOK_RATE_WINDOW_SECONDS", 60),
        rate_limit_backend=_env(env, "RATE_LIMIT_BACKEND", "database").lower(),
        trust_proxy_headers=_is_truthy(_env(env, "TRUST_PROXY_HEADERS", "false")),
        trusted_proxy_ips=_parse_csv(_env(env, "TRUSTED_PROXY_IPS")),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
