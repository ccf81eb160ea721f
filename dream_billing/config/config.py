import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_env_bool(name: str, default: bool = False) -> bool:
    raw = _get_env_var(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _get_env_float(name: str, default: float) -> float:
    raw = _get_env_var(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_env_csv(name: str, default: list[str]) -> list[str]:
    raw = _get_env_var(name)
    if raw is None:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


class Config:
    """Configuration class for the billing service"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    LOG_LEVEL = _get_env_var("LOG_LEVEL", "INFO")

    # Supabase Configuration (service role key: the store bypasses row level security)
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")
    SUPABASE_TIMEOUT_SECONDS = _get_env_float("SUPABASE_TIMEOUT_SECONDS", 30.0)

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    STRIPE_TIMEOUT_SECONDS = _get_env_float("STRIPE_TIMEOUT_SECONDS", 10.0)

    # Operator-configured price table: plan id -> Stripe price id
    STRIPE_PRICE_MONTHLY = _get_env_var("STRIPE_PRICE_MONTHLY")
    STRIPE_PRICE_SIX_MONTH = _get_env_var("STRIPE_PRICE_SIX_MONTH")

    SITE_URL = _get_env_var("SITE_URL", "http://localhost:5173")

    # Checkout verification must answer a waiting user within this bound
    VERIFY_TIMEOUT_SECONDS = _get_env_float("VERIFY_TIMEOUT_SECONDS", 20.0)

    # Reconciliation sweep
    ENABLE_SUBSCRIPTION_SWEEP = _get_env_bool("ENABLE_SUBSCRIPTION_SWEEP", True)
    SUBSCRIPTION_SWEEP_INTERVAL_MINUTES = int(
        _get_env_float("SUBSCRIPTION_SWEEP_INTERVAL_MINUTES", 15)
    )

    # Admin
    ADMIN_API_KEY = _get_env_var("ADMIN_API_KEY")

    # Sentry
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_env_bool("SENTRY_ENABLED", True)
    SENTRY_ENVIRONMENT = _get_env_var("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_TRACES_SAMPLE_RATE = _get_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.1)

    CORS_ALLOWED_ORIGINS = _get_env_csv(
        "CORS_ALLOWED_ORIGINS",
        ["http://localhost:5173", "http://localhost:3000", "http://127.0.0.1:5173"],
    )

    @classmethod
    def price_table(cls) -> dict[str, str]:
        """Plan id -> Stripe price id, only for plans that are configured."""
        table = {
            "monthly": cls.STRIPE_PRICE_MONTHLY,
            "6-month": cls.STRIPE_PRICE_SIX_MONTH,
        }
        return {plan_id: price for plan_id, price in table.items() if price}

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")
        if not cls.STRIPE_SECRET_KEY:
            missing_vars.append("STRIPE_SECRET_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=your_stripe_secret_key\n"
                "STRIPE_WEBHOOK_SECRET=your_webhook_signing_secret (required for webhooks)"
            )

        return True

    @classmethod
    def validate_critical_env_vars(cls) -> tuple[bool, list[str]]:
        """
        Validate that all critical environment variables are set.

        Returns:
            tuple: (is_valid, missing_vars)
        """
        critical_vars = {
            "SUPABASE_URL": cls.SUPABASE_URL,
            "SUPABASE_KEY": cls.SUPABASE_KEY,
            "STRIPE_SECRET_KEY": cls.STRIPE_SECRET_KEY,
            "STRIPE_WEBHOOK_SECRET": cls.STRIPE_WEBHOOK_SECRET,
        }

        missing = [name for name, value in critical_vars.items() if not value]
        return len(missing) == 0, missing
