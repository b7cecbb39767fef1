"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Productivity Billing API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Public URL of the web app, used for Stripe redirect targets
    APP_URL: str = "http://localhost:3000"

    # Database (asyncpg in production, aiosqlite for local development)
    DATABASE_URL: str = "sqlite+aiosqlite:///./billing.db"

    # Security - JWT issued by the hosted auth provider
    SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"

    # CORS
    CORS_ORIGINS: list[str] = []

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_ID_PRO_MONTHLY: str = ""
    STRIPE_PRICE_ID_PRO_YEARLY: str = ""

    # Billing
    FREE_PLAN_ID: str = "free"

    # Logging
    LOG_JSON: bool = True

    @property
    def CHECKOUT_SUCCESS_URL(self) -> str:
        """Redirect target after a completed checkout."""
        return f"{self.APP_URL}/settings?success=true&tab=subscription"

    @property
    def CHECKOUT_CANCEL_URL(self) -> str:
        """Redirect target after an abandoned checkout."""
        return f"{self.APP_URL}/pricing?canceled=true"

    @property
    def PORTAL_RETURN_URL(self) -> str:
        """Return target from the Stripe billing portal."""
        return f"{self.APP_URL}/settings?tab=subscription"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
