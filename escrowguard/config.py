from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "postgresql+asyncpg://escrowguard:escrowguard_dev@db:5432/escrowguard"

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # Security
    SECRET_KEY: str = "dev-secret-key-not-for-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    ALLOWED_ORIGINS: str = "*"

    # SendGrid
    SENDGRID_API_KEY: str = "mock_sendgrid_key"
    FROM_EMAIL: str = "no-reply@escrowguard.app"

    # AI Provider (OpenAI-compatible)
    AI_API_KEY: str = "mock_ai_key"
    AI_BASE_URL: str = "https://api.openai.com/v1"
    AI_MODEL: str = "gpt-4o"
    AI_REQUEST_TIMEOUT_SECONDS: float = 60.0

    # Stripe
    STRIPE_SECRET_KEY: str = "mock_stripe_key"
    STRIPE_WEBHOOK_SECRET: str = ""

    # Dispute phases (hours)
    NEGOTIATION_HOURS: int = 48
    MEDIATION_HOURS: int = 48
    REVIEW_HOURS: int = 24
    DEADLINE_REMINDER_HOURS: int = 6

    # AI capability retry budget
    MEDIATION_MAX_ATTEMPTS: int = 2
    DECISION_MAX_ATTEMPTS: int = 3

    # Silence of the party who opened the dispute counts as acceptance of
    # the binding decision once the other party has accepted.
    OPENER_SILENCE_IS_ACCEPTANCE: bool = True

    # Dispute fees
    DISPUTE_OPEN_FEE: str = "10.00"
    DISPUTE_ESCALATION_FEE: str = "25.00"
    DISPUTE_FEE_CURRENCY: str = "chf"
    FEE_RETRY_DELAY_HOURS: list[int] = [1, 24, 72]

    # Settlement outbox
    SETTLEMENT_MAX_ATTEMPTS: int = 5

    # Scheduler
    SCHEDULER_INTERVAL_MINUTES: int = 5

    # App
    APP_ENV: str = "development"
    APP_URL: str = "http://localhost:8000"
    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
