from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "AliasMessenger"
    PROJECT_VERSION: str = "1.0.0"
    DESCRIPTION: str = "Identity and message lifecycle backend for AliasMessenger"

    DATABASE_URI: str = "sqlite:///./app.db"

    # Endpoints
    API_V1_STR: str = "/api/v1"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Sessions are issued by the auth service, we only resolve them
    SESSION_COOKIE_NAME: str = "sessionId"
    SESSION_TIMEOUT_MINUTES: int = 60 * 24
    REDIS_SESSION_PREFIX: str = "session:"

    # CORS Settings
    ALLOWED_ORIGINS: str = "https://localhost,https://127.0.0.1"
    ALLOW_CREDENTIALS: bool = True
    ALLOW_METHODS: list[str] = ["*"]
    ALLOW_HEADERS: list[str] = ["*"]

    # Secret chat key wrapping
    CONVERSATION_KEY_SECRET: str = "change-me"
    PBKDF2_ITERATIONS: int = 480000
    PBKDF2_SALT_SIZE: int = 32

    # Identity policy
    MAX_IDENTITIES_PER_USER: int = 10
    MAX_PROTECTED_IDENTITIES: int = 3
    DEFAULT_MAX_FORWARD_CHAIN: int = 10
    IDENTITY_PAGE_LIMIT: int = 50
    BULK_OPERATION_LIMIT: int = 10
    SEARCH_MIN_LENGTH: int = 2

    # Message policy
    MESSAGE_EDIT_WINDOW_MINUTES: int = 30
    DELETE_FOR_EVERYONE_WINDOW_HOURS: int = 24
    FORWARD_TARGET_LIMIT: int = 10
    MESSAGE_PAGE_LIMIT: int = 100

    # Expiry sweep
    EXPIRY_SWEEP_ENABLED: bool = True
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 60
    EXPIRY_SWEEP_BATCH_SIZE: int = 500
    EXPIRY_SWEEP_LOCK_TTL_SECONDS: int = 55


settings = Settings()
