"""
Application Configuration for the chat sync layer
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path

# Get the project root directory (where .env file is located)
PROJECT_ROOT = Path(__file__).parent.parent.parent

DAY_MS = 1000 * 60 * 60 * 24


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Firebase Configuration
    FIREBASE_PROJECT_ID: str = ""
    GOOGLE_APPLICATION_CREDENTIALS: str = "firebase-admin-sdk.json"

    # Remote collections
    CONVERSATIONS_COLLECTION: str = "conversations"
    MESSAGES_SUBCOLLECTION: str = "messages"
    FRIENDS_COLLECTION: str = "friends"
    USERS_COLLECTION: str = "users"
    PUBLIC_PROFILES_COLLECTION: str = "publicProfiles"
    USERNAMES_COLLECTION: str = "usernames"

    # Local persistent store (profile/head caches, favorites, read watermarks)
    LOCAL_STORE_URL: str = f"sqlite:///{PROJECT_ROOT / 'chatsync.db'}"

    # Profile cache
    PROFILE_CACHE_TTL_MS: int = 7 * DAY_MS
    PROFILE_FETCH_CONCURRENCY: int = 12

    # Chat room
    RECONCILE_WINDOW_MS: int = 15_000
    PENDING_MAX_AGE_MS: int = 60_000
    MESSAGE_PAGE_SIZE: int = 25
    MESSAGE_PREVIEW_CHARS: int = 140

    # Conversation list
    CONVERSATION_LIST_LIMIT: int = 50

    # Password reset code service (external)
    PASSWORD_RESET_BASE_URL: str = "http://127.0.0.1:3000"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Environment
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"


# Global settings instance
settings = Settings()
