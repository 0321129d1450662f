"""Configuration settings for the task-management assistant"""
import os
from typing import List, Optional
from pydantic_settings import BaseSettings


def detect_environment() -> str:
    """
    Detect current environment from the ENVIRONMENT variable.
    Returns: 'dev', 'staging', or 'prod'
    """
    explicit_env = os.getenv("ENVIRONMENT", "").lower()
    if explicit_env in ("production", "prod"):
        return "prod"
    if explicit_env == "staging":
        return "staging"
    return "dev"


class Settings(BaseSettings):
    """Application settings using Pydantic for validation and environment variable loading"""

    # Completion service (Gemini REST API)
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-pro"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1"
    COMPLETION_TIMEOUT_SECONDS: int = 30
    GEMINI_REQUESTS_PER_MINUTE: int = 10
    GEMINI_MAX_PERMITS: int = 5

    # Embedding configuration
    EMBEDDING_PROVIDER: str = "hashing"  # gemini | hashing
    EMBEDDING_MODEL: str = "text-embedding-004"
    EMBEDDING_DIMENSION: int = 1024

    # Vector index
    VECTOR_INDEX: str = "memory"  # memory | pinecone
    PINECONE_HOST: Optional[str] = None
    PINECONE_API_KEY: Optional[str] = None
    PINECONE_NAMESPACE: str = ""
    VECTOR_TIMEOUT_SECONDS: int = 30

    # Retrieval
    RETRIEVAL_TOP_K: int = 5
    RETRIEVAL_MIN_SIMILARITY: float = 0.7
    HISTORY_TURNS: int = 20

    # Conversation state lifecycle
    STATE_MAX_IDLE_MINUTES: int = 60
    STATE_SWEEP_INTERVAL_MINUTES: int = 30
    MAX_SLOT_ATTEMPTS: int = 3

    # Unambiguous triggers that bypass two-step confirmation
    WAKE_PHRASES: str = "AI ơi,TaskFlow,Hey TaskFlow"

    # Collaborators
    TASK_BACKEND_URL: Optional[str] = None
    TASK_BACKEND_TIMEOUT_SECONDS: int = 10
    AUDIT_LOG_PATH: Optional[str] = None

    # Request middleware
    RATE_LIMIT_MESSAGES_PER_MINUTE: int = 30
    MAX_MESSAGE_LENGTH: int = 1000

    # Application settings
    ENVIRONMENT: str = detect_environment()
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.ENVIRONMENT == "prod"

    @property
    def model_enabled(self) -> bool:
        """The completion tier is only usable with an API key"""
        return bool(self.GEMINI_API_KEY)

    @property
    def wake_phrases(self) -> List[str]:
        return [p.strip() for p in self.WAKE_PHRASES.split(",") if p.strip()]

    class Config:
        # Load from .env file
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()
