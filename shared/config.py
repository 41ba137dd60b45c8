"""
Configuration management for the Teams meeting agent.
"""
from typing import Optional, List

from pydantic import Field
from pydantic_settings import BaseSettings
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = "Teams Meeting Agent"
    app_version: str = "1.0.0"
    debug: bool = False

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_prefix: str = "/api"
    allowed_cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True

    # Microsoft Graph (app-only credentials)
    azure_client_id: Optional[str] = Field(None, env="AZURE_CLIENT_ID")
    azure_client_secret: Optional[str] = Field(None, env="AZURE_CLIENT_SECRET")
    azure_tenant_id: str = Field("common", env="AZURE_TENANT_ID")
    azure_authority: Optional[str] = Field(None, env="AZURE_AUTHORITY")
    graph_api_endpoint: str = Field("https://graph.microsoft.com/v1.0", env="GRAPH_API_ENDPOINT")
    graph_scope: str = "https://graph.microsoft.com/.default"
    graph_request_timeout_seconds: int = 30
    meeting_organizer_email: Optional[str] = Field(None, env="MEETING_ORGANIZER_EMAIL")

    # Generative AI (Gemini through its OpenAI-compatible endpoint)
    gemini_api_key: Optional[str] = Field(None, env="GEMINI_API_KEY")
    gemini_model: str = Field("gemini-1.5-flash", env="GEMINI_MODEL")
    gemini_base_url: str = Field(
        "https://generativelanguage.googleapis.com/v1beta/openai/", env="GEMINI_BASE_URL"
    )
    llm_temperature: float = 0.3
    llm_max_tokens: int = 2048

    # MongoDB Configuration (Cosmos DB MongoDB API compatible)
    mongodb_url: str = Field("mongodb://localhost:27017", env="MONGODB_URL")
    mongodb_database: str = Field("teams_agent", env="MONGODB_DATABASE")
    mongodb_collection_prefix: str = ""
    meetings_collection: str = "meetings"
    schedules_collection: str = "schedules"
    chats_collection: str = "chats"
    summaries_collection: str = "summaries"
    attendance_collection: str = "attendance"
    notifications_collection: str = "notifications"
    reminders_collection: str = "reminders"
    dead_letters_collection: str = "dead_letters"

    # Meeting Agent Configuration
    meeting_auto_join_enabled: bool = Field(True, env="MEETING_AUTO_JOIN_ENABLED")
    meeting_max_join_attempts: int = Field(3, env="MEETING_MAX_JOIN_ATTEMPTS")
    meeting_summarization_enabled: bool = Field(True, env="MEETING_SUMMARIZATION_ENABLED")
    join_early_buffer_minutes: int = 15
    immediate_join_minutes: int = 2
    join_grace_minutes: int = 5
    max_meeting_duration_minutes: int = 1440

    # Scheduler
    scheduler_tick_seconds: int = 60
    scheduler_window_before_minutes: int = 1
    scheduler_window_after_minutes: int = 3
    schedule_retention_hours: int = 24
    cleanup_interval_minutes: int = 5
    startup_lookahead_hours: int = 24

    # Chat capture
    chat_poll_seconds: int = 15
    chat_poll_fallback_seconds: int = 45
    chat_fetch_top: int = 50
    chat_id_lookup_attempts: int = 3
    auto_insights_enabled: bool = True
    periodic_update_every: int = 20
    question_alert_every: int = 3

    # Simulated user (authentication is out of scope)
    demo_user_id: str = "demo-user-123"
    demo_user_email: str = "demo@company.com"
    demo_user_name: str = "Demo User"

    # Logging
    log_level: str = "INFO"

    def get_cors_origins(self) -> List[str]:
        """Parse allowed_cors_origins string into a list."""
        if not self.allowed_cors_origins:
            return []
        return [origin.strip() for origin in self.allowed_cors_origins.split(",") if origin.strip()]

    def get_authority(self) -> str:
        """Authority URL for the app-credential token request."""
        if self.azure_authority:
            return self.azure_authority
        return f"https://login.microsoftonline.com/{self.azure_tenant_id}"

    def collection_name(self, container: str) -> str:
        """Prefixed collection name for a logical container."""
        base = getattr(self, f"{container}_collection", container)
        return f"{self.mongodb_collection_prefix}{base}"

    class Config:
        env_file = BASE_DIR / ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
