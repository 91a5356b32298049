"""Application configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ElevenLabs conversational agent
    elevenlabs_api_key: str
    elevenlabs_agent_id: str
    elevenlabs_ws_url: str = "wss://api.elevenlabs.io/v1/convai/conversation"
    agent_handshake_timeout: float = 10.0
    agent_greeting_text: str = "Hi"
    agent_greeting_delay: float = 1.0

    # Knowlarity telephony
    knowlarity_api_url: str = "https://kpi.knowlarity.com"
    knowlarity_click_to_call_url: str = "https://sr.knowlarity.com/newsr/api/v1/click2call/"
    knowlarity_api_key: str = ""
    knowlarity_authorization: str = ""
    knowlarity_caller_id: str = ""
    knowlarity_test_mode: bool = False
    dial_strategy: str = "click_to_call"
    dial_timeout: float = 30.0
    campaign_timezone: str = "Asia/Kolkata"

    # Audio relay
    server_websocket_url: str = "wss://localhost:8000/call-stream"
    audio_sample_rate: int = 16000

    # Call lifecycle
    max_call_attempts: int = 3
    retry_delay_seconds: float = 300.0
    cleanup_delay_seconds: float = 300.0
    cleanup_interval_seconds: float = 300.0
    stale_session_seconds: float = 3600.0

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


settings = Settings()
