from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Groq
    groq_api_key: str = "gsk_placeholder"
    default_model: str = "llama-3.3-70b-versatile"

    # Transcription relay
    relay_url: str = "ws://127.0.0.1:8080"
    relay_api_key: str = ""
    max_reconnect_attempts: int = 3
    reconnect_base_delay_seconds: float = 2.0
    reconnect_backoff_factor: float = 2.0
    proactive_reconnect_after_seconds: float = 55.0
    connection_age_check_seconds: float = 5.0

    # Audio capture
    sample_rate: int = 16000
    audio_chunk_ms: int = 250
    min_audio_chunk_bytes: int = 1000

    # Voice commands
    voice_debounce_seconds: float = 3.0
    voice_window_chars: int = 100

    # Auto questions
    auto_question_interval_minutes: int = 15
    auto_question_min_chars: int = 100
    auto_question_min_quality: float = 0.35
    question_cooldown_seconds: float = 60.0
    daily_question_limit: int = 200
    question_format: str = "multiple_choice"
    voice_context_chars: int = 1500

    # Pause-point placement
    placement_min_start_seconds: float = 60.0
    placement_min_start_fraction: float = 0.10
    placement_min_spacing_seconds: float = 120.0
    placement_shift_step_seconds: float = 30.0
    placement_candidate_threshold: int = 5
    default_question_count: int = 5

    # Storage
    database_path: str = "lecture_pulse.db"

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}


settings = Settings()
