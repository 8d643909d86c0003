from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Backend
    api_base_url: str = "https://www.webaudit.cloud"
    http_timeout_seconds: float = 30.0

    # Local persistence
    session_store_path: str = ".cache/sessions.json"
    client_id_path: str = ".cache/client_id"

    # Final report fetch
    report_fetch_max_attempts: int = 20
    report_fetch_retry_delay_seconds: float = 1.5

    # Event stream reconnect
    stream_reconnect_initial_delay_seconds: float = 0.8
    stream_reconnect_backoff_factor: float = 1.6
    stream_reconnect_max_delay_seconds: float = 10.0
    stream_reconnect_max_attempts: int = 30  # consecutive failures, 0 = unbounded
    stream_seen_event_ids: int = 256

    # Poll the report while the stream is down, 0 disables
    fallback_poll_interval_seconds: float = 0.0
    # Used once live updates are unavailable (stream gave up, or no stream to open)
    recovery_poll_interval_seconds: float = 15.0

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_to_file: bool = False

    model_config = {
        "env_prefix": "AUDITWATCH_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def api_root(self) -> str:
        return self.api_base_url.rstrip("/")


settings = Settings()
