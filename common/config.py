from pydantic_settings import BaseSettings


class GatewaySettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    max_sessions: int = 10
    log_level: str = "INFO"
    capture_timeslice_ms: int = 200
    dispatch_interval_s: float = 0.25
    dispatch_warn_depth: int = 50
    stop_drain_timeout_s: float = 0.0
    fold_tail_speaker_change: bool = False

    model_config = {"env_prefix": "GATEWAY_"}


class RecognitionSettings(BaseSettings):
    listen_url: str = "wss://api.deepgram.com/v1/listen"
    model: str = "nova-2"
    language: str | None = None
    diarize: bool = True
    interim_results: bool = True
    smart_format: bool = True
    key_url: str = ""
    api_key: str = ""
    key_timeout_s: float = 10.0
    ping_interval: float = 20.0

    model_config = {"env_prefix": "RECOGNITION_"}


class PersistenceSettings(BaseSettings):
    url: str = ""
    timeout_s: float = 10.0

    model_config = {"env_prefix": "PERSISTENCE_"}
