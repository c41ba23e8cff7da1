"""Configuration settings for the hub telemetry ingestion service."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database (PostgreSQL/MySQL in production via DATABASE_URL)
    database_url: str = "sqlite:///./data/hub_ingest.db"

    # MQTT
    mqtt_broker_host: str = "127.0.0.1"
    mqtt_broker_port: int = 1883
    mqtt_broker_username: Optional[str] = None
    mqtt_broker_password: Optional[str] = None
    mqtt_client_id: str = "hub-ingest-gateway"
    mqtt_keepalive: int = 60
    mqtt_subscribe_qos: int = 1
    mqtt_publish_qos: int = 1

    # CSV persistence
    csv_base_dir: str = "./data/csv"

    # Dispatcher worker pool
    dispatcher_workers: int = 4
    dispatcher_queue_size: int = 10000

    # Disconnect notifications
    disconnect_cooldown_seconds: int = 300  # 5 minutes

    # Push notifications (Firebase Cloud Messaging HTTP v1)
    # When fcm_enabled is false or credentials are missing, pushes are skipped gracefully.
    fcm_enabled: bool = False
    fcm_project_id: Optional[str] = None
    fcm_access_token: Optional[str] = None
    fcm_timeout_seconds: int = 10
    push_default_title: str = "TalkTail"

    # Telemetry broadcast worker
    telemetry_max_samples_per_device: int = 100
    telemetry_recent_limit: int = 1000
    telemetry_broadcast_interval_seconds: float = 1.0
    telemetry_min_broadcast_interval_seconds: float = 0.5
    telemetry_idle_eviction_seconds: float = 3600.0

    # Application
    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
