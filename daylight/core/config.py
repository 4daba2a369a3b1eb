from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="DAYLIGHT_", extra="ignore")

    app_name: str = "Daylight"
    timezone: str = "Europe/London"

    # Mode: "hue" talks to a real bridge, "sim" uses the in-memory gateway
    mode: str = Field(default="hue")

    # Schedules + day patterns (JSON)
    config_path: str = "config.json"

    # Storage
    sqlite_path: str = Field(default="daylight.db")
    reset_store_on_start: bool = True

    # Logging
    debug_mode: bool = False
    log_path: str = "daylight.log"

    # Control loop
    tick_seconds: int = 60
    settle_window_seconds: float = 2.0
    brightness_tolerance: int = 1
    colour_temp_tolerance: int = 5
    max_override_minutes: int = 120
    unreachable_retry_minutes: int = 10

    # Bridge protections
    push_interval_ms: int = 100
    request_timeout_seconds: float = 10.0
    shutdown_grace_seconds: float = 5.0

    # Bridge
    bridge_ip: str = ""
    hue_application_key: str = ""
    scene_prefix: str = "Hugh_"

    # "lat,lng"
    geo_location: str = "0,0"


settings = Settings()
