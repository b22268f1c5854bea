from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Status Watch"
    log_level: str = Field("INFO", description="Root log level applied at startup.")
    fast_interval_seconds: float = Field(
        2.0, description="Polling interval for the per-second panels."
    )
    dashboard_interval_seconds: float = Field(
        10.0, description="Polling interval for the bundled dashboard group."
    )
    battery_interval_seconds: float = Field(
        300.0, description="Polling interval for the battery history group."
    )
    history_capacity: int = Field(
        60, description="Number of derived values kept per channel for charting."
    )
    acquisition_timeout_seconds: float = Field(
        5.0, description="Upper bound on a single acquisition (command or file read)."
    )
    shared_reading_window_seconds: float = Field(
        0.5, description="Readings of a shared source younger than this are reused."
    )
    resume_window_seconds: float = Field(
        30.0,
        description="A channel resubscribed within this gap keeps its previous reading.",
    )
    proc_root: str = Field("/proc", description="Root of the proc pseudo-filesystem.")

    @field_validator(
        "fast_interval_seconds",
        "dashboard_interval_seconds",
        "battery_interval_seconds",
        "acquisition_timeout_seconds",
        "history_capacity",
    )
    def ensure_positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("shared_reading_window_seconds", "resume_window_seconds")
    def ensure_not_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    class Config:
        env_prefix = "STATUSWATCH_"


settings = Settings()
