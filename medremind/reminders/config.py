from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import Optional


class ReminderSettings(BaseSettings):
    # Celery configuration
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: Optional[str] = None
    WORKER_CONCURRENCY: int = 4

    # Queues
    FIRE_QUEUE: str = "reminders.fire"
    ESCALATION_QUEUE: str = "reminders.escalate"
    DELIVERY_QUEUE: str = "reminders.deliver"
    EXCHANGE: str = "reminders"

    # Shared state
    REDIS_URL: str = "redis://localhost:6379/1"
    DATABASE_URL: str = "postgresql://localhost:5432/medremind"

    # Retries and timeouts
    TASK_MAX_RETRIES: int = 3
    RETRY_BACKOFF_SECONDS: int = 5
    RETRY_BACKOFF_MAX_SECONDS: int = 300
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 10.0

    # Scheduling
    MAX_FIRE_LATENESS_SECONDS: int = 3600

    # Escalation state retention
    ESCALATION_RETENTION_SECONDS: int = 900
    ESCALATION_STALE_SECONDS: int = 86400
    ESCALATION_SWEEP_INTERVAL_SECONDS: int = 300

    # FCM
    FCM_PROJECT_ID: Optional[str] = None
    FCM_CREDENTIALS_JSON: Optional[str] = None  # path or inline JSON via env

    # Collaborators, as "module:attr" import paths of factories taking (settings, session_factory)
    DISPATCHER_FACTORY: str = "medremind.reminders.dispatcher:build_fcm_dispatcher"
    # Unset means acknowledgements arrive only through ReminderScheduler.on_acknowledged
    ADHERENCE_GATE_FACTORY: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    @field_validator("CELERY_RESULT_BACKEND", "FCM_PROJECT_ID", "FCM_CREDENTIALS_JSON", "ADHERENCE_GATE_FACTORY", mode="before")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str) and v.strip() == "":
            return None
        return v

    @model_validator(mode="after")
    def _validate_timings(self) -> "ReminderSettings":
        if self.EXTERNAL_CALL_TIMEOUT_SECONDS <= 0:
            raise ValueError("EXTERNAL_CALL_TIMEOUT_SECONDS must be positive")
        if self.RETRY_BACKOFF_MAX_SECONDS < self.RETRY_BACKOFF_SECONDS:
            raise ValueError("RETRY_BACKOFF_MAX_SECONDS must not be below RETRY_BACKOFF_SECONDS")
        if len({self.FIRE_QUEUE, self.ESCALATION_QUEUE, self.DELIVERY_QUEUE}) != 3:
            raise ValueError("FIRE_QUEUE, ESCALATION_QUEUE and DELIVERY_QUEUE must be distinct")
        return self

    model_config = SettingsConfigDict(env_prefix="REMINDER_", env_file=".env", extra="ignore")
