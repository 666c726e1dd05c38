"""
ClaimFlow - Configuration
Environment-driven settings for the workflow orchestrator and state store
"""

import os
from typing import Optional
from pydantic import BaseModel, Field, model_validator


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ("1", "true", "yes", "on")


class WorkflowConfig(BaseModel):
    """Thresholds, retry policy and concurrency limits for claim processing"""

    accept_threshold: float = Field(0.85, ge=0.0, le=1.0)
    review_threshold: float = Field(0.60, ge=0.0, le=1.0)
    max_correction_attempts: int = Field(3, ge=0)
    enable_indexing: bool = True

    max_concurrent_claims: int = Field(10, ge=1)

    agent_timeout_seconds: float = Field(120.0, gt=0)
    agent_max_retries: int = Field(2, ge=0)
    agent_retry_delay_seconds: float = Field(1.0, ge=0)

    lease_ttl_seconds: float = Field(300.0, gt=0)
    lease_poll_interval_seconds: float = Field(0.05, gt=0)

    @model_validator(mode="after")
    def check_threshold_order(self):
        if self.review_threshold > self.accept_threshold:
            raise ValueError("review_threshold must not exceed accept_threshold")
        return self

    @model_validator(mode="after")
    def check_lease_covers_attempt(self):
        # The lease is refreshed before every collaborator attempt, so it must
        # outlive one attempt plus the longest back-off that precedes the next.
        longest_gap = self.agent_timeout_seconds + self.agent_retry_delay_seconds * self.agent_max_retries
        if self.lease_ttl_seconds <= longest_gap:
            raise ValueError(
                f"lease_ttl_seconds ({self.lease_ttl_seconds}) must exceed agent_timeout_seconds "
                f"plus the longest retry back-off ({longest_gap})"
            )
        return self

    @classmethod
    def from_env(cls) -> "WorkflowConfig":
        return cls(
            accept_threshold=float(os.getenv("AUTO_PROCESS_CONFIDENCE_THRESHOLD", "0.85")),
            review_threshold=float(os.getenv("REVIEW_CONFIDENCE_THRESHOLD", "0.60")),
            max_correction_attempts=int(os.getenv("MAX_CORRECTION_ATTEMPTS", "3")),
            enable_indexing=_env_bool("ENABLE_RAG_INDEXING", "true"),
            max_concurrent_claims=int(os.getenv("MAX_CONCURRENT_CLAIMS", "10")),
            agent_timeout_seconds=float(os.getenv("AGENT_TIMEOUT_SECONDS", "120")),
            agent_max_retries=int(os.getenv("AGENT_MAX_RETRIES", "2")),
            agent_retry_delay_seconds=float(os.getenv("AGENT_RETRY_DELAY_SECONDS", "1.0")),
            lease_ttl_seconds=float(os.getenv("CLAIM_LEASE_TTL_SECONDS", "300")),
            lease_poll_interval_seconds=float(os.getenv("CLAIM_LEASE_POLL_SECONDS", "0.05")),
        )


class StoreConfig(BaseModel):
    """Claim state store backend selection"""

    backend: str = Field("memory", pattern="^(memory|redis)$")
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "claimflow"
    redis_max_connections: int = Field(50, ge=1)

    @classmethod
    def from_env(cls) -> "StoreConfig":
        return cls(
            backend=os.getenv("CLAIM_STORE_BACKEND", "memory"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            key_prefix=os.getenv("CLAIM_STORE_KEY_PREFIX", "claimflow"),
            redis_max_connections=int(os.getenv("REDIS_MAX_CONNECTIONS", "50")),
        )


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = Field("json", pattern="^(json|console)$")
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            format=os.getenv("LOG_FORMAT", "json"),
            log_file=os.getenv("LOG_FILE") or None,
        )


class AppConfig(BaseModel):
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            workflow=WorkflowConfig.from_env(),
            store=StoreConfig.from_env(),
            logging=LoggingConfig.from_env(),
        )
