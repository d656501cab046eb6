"""Pydantic models for configuration schema."""

from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from fleetform.resources.models import NAME_PATTERN
from fleetform.resources.schema import LifecyclePolicy
from fleetform.utils.retry import RetryStrategy


LOG_LEVELS = ('debug', 'info', 'warning', 'error', 'critical')


class RetrySettings(BaseModel):
    """Backoff policy for provider calls."""

    max_retries: int = Field(4, ge=0, le=20)
    base_delay: float = Field(1.0, gt=0, description="Seconds before the first retry")
    max_delay: float = Field(30.0, gt=0, description="Cap on a single delay")
    exponential_base: float = Field(2.0, ge=1.0)
    jitter: bool = True

    @model_validator(mode="after")
    def validate_delays(self):
        """The cap cannot be below the first delay."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self

    def to_strategy(self) -> RetryStrategy:
        return RetryStrategy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter=self.jitter
        )


class LockSettings(BaseModel):
    """Scope lock behaviour."""

    timeout: float = Field(30.0, ge=0, description="Seconds to wait for a busy lock")
    stale_after: float = Field(900.0, gt=0, description="Seconds after which a held lock is taken over")


class FleetSettings(BaseModel):
    """Fleet reconciler tuning."""

    interval: float = Field(10.0, gt=0, description="Seconds between ticks")
    healthy_threshold: int = Field(3, ge=1)
    unhealthy_threshold: int = Field(2, ge=1)
    deregistration_delay: float = Field(30.0, ge=0)
    replace_unhealthy: Optional[bool] = Field(
        None, description="Override the groups' health_check_type"
    )


class EngineSettings(BaseModel):
    """Engine-wide settings from the ``settings`` section."""

    workspace: str = Field("default", pattern=NAME_PATTERN)
    state_path: str = Field(".fleetform/state.json", description="Local JSON state file")
    max_workers: int = Field(10, ge=1, le=64)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    fleet: FleetSettings = Field(default_factory=FleetSettings)
    log_level: str = "info"
    log_dir: Optional[str] = ".fleetform/logs"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        v = v.lower()
        if v not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
        return v


class DeclarationOptions(BaseModel):
    """Reserved keys of a resource declaration; every other key is an attribute."""

    lifecycle: Optional[LifecyclePolicy] = None
    immutable: List[str] = Field(default_factory=list, description="Extra immutable attributes")
    mutable: List[str] = Field(default_factory=list, description="Attributes made mutable")
    depends_on: List[str] = Field(default_factory=list, description="Extra dependencies by address")

    @model_validator(mode="after")
    def validate_overrides(self):
        """An attribute cannot be both mutable and immutable."""
        both = set(self.immutable) & set(self.mutable)
        if both:
            raise ValueError(f"Attributes listed as both mutable and immutable: {', '.join(sorted(both))}")
        return self

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: List[str]) -> List[str]:
        """Dependencies are ``kind.name`` addresses."""
        for address in v:
            kind, _, name = address.partition('.')
            if not kind or not name:
                raise ValueError(f"depends_on entries must look like 'kind.name': {address!r}")
        return v


RESERVED_KEYS = frozenset(DeclarationOptions.model_fields)
