"""Runtime configuration and logging setup for napsync.

A single immutable :class:`NapConfig` is built once at startup and handed to
the window buffer, classifier, state machine and link channel.  All durations
are in seconds; heart rate in bpm, HRV in ms, motion in device units.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

LOGGER_NAME = "napsync"


class NapConfig(BaseModel):
    """Every tunable the core recognizes, with production defaults.

    Instances are frozen and reject unknown options; invalid values raise
    :class:`pydantic.ValidationError` (a :class:`ValueError`).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Signal window / classification
    window_size: float = Field(30.0, gt=0)
    minimum_data_points: int = Field(5, ge=1)
    confidence_threshold: float = Field(0.7, gt=0.5, le=1.0)
    min_heart_rate: float = 40.0
    max_heart_rate: float = 200.0
    min_hrv: float = 5.0
    max_hrv: float = 200.0
    max_motion: float = Field(10.0, gt=0)
    score_weights: tuple[float, float, float] = (1.0, 1.0, 1.0)  # hr, hrv, motion

    # Nap session
    min_nap_duration: float = Field(10 * 60.0, gt=0)
    default_nap_duration: float = 90 * 60.0
    max_nap_duration: float = 180 * 60.0
    wake_window: float = Field(10 * 60.0, gt=0)
    monitoring_interval: float = Field(30.0, gt=0)
    settle_period: float = Field(30.0, ge=0)
    data_grace_period: float = Field(120.0, gt=0)
    sustained_awake_period: float = Field(60.0, gt=0)

    # Link
    max_retries: int = Field(3, ge=1)
    timeout_interval: float = Field(10.0, gt=0)
    heartbeat_interval: float = Field(60.0, gt=0)

    # Orchestrator reporting
    report_confidence_delta: float = Field(0.1, ge=0)
    summary_interval: float = Field(30.0, gt=0)

    @field_validator("score_weights")
    def validate_score_weights(cls, v: tuple[float, float, float]) -> tuple[float, float, float]:
        if any(w < 0 for w in v):
            raise ValueError("score_weights must be non-negative")
        if sum(v) <= 0:
            raise ValueError("score_weights must not all be zero")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> NapConfig:
        if self.min_heart_rate >= self.max_heart_rate:
            raise ValueError("min_heart_rate must be below max_heart_rate")
        if self.min_hrv >= self.max_hrv:
            raise ValueError("min_hrv must be below max_hrv")
        if not self.min_nap_duration <= self.default_nap_duration <= self.max_nap_duration:
            raise ValueError("nap durations must satisfy min <= default <= max")
        return self

    @property
    def disconnect_after(self) -> float:
        """Silence from the peer after which the link counts as disconnected."""
        return 2.0 * self.heartbeat_interval

    def clamp_nap_duration(self, duration: float | None) -> float:
        """Clamp a requested nap length, falling back to the default."""
        if duration is None:
            return self.default_nap_duration
        return min(max(float(duration), self.min_nap_duration), self.max_nap_duration)

    def with_overrides(self, **changes: Any) -> NapConfig:
        # model_copy(update=...) skips validation
        return self.model_validate({**self.model_dump(), **changes})

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> NapConfig:
        return cls.model_validate(dict(data))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


DEFAULT_CONFIG = NapConfig()


def load_config(path: str | Path | None = None) -> NapConfig:
    """Load a JSON config file; ``None`` returns the defaults."""
    if path is None:
        return DEFAULT_CONFIG
    return NapConfig.model_validate_json(Path(path).read_text())


def get_logger(level: int = logging.INFO) -> logging.Logger:
    """Configure and return the package logger (idempotent)."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger
