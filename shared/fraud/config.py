"""Business parameters for the fraud engine.

Every threshold, weight and batch knob lives here so that policy can be tuned
per environment without touching the engine. Precedence: explicit kwargs, then
``FRAUD_*`` env vars, then the YAML policy file named by ``FRAUD_POLICY_FILE``.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

import yaml
from pydantic import Field, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

DEFAULT_POLICY_FILE = "/shared/fraud_policy.yaml"


def load_policy_file(path: str) -> dict:
    if not path or not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"policy file {path} must contain a mapping")
    return data


class PolicyFileSource(PydanticBaseSettingsSource):
    """Values from the YAML policy file; env vars and explicit kwargs win."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        data = load_policy_file(os.getenv("FRAUD_POLICY_FILE", DEFAULT_POLICY_FILE))
        return {k: v for k, v in data.items() if k in self.settings_cls.model_fields}


class FraudSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FRAUD_", extra="ignore")

    calculation_version: str = "v2.0"

    # --- event store ---
    dedupe_bucket_seconds: int = Field(1, ge=1)
    max_clock_skew_seconds: int = Field(300, ge=0)

    # peers considered for a target: follows within this distance of the subject's follow
    cohort_window_seconds: int = Field(86400, ge=1)

    # --- detector: burst_following ---
    burst_window_seconds: int = Field(60, ge=1)
    burst_min_accounts: int = Field(10, ge=2)
    burst_confidence: float = Field(0.9, ge=0, le=1)

    # --- detector: rapid_follows ---
    rapid_follow_threshold: int = Field(50, ge=1)
    rapid_follow_window_seconds: int = Field(3600, ge=1)
    rapid_follow_min_interval_seconds: float = Field(1.0, ge=0)

    # --- detector: ip_cluster ---
    ip_cluster_threshold: int = Field(10, ge=2)

    # --- detector: no_profile ---
    min_profile_age_days: int = Field(30, ge=0)
    min_posts_for_active: int = Field(1, ge=0)

    # --- detector: follow_churn ---
    churn_window_seconds: int = Field(86400, ge=1)
    churn_min_unfollows: int = Field(10, ge=1)

    incomplete_profile_confidence_factor: float = Field(0.5, ge=0, le=1)

    # --- scorer ---
    signal_weights: dict[str, float] = Field(default_factory=lambda: {
        "burst_following": 1.0,
        "rapid_follows": 0.9,
        "ip_cluster": 0.8,
        "follow_churn": 0.7,
        "no_profile": 0.5,
    })
    default_signal_weight: float = Field(0.3, ge=0, le=1)
    weight_authenticity: float = Field(0.6, ge=0)
    weight_engagement: float = Field(0.25, ge=0)
    weight_age: float = Field(0.15, ge=0)
    engagement_bot_penalty: float = Field(0.5, ge=0, le=1)
    target_posts: int = Field(20, ge=1)
    target_comments: int = Field(50, ge=1)
    unknown_activity_score: float = Field(0.5, ge=0, le=1)
    full_trust_age_days: int = Field(365, ge=1)
    unknown_age_factor: float = Field(0.5, ge=0, le=1)
    bot_follower_confidence: float = Field(0.7, ge=0, le=1)  # counted as a bot follower at/above this

    # --- badges ---
    eligible_threshold: int = Field(70, ge=0, le=100)
    revoke_threshold: int = Field(40, ge=0, le=100)
    min_account_age_days: int = Field(30, ge=0)
    badge_type: str = "authentic"

    # --- notifications ---
    alert_confidence_threshold: float = Field(0.7, ge=0, le=1)

    # --- dashboard / trends ---
    suspicious_score_threshold: int = Field(40, ge=0, le=100)
    max_page_size: int = Field(100, ge=1)
    max_trend_days: int = Field(366, ge=1)

    # --- batch ---
    batch_workers: int = Field(4, ge=1)
    batch_page_size: int = Field(200, ge=1)
    batch_flush_every: int = Field(25, ge=1)
    batch_max_retries: int = Field(3, ge=1)
    batch_retry_initial_seconds: float = Field(0.5, ge=0)
    batch_retry_max_seconds: float = Field(5.0, ge=0)
    default_analysis_days: int = Field(1, ge=1)
    job_stall_timeout_seconds: int = Field(900, ge=1)
    recompute_drain_limit: int = Field(500, ge=1)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, dotenv_settings, PolicyFileSource(settings_cls), file_secret_settings

    @model_validator(mode="after")
    def _check_policy(self) -> "FraudSettings":
        if self.revoke_threshold > self.eligible_threshold:
            raise ValueError("revoke_threshold must not exceed eligible_threshold")
        if self.weight_authenticity + self.weight_engagement + self.weight_age <= 0:
            raise ValueError("at least one score weight must be positive")
        if any(w < 0 or w > 1 for w in self.signal_weights.values()):
            raise ValueError("signal weights must be within [0, 1]")
        return self

    def signal_weight(self, signal_type: str) -> float:
        return self.signal_weights.get(signal_type, self.default_signal_weight)


@lru_cache
def get_fraud_settings() -> FraudSettings:
    return FraudSettings()
