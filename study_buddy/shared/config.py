"""
Configuration management for Study Buddy.
Loads from config/study_buddy.yaml and environment variables.
"""

from pathlib import Path
from typing import Optional, Dict, Any, List
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class LLMConfig(BaseSettings):
    """LLM provider configuration."""
    provider: str = Field(default="openai")  # openai, anthropic
    fallback_providers: List[str] = Field(default_factory=lambda: ["anthropic"])
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, alias="ANTHROPIC_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini")
    anthropic_model: str = Field(default="claude-3-5-haiku-latest")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1500, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="LLM_", extra="ignore", populate_by_name=True)


class EmbeddingConfig(BaseSettings):
    """Text vectorization configuration."""
    provider: str = Field(default="hashing")  # hashing, openai
    model: str = Field(default="text-embedding-3-small")
    dimension: int = Field(default=512, gt=0)
    batch_size: int = Field(default=100, gt=0)

    model_config = SettingsConfigDict(env_prefix="EMBEDDING_", extra="ignore")


class StorageConfig(BaseSettings):
    """Relational store configuration."""
    db_path: Path = Field(default=Path("data/study_buddy.sqlite"))
    knowledge_seed_path: Optional[Path] = Field(default=Path("config/knowledge_seed.yaml"))

    model_config = SettingsConfigDict(env_prefix="STORAGE_", extra="ignore")


class MemoryConfig(BaseSettings):
    """Memory store configuration."""
    scan_limit: int = Field(default=500, gt=0)
    snapshot_tokens: int = Field(default=300, gt=0)
    max_links: int = Field(default=3, ge=0)
    link_min_relevance: float = Field(default=0.3, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(env_prefix="MEMORY_", extra="ignore")


class ContextConfig(BaseSettings):
    """Context optimizer configuration."""
    tier_budgets: Dict[str, int] = Field(default_factory=lambda: {
        "light": 100, "recent": 1500, "selective": 3000, "full": 8000
    })
    history_turns: Dict[str, int] = Field(default_factory=lambda: {
        "light": 1, "recent": 3, "selective": 5, "full": 20
    })
    history_escalation_threshold: int = Field(default=3, ge=0)
    recent_window: int = Field(default=5, gt=0)
    max_memories: int = Field(default=8, gt=0)
    max_knowledge: int = Field(default=5, gt=0)
    selective_min_relevance: float = Field(default=0.1, ge=0.0, le=1.0)
    knowledge_min_reliability: float = Field(default=0.6, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(env_prefix="CONTEXT_", extra="ignore")


class ValidationConfig(BaseSettings):
    """Response validator configuration."""
    threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_processing_time_ms: int = Field(default=5000, gt=0)
    model_confidence_weight: float = Field(default=0.4, ge=0.0)
    fact_check_weight: float = Field(default=0.4, ge=0.0)
    structure_weight: float = Field(default=0.2, ge=0.0)
    score_confidence_weight: float = Field(default=0.5, ge=0.0)
    score_fact_check_weight: float = Field(default=0.5, ge=0.0)
    claim_support_overlap: float = Field(default=0.5, ge=0.0, le=1.0)
    unverified_pass_rate: float = Field(default=0.75, ge=0.0, le=1.0)
    contradiction_similarity: float = Field(default=0.6, ge=0.0, le=1.0)
    min_source_reliability: float = Field(default=0.5, ge=0.0, le=1.0)
    max_claims: int = Field(default=10, gt=0)

    model_config = SettingsConfigDict(env_prefix="VALIDATION_", extra="ignore")


class FeedbackConfig(BaseSettings):
    """Feedback collector configuration."""
    correction_penalty: float = Field(default=0.05, ge=0.0, le=1.0)
    abandonment_cap: float = Field(default=0.3, ge=0.0, le=1.0)
    dwell_target_ms: int = Field(default=60000, gt=0)
    scroll_weight: float = Field(default=0.35, ge=0.0)
    dwell_weight: float = Field(default=0.25, ge=0.0)
    follow_up_weight: float = Field(default=0.2, ge=0.0)
    correction_weight: float = Field(default=0.2, ge=0.0)
    positive_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    negative_threshold: float = Field(default=0.4, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(env_prefix="FEEDBACK_", extra="ignore")


class LearningConfig(BaseSettings):
    """Learning engine configuration."""
    correction_frequency_threshold: int = Field(default=3, gt=0)
    lookback_days: int = Field(default=30, gt=0)
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    full_confidence_samples: int = Field(default=10, gt=0)
    hallucination_max_rating: int = Field(default=2, ge=1, le=5)
    quality_target: float = Field(default=0.7, ge=0.0, le=1.0)

    model_config = SettingsConfigDict(env_prefix="LEARNING_", extra="ignore")


class PersonalizationConfig(BaseSettings):
    """Personalization engine configuration."""
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    rolling_alpha: float = Field(default=0.3, gt=0.0, le=1.0)
    engagement_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    accuracy_floor: float = Field(default=0.6, ge=0.0, le=1.0)
    slow_response_ms: int = Field(default=10000, gt=0)
    max_adaptation_log: int = Field(default=200, gt=0)
    max_tracked_interactions: int = Field(default=500, gt=0)
    style_min_signals: int = Field(default=3, gt=0)

    model_config = SettingsConfigDict(env_prefix="PERSONALIZATION_", extra="ignore")


class PatternConfig(BaseSettings):
    """Pattern recognizer configuration."""
    small_sample_size: int = Field(default=5, gt=0)
    small_sample_confidence_cap: float = Field(default=0.3, ge=0.0, le=1.0)
    trend_threshold: float = Field(default=0.1, ge=0.0)
    full_confidence_samples: int = Field(default=20, gt=0)
    slow_response_ms: int = Field(default=5000, gt=0)
    default_window_days: int = Field(default=30, gt=0)

    model_config = SettingsConfigDict(env_prefix="PATTERN_", extra="ignore")


class IntegrationConfig(BaseSettings):
    """Stage coordination configuration."""
    low_load_ms: float = Field(default=100.0, ge=0.0)
    high_load_ms: float = Field(default=200.0, ge=0.0)
    parallel_min_healthy: int = Field(default=4, ge=0)
    cascading_min_healthy: int = Field(default=3, ge=0)
    critical_healthy_ratio: float = Field(default=0.6, ge=0.0, le=1.0)
    degraded_healthy_ratio: float = Field(default=0.8, ge=0.0, le=1.0)
    error_rate_alpha: float = Field(default=0.1, gt=0.0, le=1.0)
    history_size: int = Field(default=1000, gt=0)
    required_stages: List[int] = Field(default_factory=lambda: [1, 3])
    stage_timeouts_ms: Dict[str, int] = Field(default_factory=lambda: {
        "input": 2000,
        "context": 5000,
        "response": 45000,
        "personalization": 5000,
        "monitoring": 5000,
    })
    health_check_timeout_ms: int = Field(default=2000, gt=0)
    max_retries: int = Field(default=2, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    initial_delay_ms: int = Field(default=100, ge=0)

    model_config = SettingsConfigDict(env_prefix="INTEGRATION_", extra="ignore")

    @field_validator("high_load_ms")
    @classmethod
    def _high_above_low(cls, v: float, info) -> float:
        low = info.data.get("low_load_ms", 0.0)
        if v < low:
            raise ValueError("high_load_ms must be >= low_load_ms")
        return v


class MonitorConfig(BaseSettings):
    """Real-time session monitor configuration."""
    interval_seconds: float = Field(default=5.0, gt=0)
    idle_timeout_minutes: float = Field(default=30.0, gt=0)
    max_events: int = Field(default=100, gt=0)
    events_trim_to: int = Field(default=50, gt=0)
    max_alerts: int = Field(default=50, gt=0)
    max_closed_sessions: int = Field(default=1000, gt=0)
    max_response_samples: int = Field(default=100, gt=0)
    critical_error_rate: float = Field(default=0.3, ge=0.0, le=1.0)
    warning_error_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    warning_response_time_ms: float = Field(default=5000.0, gt=0)
    warning_engagement: float = Field(default=0.5, ge=0.0, le=1.0)
    performance_alert_ms: float = Field(default=10000.0, gt=0)
    performance_critical_ms: float = Field(default=20000.0, gt=0)
    quality_alert_accuracy: float = Field(default=0.7, ge=0.0, le=1.0)
    quality_high_accuracy: float = Field(default=0.5, ge=0.0, le=1.0)
    engagement_alert: float = Field(default=0.4, ge=0.0, le=1.0)
    technical_alert_error_rate: float = Field(default=0.15, ge=0.0, le=1.0)
    technical_critical_error_rate: float = Field(default=0.3, ge=0.0, le=1.0)
    quality_weights: Dict[str, float] = Field(default_factory=lambda: {
        "accuracy": 0.3,
        "engagement": 0.25,
        "performance": 0.2,
        "satisfaction": 0.15,
        "efficiency": 0.1,
    })

    model_config = SettingsConfigDict(env_prefix="MONITOR_", extra="ignore")


class PerformanceConfig(BaseSettings):
    """Adaptive parameter tuning configuration."""
    window_size: int = Field(default=100, gt=0)
    slow_p95_ms: float = Field(default=8000.0, gt=0)
    fast_p50_ms: float = Field(default=2000.0, gt=0)
    cache_ttl_seconds: float = Field(default=300.0, ge=0)
    cache_max_entries: int = Field(default=256, gt=0)
    min_temperature: float = Field(default=0.2, ge=0.0)
    max_temperature: float = Field(default=1.0, le=2.0)
    min_max_tokens: int = Field(default=300, gt=0)
    max_max_tokens: int = Field(default=4000, gt=0)

    model_config = SettingsConfigDict(env_prefix="PERFORMANCE_", extra="ignore")


class ApiConfig(BaseSettings):
    """API server configuration."""
    host: str = Field(default="0.0.0.0", alias="API_HOST")
    port: int = Field(default=8000, alias="API_PORT")
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    rate_limit_requests_per_minute: int = Field(default=30, gt=0, alias="API_RATE_LIMIT_RPM")
    rate_limit_window_seconds: int = Field(default=60, gt=0)
    rate_limit_exempt_paths: list[str] = Field(default_factory=lambda: ["/health", "/docs", "/redoc", "/openapi.json"])

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore", populate_by_name=True)


class SafetyConfig(BaseSettings):
    """Privacy and compliance configuration."""
    consent_required: bool = Field(default=True, alias="CONSENT_REQUIRED")
    data_retention_days: int = Field(default=365, alias="DATA_RETENTION_DAYS")
    redact_pii: bool = Field(default=True)
    max_message_chars: int = Field(default=8000, gt=0)

    model_config = SettingsConfigDict(env_prefix="SAFETY_", extra="ignore", populate_by_name=True)


class StudyBuddySettings(BaseSettings):
    """Main Study Buddy configuration."""
    env: str = Field(default="dev", alias="STUDY_BUDDY_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[Path] = Field(default=Path("logs/study_buddy.log"), alias="LOG_FILE")

    # Sub-configurations
    api: ApiConfig = Field(default_factory=ApiConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    personalization: PersonalizationConfig = Field(default_factory=PersonalizationConfig)
    patterns: PatternConfig = Field(default_factory=PatternConfig)
    integration: IntegrationConfig = Field(default_factory=IntegrationConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        populate_by_name=True,
    )

    @classmethod
    def load_from_yaml(cls, config_path: Optional[Path] = None) -> "StudyBuddySettings":
        """Load settings from YAML file and merge with environment variables."""
        if config_path is None:
            config_path = Path("config/study_buddy.yaml")

        config_dict: Dict[str, Any] = {}

        if config_path.exists():
            with open(config_path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f) or {}
                config_dict = yaml_data.get("study_buddy", {})

        # Flatten api.rate_limit.* into rate_limit_* fields
        if "api" in config_dict and isinstance(config_dict["api"], dict):
            api_cfg = dict(config_dict["api"])
            rate_limit = api_cfg.pop("rate_limit", None)
            if isinstance(rate_limit, dict):
                for key, value in rate_limit.items():
                    api_cfg[f"rate_limit_{key}"] = value
            config_dict["api"] = api_cfg

        return cls(**config_dict)


# Global settings instance
_settings: Optional[StudyBuddySettings] = None


def get_settings() -> StudyBuddySettings:
    """Get or create global settings instance."""
    global _settings
    if _settings is None:
        _settings = StudyBuddySettings.load_from_yaml()
    return _settings


# Alias for convenience
settings = get_settings()
