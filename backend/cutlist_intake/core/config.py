"""
Pipeline configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.

Every threshold used by the extraction pipeline lives here so that a
deployment can retune chunking, validation or rate limits without a code
change. Components take a Settings instance explicitly; the module-level
`settings` is only the process default.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------
    preferred_provider: str = "aws_bedrock"
    fallback_providers: list[str] = Field(default_factory=lambda: ["openai"])

    openai_api_key: str = ""
    openai_model:   str = "gpt-4o"

    # Azure OpenAI (same models, different endpoint)
    azure_openai_api_key:     str = ""
    azure_openai_endpoint:    str = ""
    azure_openai_deployment:  str = "gpt-4o"
    azure_openai_api_version: str = "2024-08-01-preview"

    # AWS Bedrock (Claude vision models)
    aws_region:       str = "us-east-1"
    bedrock_model_id: str = "anthropic.claude-3-5-sonnet-20241022-v2:0"

    llm_temperature: float = 0.0
    llm_max_tokens:  int = 16_000

    # ------------------------------------------------------------------
    # Rate limiting (token bucket, requests per minute per provider)
    # ------------------------------------------------------------------
    rate_limit_rpm: dict[str, int] = Field(
        default_factory=lambda: {"aws_bedrock": 50, "openai": 100, "azure_openai": 100}
    )
    rate_limit_default_rpm:      int   = 60
    rate_limit_max_wait_seconds: float = 5.0   # upper bound on one poll interval

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------
    retry_max_retries:  int = 3
    retry_base_delay_ms: int = 1_000
    retry_max_delay_ms: int = 30_000
    chunk_max_retries:  int = 2

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------
    chunk_min_items:                  int   = 80    # never chunk below this
    chunk_strong_threshold:           int   = 150   # always chunk at/above this
    chunk_sections_threshold:         int   = 200   # "sections" strategy above this
    chunk_max_items_per_chunk:        int   = 75    # ~125 tokens per item, 16k output budget
    chunk_min_single_pass_confidence: float = 0.85
    estimate_default_items:           int   = 50    # used when estimation fails

    # ------------------------------------------------------------------
    # Validation / quality scoring (millimetres)
    # ------------------------------------------------------------------
    default_thickness_mm: float = 18.0
    default_material:     str   = "default"
    default_confidence:   float = 0.8

    min_plausible_dimension: float = 30.0
    max_plausible_length:    float = 3_500.0
    max_plausible_width:     float = 1_800.0
    high_quantity:           int   = 100
    low_confidence:          float = 0.7

    review_max_length:           float = 3_000.0
    review_critical_length:      float = 4_000.0
    review_max_width:            float = 1_500.0
    review_critical_width:       float = 2_000.0
    review_min_dimension:        float = 50.0
    review_high_quantity:        int   = 50
    review_critical_quantity:    int   = 200
    review_field_confidence:     float = 0.6
    review_critical_confidence:  float = 0.5
    review_medium_flag_share:    float = 0.3

    # ------------------------------------------------------------------
    # Audit / cache
    # ------------------------------------------------------------------
    audit_capacity: int = 1_000

    cache_max_entries:    int   = 100
    cache_ttl_seconds:    int   = 86_400
    cache_min_confidence: float = 0.7

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    log_level: str = "INFO"

    langsmith_api_key: str = ""
    langsmith_project: str = "cutlist-intake"

    otel_enabled:                bool = False
    otel_exporter_otlp_endpoint: str  = ""

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    def rpm_for(self, provider: str) -> int:
        return self.rate_limit_rpm.get(provider, self.rate_limit_default_rpm)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
