"""Application configuration using Pydantic Settings.

Centralized configuration for the workflow and orchestrator backend.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        default_model: Model used for workflow agent nodes and role rounds.
        synthesis_model: Model used for refinement and plan synthesis.
        llm_fallback_model: Model tried once after the primary exhausts retries.
        llm_max_retries: Retries on transient provider failures.
        llm_request_timeout_seconds: Timeout for a single completion request.
        llm_rate_limit_rpm: Requests per minute allowed to the provider.
        llm_rate_limit_tpm: Tokens per minute allowed to the provider.
        use_mock_llm: If True, completions come from a scripted mock client.
        delay_cap_seconds: Upper bound on a single delay node's wait.
        split_max_concurrency: Max branches of one split node in flight at once.
        webhook_timeout_seconds: Timeout for webhook deliveries.
        email_relay_url: Endpoint that sends email on our behalf.
        whatsapp_relay_url: Endpoint that sends WhatsApp messages on our behalf.
        max_hierarchy_depth: Deepest reporting chain accepted for a role.
        refinement_max_roles: Refinement only runs when the run has at most
            this many roles.
        daily_plan_days: Number of business days covered by the daily plan.
        task_due_days: Default due date offset for role tasks.
        database_path: SQLite file for run and task storage.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    openai_api_key: str = ""
    # Model names carry the provider prefix understood by LiteLLM
    default_model: str = "openai/gpt-4o-mini"
    synthesis_model: str = "openai/gpt-4o-mini"
    use_mock_llm: bool = False
    llm_request_timeout_seconds: int = 120
    llm_temperature: float = 0.7

    # LLM Rate Limiting
    llm_rate_limit_rpm: int = 30
    llm_rate_limit_tpm: int = 100000

    # LLM Fallback & Degradation
    llm_fallback_model: str | None = None
    llm_max_retries: int = 2

    # Completion budgets per call site
    role_max_tokens: int = 2000
    refinement_max_tokens: int = 500
    strategic_plan_max_tokens: int = 1500
    daily_plan_max_tokens: int = 6000

    # Workflow execution
    delay_cap_seconds: float = 30.0
    split_max_concurrency: int = 4
    webhook_timeout_seconds: float = 10.0
    # HTTP relays that accept {"to", "content"} for email and WhatsApp delivery
    email_relay_url: str | None = None
    whatsapp_relay_url: str | None = None

    # Orchestrator execution
    max_hierarchy_depth: int = 5
    refinement_max_roles: int = 3
    daily_plan_days: int = 5
    task_due_days: int = 7
    directive_excerpt_chars: int = 1000
    peer_excerpt_chars: int = 600
    peer_section_chars: int = 1500
    report_excerpt_chars: int = 1500
    all_reports_chars: int = 5000

    # Database Configuration
    database_path: str = "./data/runs.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts a JSON array, a comma-separated string, a single value or a list.
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export the provider key so LiteLLM can discover it."""
        if self.openai_api_key:
            os.environ.setdefault("OPENAI_API_KEY", self.openai_api_key)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

configure_logging(settings.log_level, settings.log_format)
