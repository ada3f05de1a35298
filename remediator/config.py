"""
Configuration for Cluster Remediator.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8910
    debug: bool = False

    # LLM Backend
    llm_provider: str = "openai"
    llm_base_url: Optional[str] = None
    llm_model: str = "gpt-4o"
    llm_api_key: Optional[str] = None
    llm_temperature: float = 0.1
    llm_timeout_seconds: float = 120.0

    # Kubectl
    kubectl_path: str = "kubectl"
    kubeconfig_path: Optional[str] = None
    kube_context: Optional[str] = None
    cluster_query_timeout_seconds: float = 30.0
    command_timeout_seconds: float = 120.0
    gather_concurrency: int = 4
    max_output_chars: int = 10000
    default_log_tail: int = 100
    discover_api_resources: bool = True

    # Investigation
    max_iterations: int = 20
    context_token_budget: int = 100000
    context_recent_iterations: int = 3
    dry_run_validation: bool = True
    max_validation_rounds: int = 3

    # Execution gating defaults
    default_confidence_threshold: float = 0.8
    default_max_risk_level: str = "low"

    # Session storage
    session_backend: str = "file"  # file | redis
    session_dir: str = "./tmp/sessions"
    redis_url: str = "redis://localhost:6379"
    session_ttl_seconds: int = 604800  # 7 days

    class Config:
        env_prefix = "REMEDIATOR_"


settings = Settings()
