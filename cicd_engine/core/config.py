"""
Configuration
=============
Loads environment variables from .env using python-dotenv, then layers the
structured pipeline file (YAML) on top.

Environment Variables:
    WEBHOOK_SECRET           — shared HMAC secret for inbound webhooks
    GITHUB_TOKEN             — commit-status API + private clone access
    PIPELINE_CONFIG_PATH     — YAML file with stages / targets / sinks (default: pipeline.yml)
    DEBOUNCE_WINDOW_SECONDS  — coalescing window per (repo, ref) (default: 3)
    AGENT_POOL_CAPACITY      — concurrent runs (default: 2)
    READY_QUEUE_MAX_DEPTH    — waiting entries before BACKPRESSURE_DROPPED (default: 50)
    RETRY_MAX_ATTEMPTS       — retries for retryable stages (default: 2)
    BUILD_AGENT_KIND         — shell | docker (default: shell)
    DOCKER_IMAGE             — sandbox image for the docker agent
    ARTIFACT_ROOT            — local artifact store directory
    WORKSPACE_ROOT           — clone / worktree directory
    RUN_ARCHIVE_PATH         — JSON-lines archive of finished runs
    STATUS_CONTEXT           — commit-status context name
    PUBLIC_BASE_URL          — base URL used for commit-status target links

Precedence:
    pipeline file value > environment variable > built-in default
"""
import os
import logging
from typing import Any, Dict, List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from cicd_engine.models.deployment import DeploymentTarget
from cicd_engine.models.stage_definition import StageDefinition, default_stage_definitions

load_dotenv()

logger = logging.getLogger(__name__)

WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
PIPELINE_CONFIG_PATH = os.getenv("PIPELINE_CONFIG_PATH", "pipeline.yml")
DEBOUNCE_WINDOW_SECONDS = float(os.getenv("DEBOUNCE_WINDOW_SECONDS", 3))
AGENT_POOL_CAPACITY = int(os.getenv("AGENT_POOL_CAPACITY", 2))
READY_QUEUE_MAX_DEPTH = int(os.getenv("READY_QUEUE_MAX_DEPTH", 50))
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", 2))
BUILD_AGENT_KIND = os.getenv("BUILD_AGENT_KIND", "shell")
DOCKER_IMAGE = os.getenv("DOCKER_IMAGE", "python:3.11-slim")
ARTIFACT_ROOT = os.getenv("ARTIFACT_ROOT", "artifacts")
WORKSPACE_ROOT = os.getenv("WORKSPACE_ROOT", "workspace")
RUN_ARCHIVE_PATH = os.getenv("RUN_ARCHIVE_PATH", "runs.jsonl")
STATUS_CONTEXT = os.getenv("STATUS_CONTEXT", "ci/pipeline")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

# Status reporter delivery
REPORTER_MAX_ATTEMPTS = int(os.getenv("REPORTER_MAX_ATTEMPTS", 5))
REPORTER_BACKOFF_SECONDS = float(os.getenv("REPORTER_BACKOFF_SECONDS", 1.0))


class ConfigError(Exception):
    """Raised when the pipeline configuration cannot be loaded or is invalid."""


# ---------------------------------------------------------------------------
# Structured configuration
# ---------------------------------------------------------------------------
class NotificationSinkConfig(BaseModel):
    kind: Literal["commit_status", "webhook", "log"]
    url: Optional[str] = None
    token: Optional[str] = None
    context: Optional[str] = None
    # Terminal transitions only unless set
    include_intermediate: bool = False


class ArtifactStoreConfig(BaseModel):
    kind: Literal["local", "s3"] = "local"
    root: str = ARTIFACT_ROOT
    bucket: Optional[str] = None
    prefix: str = "artifacts"
    region: Optional[str] = None


class EngineConfig(BaseModel):
    webhook_secret: str = WEBHOOK_SECRET
    github_token: str = GITHUB_TOKEN
    debounce_window_seconds: float = Field(default=DEBOUNCE_WINDOW_SECONDS, ge=0)
    agent_pool_capacity: int = Field(default=AGENT_POOL_CAPACITY, ge=1)
    ready_queue_max_depth: int = Field(default=READY_QUEUE_MAX_DEPTH, ge=1)
    retry_max_attempts: int = Field(default=RETRY_MAX_ATTEMPTS, ge=0)
    trigger_events: List[Literal["push", "pull_request"]] = ["push"]
    stage_definitions: List[StageDefinition] = Field(default_factory=default_stage_definitions)
    deployment_targets: List[DeploymentTarget] = []
    notification_sinks: List[NotificationSinkConfig] = Field(
        default_factory=lambda: [NotificationSinkConfig(kind="log")]
    )
    artifact_store: ArtifactStoreConfig = Field(default_factory=ArtifactStoreConfig)
    build_agent: Literal["shell", "docker"] = BUILD_AGENT_KIND  # type: ignore[assignment]
    docker_image: str = DOCKER_IMAGE
    workspace_root: str = WORKSPACE_ROOT
    archive_path: str = RUN_ARCHIVE_PATH
    status_context: str = STATUS_CONTEXT
    public_base_url: str = PUBLIC_BASE_URL
    reporter_max_attempts: int = Field(default=REPORTER_MAX_ATTEMPTS, ge=1)
    reporter_backoff_seconds: float = Field(default=REPORTER_BACKOFF_SECONDS, ge=0)

    @model_validator(mode="after")
    def _check_stages_and_targets(self) -> "EngineConfig":
        names = [s.name for s in self.stage_definitions]
        if len(names) != len(set(names)):
            raise ValueError("stage names must be unique")
        ordered = sorted(self.stage_definitions, key=lambda s: s.ordinal)
        notify = [s for s in ordered if s.kind == "notify"]
        if len(notify) != 1 or ordered[-1].kind != "notify":
            raise ValueError("exactly one notify stage is required and it must be last")
        self.stage_definitions = ordered

        envs = [t.environment_name for t in self.deployment_targets]
        if len(envs) != len(set(envs)):
            raise ValueError("deployment target environment names must be unique")
        return self

    def target(self, environment_name: str) -> Optional[DeploymentTarget]:
        for target in self.deployment_targets:
            if target.environment_name == environment_name:
                return target
        return None


def load_engine_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> EngineConfig:
    """
    Build the EngineConfig from the pipeline YAML file plus environment defaults.

    Parameters
    ----------
    path : str | None
        YAML file to read. Defaults to PIPELINE_CONFIG_PATH. A missing file is
        not an error: the engine runs with defaults and no deploy targets.
    overrides : dict | None
        Values applied on top of the file (used by tests and the CLI).

    Raises
    ------
    ConfigError
        When the file is not valid YAML or fails validation.
    """
    config_path = path or PIPELINE_CONFIG_PATH
    data: Dict[str, Any] = {}

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping at top level")
        data.update(loaded)
        logger.info("Loaded pipeline config from %s", os.path.abspath(config_path))
    else:
        logger.info("No pipeline config at %s, using defaults", config_path)

    if overrides:
        data.update(overrides)

    try:
        config = EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid pipeline configuration: {e}") from e

    if not config.webhook_secret:
        logger.warning("WEBHOOK_SECRET is empty — every webhook will be rejected")
    return config
