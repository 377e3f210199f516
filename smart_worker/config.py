"""Configuration for Smart Worker."""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

# Load .env from current working directory
load_dotenv(os.path.join(os.getcwd(), ".env"))

VALID_DISTANCE_METRICS = ("cosine", "l2", "ip")
VALID_EXECUTION_CONTEXTS = ("host", "sandbox")


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class LLMConfig:
    """Text-generation backend configuration."""

    service_url: str = field(
        default_factory=lambda: os.getenv("AI_SERVICE_URL", "http://localhost:8100")
    )
    model: str = field(
        default_factory=lambda: os.getenv(
            "AI_MODEL_NAME", "qwen2.5-coder-3b-instruct-q4_k_m.gguf"
        )
    )
    api_key: str = field(default_factory=lambda: os.getenv("AI_API_KEY", "not-needed"))
    timeout: float = field(default_factory=lambda: _env_float("AI_TIMEOUT", 600.0))

    @property
    def base_url(self) -> str:
        """OpenAI-compatible base URL of the model server."""
        return f"{self.service_url.rstrip('/')}/v1"


@dataclass
class EmbeddingConfig:
    """Embedding service configuration."""

    url: str = field(
        default_factory=lambda: os.getenv("AI_EMBEDDING_URL", "http://localhost:8110")
    )
    model: str = field(
        default_factory=lambda: os.getenv("AI_EMBEDDING_MODEL", "bge-large-en-v1.5-f32")
    )
    dimension: int = field(default_factory=lambda: _env_int("EMBEDDING_DIMENSION", 1024))
    timeout: float = field(default_factory=lambda: _env_float("EMBEDDING_TIMEOUT", 30.0))


@dataclass
class MemoryConfig:
    """Failure memory (metadata + vector store) configuration."""

    db_path: str = field(
        default_factory=lambda: os.getenv(
            "MEMORY_DB_PATH", os.path.expanduser("~/.smart_worker/memory.db")
        )
    )
    vector_path: str = field(
        default_factory=lambda: os.getenv(
            "MEMORY_VECTOR_PATH", os.path.expanduser("~/.smart_worker/vectors")
        )
    )
    collection: str = field(
        default_factory=lambda: os.getenv("MEMORY_COLLECTION", "job_failure_chunks")
    )
    distance_metric: str = field(
        default_factory=lambda: os.getenv("MEMORY_DISTANCE_METRIC", "cosine").lower()
    )
    top_k: int = field(default_factory=lambda: _env_int("MEMORY_TOP_K", 5))
    neighbors_per_query: int = field(
        default_factory=lambda: _env_int("MEMORY_NEIGHBORS_PER_QUERY", 3)
    )
    signature_match_threshold: float = field(
        default_factory=lambda: _env_float("SIGNATURE_MATCH_THRESHOLD", 0.15)
    )


@dataclass
class SandboxConfig:
    """Sandbox container configuration."""

    image_tag: str = field(
        default_factory=lambda: os.getenv("SANDBOX_IMAGE_TAG", "smart-worker-sandbox")
    )
    base_image: str = field(
        default_factory=lambda: os.getenv("SANDBOX_BASE_IMAGE", "python:3.12-slim")
    )
    network: str = field(default_factory=lambda: os.getenv("SANDBOX_NETWORK", "sandbox"))
    container_prefix: str = "smart-sandbox"
    sidecar_prefix: str = "smart-sandbox-redis"
    memory_limit: str = field(
        default_factory=lambda: os.getenv("SANDBOX_MEMORY_LIMIT", "128m")
    )
    cpus: float = field(default_factory=lambda: _env_float("SANDBOX_CPUS", 0.5))
    pids_limit: int = field(default_factory=lambda: _env_int("SANDBOX_PIDS_LIMIT", 64))
    port_min: int = field(default_factory=lambda: _env_int("SANDBOX_PORT_MIN", 10000))
    port_max: int = field(default_factory=lambda: _env_int("SANDBOX_PORT_MAX", 20000))
    settle_seconds: float = field(
        default_factory=lambda: _env_float("SANDBOX_SETTLE_SECONDS", 10.0)
    )
    probe_attempts: int = field(
        default_factory=lambda: _env_int("SANDBOX_PROBE_ATTEMPTS", 5)
    )
    probe_delay_seconds: float = field(
        default_factory=lambda: _env_float("SANDBOX_PROBE_DELAY", 2.0)
    )
    probe_host: str = field(
        default_factory=lambda: os.getenv("SANDBOX_PROBE_HOST", "localhost")
    )
    env_file: str = field(
        default_factory=lambda: os.getenv("SANDBOX_ENV_FILE", ".env.docker")
    )
    app_command: str = field(
        default_factory=lambda: os.getenv("APP_START_COMMAND", "python -m app")
    )
    build_context: str = field(
        default_factory=lambda: os.getenv("SANDBOX_BUILD_CONTEXT", ".")
    )


@dataclass
class SMTPConfig:
    """SMTP configuration for notification emails."""

    host: str = field(default_factory=lambda: os.getenv("APP_SMTP_HOST", ""))
    port: int = field(default_factory=lambda: _env_int("APP_SMTP_PORT", 465))
    user: str = field(default_factory=lambda: os.getenv("APP_SMTP_USER", ""))
    password: str = field(default_factory=lambda: os.getenv("APP_SMTP_PASS", ""))
    to_user: str = field(default_factory=lambda: os.getenv("APP_SMTP_TO_USER", ""))

    @property
    def is_configured(self) -> bool:
        """True only when every SMTP setting is present."""
        return bool(
            self.host and self.port and self.user and self.password and self.to_user
        )


@dataclass
class SmartWorkerConfig:
    """Main configuration for Smart Worker."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    smtp: SMTPConfig = field(default_factory=SMTPConfig)

    root_dir: Optional[str] = field(default_factory=lambda: os.getenv("APP_ROOT_DIR"))
    execution_context: str = field(
        default_factory=lambda: os.getenv("EXECUTION_CONTEXT", "host").lower()
    )

    @classmethod
    def from_env(cls) -> "SmartWorkerConfig":
        """Create config from environment variables."""
        return cls()

    @property
    def in_sandbox(self) -> bool:
        """True when this process runs inside a sandbox container."""
        return self.execution_context == "sandbox"

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.root_dir:
            errors.append("APP_ROOT_DIR is required to apply code fixes")
        if self.execution_context not in VALID_EXECUTION_CONTEXTS:
            errors.append(
                f"EXECUTION_CONTEXT must be one of {', '.join(VALID_EXECUTION_CONTEXTS)}"
            )
        if self.memory.distance_metric not in VALID_DISTANCE_METRICS:
            errors.append(
                f"MEMORY_DISTANCE_METRIC must be one of {', '.join(VALID_DISTANCE_METRICS)}"
            )
        if self.embedding.dimension <= 0:
            errors.append("EMBEDDING_DIMENSION must be positive")
        if self.memory.top_k <= 0:
            errors.append("MEMORY_TOP_K must be positive")
        if self.sandbox.port_min >= self.sandbox.port_max:
            errors.append("SANDBOX_PORT_MIN must be lower than SANDBOX_PORT_MAX")
        if self.sandbox.probe_attempts <= 0:
            errors.append("SANDBOX_PROBE_ATTEMPTS must be positive")

        return errors
