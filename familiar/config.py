# familiar/config.py
"""
Configuration for the familiar agent.

There are two kinds of configuration and they live side by side here:

1. RUNTIME TUNING — loop limits, retry policy, desire timing, file locations.
   These are read from environment variables (and an optional .env file)
   through pydantic-settings. Every field has a FAMILIAR_* alias.

2. THE AGENT RECORD — which provider to talk to, credentials, names, device
   connection parameters and the trust policy for tools. This is what the
   user edits and what gets persisted to config.toml (see config_file.py).
   The core only *reads* the trust mode, the rules and the persona; the rest
   is passed through to the provider and device clients untouched.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

# Resolve .env relative to the project root (one level above familiar/).
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

Platform = Literal["anthropic", "kimi", "gemini", "openai"]
TrustModeName = Literal["prompt", "full", "custom"]

DEFAULT_MODELS: dict[str, str] = {
    "kimi": "kimi-k2.5",
    "anthropic": "claude-haiku-4-5-20251001",
    "gemini": "gemini-2.5-flash",
    "openai": "gpt-4o-mini",
}


# =========================================================================
# Runtime tuning (environment)
# =========================================================================


class LoopConfig(BaseSettings):
    """Limits for the reasoning/acting loop."""

    max_iterations: int = Field(50, alias="FAMILIAR_MAX_ITERATIONS")
    recall_k: int = Field(5, alias="FAMILIAR_RECALL_K")
    tool_default_timeout: float = Field(30.0, alias="FAMILIAR_TOOL_DEFAULT_TIMEOUT")
    tool_max_output_length: int = Field(32000, alias="FAMILIAR_TOOL_MAX_OUTPUT_LENGTH")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "LoopConfig":
        self.max_iterations = max(1, int(self.max_iterations))
        self.recall_k = max(0, int(self.recall_k))
        self.tool_default_timeout = max(1.0, float(self.tool_default_timeout))
        self.tool_max_output_length = max(200, int(self.tool_max_output_length))
        return self


class ProviderTuning(BaseSettings):
    """Request sizing and retry policy shared by every backend."""

    max_tokens: int = Field(4096, alias="FAMILIAR_MAX_TOKENS")
    request_timeout_seconds: float = Field(120.0, alias="FAMILIAR_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(3, alias="FAMILIAR_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="FAMILIAR_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="FAMILIAR_RETRY_MAX_DELAY")
    retry_exponential_base: float = Field(2.0, alias="FAMILIAR_RETRY_EXPONENTIAL_BASE")
    retry_jitter_range: float = Field(0.25, alias="FAMILIAR_RETRY_JITTER_RANGE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ProviderTuning":
        self.max_tokens = max(1, int(self.max_tokens))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.0, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_exponential_base = max(1.0, float(self.retry_exponential_base))
        self.retry_jitter_range = min(1.0, max(0.0, float(self.retry_jitter_range)))
        return self


class DesireConfig(BaseSettings):
    """Timing for the background desire scheduler."""

    enabled: bool = Field(True, alias="FAMILIAR_DESIRES_ENABLED")
    interval: float = Field(60.0, alias="FAMILIAR_DESIRE_INTERVAL")
    threshold: float = Field(0.6, alias="FAMILIAR_DESIRE_THRESHOLD")
    circuit_max_consecutive: int = Field(5, alias="FAMILIAR_DESIRE_CIRCUIT_MAX_CONSECUTIVE")
    circuit_cooldown_seconds: float = Field(300.0, alias="FAMILIAR_DESIRE_CIRCUIT_COOLDOWN")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "DesireConfig":
        self.interval = max(1.0, float(self.interval))
        self.threshold = min(1.0, max(0.0, float(self.threshold)))
        self.circuit_max_consecutive = max(1, int(self.circuit_max_consecutive))
        self.circuit_cooldown_seconds = max(1.0, float(self.circuit_cooldown_seconds))
        return self


class PathsConfig(BaseSettings):
    """Where the agent record and the persona document live."""

    config_path: Path = Field(
        Path.home() / ".config" / "familiar-ai" / "config.toml",
        alias="FAMILIAR_CONFIG_PATH",
    )
    me_md_path: Path = Field(
        Path.home() / ".familiar_ai" / "ME.md",
        alias="FAMILIAR_ME_MD_PATH",
    )

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def expand_user(self) -> "PathsConfig":
        self.config_path = Path(self.config_path).expanduser()
        self.me_md_path = Path(self.me_md_path).expanduser()
        return self


class FamiliarSettings:
    """
    Composes every runtime settings block.

    Components receive the block they need from here; nothing reads the
    environment on its own.
    """

    def __init__(
        self,
        loop: Optional[LoopConfig] = None,
        provider: Optional[ProviderTuning] = None,
        desires: Optional[DesireConfig] = None,
        paths: Optional[PathsConfig] = None,
    ):
        self.loop = loop or LoopConfig()
        self.provider = provider or ProviderTuning()
        self.desires = desires or DesireConfig()
        self.paths = paths or PathsConfig()

    def __repr__(self) -> str:
        return (
            f"FamiliarSettings(max_iterations={self.loop.max_iterations}, "
            f"desire_interval={self.desires.interval}s, "
            f"config_path={self.paths.config_path})"
        )


# =========================================================================
# Persisted agent record (config.toml)
# =========================================================================


class PermRule(BaseModel):
    """
    One allow/deny rule for the custom trust mode.

    The compact string form is ``allow:<tool>[:<pattern>]`` or
    ``deny:<tool>[:<pattern>]``. ``tool`` and ``pattern`` are shell-style
    globs; ``*`` matches any tool. The pattern may itself contain colons.
    """

    allow: bool
    tool: str = "*"
    pattern: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "PermRule":
        parts = text.strip().split(":", 2)
        if len(parts) < 2 or parts[0] not in ("allow", "deny") or not parts[1]:
            raise ValueError(
                f"Invalid permission rule {text!r}; expected 'allow:<tool>[:<pattern>]' "
                "or 'deny:<tool>[:<pattern>]'"
            )
        pattern = parts[2] if len(parts) == 3 and parts[2] != "" else None
        return cls(allow=parts[0] == "allow", tool=parts[1], pattern=pattern)

    def __str__(self) -> str:
        head = f"{'allow' if self.allow else 'deny'}:{self.tool}"
        return f"{head}:{self.pattern}" if self.pattern is not None else head


def _coerce_rules(value: object) -> object:
    """Accept rule strings, dicts, or PermRule instances in any mix."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return value
    return [PermRule.parse(item) if isinstance(item, str) else item for item in value]


RuleList = Annotated[list[PermRule], BeforeValidator(_coerce_rules)]


class CameraConfig(BaseModel):
    host: str = ""
    username: str = ""
    password: str = ""
    onvif_port: int = 2020

    @property
    def is_configured(self) -> bool:
        return bool(self.host)


class TTSConfig(BaseModel):
    elevenlabs_api_key: str = ""
    voice_id: str = "cgSgspJ2msm6clMCkdW9"

    @property
    def is_configured(self) -> bool:
        return bool(self.elevenlabs_api_key)


class MobilityConfig(BaseModel):
    tuya_region: str = "us"
    api_key: str = ""
    api_secret: str = ""
    device_id: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.device_id)


class PermissionsConfig(BaseModel):
    trust_mode: TrustModeName = "prompt"
    rules: RuleList = Field(default_factory=list)

    @field_validator("trust_mode", mode="before")
    @classmethod
    def normalize_trust_mode(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class AgentConfig(BaseModel):
    """
    The user-editable agent record.

    Structurally validated only: the core does not interpret credentials or
    device parameters, it hands them to whichever client needs them.
    """

    platform: Platform = "kimi"
    api_key: str = ""
    model: str = ""
    agent_name: str = "AI"
    persona: str = ""
    companion_name: str = "You"
    camera: CameraConfig = Field(default_factory=CameraConfig)
    tts: TTSConfig = Field(default_factory=TTSConfig)
    mobility: MobilityConfig = Field(default_factory=MobilityConfig)
    permissions: PermissionsConfig = Field(default_factory=PermissionsConfig)

    model_config = {"extra": "ignore"}

    @field_validator("platform", mode="before")
    @classmethod
    def normalize_platform(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    def effective_model(self) -> str:
        """The explicit model override, or the platform's default."""
        return self.model.strip() or DEFAULT_MODELS[self.platform]

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key.strip() and self.agent_name.strip())

    def to_toml_dict(self) -> dict:
        """Serialize for config.toml (rules in their compact string form)."""
        data = self.model_dump(mode="json")
        data["permissions"]["rules"] = [str(rule) for rule in self.permissions.rules]
        return data
