"""Configuration management for the assistant.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


DEFAULT_SYSTEM_PROMPT = """You are a helpful AI coding assistant running in the user's terminal.

You can use tools to read and modify files, inspect repositories and search the web. Each tool has a specific purpose described in its definition.

Guidelines:
- Use tools to get accurate information instead of guessing
- If a tool returns an error, read it carefully and decide how to proceed
- Keep answers concise and show code when it helps
- Ask the user for clarification when a request is ambiguous
"""


class LayeredSettings(BaseSettings):
    """
    Settings whose environment variables override constructor values.

    ``from_yaml`` passes file values to the constructor, so this order makes
    ``LLM_*``, ``DATABASE_*`` and ``ASSISTANT_*`` win over the YAML file.
    """

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, dotenv_settings, init_settings, file_secret_settings


class LLMSettings(LayeredSettings):
    """LLM provider configuration."""
    provider: str = Field(default="openai", description="LLM provider: openai, azure_openai, scripted")
    model: str = Field(default="gpt-4o", description="Model name")
    api_key: Optional[str] = Field(default=None, description="API key")
    api_base: Optional[str] = Field(default=None, description="API base URL")
    api_version: Optional[str] = Field(default="2024-02-15-preview", description="API version")
    deployment_name: Optional[str] = Field(default=None, description="Azure deployment name")
    temperature: float = Field(default=0.2, ge=0, le=2)
    max_tokens: int = Field(default=4096, gt=0)
    max_retries: int = Field(default=3, ge=1, description="Attempts per generation call")

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore"
    )


class DatabaseSettings(LayeredSettings):
    """Conversation database configuration."""
    url: str = Field(default="sqlite+aiosqlite:///assistant.db")
    echo: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        extra="ignore"
    )


class AssistantSettings(LayeredSettings):
    """Orchestration loop and shell configuration."""
    user_id: str = Field(default="user")
    history_limit: int = Field(default=10, gt=0, description="Recent messages fed to the generator")
    max_iterations: Optional[int] = Field(default=25, gt=0, description="Generation steps per turn; null disables the cap")
    parallel_tool_calls: bool = Field(default=False)
    tool_timeout_seconds: float = Field(default=120.0, gt=0)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)

    model_config = SettingsConfigDict(
        env_prefix="ASSISTANT_",
        env_file=".env",
        extra="ignore"
    )


class ProviderSettings(BaseModel):
    """An MCP server started over stdio."""
    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    required_env: list[str] = Field(default_factory=list)
    enabled: bool = True

    def missing_env(self) -> list[str]:
        """Required environment variables that are unset or still placeholders."""
        missing = []
        for name in self.required_env:
            value = os.environ.get(name, "")
            if not value or value.startswith("your_"):
                missing.append(name)
        return missing

    def resolved_args(self, cwd: Optional[str] = None) -> list[str]:
        """Arguments with ``{cwd}`` substituted."""
        cwd = cwd or os.getcwd()
        return [arg.replace("{cwd}", cwd) for arg in self.args]

    def resolved_env(self) -> dict[str, str]:
        """Process environment for the server, with configured overrides."""
        env = dict(os.environ)
        env.update(self.env)
        return env


def default_providers() -> list[ProviderSettings]:
    return [
        ProviderSettings(
            name="filesystem",
            command="npx",
            args=["-y", "@modelcontextprotocol/server-filesystem", "{cwd}"],
        ),
        ProviderSettings(
            name="github",
            command="npx",
            args=["-y", "@missionsquad/mcp-github"],
            required_env=["GITHUB_TOKEN"],
        ),
        ProviderSettings(
            name="websearch",
            command="npx",
            args=["-y", "@brave/brave-search-mcp-server"],
            required_env=["BRAVE_API_KEY"],
        ),
    ]


class Settings(LayeredSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="WARNING")

    # Component settings
    llm: LLMSettings = Field(default_factory=LLMSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    assistant: AssistantSettings = Field(default_factory=AssistantSettings)
    providers: list[ProviderSettings] = Field(default_factory=default_providers)

    model_config = SettingsConfigDict(
        env_prefix="ASSISTANT_APP_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """
        Load settings from a YAML file.

        Each section is built as its own settings object so that its
        environment variables still take precedence over the file.
        """
        data = load_yaml_config(path)
        sections = {
            "llm": LLMSettings,
            "database": DatabaseSettings,
            "assistant": AssistantSettings,
        }
        for key, section_cls in sections.items():
            data[key] = section_cls(**(data.get(key) or {}))
        return cls(**data)


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("ASSISTANT_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
