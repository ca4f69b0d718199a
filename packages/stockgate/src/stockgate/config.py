"""Configuration for the stockgate mediation service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///stockgate.db"
    echo: bool = False


@dataclass
class LLMConfig:
    enabled: bool = False
    chat_model: str = "gemini-2.0-flash"
    text_model: str = "gemini-2.0-flash"
    temperature: float = 0.2
    max_tokens: int = 4000


@dataclass
class OrchestratorConfig:
    history_window: int = 10
    assistant_name: str = "Lana"
    fallback_reply: str = (
        "Sorry, I couldn't reach the assistant just now. "
        "Nothing was changed - please try again in a moment."
    )


@dataclass
class ExtractionConfig:
    max_catalog_context: int = 100
    max_document_chars: int = 30000


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Build a config from environment variables, keeping defaults for unset ones."""
        config = cls()
        env = os.environ

        if "STOCKGATE_DATABASE_URL" in env:
            config.database.url = env["STOCKGATE_DATABASE_URL"]
        config.llm.enabled = env.get("AI_ENABLED", "").lower() in ("1", "true", "yes")
        config.llm.chat_model = env.get("AI_CHAT_MODEL", config.llm.chat_model)
        config.llm.text_model = env.get("AI_TEXT_MODEL", config.llm.text_model)
        config.llm.temperature = float(env.get("AI_TEMPERATURE", config.llm.temperature))
        config.llm.max_tokens = int(env.get("AI_MAX_TOKENS", config.llm.max_tokens))
        config.orchestrator.history_window = int(
            env.get("AI_HISTORY_WINDOW", config.orchestrator.history_window)
        )
        config.server.port = int(env.get("PORT", config.server.port))
        return config
