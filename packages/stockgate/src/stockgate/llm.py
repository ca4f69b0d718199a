"""Protocols for the language model collaborators."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from stockgate.actions import ToolDefinition
from stockgate.types import ChatMessage, ModelTurn


class ChatModel(Protocol):
    """A chat model that may answer with text, tool calls, or both.

    Implementations raise UpstreamModelError when the call fails.
    """

    def complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolDefinition],
    ) -> ModelTurn: ...


class TextModel(Protocol):
    """Protocol for plain prompt-in, text-out models."""

    def query(self, prompt: str) -> str: ...
