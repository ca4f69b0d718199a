"""Google Gemini providers for the chat assistant and document extraction."""

from __future__ import annotations

import json
import os
import subprocess
from collections.abc import Sequence

import structlog
from google import genai
from google.genai import types

from stockgate.actions import ToolDefinition
from stockgate.config import LLMConfig
from stockgate.errors import UpstreamModelError
from stockgate.types import ChatMessage, ModelTurn, ToolCall

log = structlog.get_logger()


def _get_project() -> str:
    project = os.environ.get("GOOGLE_CLOUD_PROJECT")
    if project:
        return project
    try:
        result = subprocess.run(
            ["gcloud", "config", "get-value", "project"],
            capture_output=True, text=True, check=True,
        )
        project = result.stdout.strip()
        if project:
            return project
    except (subprocess.CalledProcessError, FileNotFoundError):
        pass
    raise RuntimeError(
        "No GCP project found. Set GOOGLE_CLOUD_PROJECT or run: "
        "gcloud config set project <PROJECT_ID>"
    )


def _make_client() -> genai.Client:
    project = _get_project()
    location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
    return genai.Client(vertexai=True, project=project, location=location)


def _json_object(raw: str) -> dict:
    try:
        data = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        return {"result": raw}
    return data if isinstance(data, dict) else {"result": data}


def to_contents(messages: Sequence[ChatMessage]) -> list[types.Content]:
    """Translate chat history into Gemini contents.

    Assistant turns become ``model`` turns; tool results travel back as
    function responses in a ``user`` turn.
    """
    contents: list[types.Content] = []
    for m in messages:
        if m.role == "tool":
            part = types.Part.from_function_response(
                name=m.name or "tool", response=_json_object(m.content)
            )
            contents.append(types.Content(role="user", parts=[part]))
        elif m.role == "assistant":
            parts: list[types.Part] = []
            if m.content:
                parts.append(types.Part.from_text(text=m.content))
            for call in m.tool_calls:
                parts.append(types.Part(function_call=types.FunctionCall(
                    name=call.name, args=_json_object(call.arguments_json)
                )))
            if parts:
                contents.append(types.Content(role="model", parts=parts))
        elif m.role == "user":
            contents.append(types.Content(role="user", parts=[types.Part.from_text(text=m.content)]))
    return contents


def to_tools(tools: Sequence[ToolDefinition]) -> list[types.Tool]:
    if not tools:
        return []
    return [types.Tool(function_declarations=[
        types.FunctionDeclaration(
            name=t.name, description=t.description, parameters_json_schema=t.parameters
        )
        for t in tools
    ])]


def to_turn(response: types.GenerateContentResponse) -> ModelTurn:
    candidate = response.candidates[0] if response.candidates else None
    parts = candidate.content.parts if candidate and candidate.content else None
    text = "".join(p.text for p in parts or [] if p.text)
    calls = [
        ToolCall(
            id=fc.id or f"call_{i}",
            name=fc.name or "",
            arguments_json=json.dumps(fc.args or {}),
        )
        for i, fc in enumerate(response.function_calls or [])
    ]
    return ModelTurn(text=text, tool_calls=calls)


class GeminiChatProvider:
    """ChatModel backed by Gemini function calling.

    Automatic function calling is disabled: the model only ever requests
    tools, and the orchestrator decides what actually runs.
    """

    def __init__(self, config: LLMConfig, client: genai.Client | None = None) -> None:
        self.config = config
        self._client = client or _make_client()

    def complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolDefinition],
    ) -> ModelTurn:
        gen_config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_tokens,
            tools=to_tools(tools) or None,
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )
        try:
            response = self._client.models.generate_content(
                model=self.config.chat_model,
                contents=to_contents(messages),
                config=gen_config,
            )
        except Exception as e:
            log.warning("chat_model_failed", model=self.config.chat_model, error=str(e))
            raise UpstreamModelError(f"Chat model call failed: {e}") from e
        return to_turn(response)


class GeminiTextProvider:
    """TextModel backed by Gemini."""

    def __init__(self, config: LLMConfig, client: genai.Client | None = None) -> None:
        self.config = config
        self._client = client or _make_client()

    def query(self, prompt: str) -> str:
        try:
            response = self._client.models.generate_content(
                model=self.config.text_model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    temperature=self.config.temperature,
                    max_output_tokens=self.config.max_tokens,
                ),
            )
        except Exception as e:
            log.warning("text_model_failed", model=self.config.text_model, error=str(e))
            raise UpstreamModelError(f"Text model call failed: {e}") from e
        return response.text or ""
