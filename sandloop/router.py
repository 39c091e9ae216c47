"""
SANDLOOP Router — Vendor-Agnostic Model Gateway

Routes every prompt through LiteLLM so the loop never knows which
vendor is backing it. Responses are streamed as text fragments and
aggregated into one assistant message per call. Handles model
resolution, transport retries and usage tracking.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sandloop.config_loader import SandLoopConfig

# Failures worth another attempt before the first fragment arrives
TRANSIENT_ERRORS = (
    litellm.RateLimitError,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.Timeout,
)

ROLES = ("coder", "assessor", "compactor", "finisher", "narrator")


class ModelRequestError(Exception):
    pass


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    role: MessageRole
    content: str

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "ChatMessage":
        return cls(role=MessageRole.ASSISTANT, content=content)

    def to_litellm(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class RouterResponse(BaseModel):
    content: str
    model: str
    fragments: int = 0
    latency_ms: int = 0


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    call_count: int = 0
    fragment_count: int = 0
    prompt_chars: int = 0
    completion_chars: int = 0
    total_latency_ms: int = 0

    def record(self, messages: list[ChatMessage], response: RouterResponse) -> None:
        self.call_count += 1
        self.fragment_count += response.fragments
        self.prompt_chars += sum(len(m.content) for m in messages)
        self.completion_chars += len(response.content)
        self.total_latency_ms += response.latency_ms

    def summary(self) -> dict:
        return {
            "call_count": self.call_count,
            "fragment_count": self.fragment_count,
            "prompt_chars": self.prompt_chars,
            "completion_chars": self.completion_chars,
            "total_latency_ms": self.total_latency_ms,
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("o1") or normalized.startswith("o3") or normalized.startswith("o4")


def _build_kwargs(
    model: str,
    messages: list[ChatMessage],
    temperature: float,
    max_tokens: int,
) -> dict[str, Any]:
    """
    Build LiteLLM kwargs with per-model param filtering.
    Different model families support different parameters.
    """
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": [m.to_litellm() for m in messages],
        "max_tokens": max_tokens,
        "stream": True,
    }

    if not _is_gpt5_model(model) and not _is_o_series_model(model):
        kwargs["temperature"] = temperature

    return kwargs


def _fragment_text(chunk: Any) -> str:
    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) or ""


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class Router:
    """
    Vendor-agnostic model gateway.

    The loop calls `await router.complete(role, messages, justification)`.
    The router resolves the model for the role, opens a stream,
    aggregates it and returns a structured response.
    """

    def __init__(self, config: SandLoopConfig, selected_model: str | None = None):
        self.config = config
        self.default_model = selected_model or config.routing.default
        self.usage = UsageRecord()
        self._role_model_map = {
            role: getattr(config.routing, role) for role in ROLES
        }

        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        """Resolve a prompt role to a concrete model string.

        Args:
            role (str): The prompt role (coder, assessor, ...) or "default".

        Returns:
            str: The per-role override if configured, else the selected default model.

        Raises:
            ValueError: If the role is not known.
        """
        if role == "default":
            return self.default_model
        if role not in self._role_model_map:
            raise ValueError(f"Unknown prompt role: {role}. Known: {list(self._role_model_map)}")
        return self._role_model_map[role] or self.default_model

    async def stream(
        self,
        messages: list[ChatMessage],
        justification: str,
        role: str = "default",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield response text fragments as the model produces them.

        Cancelling the consuming task abandons the in-flight request.

        Raises:
            ModelRequestError: If the request cannot be opened or the stream breaks.
        """
        model = self.resolve_model(role)
        kwargs = _build_kwargs(
            model,
            messages,
            self.config.limits.temperature if temperature is None else temperature,
            max_tokens or self.config.limits.max_tokens,
        )

        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages) — {justification}")

        response = await self._open_stream(kwargs)
        try:
            async for chunk in response:
                text = _fragment_text(chunk)
                if text:
                    yield text
        except Exception as e:
            raise ModelRequestError(f"Model stream failed ({model}): {e}") from e

    async def complete(
        self,
        role: str,
        messages: list[ChatMessage],
        justification: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> RouterResponse:
        """Send one request and aggregate the streamed answer."""
        start = time.monotonic()
        fragments: list[str] = []

        async for fragment in self.stream(
            messages,
            justification,
            role=role,
            temperature=temperature,
            max_tokens=max_tokens,
        ):
            fragments.append(fragment)

        response = RouterResponse(
            content="".join(fragments),
            model=self.resolve_model(role),
            fragments=len(fragments),
            latency_ms=int((time.monotonic() - start) * 1000),
        )
        self.usage.record(messages, response)

        logger.debug(
            f"[ROUTER] {role} complete — {len(response.content)} chars, "
            f"{response.fragments} fragments, {response.latency_ms}ms"
        )
        return response

    async def _open_stream(self, kwargs: dict[str, Any]) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.limits.request_attempts),
                wait=wait_exponential(min=1, max=10),
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                reraise=True,
            ):
                with attempt:
                    return await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ModelRequestError(f"Model request failed ({kwargs['model']}): {e}") from e
