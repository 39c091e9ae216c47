"""
SANDLOOP Prompt Roles

Each role is:
  - A system prompt
  - A structured input template
  - A parser that turns the aggregated reply into a plain value

Roles are stateless. Everything they know arrives in AgentContext,
rebuilt from scratch for every call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from sandloop.router import ChatMessage, Router, RouterResponse


class AgentContext(BaseModel):
    """Inputs handed to a role for one call."""
    task_id: str
    context: str  # rendered <task>/<notes> block
    iteration: int = 0
    max_iterations: int = 0
    script: str = ""
    output: str = ""  # truncated command result


class BaseAgent(ABC):
    """
    Base class for all prompt roles.

    Subclasses define:
      - role: str — maps to router model
      - justification: str — why the request is made, for the gateway's logs
      - system_prompt: str
      - build_messages() / parse_response()
    """

    role: str = "unknown"
    justification: str = "SANDLOOP request"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, router: Router):
        self.router = router

    async def run(self, context: AgentContext, **kwargs) -> Any:
        """Execute the role: build messages → call model → parse."""
        messages = self.build_messages(context)
        response = await self.router.complete(
            role=self.role,
            messages=messages,
            justification=self.justification,
            **kwargs,
        )
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[ChatMessage]:
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: AgentContext) -> Any:
        ...

    def _system_msg(self) -> ChatMessage:
        return ChatMessage.system(self.system_prompt)

    def _user_msg(self, content: str) -> ChatMessage:
        return ChatMessage.user(content)
