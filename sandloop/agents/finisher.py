"""
Finisher — writes the answer the user actually reads.
"""

from __future__ import annotations

from sandloop.agents import AgentContext, BaseAgent
from sandloop.router import ChatMessage, RouterResponse


class FinisherAgent(BaseAgent):
    role = "finisher"
    justification = "Write the final answer for the user."

    system_prompt = """You write the final answer of an autonomous coding agent to its user.

Report only what the executed scripts actually did and observed. Never describe
changes that were planned or hypothetical but not executed. If the task asked a
question, answer it directly. Keep it short and concrete."""

    def build_messages(self, context: AgentContext) -> list[ChatMessage]:
        user_content = f"""{context.context}

<last_script>
{context.script}
</last_script>

<last_output>
{context.output}
</last_output>

Write the final answer for the user."""

        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> str:
        return response.content.strip()
