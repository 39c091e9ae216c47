"""
Narrator — one-line progress summaries of a script, for the host UI.
"""

from __future__ import annotations

from sandloop.agents import AgentContext, BaseAgent
from sandloop.router import ChatMessage, RouterResponse


class NarratorAgent(BaseAgent):
    role = "narrator"
    justification = "Summarize the running script for progress reporting."

    system_prompt = """Summarize what the given script does in ONE short sentence
(under 15 words), in the present tense, e.g. "Reading the config files and listing tests".
Return only the sentence."""

    def build_messages(self, context: AgentContext) -> list[ChatMessage]:
        return [self._system_msg(), self._user_msg(context.script)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> str:
        lines = [line.strip() for line in response.content.splitlines() if line.strip()]
        return lines[0] if lines else ""
