"""
Compactor — rewrites the notes that carry over to the next iteration.

Nothing else survives between iterations, so whatever is not restated
here is gone for good.
"""

from __future__ import annotations

from sandloop.agents import AgentContext, BaseAgent
from sandloop.router import ChatMessage, RouterResponse


class CompactorAgent(BaseAgent):
    role = "compactor"
    justification = "Compact the agent's working notes for the next iteration."

    system_prompt = """You maintain the working notes of an autonomous coding agent.

The agent forgets everything between iterations except these notes. Write new
notes that replace the old ones entirely.

Include:
- What has been done so far and what was learned from the last output.
- File paths, and file contents or excerpts, that are still needed.
- What remains to be done next.

Do NOT repeat content that the scripts already wrote to files in the
workspace; the next script can read those files itself. Be concise.
Return only the notes."""

    def build_messages(self, context: AgentContext) -> list[ChatMessage]:
        user_content = f"""{context.context}

<script>
{context.script}
</script>

<output>
{context.output}
</output>

Write the updated notes."""

        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> str | None:
        notes = response.content.strip()
        return notes or None
