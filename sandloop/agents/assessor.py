"""
Assessor — decides whether the task is done.
"""

from __future__ import annotations

from loguru import logger

from sandloop.agents import AgentContext, BaseAgent
from sandloop.context import is_affirmative
from sandloop.router import ChatMessage, RouterResponse


class AssessorAgent(BaseAgent):
    role = "assessor"
    justification = "Check whether the task is complete after the last script."

    system_prompt = """You review the progress of an autonomous coding agent.

You are shown the task, the agent's notes, the script it just ran and that
script's output. Decide whether the task is now FULLY complete and a final
answer can be given immediately.

Answer with YES or NO on the first line. You may add one short line of reasoning after it."""

    def build_messages(self, context: AgentContext) -> list[ChatMessage]:
        user_content = f"""{context.context}

<script>
{context.script}
</script>

<output>
{context.output}
</output>

Is the task fully complete, so that an answer can be given now? Reply YES or NO."""

        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> bool:
        verdict = is_affirmative(response.content)
        logger.info(f"[ASSESS] Iteration {context.iteration}: {'complete' if verdict else 'not complete'}")
        return verdict
