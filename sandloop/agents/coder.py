"""
Coder — writes the one script this iteration will run.

The model cannot read or write the workspace directly. Whatever it
needs to learn or change has to happen inside the script it returns.
"""

from __future__ import annotations

from loguru import logger

from sandloop.agents import AgentContext, BaseAgent
from sandloop.context import strip_code_fence
from sandloop.router import ChatMessage, RouterResponse


class CoderAgent(BaseAgent):
    role = "coder"
    justification = "Generate the next script for the agent loop."

    system_prompt = """You are the script writer inside SANDLOOP, an autonomous coding agent.

You cannot see or touch the project directly. Each turn you write ONE Python
script. It runs with the project root as its working directory, and its
stdout/stderr are shown to you afterwards.

Rules:
1. Use the script both to inspect (print file listings, file contents, tool
   output) and to change files (write, edit, delete). Relative paths resolve
   against the project root.
2. Print whatever you will need to judge progress. Output is truncated, so
   print selectively.
3. Keep each script focused on the next concrete step.
4. The script runs non-interactively. Never wait for input.
5. Return ONLY the script source. One fenced code block at most, no prose.
"""

    def build_messages(self, context: AgentContext) -> list[ChatMessage]:
        user_content = f"""{context.context}

This is iteration {context.iteration} of at most {context.max_iterations}.
Write the script for the next step towards the task."""

        return [self._system_msg(), self._user_msg(user_content)]

    def parse_response(self, response: RouterResponse, context: AgentContext) -> str:
        script = strip_code_fence(response.content)
        if not script:
            logger.warning("[CODER] Model returned an empty script")
        return script
