"""
SANDLOOP Controller — The Loop

It is NOT smart. It is a bounded, explicit state machine:

    START → GENERATE_CODE → EXECUTE → ASSESS → (COMPACT → GENERATE_CODE) | FINALIZE

Responsibilities:
  - Own the iteration counter and stop at the limit
  - Rebuild each iteration's context from task + notes only
  - Run every script inside the overlay, never in the workspace
  - Finalize the overlay on every exit path
  - Hand the net change set to the applier, once, after the loop

It never writes code and never judges exit codes. The model does both.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field

from sandloop.agents import AgentContext
from sandloop.agents.assessor import AssessorAgent
from sandloop.agents.coder import CoderAgent
from sandloop.agents.compactor import CompactorAgent
from sandloop.agents.finisher import FinisherAgent
from sandloop.agents.narrator import NarratorAgent
from sandloop.audit_logger import TranscriptLogger
from sandloop.config_loader import SandLoopConfig, load_config
from sandloop.context import format_command_result, render_context
from sandloop.event_bus import EventBus
from sandloop.router import ModelRequestError, Router
from sandloop.state import IterationContext, LoopOutcome, LoopState, Task
from sandloop.workspace import OverlaySession, SandboxCreationError
from sandloop.workspace.applier import ChangeApplier, WorkspaceApplier, apply_changes
from sandloop.workspace.diff import FileChange
from sandloop.workspace.tools import CommandResult, ProcessRunner

ITERATION_LIMIT_MESSAGE = (
    "Reached the maximum number of iterations without completing the task."
)

ProgressCallback = Callable[[str], None]
ConfirmCallback = Callable[[list[FileChange]], bool]


class RunCancelledError(Exception):
    pass


def _log_progress(text: str) -> None:
    logger.info(f"[LOOP] {text}")


# ---------------------------------------------------------------------------
# Iteration Controller
# ---------------------------------------------------------------------------

class IterationController:
    """
    Drives one task through the state machine inside an existing overlay.

    `iteration` and `state` are public so hosts and tests can observe the
    loop. Notes are the only thing that survives from one iteration to
    the next, and each compaction replaces them outright.
    """

    def __init__(
        self,
        router: Router,
        runner: ProcessRunner,
        overlay: OverlaySession,
        config: SandLoopConfig,
        interpreter: str | None = None,
        bus: EventBus | None = None,
        progress: ProgressCallback | None = None,
    ):
        self.runner = runner
        self.overlay = overlay
        self.config = config
        self.interpreter = interpreter or config.sandbox.interpreter or sys.executable
        self.bus = bus or EventBus()
        self.progress = progress or _log_progress

        self.coder = CoderAgent(router)
        self.assessor = AssessorAgent(router)
        self.compactor = CompactorAgent(router)
        self.finisher = FinisherAgent(router)
        self.narrator = NarratorAgent(router)

        self.iteration = 0
        self.state = LoopState.START
        self.notes: str | None = None
        self._task_id = ""

    @property
    def max_iterations(self) -> int:
        return self.config.limits.max_iterations

    async def run(self, task: Task) -> LoopOutcome:
        self._task_id = task.task_id
        self.iteration = 0
        self.notes = None
        self._transition(LoopState.START)

        script = ""
        output = ""
        self._transition(LoopState.GENERATE_CODE)

        while True:
            if self.state is LoopState.GENERATE_CODE:
                if self.iteration >= self.max_iterations:
                    self._transition(LoopState.MAX_ITERATIONS_REACHED)
                    logger.warning(f"[LOOP] Iteration limit ({self.max_iterations}) reached")
                    return LoopOutcome(
                        status="iteration_limit",
                        answer=ITERATION_LIMIT_MESSAGE,
                        iterations=self.iteration,
                    )

                self.iteration += 1
                self.progress(f"Iteration {self.iteration}/{self.max_iterations}: generating script")
                script = await self.coder.run(self._agent_context(task))
                self.overlay.write_script(script)
                self._emit("script_generated", {"chars": len(script)})
                self._transition(LoopState.EXECUTE)

            elif self.state is LoopState.EXECUTE:
                self.progress(f"Iteration {self.iteration}/{self.max_iterations}: running script")
                result = await self._execute(task, script)
                output = format_command_result(result, self.config.limits.max_output_chars)
                self._transition(LoopState.ASSESS)

            elif self.state is LoopState.ASSESS:
                self.progress("Assessing result")
                done = await self.assessor.run(self._agent_context(task, script, output))
                self._emit("assessment", {"complete": done})

                if done:
                    self.progress("Writing final answer")
                    answer = await self.finisher.run(self._agent_context(task, script, output))
                    self._transition(LoopState.FINALIZE)
                    return LoopOutcome(
                        status="completed",
                        answer=answer,
                        iterations=self.iteration,
                    )
                self._transition(LoopState.COMPACT)

            elif self.state is LoopState.COMPACT:
                self.progress("Compacting notes")
                self.notes = await self.compactor.run(self._agent_context(task, script, output))
                self._emit("notes_compacted", {"chars": len(self.notes or "")})
                self._transition(LoopState.GENERATE_CODE)

            else:
                raise RuntimeError(f"Unexpected loop state: {self.state}")

    async def _execute(self, task: Task, script: str) -> CommandResult:
        """Run the script and narrate it at the same time. The script is removed afterwards."""
        try:
            result, _ = await asyncio.gather(
                self.runner.run(
                    self.interpreter,
                    [str(self.overlay.script_path)],
                    cwd=self.overlay.clone_root,
                ),
                self._narrate(task, script),
            )
        finally:
            self.overlay.clear_script()

        self._emit("script_executed", {
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "duration": round(result.duration, 3),
        })
        logger.info(f"[LOOP] Script exited with {result.exit_code} after {result.duration:.2f}s")
        return result

    async def _narrate(self, task: Task, script: str) -> str | None:
        try:
            summary = await self.narrator.run(self._agent_context(task, script))
        except Exception as e:
            logger.warning(f"[LOOP] Narration failed: {e}")
            return None
        if summary:
            self.progress(summary)
        return summary

    def _agent_context(self, task: Task, script: str = "", output: str = "") -> AgentContext:
        context = IterationContext(task=task, notes=self.notes)
        return AgentContext(
            task_id=task.task_id,
            context=render_context(context, self.config.limits.max_context_chars),
            iteration=self.iteration,
            max_iterations=self.max_iterations,
            script=script,
            output=output,
        )

    def _transition(self, state: LoopState) -> None:
        self.state = state
        logger.debug(f"[LOOP] → {state.value} (iteration {self.iteration})")
        self._emit("state", {"state": state.value})

    def _emit(self, event_type: str, payload: dict) -> None:
        self.bus.emit(event_type, self._task_id, iteration=self.iteration, payload=payload)


# ---------------------------------------------------------------------------
# Run Result
# ---------------------------------------------------------------------------

RunStatus = Literal["completed", "iteration_limit", "failed", "cancelled", "sandbox_error"]


class RunResult(BaseModel):
    task_id: str
    status: RunStatus
    answer: str = ""
    message: str = ""
    iterations: int = 0
    changes: list[FileChange] = Field(default_factory=list)
    applied: list[str] = Field(default_factory=list)
    error: str | None = None


def _render_message(result: RunResult) -> str:
    if result.status == "completed":
        headline = result.answer or "Task completed."
    elif result.status == "iteration_limit":
        headline = ITERATION_LIMIT_MESSAGE
    elif result.status == "cancelled":
        headline = "Run cancelled."
    elif result.status == "sandbox_error":
        headline = f"Could not create the sandbox: {result.error}"
    else:
        headline = f"The agent failed: {result.error}"

    if result.applied:
        lines = "\n".join(f"  {line}" for line in result.applied)
        return f"{headline}\n\nApplied changes:\n{lines}"
    if result.changes:
        lines = "\n".join(f"  {change.describe()}" for change in result.changes)
        return f"{headline}\n\nChanges found in the sandbox (not applied):\n{lines}"
    return headline


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class Controller:
    """
    Trigger surface for one workspace: task in, user-facing text out.

    Wraps every run in an overlay, races the loop against an optional
    cancel event, and applies the net change set only after the loop
    has stopped.
    """

    def __init__(
        self,
        repo_path: Path,
        config: SandLoopConfig | None = None,
        router: Router | None = None,
        runner: ProcessRunner | None = None,
        applier: ChangeApplier | None = None,
        progress: ProgressCallback | None = None,
        confirm_changes: ConfirmCallback | None = None,
        bus: EventBus | None = None,
    ):
        self.repo_path = Path(repo_path).resolve()
        self.config = config or load_config(self.repo_path)
        self.router = router or Router(self.config)
        self.runner = runner or ProcessRunner(timeout=self.config.sandbox.script_timeout)
        self.applier = applier or WorkspaceApplier(self.repo_path)
        self.progress = progress
        self.confirm_changes = confirm_changes
        self.bus = bus or EventBus()

    async def handle(self, task_prompt: str, cancel_event: asyncio.Event | None = None) -> str:
        result = await self.run(task_prompt, cancel_event)
        return result.message

    async def run(self, task_prompt: str, cancel_event: asyncio.Event | None = None) -> RunResult:
        task = Task.from_prompt(task_prompt)

        transcript = None
        if self.config.workspace.transcripts:
            transcript = TranscriptLogger(
                self.config.log_path / f"{task.task_id}.jsonl", self.bus
            )

        try:
            result = await self._run(task, cancel_event)
        finally:
            if transcript is not None:
                transcript.close()

        result.message = _render_message(result)
        return result

    async def _run(self, task: Task, cancel_event: asyncio.Event | None) -> RunResult:
        logger.info(f"[RUN] {task.task_id}: {task.objective[:80]}")
        self.bus.emit("run_started", task.task_id, payload={
            "objective": task.objective,
            "repo": str(self.repo_path),
        })

        overlay = OverlaySession(
            self.repo_path,
            script_name=self.config.sandbox.script_name,
            excluded_dirs=self.config.sandbox.excluded_dirs,
            prefer_copy_on_write=self.config.sandbox.prefer_copy_on_write,
        )
        try:
            overlay.create()
        except SandboxCreationError as e:
            logger.error(f"[RUN] Sandbox creation failed: {e}")
            self.bus.emit("run_finished", task.task_id, payload={"status": "sandbox_error"})
            return RunResult(task_id=task.task_id, status="sandbox_error", error=str(e))

        loop = IterationController(
            router=self.router,
            runner=self.runner,
            overlay=overlay,
            config=self.config,
            bus=self.bus,
            progress=self.progress,
        )

        status: RunStatus = "failed"
        answer = ""
        error: str | None = None
        try:
            outcome = await self._run_until_cancelled(loop.run(task), cancel_event)
            status = outcome.status
            answer = outcome.answer
        except RunCancelledError as e:
            logger.warning(f"[RUN] {e}")
            status = "cancelled"
        except ModelRequestError as e:
            logger.error(f"[RUN] {e}")
            error = str(e)
        except Exception as e:
            logger.exception("[RUN] Iteration loop failed")
            error = str(e) or e.__class__.__name__
        finally:
            changes = overlay.finalize()

        applied: list[str] = []
        if changes and self._should_apply(status):
            if self.confirm_changes is None or self.confirm_changes(changes):
                applied = apply_changes(self.applier, changes)
                logger.info(f"[APPLY] {len(applied)} change(s) processed")
            else:
                logger.info("[APPLY] Changes declined")

        self.bus.emit("run_finished", task.task_id, iteration=loop.iteration, payload={
            "status": status,
            "changes": [c.describe() for c in changes],
            "applied": applied,
        })

        return RunResult(
            task_id=task.task_id,
            status=status,
            answer=answer,
            iterations=loop.iteration,
            changes=changes,
            applied=applied,
            error=error,
        )

    def _should_apply(self, status: RunStatus) -> bool:
        if status in ("completed", "iteration_limit"):
            return True
        return status == "failed" and self.config.intervention.apply_partial_on_failure

    @staticmethod
    async def _run_until_cancelled(
        loop_run: Awaitable[LoopOutcome],
        cancel_event: asyncio.Event | None,
    ) -> LoopOutcome:
        """Await the loop; if the event fires first, cancel it and raise RunCancelledError."""
        if cancel_event is None:
            return await loop_run

        loop_task = asyncio.ensure_future(loop_run)
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {loop_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_wait.cancel()
            if not loop_task.done():
                loop_task.cancel()
                # Let the child process die before the overlay is diffed
                await asyncio.gather(loop_task, return_exceptions=True)

        if loop_task in done:
            return loop_task.result()
        raise RunCancelledError("Run cancelled by user")
