from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LoopState(str, Enum):
    """States of the iteration state machine."""
    START = "start"
    GENERATE_CODE = "generate_code"
    EXECUTE = "execute"
    ASSESS = "assess"
    COMPACT = "compact"
    FINALIZE = "finalize"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


class Task(BaseModel):
    """The immutable goal for one run."""
    model_config = ConfigDict(frozen=True)

    task_id: str
    objective: str

    @field_validator("objective")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Task objective must not be empty")
        return value.strip()

    @classmethod
    def from_prompt(cls, prompt: str) -> "Task":
        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        return cls(task_id=f"run-{ts}-{uuid.uuid4().hex[:6]}", objective=prompt)


class IterationContext(BaseModel):
    """
    Everything one iteration is allowed to know.

    `notes` is the whole carried memory: the model restates it at the
    end of every unfinished iteration and the previous value is dropped.
    """
    model_config = ConfigDict(frozen=True)

    task: Task
    notes: str | None = None


class LoopOutcome(BaseModel):
    status: Literal["completed", "iteration_limit"]
    answer: str
    iterations: int = Field(ge=0)
