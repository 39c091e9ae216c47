"""
Remembers which model the user picked as their default, so repeated
runs don't have to ask again.
"""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger


class ModelStore:
    """Tiny JSON-backed key store under the SANDLOOP state dir."""

    KEY = "selected_model"

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[MODELS] Ignoring unreadable state file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self) -> str | None:
        value = self._read().get(self.KEY)
        return value if isinstance(value, str) and value else None

    def set(self, model: str) -> None:
        data = self._read()
        data[self.KEY] = model
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logger.debug(f"[MODELS] Default model set to {model}")


def resolve_model_selection(available: list[str], store: ModelStore) -> str | None:
    """
    Pick the model to use without asking, if possible.

    A single available model is always chosen (and remembered). Otherwise
    the stored choice wins while it is still available. Returns None when
    the caller has to ask the user.
    """
    if len(available) == 1:
        store.set(available[0])
        return available[0]

    stored = store.get()
    if stored:
        if stored in available:
            return stored
        logger.warning(
            f"[MODELS] Previously selected model '{stored}' is unavailable. Please choose another one."
        )
    return None
