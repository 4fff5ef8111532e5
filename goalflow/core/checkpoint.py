"""Checkpoint hook for goal snapshots.

State lives in memory; a checkpointer only receives snapshots to persist
wherever the host application wants them.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from loguru import logger


class Checkpointer(ABC):
    """External sink for goal snapshots."""

    @abstractmethod
    def save(self, goal_id: str, snapshot: dict[str, Any]) -> None:
        pass


class JsonFileCheckpointer(Checkpointer):
    """
    Write one JSON file per goal, overwritten on every checkpoint.

    Example:
        >>> checkpointer = JsonFileCheckpointer("./checkpoints")
        >>> checkpointer.save("goal-1", {"status": "executing"})
        >>> checkpointer.load("goal-1")["status"]
        'executing'
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, goal_id: str) -> Path:
        return self.directory / f"{goal_id}.json"

    def save(self, goal_id: str, snapshot: dict[str, Any]) -> None:
        path = self.path_for(goal_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(snapshot, indent=2, default=str))
        tmp.replace(path)
        logger.debug(f"Checkpoint written to {path}")

    def load(self, goal_id: str) -> dict[str, Any] | None:
        path = self.path_for(goal_id)
        if not path.exists():
            return None
        return json.loads(path.read_text())
