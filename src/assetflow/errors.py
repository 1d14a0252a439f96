# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List


class AssetflowError(Exception):
    """Base class for every error raised by assetflow."""


@dataclass
class ConfigError(AssetflowError):
    """
    Bad or missing path mapping, unknown group/transform, unwritable
    destination. Fatal: raised before any task runs.
    """
    message: str
    details: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [self.message]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class CycleError(AssetflowError):
    """The task graph has a dependency cycle. Fatal."""
    stuck: List[str]

    def __str__(self) -> str:
        return f"Task graph has a cycle. Stuck tasks: {self.stuck}"


@dataclass
class TransformError(AssetflowError):
    """One stage of a transform chain failed. Recovered as a task failure."""
    group: str
    stage: str
    cause: BaseException

    def __str__(self) -> str:
        return f"[{self.group}] stage '{self.stage}' failed: {self.cause}"


@dataclass
class UpstreamFailure(AssetflowError):
    """A task was not invoked because a task it depends on failed."""
    task: str
    upstream: str

    def __str__(self) -> str:
        return f"[{self.task}] not run: upstream task '{self.upstream}' failed"
