"""
assetflow: incremental front-end asset pipeline.

Asset groups are compiled into a task graph, stale tasks are rebuilt in
parallel, and a debounced watch loop pushes reload notifications to a dev
server.
"""

from .config import BuildConfig, load_config
from .dsl import group, group_builder, pipeline, GroupBuilder
from .errors import AssetflowError, ConfigError, CycleError, TransformError, UpstreamFailure
from .executor import Executor, run
from .graph import TaskGraph, build_graph
from .model import Asset, AssetGroup, BuildReport, ReloadMessage, RunResult, Status, Task
from .project import Project

__all__ = [
    "BuildConfig", "load_config",
    "group", "group_builder", "pipeline", "GroupBuilder",
    "AssetflowError", "ConfigError", "CycleError", "TransformError", "UpstreamFailure",
    "Executor", "run",
    "TaskGraph", "build_graph",
    "Asset", "AssetGroup", "BuildReport", "ReloadMessage", "RunResult", "Status", "Task",
    "Project",
]
