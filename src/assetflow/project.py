# project.py
from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Iterable, Optional

from .config import DEFAULT_CONFIG_FILE, BuildConfig, load_config
from .devserver import DevServer, ReloadChannel
from .executor import Executor
from .fingerprint import FingerprintStore
from .graph import TaskGraph, build_graph
from .log import get_logger
from .model import BuildReport, ChangeSet
from .transforms import TransformRegistry
from .watch import WatchLoop, watch_roots

log = get_logger("assetflow.project")


class Project:
    """
    Entry points over one configuration: full build, incremental run, watch,
    and targeted per-group builds.

    Config and cycle errors surface from the constructor, or from a build
    whose destinations cannot be created, before any task runs.
    """

    def __init__(self, config: BuildConfig, *, registry: Optional[TransformRegistry] = None):
        self.config = config.validate()
        self.root = Path(config.root).resolve()
        self.registry = registry or TransformRegistry(config.groups)
        self.store = FingerprintStore(self.root / config.dest_root)
        self.graph = self._graph(clean=False)
        self.executor = self._executor(self.graph)

    @classmethod
    def load(cls, path: str | Path = DEFAULT_CONFIG_FILE, **overrides) -> "Project":
        """Load a config file; keyword overrides (e.g. workers=2) replace its values."""
        config = load_config(path)
        if overrides:
            config = replace(config, **overrides)
        return cls(config)

    def _graph(self, *, clean: bool) -> TaskGraph:
        return build_graph(
            self.config.groups,
            clean=clean,
            dest_root=self.config.dest_root,
            registry=self.registry,
        )

    def _executor(self, graph: TaskGraph) -> Executor:
        return Executor(
            graph,
            self.root,
            max_workers=self.config.workers,
            registry=self.registry,
            store=self.store,
            hash_mode=self.config.hash_mode,
        )

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def build(self, *, clean: bool = False, force: bool = False) -> BuildReport:
        """
        Full build. With clean=True the destination root is removed first and
        every group rebuilds.
        """
        if not clean:
            return self.executor.run(None, force=force)
        graph = self._graph(clean=True)
        report = self._executor(graph).run(None, force=force)
        # keep the long-lived graph in sync with what is now on disk
        self.store.hydrate(self.graph.tasks)
        return report

    def run(self, change_set: Optional[ChangeSet] = None) -> BuildReport:
        return self.executor.run(change_set)

    def build_group(self, *names: str, force: bool = True) -> BuildReport:
        """Targeted build of some groups, like invoking a single pipeline task."""
        return self.executor.run(None, force=force, only=names)

    def build_styles(self) -> BuildReport:
        return self.build_group("styles")

    def build_scripts(self) -> BuildReport:
        return self.build_group("scripts")

    def build_html(self) -> BuildReport:
        return self.build_group("html")

    def build_images(self) -> BuildReport:
        return self.build_group("images")

    def build_webp(self) -> BuildReport:
        return self.build_group("webp")

    def build_sprite(self) -> BuildReport:
        return self.build_group("sprite")

    def build_data(self) -> BuildReport:
        return self.build_group("data")

    def build_fonts(self) -> BuildReport:
        return self.build_group("fonts")

    def build_files(self) -> BuildReport:
        return self.build_group("files")

    # ------------------------------------------------------------------
    # Watch
    # ------------------------------------------------------------------

    def source_globs(self) -> Iterable[str]:
        for g in self.config.groups:
            yield from g.sources
            yield from g.watch
            if g.data:
                yield g.data

    def watcher(self, channel: Optional[ReloadChannel] = None) -> WatchLoop:
        return WatchLoop(
            self.executor,
            channel,
            debounce=self.config.debounce,
            ignore=[self.root / self.config.dest_root],
        )

    def watch(self, *, serve: bool = True, initial_build: bool = True, port: Optional[int] = None) -> None:
        """Build, then rebuild on change until interrupted."""
        channel = ReloadChannel()
        server = None
        if initial_build:
            self.build()
        if serve:
            server = DevServer(
                self.root / self.config.dest_root,
                channel,
                host=self.config.server_host,
                port=self.config.server_port if port is None else port,
            ).start()
        loop = self.watcher(channel)
        try:
            loop.run_forever(watch_roots(self.root, self.source_globs()))
        finally:
            if server is not None:
                server.stop()
