# src/assetflow/dsl.py
from __future__ import annotations

from typing import List, Optional, Sequence

from .model import AssetGroup


# ---------------------------------------------------------------------
# Functional group helper
# ---------------------------------------------------------------------

def group(
    name: str,
    *sources: str,  # allow: group("x", "src/a/*.js", "src/b/*.js", dest=...)
    dest: str,
    transforms: Sequence[str] = ("copy",),
    needs: Optional[Sequence[str]] = None,
    watch: Optional[Sequence[str]] = None,
    data: Optional[str] = None,
) -> AssetGroup:
    if not sources:
        raise ValueError(f"group({name!r}) must have at least one source glob")
    return AssetGroup(
        name=name,
        sources=tuple(sources),
        dest=dest,
        transforms=tuple(transforms) or ("copy",),
        needs=tuple(needs or ()),
        watch=tuple(watch or ()),
        data=data,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class GroupBuilder:
    """
    group_builder("styles").source("src/scss/style.scss").pipe("scss", "cssmin").to("out/css").build()
    """

    def __init__(self, name: str):
        self.name = name
        self._sources: list[str] = []
        self._dest: Optional[str] = None
        self._transforms: list[str] = []
        self._needs: list[str] = []
        self._watch: list[str] = []
        self._data: Optional[str] = None

    def source(self, *globs: str):
        self._sources.extend(globs)
        return self

    def to(self, dest: str):
        self._dest = dest
        return self

    def pipe(self, *transforms: str):
        self._transforms.extend(transforms)
        return self

    def after(self, *group_names: str):
        self._needs.extend(group_names)
        return self

    def watching(self, *globs: str):
        self._watch.extend(globs)
        return self

    def with_data(self, path: str):
        self._data = path
        return self

    def build(self) -> AssetGroup:
        if self._dest is None:
            raise ValueError(f"Group '{self.name}' has no destination")
        return group(
            self.name,
            *self._sources,
            dest=self._dest,
            transforms=self._transforms or ("copy",),
            needs=self._needs,
            watch=self._watch,
            data=self._data,
        )


def group_builder(name: str) -> GroupBuilder:
    return GroupBuilder(name)


def pipeline(*groups: AssetGroup) -> List[AssetGroup]:
    """
    Config helper:

        from assetflow import BuildConfig, group, pipeline

        def config():
            return BuildConfig(groups=pipeline(group(...), group(...)), dest_root="out")
    """
    return list(groups)
