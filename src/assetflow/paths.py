# paths.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ConfigError
from .model import AssetGroup

_GLOB_CHARS = set("*?[")


@dataclass(frozen=True)
class ResolvedPaths:
    source_globs: Tuple[str, ...]
    dest_dir: Path


def has_magic(part: str) -> bool:
    return any(ch in part for ch in _GLOB_CHARS)


def glob_base(pattern: str) -> Path:
    """
    Literal directory prefix of a glob.

      "src/images/**/*"     -> src/images
      "src/scss/style.scss" -> src/scss
    """
    parts = Path(pattern).parts
    literal: List[str] = []
    for part in parts:
        if has_magic(part):
            return Path(*literal) if literal else Path(".")
        literal.append(part)
    # no wildcard: a single file, its directory is the base
    return Path(pattern).parent


def overlaps(a: Path, b: Path) -> bool:
    """True if a and b are the same directory or one is nested in the other."""
    a = Path(a)
    b = Path(b)
    return a == b or a in b.parents or b in a.parents


@lru_cache(maxsize=256)
def _glob_to_regex(pattern: str) -> "re.Pattern[str]":
    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif c == "*":
            out.append("[^/]*")
            i += 1
        elif c == "?":
            out.append("[^/]")
            i += 1
        elif c == "[":
            j = pattern.find("]", i + 1)
            if j == -1:
                out.append(re.escape(c))
                i += 1
            else:
                body = pattern[i + 1:j].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = j + 1
        else:
            out.append(re.escape(c))
            i += 1
    return re.compile("".join(out) + r"\Z")


def matches(rel_path: str | Path, globs: Iterable[str]) -> bool:
    """Match a root-relative path against globs (`**` spans directories)."""
    rel = str(rel_path).replace("\\", "/")
    return any(_glob_to_regex(g.replace("\\", "/")).match(rel) for g in globs)


def expand(root: Path, globs: Sequence[str]) -> List[Path]:
    """
    Expand root-relative globs into concrete files.
    Supports plain file paths, "dir/*.ext" and "dir/**/*".
    Directories are skipped; order is sorted and de-duplicated.
    """
    seen = set()
    out: List[Path] = []
    for pat in globs:
        pat = pat.strip()
        if not pat:
            continue
        if has_magic(pat):
            candidates = sorted(root.glob(pat))
        else:
            candidates = [root / pat]
        for p in candidates:
            if not p.is_file():
                continue
            rp = p.resolve()
            if rp not in seen:
                seen.add(rp)
                out.append(rp)
    return sorted(out)


class PathResolver:
    """Resolves group ids to absolute source globs and a destination directory."""

    def __init__(self, root: str | Path, groups: Iterable[AssetGroup]):
        self.root = Path(root).resolve()
        self._groups: Dict[str, AssetGroup] = {g.name: g for g in groups}

    def group(self, group_id: str) -> AssetGroup:
        try:
            return self._groups[group_id]
        except KeyError:
            raise ConfigError(
                f"Unknown asset group: {group_id!r}",
                {"known": ", ".join(sorted(self._groups))},
            ) from None

    def resolve(self, group_id: str, *, create: bool = True) -> ResolvedPaths:
        g = self.group(group_id)
        dest = (self.root / g.dest).resolve()
        if create:
            try:
                dest.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigError(
                    f"Cannot create destination for group {group_id!r}",
                    {"dest": str(dest), "cause": str(e)},
                ) from e
        return ResolvedPaths(source_globs=tuple(g.sources), dest_dir=dest)

    def check_dest(self, group_id: str, *, removed: Optional[Path] = None) -> Path:
        """
        Check that a group's destination can be created without creating it.
        `removed` is a directory about to be deleted (clean build); whatever
        sits inside it does not count as an obstacle.
        """
        dest = (self.root / self.group(group_id).dest).resolve()
        existing = dest
        if removed is not None:
            removed = Path(removed).resolve()
            if existing == removed or removed in existing.parents:
                existing = removed.parent
        while not existing.exists():
            existing = existing.parent
        if not existing.is_dir() or not os.access(existing, os.W_OK | os.X_OK):
            raise ConfigError(
                f"Cannot create destination for group {group_id!r}",
                {"dest": str(dest), "blocked_by": str(existing)},
            )
        return dest

    def sources(self, group_id: str) -> List[Path]:
        return expand(self.root, self.group(group_id).sources)

    def relative(self, path: str | Path) -> str | None:
        """Root-relative posix path, or None if outside the project root."""
        p = Path(path)
        if not p.is_absolute():
            p = self.root / p
        try:
            return p.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return None
