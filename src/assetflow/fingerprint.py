# fingerprint.py
from __future__ import annotations

import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .log import get_logger
from .model import Task
from .paths import expand

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Task-level fingerprint:
#   fingerprint = hash(
#       task id,
#       transform chain + destination,
#       contents of every file matched by sources + watch globs,
#       contents of the group's data file,
#   )
#
# Content hashing is used whenever a file is readable; unreadable files fall
# back to their mtime. Equal content means unchanged, whatever the mtime says.
#
# Records live next to the artifacts they describe:
#   <dest_root>/.assetflow/<task_id>.json
# so a fresh process trusts what is on disk, not a previous run's memory.
# ---------------------------------------------------------------------

STATE_DIR = ".assetflow"
HASH_MODES = ("content", "mtime")

log = get_logger("assetflow.fingerprint")


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _file_entry(path: Path, mode: str) -> Tuple[str, str]:
    if mode == "content":
        try:
            return "sha256", _hash_file_contents(path)
        except OSError:
            pass
    st = path.stat()
    return "mtime", f"{st.st_mtime_ns}:{st.st_size}"


def compute_fingerprint(task: Task, root: str | Path, *, mode: str = "content") -> str:
    """
    Fingerprint a task's inputs. Deterministic for identical inputs.
    """
    if mode not in HASH_MODES:
        raise ValueError(f"hash mode must be one of {HASH_MODES}, got {mode!r}")
    root_p = Path(root).resolve()

    files: List[Tuple[str, str, str]] = []
    for p in expand(root_p, list(task.sources) + list(task.watch)):
        rel = p.relative_to(root_p).as_posix() if root_p in p.parents else str(p)
        kind, value = _file_entry(p, mode)
        files.append((rel, kind, value))

    data_entry = None
    group = task.group
    if group is not None and group.data:
        data_path = root_p / group.data
        data_entry = list(_file_entry(data_path, mode)) if data_path.is_file() else None

    payload = {
        "v": 1,  # bump this if you change hashing format
        "task": task.id,
        "dest": task.dest,
        "transforms": list(group.transforms) if group is not None else [],
        "files": files,
        "data": data_entry,
    }
    return _sha256_str(_json_dumps_stable(payload))


@dataclass(frozen=True)
class Record:
    task: str
    fingerprint: str
    outputs: List[str]
    last_run: float


class FingerprintStore:
    """
    File-based fingerprint records:
      dest_root/
        .assetflow/
          <task_id>.json
    """

    def __init__(self, dest_root: str | Path):
        self.dest_root = Path(dest_root).resolve()
        self.root = self.dest_root / STATE_DIR

    def path_for(self, task_id: str) -> Path:
        return self.root / f"{task_id}.json"

    def load(self, task_id: str) -> Optional[Record]:
        """
        Load a record, or None if absent, unreadable, or if any recorded output
        has since disappeared.
        """
        p = self.path_for(task_id)
        if not p.exists():
            return None
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
            rec = Record(
                task=raw["task"],
                fingerprint=raw["fingerprint"],
                outputs=list(raw.get("outputs", [])),
                last_run=float(raw.get("last_run", 0.0)),
            )
        except (OSError, ValueError, KeyError) as e:
            log.warning("Ignoring unreadable fingerprint record %s: %s", p, e)
            return None
        missing = [o for o in rec.outputs if not Path(o).exists()]
        if missing:
            log.debug("Record for %s discarded, outputs missing: %s", task_id, missing)
            return None
        return rec

    def save(self, task_id: str, fingerprint: str, outputs: List[str]) -> Record:
        rec = Record(task=task_id, fingerprint=fingerprint, outputs=list(outputs), last_run=time.time())
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = self.path_for(task_id).with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps(
                {
                    "task": rec.task,
                    "fingerprint": rec.fingerprint,
                    "outputs": rec.outputs,
                    "last_run": rec.last_run,
                },
                indent=2,
            ),
            encoding="utf-8",
        )
        os.replace(tmp, self.path_for(task_id))
        return rec

    def forget(self, task_id: str) -> None:
        try:
            self.path_for(task_id).unlink()
        except FileNotFoundError:
            pass

    def hydrate(self, tasks: Dict[str, Task]) -> None:
        """Copy persisted fingerprints onto in-memory tasks (fresh process)."""
        for task_id, task in tasks.items():
            if task.is_clean:
                continue
            rec = self.load(task_id)
            if rec is None:
                task.fingerprint = None
                task.outputs = []
                task.last_run = None
            else:
                task.fingerprint = rec.fingerprint
                task.outputs = list(rec.outputs)
                task.last_run = rec.last_run
