from __future__ import annotations

from pathlib import Path

import pytest

from assetflow.errors import TransformError


def write(root: Path, rel: str, content: str | bytes) -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        p.write_bytes(content)
    else:
        p.write_text(content, encoding="utf-8")
    return p


class Spy:
    """Transform factory that records which groups actually ran."""

    def __init__(self):
        self.calls: list[str] = []

    def __call__(self, arg):
        def run(assets, meta):
            self.calls.append(meta["group"])
            return assets, meta

        return run


def boom(arg):
    def run(assets, meta):
        raise RuntimeError("compiler exploded")

    return run


@pytest.fixture
def spy():
    return Spy()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    write(tmp_path, "a.scss", "body { color: red; }\n")
    write(tmp_path, "b.js", "function hello() { return 1; }\n")
    return tmp_path
