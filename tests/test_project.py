import io
import json
from pathlib import Path

import pytest

from assetflow.errors import ConfigError
from assetflow.model import Status
from assetflow.presets import wordpress_theme
from assetflow.project import Project

from conftest import write

NO_SASS = ["scripts", "html", "images", "webp", "sprite", "data", "fonts", "files"]


def _png() -> bytes:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def theme(tmp_path: Path) -> Path:
    write(tmp_path, "src/scss/style.scss", "body { color: red; }\n")
    write(tmp_path, "src/js/main.js", "function add(a, b) {\n  return a + b;\n}\n")
    write(
        tmp_path,
        "src/html/index.html",
        "<html><body>@@include('partials/head.html', {\"title\": \"Home\"})"
        '<img src="assets/images/hero.png"><p>@@maps.zoom</p></body></html>',
    )
    write(tmp_path, "src/html/partials/head.html", "<h1>@@title</h1>")
    write(tmp_path, "src/html/data/maps.json", json.dumps({"maps": {"zoom": 12}}))
    write(tmp_path, "src/images/hero.png", _png())
    write(
        tmp_path,
        "src/images/icons/cart.svg",
        '<svg xmlns="http://www.w3.org/2000/svg" viewBox="0 0 24 24"><path d="M0 0h24" fill="#000"/></svg>',
    )
    write(tmp_path, "src/data/shops.json", '{"shops": []}')
    write(tmp_path, "src/fonts/Inter.woff2", b"wOF2fake")
    write(tmp_path, "src/files/menu.pdf", b"%PDF-1.4")
    return tmp_path


def _project(root: Path) -> Project:
    return Project(wordpress_theme("demo", root=root, workers=2))


def test_targeted_builds_produce_theme_layout(theme: Path):
    project = _project(theme)
    report = project.build_group(*NO_SASS)
    assert report.succeeded == NO_SASS

    out = theme / "wp-content" / "themes" / "demo"
    assert (out / "assets" / "js" / "main.min.js").exists()
    html = (out / "index.html").read_text()
    assert "<h1>Home</h1>" in html
    assert "<p>12</p>" in html
    assert '<source srcset="assets/images/hero.webp" type="image/webp">' in html
    assert (out / "assets" / "images" / "hero.png").exists()
    assert (out / "assets" / "images" / "webp" / "hero.webp").exists()
    assert not (out / "assets" / "images" / "webp" / "icons").exists()
    assert 'id="cart"' in (out / "assets" / "images" / "icons" / "sprite.svg").read_text()
    assert (out / "assets" / "data" / "shops.json").exists()
    assert (out / "assets" / "fonts" / "Inter.woff2").read_bytes() == b"wOF2fake"
    assert (out / "assets" / "files" / "menu.pdf").exists()


def test_per_group_entry_points_always_run(theme: Path):
    project = _project(theme)
    assert project.build_scripts().succeeded == ["scripts"]
    assert project.build_scripts().succeeded == ["scripts"]
    assert project.build_fonts().succeeded == ["fonts"]
    assert project.build_data().succeeded == ["data"]


def test_incremental_run_after_targeted_build(theme: Path):
    project = _project(theme)
    project.build_group(*NO_SASS)
    js = write(theme, "src/js/main.js", "function sub(a, b) { return a - b; }\n")
    report = project.run(frozenset({js}))
    assert report.status("scripts") is Status.SUCCEEDED
    assert report.status("fonts") is Status.SKIPPED
    assert report.status("html") is Status.SKIPPED


def test_html_partial_change_rebuilds_html(theme: Path):
    project = _project(theme)
    project.build_group("html", "scripts")
    partial = write(theme, "src/html/partials/head.html", "<h2>@@title</h2>")
    report = project.run(frozenset({partial}))
    assert report.status("html") is Status.SUCCEEDED
    assert report.status("scripts") is Status.SKIPPED
    out = theme / "wp-content" / "themes" / "demo" / "index.html"
    assert "<h2>Home</h2>" in out.read_text()


def test_unknown_group_is_config_error(theme: Path):
    with pytest.raises(ConfigError):
        _project(theme).build_group("nope")


def test_full_build_with_sass(theme: Path):
    pytest.importorskip("sass")
    project = _project(theme)
    first = project.build()
    assert first.ok
    css = theme / "wp-content" / "themes" / "demo" / "assets" / "css" / "style.min.css"
    assert "color:red" in css.read_text()
    assert set(project.build().skipped) == set(project.config.group_names)

    clean = project.build(clean=True)
    assert clean.succeeded[0] == "clean"
    assert set(clean.succeeded) == {"clean", *project.config.group_names}
    assert set(project.build().skipped) == set(project.config.group_names)


def test_watcher_ignores_the_theme_output(theme: Path):
    project = _project(theme)
    loop = project.watcher()
    loop.notify(theme / "wp-content" / "themes" / "demo" / "index.html")
    assert loop.step(timeout=0.05) is None


def test_load_overrides_replace_config_values(tmp_path: Path):
    path = write(
        tmp_path,
        "assetflow_config.py",
        "from assetflow.presets import wordpress_theme\nCONFIG = wordpress_theme('demo', workers=4)\n",
    )
    assert Project.load(path).executor.max_workers == 4
    project = Project.load(path, workers=1)
    assert project.config.workers == 1
    assert project.executor.max_workers == 1
