# transforms.py
from __future__ import annotations

import io
import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigError, TransformError
from .model import Asset, AssetGroup

# ---------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------
# A transform takes the list of assets flowing through a group's chain plus a
# metadata dict and returns both, possibly changed:
#
#   TransformFn(assets, meta) -> (assets, meta)
#
# meta keys set by the executor:
#   group    group name
#   root     project root (Path)
#   dest     absolute destination directory (Path)
#   sources  {asset relative path (str): absolute source Path}
#   data     parsed JSON data file of the group, or None
#
# Only the trailing `write` stage touches the filesystem.
# ---------------------------------------------------------------------

Meta = Dict[str, Any]
TransformFn = Callable[[List[Asset], Meta], Tuple[List[Asset], Meta]]
TransformFactory = Callable[[Optional[str]], TransformFn]

RASTER_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif"}
SVG_NS = "http://www.w3.org/2000/svg"

_BUILTINS: Dict[str, TransformFactory] = {}


def builtin(name: str):
    """Register a transform factory under `name`."""

    def deco(factory: TransformFactory) -> TransformFactory:
        _BUILTINS[name] = factory
        return factory

    return deco


def parse_spec(spec: str) -> Tuple[str, Optional[str]]:
    """'concat:style.min.css' -> ('concat', 'style.min.css')"""
    name, sep, arg = spec.partition(":")
    return name.strip(), (arg.strip() if sep else None)


@dataclass(frozen=True)
class Stage:
    """One resolved stage of a chain. Calling it applies the transform."""
    group: str
    name: str
    fn: TransformFn

    def __call__(self, assets: List[Asset], meta: Meta) -> Tuple[List[Asset], Meta]:
        try:
            return self.fn(assets, meta)
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(group=self.group, stage=self.name, cause=e) from e


class TransformRegistry:
    """Maps asset groups to the ordered chain of transforms applied to them."""

    def __init__(self, groups: Iterable[AssetGroup] = (), factories: Optional[Dict[str, TransformFactory]] = None):
        self._factories: Dict[str, TransformFactory] = dict(_BUILTINS)
        if factories:
            self._factories.update(factories)
        self._groups: Dict[str, AssetGroup] = {g.name: g for g in groups}

    def register(self, name: str, factory: TransformFactory) -> None:
        self._factories[name] = factory

    def names(self) -> List[str]:
        return sorted(self._factories)

    def stage(self, group_id: str, spec: str) -> Stage:
        name, arg = parse_spec(spec)
        factory = self._factories.get(name)
        if factory is None:
            raise ConfigError(
                f"Unknown transform {name!r} in group {group_id!r}",
                {"known": ", ".join(self.names())},
            )
        return Stage(group=group_id, name=spec, fn=factory(arg))

    def chain_for(self, group_id: str) -> List[Stage]:
        group = self._groups.get(group_id)
        if group is None:
            raise ConfigError(f"Unknown asset group: {group_id!r}")
        specs = [s for s in group.transforms if parse_spec(s)[0] != "write"]
        chain = [self.stage(group_id, s) for s in specs]
        chain.append(self.stage(group_id, "write"))
        return chain


def apply_chain(chain: Iterable[Stage], assets: List[Asset], meta: Meta) -> Tuple[List[Asset], Meta]:
    """Run stages strictly in declared order."""
    for stage in chain:
        assets, meta = stage(assets, meta)
    return assets, meta


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _map_suffix(assets: List[Asset], suffixes: Iterable[str], fn: Callable[[Asset], Asset]) -> List[Asset]:
    wanted = {s.lower() for s in suffixes}
    return [fn(a) if a.path.suffix.lower() in wanted else a for a in assets]


def _source_dir(asset: Asset, meta: Meta) -> Path:
    src = (meta.get("sources") or {}).get(asset.path.as_posix())
    if src is not None:
        return Path(src).parent
    return Path(meta.get("root", "."))


def _lookup(context: Dict[str, Any], dotted: str) -> Any:
    cur: Any = context
    for key in dotted.split("."):
        if not isinstance(cur, dict) or key not in cur:
            raise KeyError(dotted)
        cur = cur[key]
    return cur


# ---------------------------------------------------------------------
# Pass-through / structural
# ---------------------------------------------------------------------

@builtin("copy")
def _copy(arg: Optional[str]) -> TransformFn:
    def run(assets, meta):
        return assets, meta

    return run


@builtin("rename")
def _rename(arg: Optional[str]) -> TransformFn:
    if not arg:
        raise ConfigError("rename needs an extension, e.g. 'rename:.min.js'")
    ext = arg if arg.startswith(".") else f".{arg}"

    def run(assets, meta):
        return [Asset(a.path.with_suffix(ext), a.data) for a in assets], meta

    return run


@builtin("concat")
def _concat(arg: Optional[str]) -> TransformFn:
    if not arg:
        raise ConfigError("concat needs an output name, e.g. 'concat:main.min.js'")

    def run(assets, meta):
        if not assets:
            return assets, meta
        joined = b"\n".join(a.data.rstrip(b"\n") for a in assets) + b"\n"
        return [Asset(Path(arg), joined)], meta

    return run


@builtin("json")
def _json(arg: Optional[str]) -> TransformFn:
    def run(assets, meta):
        for a in assets:
            if a.path.suffix.lower() == ".json":
                try:
                    json.loads(a.text())
                except ValueError as e:
                    raise ValueError(f"{a.path}: invalid JSON ({e})") from e
        return assets, meta

    return run


@builtin("write")
def _write(arg: Optional[str]) -> TransformFn:
    def run(assets, meta):
        dest = Path(meta["dest"])
        outputs: List[str] = []
        for a in assets:
            out = dest / a.path
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(a.data)
            outputs.append(str(out))
        meta = dict(meta)
        meta["outputs"] = outputs
        return assets, meta

    return run


# ---------------------------------------------------------------------
# Styles
# ---------------------------------------------------------------------

_GLOB_IMPORT = re.compile(r"""@import\s+(["'])([^"']*[*?][^"']*)\1\s*;""")


@builtin("sass_glob")
def _sass_glob(arg: Optional[str]) -> TransformFn:
    """Expand `@import "components/**/*.scss";` into one import per file."""

    def expand(asset: Asset, meta: Meta) -> Asset:
        base = _source_dir(asset, meta)

        def repl(m: "re.Match[str]") -> str:
            files = sorted(p for p in base.glob(m.group(2)) if p.is_file())
            return "\n".join(f'@import "{p.relative_to(base).as_posix()}";' for p in files)

        return Asset(asset.path, _GLOB_IMPORT.sub(repl, asset.text()).encode("utf-8"))

    def run(assets, meta):
        return _map_suffix(assets, (".scss", ".sass"), lambda a: expand(a, meta)), meta

    return run


@builtin("scss")
def _scss(arg: Optional[str]) -> TransformFn:
    output_style = arg or "expanded"

    def run(assets, meta):
        import sass  # libsass

        out: List[Asset] = []
        for a in assets:
            suffix = a.path.suffix.lower()
            if suffix not in (".scss", ".sass"):
                out.append(a)
                continue
            # partials only exist to be imported
            if a.path.name.startswith("_"):
                continue
            css = sass.compile(
                string=a.text(),
                include_paths=[str(_source_dir(a, meta))],
                output_style=output_style,
                indented=suffix == ".sass",
            )
            out.append(Asset(a.path.with_suffix(".css"), css.encode("utf-8")))
        return out, meta

    return run


_CSS_RULE_WITH_IMAGE = re.compile(
    r"([^{}@;]+)\{([^{}]*url\(\s*['\"]?[^)'\"]+\.(?:png|jpe?g)['\"]?\s*\)[^{}]*)\}",
    re.IGNORECASE,
)
_CSS_IMAGE_URL = re.compile(r"(url\(\s*['\"]?[^)'\"]+?)\.(?:png|jpe?g)(['\"]?\s*\))", re.IGNORECASE)


@builtin("webp_css")
def _webp_css(arg: Optional[str]) -> TransformFn:
    """
    For every rule using a png/jpg background, add a `.webp <selector>` rule
    pointing to the .webp sibling. The `webp` class is expected on <html>.
    """

    def rewrite(css: str) -> str:
        def repl(m: "re.Match[str]") -> str:
            selectors = [s.strip() for s in m.group(1).split(",") if s.strip()]
            body = _CSS_IMAGE_URL.sub(r"\1.webp\2", m.group(2))
            webp_sel = ", ".join(f".webp {s}" for s in selectors)
            return f"{m.group(0)}\n{webp_sel} {{{body}}}"

        return _CSS_RULE_WITH_IMAGE.sub(repl, css)

    def run(assets, meta):
        return _map_suffix(
            assets, (".css",), lambda a: Asset(a.path, rewrite(a.text()).encode("utf-8"))
        ), meta

    return run


@builtin("cssmin")
def _cssmin(arg: Optional[str]) -> TransformFn:
    def run(assets, meta):
        import rcssmin

        return _map_suffix(
            assets, (".css",), lambda a: Asset(a.path, rcssmin.cssmin(a.text()).encode("utf-8"))
        ), meta

    return run


# ---------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------

@builtin("jsmin")
def _jsmin(arg: Optional[str]) -> TransformFn:
    def run(assets, meta):
        import rjsmin

        return _map_suffix(
            assets, (".js",), lambda a: Asset(a.path, rjsmin.jsmin(a.text()).encode("utf-8"))
        ), meta

    return run


# ---------------------------------------------------------------------
# HTML
# ---------------------------------------------------------------------

_INCLUDE = re.compile(
    r"""@@include\(\s*(['"])(.+?)\1\s*(?:,\s*(\{.*?\}))?\s*\)""",
    re.DOTALL,
)
_VARIABLE = re.compile(r"@@(?!include\b)([A-Za-z_]\w*(?:\.\w+)*)")
MAX_INCLUDE_DEPTH = 20


def render_includes(text: str, base: Path, context: Dict[str, Any], depth: int = 0) -> str:
    """
    Resolve `@@include("file")` relative to `base` (recursively), then
    substitute `@@name` / `@@a.b` from `context`. Unknown variables are left
    untouched.
    """
    if depth > MAX_INCLUDE_DEPTH:
        raise ValueError(f"@@include nested deeper than {MAX_INCLUDE_DEPTH} levels")

    def include(m: "re.Match[str]") -> str:
        target = (base / m.group(2)).resolve()
        if not target.is_file():
            raise FileNotFoundError(f"@@include target not found: {target}")
        local = dict(context)
        if m.group(3):
            local.update(json.loads(m.group(3)))
        return render_includes(target.read_text(encoding="utf-8"), target.parent, local, depth + 1)

    text = _INCLUDE.sub(include, text)

    def variable(m: "re.Match[str]") -> str:
        try:
            value = _lookup(context, m.group(1))
        except KeyError:
            return m.group(0)
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    return _VARIABLE.sub(variable, text)


@builtin("include")
def _include(arg: Optional[str]) -> TransformFn:
    def run(assets, meta):
        data = meta.get("data")
        context: Dict[str, Any] = dict(data) if isinstance(data, dict) else {}
        if data is not None and not isinstance(data, dict):
            context["data"] = data
        return _map_suffix(
            assets,
            (".html", ".htm"),
            lambda a: Asset(
                a.path,
                render_includes(a.text(), _source_dir(a, meta), context).encode("utf-8"),
            ),
        ), meta

    return run


_IMG_TAG = re.compile(
    r"""<img\b[^>]*?\bsrc=(["'])([^"']+?)\.(png|jpe?g)\1[^>]*>""",
    re.IGNORECASE,
)


def wrap_webp_pictures(html: str) -> str:
    def repl(m: "re.Match[str]") -> str:
        start = m.start()
        if html.rfind("<picture", 0, start) > html.rfind("</picture>", 0, start):
            return m.group(0)
        return (
            f'<picture><source srcset="{m.group(2)}.webp" type="image/webp">'
            f"{m.group(0)}</picture>"
        )

    return _IMG_TAG.sub(repl, html)


@builtin("webp_html")
def _webp_html(arg: Optional[str]) -> TransformFn:
    def run(assets, meta):
        return _map_suffix(
            assets,
            (".html", ".htm"),
            lambda a: Asset(a.path, wrap_webp_pictures(a.text()).encode("utf-8")),
        ), meta

    return run


# ---------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------

@builtin("image")
def _image(arg: Optional[str]) -> TransformFn:
    """Re-encode rasters with optimization; keep the original if it is smaller."""

    def optimize(a: Asset) -> Asset:
        from PIL import Image

        with Image.open(io.BytesIO(a.data)) as im:
            fmt = im.format
            buf = io.BytesIO()
            if fmt == "JPEG":
                im.save(buf, format=fmt, optimize=True, quality="keep", progressive=True)
            else:
                im.save(buf, format=fmt, optimize=True)
        data = buf.getvalue()
        return Asset(a.path, data) if len(data) < len(a.data) else a

    def run(assets, meta):
        return _map_suffix(assets, RASTER_SUFFIXES, optimize), meta

    return run


@builtin("webp")
def _webp(arg: Optional[str]) -> TransformFn:
    quality = int(arg) if arg else 80

    def convert(a: Asset) -> Asset:
        from PIL import Image

        with Image.open(io.BytesIO(a.data)) as im:
            if im.mode not in ("RGB", "RGBA"):
                im = im.convert("RGBA")
            buf = io.BytesIO()
            im.save(buf, format="WEBP", quality=quality)
        return Asset(a.path.with_suffix(".webp"), buf.getvalue())

    def run(assets, meta):
        # non-raster files have no webp counterpart
        return [convert(a) for a in assets if a.path.suffix.lower() in RASTER_SUFFIXES], meta

    return run


_STRIP_ATTRS = ("fill", "stroke", "style")


@builtin("svg_sprite")
def _svg_sprite(arg: Optional[str]) -> TransformFn:
    """Combine SVG icons into one <symbol> sprite; the icon id is the file stem."""
    name = arg or "sprite.svg"

    def run(assets, meta):
        ET.register_namespace("", SVG_NS)
        sprite = ET.Element(f"{{{SVG_NS}}}svg")
        icons = [a for a in assets if a.path.suffix.lower() == ".svg"]
        if not icons:
            return [], meta
        for a in icons:
            root = ET.fromstring(a.data)
            symbol = ET.SubElement(sprite, f"{{{SVG_NS}}}symbol", {"id": a.path.stem})
            if "viewBox" in root.attrib:
                symbol.set("viewBox", root.attrib["viewBox"])
            for child in list(root):
                for el in child.iter():
                    for attr in _STRIP_ATTRS:
                        el.attrib.pop(attr, None)
                symbol.append(child)
        data = ET.tostring(sprite, encoding="utf-8", xml_declaration=True)
        return [Asset(Path(name), data)], meta

    return run
