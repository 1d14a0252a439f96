"""Ready-made configurations."""

from __future__ import annotations

from .config import BuildConfig
from .dsl import group, pipeline


def wordpress_theme(theme: str = "project", src: str = "src", **overrides) -> BuildConfig:
    """
    Front-end pipeline writing into wp-content/themes/<theme>/:

      styles   src/scss/style.scss      -> assets/css/style.min.css
      scripts  src/js/main.js           -> assets/js/main.min.js
      html     src/html/index.html      -> <theme>/index.html (with maps.json data)
      images   src/images/**/*          -> assets/images (optimized)
      webp     src/images/**/*          -> assets/images/webp
      sprite   src/images/icons/*.svg   -> assets/images/icons/sprite.svg
      data     src/data/**/*.json       -> assets/data
      fonts    src/fonts/**/*           -> assets/fonts
      files    src/files/**/*           -> assets/files
    """
    theme_dir = f"wp-content/themes/{theme}"
    assets = f"{theme_dir}/assets"

    groups = pipeline(
        group(
            "styles",
            f"{src}/scss/style.scss",
            dest=f"{assets}/css",
            transforms=("sass_glob", "scss", "webp_css", "concat:style.min.css", "cssmin"),
            watch=(f"{src}/scss/**/*.scss",),
        ),
        group(
            "scripts",
            f"{src}/js/main.js",
            dest=f"{assets}/js",
            transforms=("concat:main.min.js", "jsmin"),
        ),
        group(
            "html",
            f"{src}/html/index.html",
            dest=theme_dir,
            transforms=("include", "webp_html"),
            watch=(f"{src}/html/**/*.html",),
            data=f"{src}/html/data/maps.json",
        ),
        group("images", f"{src}/images/**/*", dest=f"{assets}/images", transforms=("image",)),
        group("webp", f"{src}/images/**/*", dest=f"{assets}/images/webp", transforms=("webp",)),
        group(
            "sprite",
            f"{src}/images/icons/*.svg",
            dest=f"{assets}/images/icons",
            transforms=("svg_sprite:sprite.svg",),
        ),
        group("data", f"{src}/data/**/*.json", dest=f"{assets}/data", transforms=("json",)),
        group("fonts", f"{src}/fonts/**/*", dest=f"{assets}/fonts"),
        group("files", f"{src}/files/**/*", dest=f"{assets}/files"),
    )
    return BuildConfig(groups=groups, dest_root=theme_dir, **overrides)
