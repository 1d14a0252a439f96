# assetflow_config.py
# Pipeline for the "project" WordPress theme: sources under src/, output in
# wp-content/themes/project/.
from __future__ import annotations

from assetflow.presets import wordpress_theme


def config():
    return wordpress_theme(
        "project",
        workers=None,        # defaults to the number of CPUs
        debounce=0.2,        # seconds of quiet before a rebuild
        server_port=3000,
    )
