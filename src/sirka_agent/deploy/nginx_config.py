"""nginx server-block generation for static sites."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

PREFERRED_INDEX = "index.html"
MODIFIED_INDEX = "index_modified.html"
FALLBACK_INDEXES = ("index.html", "index.htm")

CATCH_ALL_SERVER_NAME = "_"

SECURITY_HEADERS = (
    ("X-Frame-Options", "SAMEORIGIN"),
    ("X-Content-Type-Options", "nosniff"),
    ("X-XSS-Protection", "1; mode=block"),
    ("Referrer-Policy", "strict-origin-when-cross-origin"),
)

GZIP_TYPES = (
    "text/plain",
    "text/css",
    "text/xml",
    "text/javascript",
    "application/javascript",
    "application/xml+rss",
    "application/json",
    "image/svg+xml",
)


def detect_index_candidates(served_dir: Path) -> List[str]:
    """Return index file names for ``served_dir``, most preferred first.

    Only top-level entries are considered. Order: ``index.html``,
    ``index_modified.html``, every other ``*.html`` sorted by name, then the
    hard-coded fallbacks not already listed.
    """
    try:
        html = sorted(
            p.name for p in served_dir.iterdir()
            if p.is_file() and p.name.lower().endswith(".html")
        )
    except FileNotFoundError:
        html = []

    candidates = []
    for name in (PREFERRED_INDEX, MODIFIED_INDEX):
        if name in html:
            candidates.append(name)
    candidates.extend(name for name in html if name not in candidates)
    candidates.extend(name for name in FALLBACK_INDEXES if name not in candidates)
    return candidates


def _comment_safe(text: str) -> str:
    return "".join(ch if ch.isprintable() else " " for ch in text).strip()


def generate_site_config(
    site_id: str,
    site_name: str,
    domain: Optional[str],
    served_path: str,
    index_candidates: Sequence[str] = FALLBACK_INDEXES[:1],
) -> str:
    """Render one nginx ``server`` block.

    Pure: identical arguments always produce identical text. Without a domain
    the block is the default server and matches any host.
    """
    indexes = list(index_candidates) or [PREFERRED_INDEX]
    is_catch_all = not domain
    listen = "listen 80 default_server;" if is_catch_all else "listen 80;"
    server_name = CATCH_ALL_SERVER_NAME if is_catch_all else domain

    lines = [
        f"# sirka site: {site_id}",
        f"# name: {_comment_safe(site_name)}",
        f"# role: {'catch-all' if is_catch_all else 'named'}",
        "server {",
        f"    {listen}",
    ]
    if is_catch_all:
        lines.append("    listen [::]:80 default_server;")
    else:
        lines.append("    listen [::]:80;")
    lines += [
        f"    server_name {server_name};",
        "",
        f"    root {served_path};",
        f"    index {' '.join(indexes)};",
        "",
        "    location / {",
        f"        try_files $uri $uri/ /{indexes[0]};",
        "    }",
        "",
        "    # Security headers",
    ]
    lines += [f'    add_header {name} "{value}" always;' for name, value in SECURITY_HEADERS]
    lines += [
        "",
        "    # Gzip compression",
        "    gzip on;",
        "    gzip_vary on;",
        "    gzip_min_length 1024;",
        f"    gzip_types {' '.join(GZIP_TYPES)};",
        "}",
    ]
    return "\n".join(lines) + "\n"


def config_owner(text: str) -> Optional[str]:
    """Return the site id recorded in a generated config's header."""
    for line in text.splitlines():
        if line.startswith("# sirka site: "):
            return line[len("# sirka site: "):].strip() or None
    return None


def is_default_server(text: str) -> bool:
    return any(
        "default_server" in line.split("#", 1)[0]
        for line in text.splitlines()
        if line.strip().startswith("listen")
    )
