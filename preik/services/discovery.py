from typing import List, Set
from urllib.parse import urlsplit

from preik.services.url_safety import is_safe_url

SKIPPED_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp",
    ".mp4", ".mp3", ".zip", ".css", ".js",
)
SKIPPED_PATH_PARTS = ("/cdn-cgi/", "/wp-admin/", "/wp-login")
DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin(scheme: str, host: str, port) -> str:
    if port is None or port == DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def filter_urls(urls: List[str], base_url: str) -> List[str]:
    """Keep same-host HTML pages from a site map, deduplicated.

    Dedup key is origin + path without trailing slash, so `?page=2`, `/a/`,
    `:443` and `user@` variants collapse onto the first one seen.
    """
    base_host = urlsplit(base_url).hostname
    seen: Set[str] = set()
    out: List[str] = []

    for url in urls:
        try:
            parts = urlsplit(url)
            host = parts.hostname
            port = parts.port
        except ValueError:
            continue
        if not host or host != base_host:
            continue
        if not is_safe_url(url):
            continue

        path = parts.path.lower()
        if path.endswith(SKIPPED_EXTENSIONS):
            continue
        if any(p in path for p in SKIPPED_PATH_PARTS):
            continue

        normalized = _origin(parts.scheme, host, port) + parts.path.removesuffix("/")
        if normalized in seen:
            continue
        seen.add(normalized)
        out.append(url)
    return out
