"""URL normalization used as the rate-limit and history key."""

from urllib.parse import urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_url(url: str) -> str:
    """Normalize an absolute http(s) URL to scheme://host[:port]/path.

    Query string and fragment are dropped, the host is lowercased, default
    ports are removed and an empty path becomes ``/``.

    Raises:
        ValueError: if the URL is empty, relative or not http(s)
    """
    url = (url or "").strip()
    if not url:
        raise ValueError("URL cannot be empty")

    parsed = urlsplit(url)
    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise ValueError(f"Invalid URL scheme: {parsed.scheme!r} (must be http or https)")
    if not parsed.hostname:
        raise ValueError(f"Invalid URL format: missing domain in {url!r}")

    host = parsed.hostname.lower()
    if ":" in host:
        # IPv6 literal; urlsplit strips the brackets
        host = f"[{host}]"
    if parsed.port and parsed.port != DEFAULT_PORTS[scheme]:
        host = f"{host}:{parsed.port}"

    return urlunsplit((scheme, host, parsed.path or "/", "", ""))


def is_normalized(url: str) -> bool:
    """True when ``url`` is already in normalized form."""
    try:
        return normalize_url(url) == url
    except ValueError:
        return False
