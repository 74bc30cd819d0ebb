def join_url(base: str, path: str) -> str:
    """Join a server base URL and an endpoint path with exactly one slash."""
    if not path:
        return base
    return base.rstrip("/") + "/" + path.lstrip("/")
