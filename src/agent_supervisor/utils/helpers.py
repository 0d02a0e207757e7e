"""General helper functions."""


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        minutes = int(seconds / 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    hours = int(seconds / 3600)
    minutes = int((seconds % 3600) / 60)
    return f"{hours}h {minutes}m"


def format_exit(code: int | None, signal: str | None) -> str:
    """Describe a child exit the way a shell would."""
    if signal:
        return f"signal {signal}"
    if code is None:
        return "unknown status"
    return f"code {code}"
