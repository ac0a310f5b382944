"""Formatting utilities for consistent CLI output."""

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(value: int | float) -> str:
    """Format a byte count with a binary unit suffix.

    Returns:
        "512B", "1.5KB", "3.2GB", ...
    """
    size = float(value)
    if abs(size) < 1024:
        return f"{int(size)}B"
    for unit in _BYTE_UNITS[1:-1]:
        size /= 1024
        if abs(size) < 1024:
            return f"{size:.1f}{unit}"
    return f"{size / 1024:.1f}{_BYTE_UNITS[-1]}"


def format_cpu_time(ms: float) -> str:
    """Format CPU time in milliseconds for table views.

    Returns:
        "850ms" below one second, "12.3s" below one minute, "4.5m" above.
    """
    if ms < 1000:
        return f"{ms:.0f}ms"
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{seconds / 60:.1f}m"


def truncate(text: str, width: int) -> str:
    """Shorten text to width characters, marking the cut with '..'."""
    if len(text) <= width:
        return text
    if width <= 2:
        return text[:width]
    return text[: width - 2] + ".."
