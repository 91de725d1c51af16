"""Human-readable sizes, speeds and durations for console output."""

_UNITS = ["B", "KiB", "MiB", "GiB", "TiB"]


def format_bytes(size: float) -> str:
    """Convert bytes to human-readable format.

    Uses base-2 units (1 KiB = 1024 bytes).

    Example:
        >>> format_bytes(512)
        '512 B'
        >>> format_bytes(1536)
        '1.50 KiB'
    """
    if size < 1024:
        return f"{int(size)} B"
    for unit in _UNITS[1:]:
        size /= 1024.0
        if size < 1024:
            return f"{size:.2f} {unit}"
    return f"{size:.2f} {_UNITS[-1]}"


def format_speed(bytes_per_second: float) -> str:
    return f"{format_bytes(bytes_per_second)}/s"


def format_duration(seconds: float) -> str:
    """Format a duration as ``1.2s``, ``3m 05s`` or ``2h 03m``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"
