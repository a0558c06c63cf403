from __future__ import annotations

from datetime import datetime
from typing import Optional

from hdi.model import DiscrepancyRecord, ScanStats

_SIZE_UNITS = (
    (1 << 40, "T"),
    (1 << 30, "G"),
    (1 << 20, "M"),
    (1 << 10, "k"),
)


def write_quote_if_needed(value: Optional[str]) -> str:
    """Quote a value that contains a space; None renders as nothing."""
    if value is None:
        return ""
    if " " in value:
        return "'" + value + "'"
    return value


def format_verbose_line(record: DiscrepancyRecord) -> str:
    if record.action is not None:
        line = record.action
    else:
        line = f"{record.kind.value} {write_quote_if_needed(record.path)}"
    if record.observed is not None or record.expected is not None:
        line += " # " + write_quote_if_needed(record.observed)
        if record.expected is not None:
            line += " != " + write_quote_if_needed(record.expected)
    return line


def approximate_size(size: int) -> str:
    for unit_size, unit_name in _SIZE_UNITS:
        if size >= unit_size:
            whole = size // unit_size
            if whole < 100:
                fraction = (size % unit_size) * 10 // unit_size
                return f"{whole}.{fraction}{unit_name}B"
            return f"{whole}{unit_name}B"
    return "1 byte" if size == 1 else f"{size} bytes"


def format_duration(seconds: float) -> str:
    seconds = max(0.0, seconds)
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    parts = []
    if hours:
        parts.append(f"{hours} hour" + ("" if hours == 1 else "s"))
    if hours or minutes:
        parts.append(f"{minutes} minute" + ("" if minutes == 1 else "s"))
    parts.append(f"{secs:.3f} seconds")
    return " ".join(parts)


def _format_local_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).astimezone().strftime("%a %b %d %H:%M:%S %Z %Y")


def format_summary(stats: ScanStats) -> list[str]:
    return [
        "Time",
        f"  Start.....: {_format_local_time(stats.start_time)}",
        f"  End.......: {_format_local_time(stats.end_time)}",
        f"  Duration..: {format_duration(stats.duration_seconds)}",
        "Scan",
        f"  Total.....: {stats.scanned}",
        f"  System....: {stats.system_count}",
        f"  User......: {stats.user_count}",
        f"  No Recurse: {stats.no_recurse_count}",
        "Prelink Verify",
        f"  Files.....: {stats.prelink_files}",
        f"  Bytes.....: {stats.prelink_bytes} ({approximate_size(stats.prelink_bytes)})",
        "SHA-256",
        f"  Files.....: {stats.sha256_files}",
        f"  Bytes.....: {stats.sha256_bytes} ({approximate_size(stats.sha256_bytes)})",
    ]
