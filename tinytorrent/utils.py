"""Small helpers: human-readable byte sizes and memory statistics."""

from __future__ import annotations

import gc
import sys
import tracemalloc

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

_UNIT = 1024
_PREFIXES = "KMGTPE"
_UINT64_MAX = (1 << 64) - 1
_MIB = 1024 * 1024


def format_bytes(num: int) -> str:
    """Format a byte count with binary prefixes, e.g. ``1.5 KiB``."""
    if not 0 <= num <= _UINT64_MAX:
        raise ValueError(f"byte count out of range: {num}")
    if num < _UNIT:
        return f"{num} B"
    div, exp = _UNIT, 0
    n = num // _UNIT
    while n >= _UNIT:
        div *= _UNIT
        exp += 1
        n //= _UNIT
    return f"{float(num) / float(div):.1f} {_PREFIXES[exp]}iB"


def _max_rss_bytes() -> int:
    if resource is None:
        return 0
    max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS reports bytes.
    return max_rss if sys.platform == "darwin" else max_rss * 1024


def print_mem_usage() -> None:
    """Print traced allocation, peak, resident size and garbage collection count."""
    current, peak = tracemalloc.get_traced_memory()
    collections = sum(stats["collections"] for stats in gc.get_stats())
    print(
        f"Alloc = {current // _MIB} MiB"
        f"\tTotalAlloc = {peak // _MIB} MiB"
        f"\tSys = {_max_rss_bytes() // _MIB} MiB"
        f"\tNumGC = {collections}\n\n",
        end="",
    )