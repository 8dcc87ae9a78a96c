"""Utility helper functions"""

import re
import socket
import platform
from typing import Dict, Iterable, Optional, Tuple, Union

# Canonical, hashable label set: sorted (name, value) pairs
LabelSet = Tuple[Tuple[str, str], ...]

_DURATION_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$')
_DURATION_UNITS = {
    'ms': 0.001,
    's': 1,
    'm': 60,
    'h': 3600,
    'd': 86400,
    None: 1,
}


def get_hostname():
    """Get system hostname"""
    try:
        return socket.gethostname()
    except OSError:
        return platform.node() or "unknown"


def parse_duration(value: Union[str, int, float, None], default: Optional[float] = None) -> Optional[float]:
    """
    Parse a duration into seconds.

    Accepts plain numbers (seconds) or strings such as ``30s``, ``5m``, ``1h``.

    Raises:
        ValueError: If the value cannot be parsed or is negative
    """
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]

    if seconds < 0:
        raise ValueError(f"Duration must be >= 0, got {value!r}")
    return seconds


def format_duration(seconds: float) -> str:
    """Format seconds as a Prometheus-style duration (e.g. 300 -> '5m')"""
    seconds = int(seconds)
    if seconds and seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds and seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


def to_label_set(labels: Union[Dict[str, str], Iterable[Tuple[str, str]], None]) -> LabelSet:
    """Convert a label mapping into a canonical hashable label set"""
    if not labels:
        return ()
    items = labels.items() if isinstance(labels, dict) else labels
    return tuple(sorted((str(k), str(v)) for k, v in items))


def format_labels(label_set: LabelSet) -> str:
    """Render a label set as ``k=v,k2=v2``"""
    return ",".join(f"{k}={v}" for k, v in label_set)


def parse_label_args(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse ``key=value`` strings (CLI ``--label`` arguments)"""
    labels = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise ValueError(f"Invalid label '{pair}', expected key=value")
        key, value = pair.split('=', 1)
        labels[key.strip()] = value.strip()
    return labels
