"""
Small numeric and time helpers shared across components.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np


def clamp01(value: float) -> float:
    """Clamp a score into [0, 1]. NaN becomes 0."""
    if value != value:
        return 0.0
    return float(max(0.0, min(1.0, value)))


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def mean(values: Sequence[float], default: float = 0.0) -> float:
    if not values:
        return default
    return float(np.mean(values))


def pearson(xs: Sequence[float], ys: Sequence[float]) -> Optional[float]:
    """
    Pearson correlation coefficient.

    Returns None with fewer than three pairs or when either series is constant.
    """
    if len(xs) != len(ys) or len(xs) < 3:
        return None
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if np.std(x) == 0 or np.std(y) == 0:
        return None
    return float(np.corrcoef(x, y)[0, 1])


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO timestamp; sorts lexicographically in time order."""
    return ensure_aware(value).astimezone(timezone.utc).isoformat(timespec="microseconds")
