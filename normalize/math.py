import math
from typing import Any, Dict, List


def avg(samples: List[float]) -> float:
    if not samples:
        raise ValueError("samples must not be empty")
    return sum(samples) / len(samples)


def minimum(samples: List[float]) -> float:
    if not samples:
        raise ValueError("samples must not be empty")
    return float(min(samples))


def maximum(samples: List[float]) -> float:
    if not samples:
        raise ValueError("samples must not be empty")
    return float(max(samples))


def percentile(samples: List[float], percent: float) -> float:
    """Nearest-rank percentile over the sorted samples.

    Picks index floor(n * percent / 100), clamped to the last element, so
    P95 of 20 samples is the 20th value and P95 of 10 samples is the 10th.
    """
    if not samples:
        raise ValueError("samples must not be empty")
    if not (0 <= percent <= 100):
        raise ValueError("percent must be between 0 and 100")
    s = sorted(samples)
    n = len(s)
    idx = int(math.floor(n * percent / 100.0))
    if idx >= n:
        idx = n - 1
    return float(s[idx])


def p95(samples: List[float]) -> float:
    return percentile(samples, 95.0)


def p99(samples: List[float]) -> float:
    return percentile(samples, 99.0)


def compute_stats(samples: List[float]) -> Dict[str, Any]:
    return {
        "avg": avg(samples),
        "min": minimum(samples),
        "max": maximum(samples),
        "p95": p95(samples),
        "p99": p99(samples),
        "count": len(samples),
    }
