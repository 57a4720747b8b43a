from typing import Any, Dict, List


def values_from_samples(samples: List[Dict[str, Any]], key: str) -> List[float]:
    """Extract numeric readings for `key` from utilization samples.
    Drops missing, non-numeric and NaN values.
    """
    vals: List[float] = []
    for sample in samples:
        v = sample.get(key)
        if v is None:
            continue
        try:
            fv = float(v)
        except (TypeError, ValueError):
            continue
        if fv != fv:  # NaN
            continue
        vals.append(fv)
    return vals


def samples_in_window(samples: List[Dict[str, Any]], start_ts: float, end_ts: float) -> List[Dict[str, Any]]:
    """Keep samples with start_ts <= timestamp <= end_ts, ordered by timestamp."""
    kept = []
    for sample in samples:
        ts = sample.get('timestamp')
        if ts is None:
            continue
        if start_ts <= ts <= end_ts:
            kept.append(sample)
    return sorted(kept, key=lambda s: s['timestamp'])
