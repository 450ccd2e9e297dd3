from typing import Any, Dict, List, Optional


def values_from_vector(result: List[Dict[str, Any]]) -> List[float]:
    """Extract numeric values from a Prometheus instant-vector result.

    Each element looks like ``{"metric": {...}, "value": [ts, "123"]}``.
    Drops NaNs and non-finite values.
    """
    vals: List[float] = []
    for sample in result or []:
        value = sample.get('value') or [None, None]
        if len(value) < 2 or value[1] is None:
            continue
        try:
            fv = float(value[1])
        except (TypeError, ValueError):
            continue
        if fv != fv:  # NaN
            continue
        if fv in (float('inf'), float('-inf')):
            continue
        vals.append(fv)
    return vals


def sum_vector(result: List[Dict[str, Any]]) -> Optional[float]:
    """Sum of all usable samples, or None when the vector carries no data."""
    vals = values_from_vector(result)
    if not vals:
        return None
    return sum(vals)
