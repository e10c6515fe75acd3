"""Deterministic hash bucketing.

A visitor is mapped to a variant by hashing "{visitor}-{experiment}" with
32-bit FNV-1a, mixing and scaling the hash into [0, 1) and walking the cumulative
normalized weights in declaration order. The function is pure: the same
inputs give the same index in any process, so an assignment made at the
edge, re-checked by the application, or recomputed during offline
analysis always agrees.

The hash runs over UTF-16 code units, the same units a browser's
String.charCodeAt() yields. Raw FNV-1a barely moves the high bits when
only the last characters of a key differ (sibling experiments such as
"exp_v1" and "exp_v2"), so the hash goes through the murmur3 32-bit
finalizer before it is scaled. A client-side copy must apply the same
finalizer (Math.imul for the multiplications) to produce identical
buckets.

Traffic allocation uses a separate draw keyed with an extra salt, so the
inclusion decision is independent of variant selection.

Reordering variants changes the cumulative ranges and therefore
individual assignments, even when the weights are unchanged.
"""

import math
from collections.abc import Sequence

from src.ab.experiment import ExperimentConfigError

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
INCLUSION_SALT = "traffic"
FMIX_C1 = 0x85EBCA6B
FMIX_C2 = 0xC2B2AE35

_MASK_32 = 0xFFFFFFFF
_SCALE = 2**32


def fnv1a_32(text: str) -> int:
    h = FNV_OFFSET_BASIS
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * FNV_PRIME) & _MASK_32
    return h


def fmix32(h: int) -> int:
    """murmur3 finalizer: every input bit affects every output bit."""
    h ^= h >> 16
    h = (h * FMIX_C1) & _MASK_32
    h ^= h >> 13
    h = (h * FMIX_C2) & _MASK_32
    h ^= h >> 16
    return h


def unit_interval(key: str) -> float:
    """Map a key to a stable value in [0.0, 1.0)."""
    return fmix32(fnv1a_32(key)) / _SCALE


def bucket(visitor_id: str, experiment_id: str, weights: Sequence[float]) -> int:
    """Return the index of the variant this visitor falls into.

    Weights are relative and need not sum to 1. A zero-weight variant is
    never selected. An empty list, a negative or non-finite weight, or an
    all-zero list is a configuration error.
    """
    if not weights:
        raise ExperimentConfigError("Cannot bucket into an empty variant list")
    for w in weights:
        if not math.isfinite(w) or w < 0:
            raise ExperimentConfigError(f"Invalid variant weight: {w}")
    total = float(sum(weights))
    if total <= 0:
        raise ExperimentConfigError("All variant weights are zero")

    point = unit_interval(f"{visitor_id}-{experiment_id}")

    cumulative = 0.0
    last_eligible = 0
    for index, weight in enumerate(weights):
        if weight <= 0:
            continue
        last_eligible = index
        cumulative += weight / total
        if point < cumulative:
            return index

    # Rounding can leave the cumulative sum a hair under 1.0
    return last_eligible


def is_included(visitor_id: str, experiment_id: str, traffic_percentage: float) -> bool:
    """Decide whether a visitor participates in the experiment at all."""
    if traffic_percentage >= 100:
        return True
    if traffic_percentage <= 0:
        return False
    draw = unit_interval(f"{visitor_id}-{experiment_id}-{INCLUSION_SALT}")
    return draw < traffic_percentage / 100
