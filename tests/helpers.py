"""Shared builders for lactate threshold tests."""

from __future__ import annotations

from typing import Dict, List, Sequence


STEP_EFFORTS = [100.0, 140.0, 180.0, 220.0, 260.0, 300.0, 340.0]


def build_points(efforts: Sequence[float], lactates: Sequence[float]) -> List[Dict[str, float]]:
    """Zip effort and lactate series into measurement point mappings."""

    return [{"effort": e, "lactate": l} for e, l in zip(efforts, lactates)]


def piecewise_lactate(effort: float, b1: float, b2: float) -> float:
    """Exact continuous two-breakpoint curve used to check breakpoint recovery."""

    return 1.0 + 0.002 * (effort - 100.0) + 0.01 * max(0.0, effort - b1) + 0.04 * max(0.0, effort - b2)
