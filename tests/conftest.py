from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tests.helpers import STEP_EFFORTS, build_points  # noqa: E402


@pytest.fixture
def double_inflection_points() -> List[Dict[str, float]]:
    """Monotonic curve with a clear rise after 220 and a steep one after 300."""

    return build_points(STEP_EFFORTS, [1.0, 1.1, 1.3, 2.0, 2.8, 4.2, 6.5])


@pytest.fixture
def flat_noisy_points() -> List[Dict[str, float]]:
    """Near-flat curve with three downward steps and no clear threshold."""

    return build_points(STEP_EFFORTS, [1.0, 1.2, 1.1, 1.9, 1.8, 2.1, 2.0])


@pytest.fixture
def short_test_points() -> List[Dict[str, float]]:
    return build_points([100.0, 150.0, 200.0, 250.0], [1.0, 1.8, 2.6, 4.5])


@pytest.fixture
def eight_step_points() -> List[Dict[str, float]]:
    return build_points(
        STEP_EFFORTS + [380.0],
        [1.0, 1.1, 1.3, 2.0, 2.8, 4.2, 6.5, 9.0],
    )
