"""
Tunable constants for lactate threshold estimation.

All values are grouped in one immutable dataclass that is passed through the
pipeline, so callers and tests can override a single constant without
touching module state.
"""

from dataclasses import dataclass, replace as dataclass_replace
from typing import Optional


@dataclass(frozen=True)
class ThresholdConfig:
    # --- ENSEMBLE ---
    min_points: int = 5                 # below this the fallback pipeline runs
    min_gap: float = 30.0               # minimum LT2 - LT1 distance (effort units)
    boundary_exclusion: int = 2         # lowest/highest points never used as breakpoints
    outlier_ratio: float = 0.25         # max |candidate - median| / |median|

    # --- FIXED LACTATE TARGETS (mmol/L) ---
    obla_lt1: float = 2.0
    obla_lt2: float = 3.5
    lt1_max_lactate: Optional[float] = None   # e.g. 2.5; None disables the ceiling

    # --- D-MAX ---
    dmax_min_points: int = 4
    dmax_steps: int = 100

    # --- PREPROCESSING ---
    smoothing_window: int = 3
    noisy_violation_limit: int = 2

    # --- LEAST SQUARES ---
    rank_tolerance: float = 1e-10

    # --- BOOTSTRAP ---
    bootstrap_iterations: int = 200
    bootstrap_min_points: int = 6
    bootstrap_min_samples: int = 10
    bootstrap_workers: int = 1

    def replace(self, **overrides) -> "ThresholdConfig":
        """Return a copy with the given fields changed."""
        return dataclass_replace(self, **overrides)

    def validate(self) -> "ThresholdConfig":
        """
        Check that the configuration is usable.

        Raises:
            ValueError: if a field holds a value the pipeline cannot work with
        """
        if self.outlier_ratio < 0:
            raise ValueError(f"outlier_ratio must be >= 0, got {self.outlier_ratio}")
        if self.min_gap < 0:
            raise ValueError(f"min_gap must be >= 0, got {self.min_gap}")
        if self.boundary_exclusion < 0:
            raise ValueError(f"boundary_exclusion must be >= 0, got {self.boundary_exclusion}")
        if self.dmax_steps < 1:
            raise ValueError(f"dmax_steps must be >= 1, got {self.dmax_steps}")
        if self.smoothing_window < 1:
            raise ValueError(f"smoothing_window must be >= 1, got {self.smoothing_window}")
        if self.bootstrap_iterations < 1:
            raise ValueError(f"bootstrap_iterations must be >= 1, got {self.bootstrap_iterations}")
        if self.bootstrap_min_samples < 1:
            raise ValueError(f"bootstrap_min_samples must be >= 1, got {self.bootstrap_min_samples}")
        if self.bootstrap_workers < 1:
            raise ValueError(f"bootstrap_workers must be >= 1, got {self.bootstrap_workers}")
        return self


DEFAULT_CONFIG = ThresholdConfig()
