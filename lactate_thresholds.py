"""
LT1 / LT2 estimation from a sparse (effort, lactate) step-test series.

Pipeline: isotonic repair (optional moving median) -> segmented regression,
fixed-lactate and Dmax estimators run independently -> outlier-filtered
ensemble median -> optional bootstrap confidence intervals.

Every estimator degrades to None instead of raising, so a single bad fit only
removes its own candidate from the ensemble.
"""

import logging
import math
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import linalg
from sklearn.isotonic import isotonic_regression as sklearn_isotonic_regression
from sklearn.linear_model import LinearRegression
from sklearn.preprocessing import PolynomialFeatures

from threshold_config import DEFAULT_CONFIG, ThresholdConfig

logger = logging.getLogger(__name__)


# ============================================================================
# INPUT PREPARATION
# ============================================================================

def _parse_point(point) -> Optional[Tuple[float, float]]:
    """Return (effort, lactate) as finite floats, or None if unusable."""
    if isinstance(point, Mapping):
        effort, lactate = point.get('effort'), point.get('lactate')
    else:
        try:
            effort, lactate = point
        except (TypeError, ValueError):
            return None

    try:
        effort = float(effort)
        lactate = float(lactate)
    except (TypeError, ValueError):
        return None

    if not (math.isfinite(effort) and math.isfinite(lactate)):
        return None
    return effort, lactate


def prepare_points(points) -> pd.DataFrame:
    """
    Normalize raw measurement points into a DataFrame sorted by effort.

    Accepts an iterable of {'effort', 'lactate'} mappings or (effort, lactate)
    pairs, or a DataFrame with those two columns. Entries that are not two
    finite numbers are dropped. Duplicate efforts are kept (stable sort).
    """
    if isinstance(points, pd.DataFrame):
        if {'effort', 'lactate'}.issubset(points.columns):
            rows = points[['effort', 'lactate']].itertuples(index=False, name=None)
        else:
            rows = []
    elif points is None or isinstance(points, (str, bytes)):
        rows = []
    else:
        try:
            rows = iter(points)
        except TypeError:
            rows = []

    parsed = [p for p in (_parse_point(row) for row in rows) if p is not None]
    data = pd.DataFrame(parsed, columns=['effort', 'lactate'], dtype=float)
    return data.sort_values('effort', kind='mergesort').reset_index(drop=True)


# ============================================================================
# INTERPOLATION
# ============================================================================

def interpolate_effort(effort: Sequence[float], lactate: Sequence[float],
                       target_lactate: float) -> Optional[float]:
    """
    Effort at which the piecewise-linear (effort, lactate) curve reaches target_lactate.

    Targets at or below the first lactate value map to the first effort, targets
    at or above the last value map to the last effort. A flat segment that
    contains the target returns its midpoint.
    """
    n = len(effort)
    if n == 0 or len(lactate) != n:
        return None

    if target_lactate <= lactate[0]:
        return float(effort[0])
    if target_lactate >= lactate[-1]:
        return float(effort[-1])

    for i in range(n - 1):
        lac_low = lactate[i]
        lac_high = lactate[i + 1]

        if (lac_low <= target_lactate <= lac_high) or (lac_high <= target_lactate <= lac_low):
            if lac_high == lac_low:
                return float((effort[i] + effort[i + 1]) / 2)
            t = (target_lactate - lac_low) / (lac_high - lac_low)
            return float(effort[i] + t * (effort[i + 1] - effort[i]))

    return None


def lactate_at_effort(effort: Sequence[float], lactate: Sequence[float],
                      effort_value: float) -> Optional[float]:
    """Lactate on the piecewise-linear curve at effort_value (clamped to the end points)."""
    n = len(effort)
    if n == 0 or len(lactate) != n:
        return None

    for i in range(n - 1):
        e0, e1 = effort[i], effort[i + 1]
        if e0 != e1 and min(e0, e1) <= effort_value <= max(e0, e1):
            return float(lactate[i] + (lactate[i + 1] - lactate[i]) * (effort_value - e0) / (e1 - e0))

    if effort_value <= effort[0]:
        return float(lactate[0])
    if effort_value >= effort[-1]:
        return float(lactate[-1])
    return None


# ============================================================================
# PREPROCESSING
# ============================================================================

def count_violations(lactate: Sequence[float]) -> int:
    """Number of adjacent pairs where lactate drops as effort rises."""
    values = np.asarray(lactate, dtype=float)
    if len(values) < 2:
        return 0
    return int(np.sum(np.diff(values) < 0))


def isotonic_regression(lactate: Sequence[float]) -> np.ndarray:
    """
    Pool adjacent violators: decreasing runs are replaced by their mean, giving
    the closest non-decreasing series in the least-squares sense.
    """
    y = np.array(lactate, dtype=float)
    if len(y) < 2:
        return y
    return sklearn_isotonic_regression(y, increasing=True)


def _upper_median(window: np.ndarray) -> float:
    return np.sort(window)[len(window) // 2]


def moving_median(values: Sequence[float], window: int = 3) -> np.ndarray:
    """
    Centred rolling median. Windows are truncated at both ends, and an
    even-sized window takes its upper middle value; series shorter than the
    window are returned unchanged.
    """
    values = np.asarray(values, dtype=float)
    if len(values) < window:
        return values.copy()
    smoothed = pd.Series(values).rolling(window, center=True, min_periods=1).apply(_upper_median, raw=True)
    return smoothed.to_numpy()


# ============================================================================
# LEAST SQUARES
# ============================================================================

class LstsqResult(NamedTuple):
    ok: bool
    sse: float
    coefficients: Optional[np.ndarray]


FAILED_FIT = LstsqResult(ok=False, sse=np.inf, coefficients=None)


def solve_least_squares(X: np.ndarray, y: np.ndarray,
                        rank_tolerance: float = 1e-10) -> LstsqResult:
    """
    Solve min ||X b - y||². Rank-deficient or non-finite systems come back as
    FAILED_FIT (infinite SSE) instead of raising.
    """
    if not (np.all(np.isfinite(X)) and np.all(np.isfinite(y))):
        return FAILED_FIT

    try:
        coefficients, _, rank, _ = linalg.lstsq(X, y, cond=rank_tolerance, check_finite=False)
    except linalg.LinAlgError:
        return FAILED_FIT

    if rank < X.shape[1] or not np.all(np.isfinite(coefficients)):
        return FAILED_FIT

    residuals = y - X @ coefficients
    return LstsqResult(ok=True, sse=float(residuals @ residuals), coefficients=coefficients)


# ============================================================================
# SEGMENTED REGRESSION (2 breakpoints)
# ============================================================================

class SegmentedFit(NamedTuple):
    lt1: Optional[float]
    lt2: Optional[float]
    sse: float
    valid: bool


NO_SEGMENTED_FIT = SegmentedFit(lt1=None, lt2=None, sse=np.inf, valid=False)


def segmented_design_matrix(effort: np.ndarray, b1: float, b2: float) -> np.ndarray:
    """Columns: 1, e, max(0, e - b1), max(0, e - b2)."""
    effort = np.asarray(effort, dtype=float)
    return np.column_stack([
        np.ones_like(effort),
        effort,
        np.maximum(0.0, effort - b1),
        np.maximum(0.0, effort - b2),
    ])


def segmented_sse(effort: np.ndarray, lactate: np.ndarray, b1: float, b2: float,
                  rank_tolerance: float = 1e-10) -> LstsqResult:
    """Least-squares fit of the continuous two-breakpoint model for fixed breakpoints."""
    X = segmented_design_matrix(effort, b1, b2)
    return solve_least_squares(X, np.asarray(lactate, dtype=float), rank_tolerance)


def segmented_regression(effort: Sequence[float], lactate: Sequence[float],
                         config: ThresholdConfig = DEFAULT_CONFIG) -> SegmentedFit:
    """
    Exhaustive search over breakpoint pairs b1 < b2 drawn from the interior
    efforts (the outer `boundary_exclusion` points on each side are skipped).
    Returns the pair with the smallest SSE; the first pair wins ties.
    """
    effort = np.asarray(effort, dtype=float)
    lactate = np.asarray(lactate, dtype=float)

    k = config.boundary_exclusion
    candidates = effort[k:len(effort) - k]
    if len(candidates) < 2:
        return NO_SEGMENTED_FIT

    best = NO_SEGMENTED_FIT
    for i in range(len(candidates)):
        for j in range(i + 1, len(candidates)):
            b1 = candidates[i]
            b2 = candidates[j]
            fit = segmented_sse(effort, lactate, b1, b2, config.rank_tolerance)
            if fit.sse < best.sse:
                best = SegmentedFit(lt1=float(b1), lt2=float(b2), sse=fit.sse, valid=True)

    if best.valid:
        logger.debug("Segmented fit: b1=%.1f b2=%.1f sse=%.4f", best.lt1, best.lt2, best.sse)
    return best


# ============================================================================
# FIXED LACTATE ESTIMATORS (OBLA)
# ============================================================================

def baseline_lt1(effort, lactate, config: ThresholdConfig = DEFAULT_CONFIG) -> Optional[float]:
    """Effort at the fixed LT1 lactate target (OBLA 2.0 by default)."""
    return interpolate_effort(effort, lactate, config.obla_lt1)


def obla_lt2(effort, lactate, config: ThresholdConfig = DEFAULT_CONFIG) -> Optional[float]:
    """Effort at the fixed LT2 lactate target (OBLA 3.5 by default)."""
    return interpolate_effort(effort, lactate, config.obla_lt2)


# ============================================================================
# DMAX
# ============================================================================

def fit_polynomial_3rd(effort: np.ndarray, lactate: np.ndarray) -> Tuple:
    """
    Fit 3rd degree polynomial: lactate = β₀ + β₁*e + β₂*e² + β₃*e³

    Returns (model, poly_features, coefficients) with coefficients ordered
    [β₀, β₁, β₂, β₃].
    """
    poly = PolynomialFeatures(degree=3)
    X_poly = poly.fit_transform(np.asarray(effort, dtype=float).reshape(-1, 1))
    model = LinearRegression()
    model.fit(X_poly, np.asarray(lactate, dtype=float))

    coefficients = np.concatenate([[model.intercept_], model.coef_[1:]])

    return model, poly, coefficients


def dmax_lt2(effort: Sequence[float], lactate: Sequence[float],
             config: ThresholdConfig = DEFAULT_CONFIG) -> Optional[float]:
    """
    Dmax: effort where the fitted cubic lies farthest (perpendicular distance)
    from the chord joining the first and last observed points.

    The curve is evaluated on `dmax_steps` uniform steps over the effort range.
    """
    effort = np.asarray(effort, dtype=float)
    lactate = np.asarray(lactate, dtype=float)

    if len(effort) < config.dmax_min_points:
        return None

    e_first, e_last = effort[0], effort[-1]
    if not e_last > e_first:
        return None

    model, poly, coefficients = fit_polynomial_3rd(effort, lactate)
    if not np.all(np.isfinite(coefficients)):
        return None

    slope = (lactate[-1] - lactate[0]) / (e_last - e_first)
    intercept = lactate[0] - slope * e_first

    grid = e_first + (e_last - e_first) * np.arange(config.dmax_steps + 1) / config.dmax_steps
    curve = model.predict(poly.transform(grid.reshape(-1, 1)))
    distance = np.abs(curve - (slope * grid + intercept)) / np.sqrt(1 + slope ** 2)

    if not np.all(np.isfinite(distance)):
        return None

    return float(grid[int(np.argmax(distance))])


# ============================================================================
# ENSEMBLE
# ============================================================================

def median(values) -> Optional[float]:
    """Median of the finite, non-None values; None when nothing is left."""
    clean = [v for v in values if v is not None and np.isfinite(v)]
    if not clean:
        return None
    return float(np.median(clean))


def filter_outliers(candidates: Sequence[float], ratio: float) -> List[float]:
    """Keep candidates within ratio * |median| of the pool median."""
    center = median(candidates)
    if center is None:
        return []
    limit = ratio * abs(center)
    kept = [c for c in candidates if abs(c - center) <= limit]
    if len(kept) < len(candidates):
        logger.debug("Dropped outlier candidates %s around median %.1f",
                     [c for c in candidates if abs(c - center) > limit], center)
    return kept


def combine_candidates(candidates: Sequence[float], ratio: float) -> Optional[float]:
    """
    Outlier-filtered median. An empty pool gives None; if the filter drops
    everything the unfiltered median is used.
    """
    if not candidates:
        return None
    kept = filter_outliers(candidates, ratio)
    if not kept:
        return median(candidates)
    return median(kept)


def surviving_names(pool: Sequence[Tuple[str, float]], ratio: float) -> List[str]:
    """Names of the (name, value) candidates that combine_candidates reduces over."""
    kept = filter_outliers([value for _, value in pool], ratio)
    if not kept:
        return [name for name, _ in pool]
    return [name for name, value in pool if value in kept]


def is_valid_segmented(fit: SegmentedFit, effort: Sequence[float],
                       config: ThresholdConfig = DEFAULT_CONFIG) -> bool:
    """Breakpoints must sit strictly inside the 2nd-lowest / 2nd-highest efforts and be min_gap apart."""
    if fit.lt1 is None or fit.lt2 is None:
        return False
    n = len(effort)
    if n < 2:
        return False
    if fit.lt1 <= effort[1]:
        return False
    if fit.lt2 >= effort[n - 2]:
        return False
    if fit.lt2 - fit.lt1 < config.min_gap:
        return False
    return True


class Estimator(NamedTuple):
    name: str
    threshold: str
    value: Callable[[Dict], Optional[float]]
    is_valid: Callable[[Dict], bool]


def _always(estimates: Dict) -> bool:
    return True


def _segmented_ok(estimates: Dict) -> bool:
    return estimates['segmented_valid']


# Ordered candidate sources; each contributes only when valid and non-None.
ESTIMATORS = (
    Estimator('segmented', 'LT1', lambda est: est['segmented'].lt1, _segmented_ok),
    Estimator('baseline', 'LT1', lambda est: est['baseline'], _always),
    Estimator('segmented', 'LT2', lambda est: est['segmented'].lt2, _segmented_ok),
    Estimator('dmax', 'LT2', lambda est: est['dmax'], _always),
    Estimator('obla', 'LT2', lambda est: est['obla'], _always),
)


def run_estimators(effort: np.ndarray, lactate: np.ndarray,
                   config: ThresholdConfig = DEFAULT_CONFIG) -> Dict:
    """Run every estimator on the preprocessed series."""
    segmented = segmented_regression(effort, lactate, config)
    return {
        'segmented': segmented,
        'segmented_valid': is_valid_segmented(segmented, effort, config),
        'baseline': baseline_lt1(effort, lactate, config),
        'dmax': dmax_lt2(effort, lactate, config),
        'obla': obla_lt2(effort, lactate, config),
    }


def pool_candidates(estimates: Dict, threshold: str,
                    estimators: Sequence[Estimator] = ESTIMATORS) -> List[Tuple[str, float]]:
    """(name, value) pairs for `threshold`, in estimator order."""
    pool = []
    for estimator in estimators:
        if estimator.threshold != threshold or not estimator.is_valid(estimates):
            continue
        value = estimator.value(estimates)
        if value is not None:
            pool.append((estimator.name, value))
    return pool


def _new_result(n_points: int, violations: int, noisy: bool) -> Dict:
    return {
        'LT1': None,
        'LT2': None,
        'confidence_interval': None,
        'diagnostics': {
            'method': 'ensemble',
            'noisy': noisy,
            'n_points': n_points,
            'violations': violations,
            'segmented_valid': False,
            'candidates': {'LT1': {}, 'LT2': {}},
            'used': {'LT1': [], 'LT2': []},
        },
    }


def estimate_thresholds(effort: Sequence[float], lactate: Sequence[float], smooth: bool = False,
                        config: ThresholdConfig = DEFAULT_CONFIG) -> Dict:
    """
    Point estimates of LT1 and LT2 for an effort-sorted series.

    Args:
        effort: Effort values, ascending
        lactate: Raw lactate values aligned with effort
        smooth: Apply the moving median after isotonic repair
        config: Tunable constants

    Returns:
        Threshold record with confidence_interval left as None
    """
    effort = np.asarray(effort, dtype=float)
    raw_lactate = np.asarray(lactate, dtype=float)
    n = len(effort)

    violations = count_violations(raw_lactate)
    result = _new_result(n, violations, violations > config.noisy_violation_limit)
    diagnostics = result['diagnostics']

    lactate = isotonic_regression(raw_lactate)
    if smooth:
        lactate = moving_median(lactate, config.smoothing_window)

    # Reduced pipeline for short tests
    if n < config.min_points:
        diagnostics['method'] = 'fallback'
        lt1 = baseline_lt1(effort, lactate, config)
        dmax = dmax_lt2(effort, lactate, config)
        obla = obla_lt2(effort, lactate, config)
        diagnostics['candidates'] = {
            'LT1': {'baseline': lt1},
            'LT2': {'dmax': dmax, 'obla': obla},
        }
        diagnostics['used'] = {
            threshold: [name for name, value in candidates.items() if value is not None]
            for threshold, candidates in diagnostics['candidates'].items()
        }
        result['LT1'] = lt1
        result['LT2'] = median([dmax, obla])
        logger.info("Only %d points, using fallback estimators (LT1=%s, LT2=%s)",
                    n, result['LT1'], result['LT2'])
        return result

    estimates = run_estimators(effort, lactate, config)
    segmented = estimates['segmented']
    diagnostics['segmented_valid'] = estimates['segmented_valid']
    diagnostics['candidates'] = {
        threshold: {e.name: e.value(estimates) for e in ESTIMATORS if e.threshold == threshold}
        for threshold in ('LT1', 'LT2')
    }

    lt1_named = pool_candidates(estimates, 'LT1')
    lt2_named = pool_candidates(estimates, 'LT2')
    lt1_pool = [value for _, value in lt1_named]
    lt2_pool = [value for _, value in lt2_named]
    used = diagnostics['used']

    result['LT1'] = combine_candidates(lt1_pool, config.outlier_ratio)
    used['LT1'] = surviving_names(lt1_named, config.outlier_ratio)

    # Dmax takes over LT2 when nothing survives the filter or the breakpoints are too close
    lt2_kept = filter_outliers(lt2_pool, config.outlier_ratio)
    short_gap = segmented.valid and segmented.lt2 - segmented.lt1 < config.min_gap
    if (not lt2_kept or short_gap) and estimates['dmax'] is not None:
        result['LT2'] = estimates['dmax']
        used['LT2'] = ['dmax']
    else:
        result['LT2'] = combine_candidates(lt2_pool, config.outlier_ratio)
        used['LT2'] = surviving_names(lt2_named, config.outlier_ratio)

    if config.lt1_max_lactate is not None and result['LT1'] is not None \
            and estimates['baseline'] is not None:
        lactate_at_lt1 = lactate_at_effort(effort, lactate, result['LT1'])
        if lactate_at_lt1 is not None and lactate_at_lt1 > config.lt1_max_lactate:
            logger.debug("Lactate %.2f at LT1 exceeds %.2f, using baseline LT1",
                         lactate_at_lt1, config.lt1_max_lactate)
            result['LT1'] = estimates['baseline']
            used['LT1'] = ['baseline']

    return result


# ============================================================================
# BOOTSTRAP
# ============================================================================

def summarize_samples(samples: Sequence[float], min_samples: int = 10) -> Optional[Dict[str, float]]:
    """
    Nearest-rank 2.5 / 97.5 percentiles and the spread around the median.

    Returns None when fewer than min_samples values are available.
    """
    if len(samples) < min_samples:
        return None

    s = np.sort(np.asarray(samples, dtype=float))
    m = len(s)
    lower = s[int(math.floor(m * 0.025))]
    upper = s[int(math.ceil(m * 0.975)) - 1]
    center = np.median(s)
    sd = math.sqrt(float(np.mean((s - center) ** 2)))

    return {'lower': float(lower), 'upper': float(upper), 'sd': sd}


def _bootstrap_iteration(effort: np.ndarray, lactate: np.ndarray, indices: np.ndarray,
                         smooth: bool, config: ThresholdConfig) -> Tuple[Optional[float], Optional[float]]:
    unique = np.unique(indices)
    if len(unique) < config.min_points:
        return None, None

    sample_effort = effort[unique]
    sample_lactate = lactate[unique]
    order = np.argsort(sample_effort, kind='stable')

    estimate = estimate_thresholds(sample_effort[order], sample_lactate[order], smooth, config)
    return estimate['LT1'], estimate['LT2']


def bootstrap_confidence_intervals(effort: Sequence[float], lactate: Sequence[float],
                                   smooth: bool = False,
                                   config: ThresholdConfig = DEFAULT_CONFIG,
                                   rng: Optional[np.random.Generator] = None,
                                   cancel=None) -> Optional[Dict]:
    """
    Resample points with replacement and rerun the estimation pipeline.

    All index draws are made up front from `rng`, so the outcome does not depend
    on the order in which iterations run. `cancel` may be any object with an
    is_set() method (e.g. threading.Event); once set, remaining iterations are
    skipped and the intervals use the samples collected so far.

    Returns:
        {'LT1': {...}, 'LT2': {...}} with thresholds lacking enough samples
        omitted, or None when neither threshold qualifies
    """
    effort = np.asarray(effort, dtype=float)
    lactate = np.asarray(lactate, dtype=float)
    n = len(effort)
    if n == 0:
        return None

    if rng is None:
        rng = np.random.default_rng()
    draws = rng.integers(0, n, size=(config.bootstrap_iterations, n))

    def run(indices):
        if cancel is not None and cancel.is_set():
            return None
        return _bootstrap_iteration(effort, lactate, indices, smooth, config)

    if config.bootstrap_workers > 1:
        with ThreadPoolExecutor(max_workers=config.bootstrap_workers) as executor:
            outcomes = list(executor.map(run, draws))
    else:
        outcomes = []
        for indices in draws:
            outcome = run(indices)
            if outcome is None:
                break
            outcomes.append(outcome)

    skipped = sum(1 for outcome in outcomes if outcome is None)
    if skipped or len(outcomes) < len(draws):
        logger.info("Bootstrap cancelled after %d of %d iterations",
                    len(outcomes) - skipped, len(draws))

    lt1_samples = [lt1 for lt1, _ in filter(None, outcomes) if lt1 is not None]
    lt2_samples = [lt2 for _, lt2 in filter(None, outcomes) if lt2 is not None]
    logger.debug("Bootstrap collected %d LT1 and %d LT2 samples", len(lt1_samples), len(lt2_samples))

    intervals = {}
    for threshold, samples in (('LT1', lt1_samples), ('LT2', lt2_samples)):
        summary = summarize_samples(samples, config.bootstrap_min_samples)
        if summary is not None:
            intervals[threshold] = summary

    return intervals or None


# ============================================================================
# MAIN ANALYSIS FUNCTION
# ============================================================================

def compute_lactate_thresholds(points, smooth: bool = False, bootstrap: bool = False,
                               config: Optional[ThresholdConfig] = None,
                               seed: Optional[int] = None,
                               rng: Optional[np.random.Generator] = None,
                               cancel=None) -> Dict:
    """
    Estimate LT1 and LT2 from raw measurement points.

    Args:
        points: Iterable of {'effort', 'lactate'} mappings or (effort, lactate)
            pairs, or a DataFrame with those columns; need not be sorted
        smooth: Apply a moving median after isotonic repair
        bootstrap: Compute bootstrap confidence intervals
        config: Tunable constants (defaults to ThresholdConfig())
        seed: Seed for a local random generator used by the bootstrap
        rng: Explicit numpy Generator; takes precedence over seed
        cancel: Optional object with is_set() to stop the bootstrap early

    Returns:
        Dict with 'LT1', 'LT2', 'confidence_interval' and 'diagnostics'.
        Unusable input yields None thresholds, never an exception.
    """
    config = (config or DEFAULT_CONFIG).validate()

    data = prepare_points(points)
    effort = data['effort'].to_numpy()
    lactate = data['lactate'].to_numpy()

    result = estimate_thresholds(effort, lactate, smooth=smooth, config=config)

    if bootstrap and result['LT1'] is not None and result['LT2'] is not None \
            and len(effort) >= config.bootstrap_min_points:
        if rng is None:
            rng = np.random.default_rng(seed)
        result['confidence_interval'] = bootstrap_confidence_intervals(
            effort, lactate, smooth=smooth, config=config, rng=rng, cancel=cancel
        )

    return result
