"""Smoke tests for the Streamlit page."""

from __future__ import annotations

from pathlib import Path

from streamlit.testing.v1 import AppTest

from tab_thresholds import candidate_table, format_effort
from lactate_thresholds import compute_lactate_thresholds

from tests.helpers import STEP_EFFORTS, build_points


APP_PATH = str(Path(__file__).resolve().parents[1] / "app.py")


def test_app_renders_thresholds() -> None:
    at = AppTest.from_file(APP_PATH, default_timeout=60).run()

    assert not at.exception
    assert [metric.label for metric in at.metric] == ["LT1", "LT2"]
    assert all(metric.value != "N/A" for metric in at.metric)


def test_app_bootstrap_toggle_adds_intervals() -> None:
    at = AppTest.from_file(APP_PATH, default_timeout=60).run()

    at.checkbox(key="bootstrap").check().run()

    assert not at.exception
    assert any("95% CI" in caption.value for caption in at.caption)


def test_candidate_table_greys_out_filtered_outlier() -> None:
    results = compute_lactate_thresholds(build_points(STEP_EFFORTS, [1.0, 1.2, 1.1, 1.9, 1.8, 2.1, 2.0]))

    table = candidate_table(results)
    lt2 = table[table["Threshold"] == "LT2"].set_index("Estimator")["Used"]

    assert len(table) == 5
    assert lt2.to_dict() == {"Segmented regression": True, "Dmax": True, "OBLA 3.5": False}


def test_candidate_table_follows_reported_usage() -> None:
    results = compute_lactate_thresholds(build_points(STEP_EFFORTS, [1.0, 1.1, 1.3, 2.0, 2.8, 4.2, 6.5]))
    results["diagnostics"]["used"] = {"LT1": ["baseline"], "LT2": ["obla"]}

    table = candidate_table(results)

    segmented = table[table["Estimator"] == "Segmented regression"]
    assert len(segmented) == 2
    assert not segmented["Used"].any()
    assert table[table["Estimator"] == "OBLA 3.5"]["Used"].all()


def test_format_effort() -> None:
    assert format_effort(None) == "N/A"
    assert format_effort(251.6) == "252"
