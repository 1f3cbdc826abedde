"""Thresholds tab showing LT1/LT2 and the candidates behind them."""
import streamlit as st
import pandas as pd


ESTIMATOR_LABELS = {
    'segmented': 'Segmented regression',
    'baseline': 'OBLA 2.0 (baseline)',
    'dmax': 'Dmax',
    'obla': 'OBLA 3.5',
}


def format_effort(value) -> str:
    if value is None or pd.isna(value):
        return 'N/A'
    return f"{value:.0f}"


def candidate_table(results) -> pd.DataFrame:
    """One row per estimator candidate, in the order the ensemble saw them."""
    diagnostics = results['diagnostics']
    rows = []
    for threshold in ('LT1', 'LT2'):
        used = diagnostics['used'][threshold]
        for name, value in diagnostics['candidates'][threshold].items():
            rows.append({
                'Threshold': threshold,
                'Estimator': ESTIMATOR_LABELS.get(name, name),
                'Effort': value,
                'Used': name in used,
            })
    return pd.DataFrame(rows, columns=['Threshold', 'Estimator', 'Effort', 'Used'])


def render(results):
    """Render the thresholds tab."""
    st.header("Lactate Thresholds")

    if results is None:
        st.info("Add test data to see threshold estimates")
        return

    diagnostics = results['diagnostics']
    intervals = results['confidence_interval'] or {}

    col1, col2 = st.columns(2)
    for column, threshold in ((col1, 'LT1'), (col2, 'LT2')):
        with column:
            st.metric(threshold, format_effort(results[threshold]))
            interval = intervals.get(threshold)
            if interval:
                st.caption(
                    f"95% CI {interval['lower']:.0f}-{interval['upper']:.0f} "
                    f"(SD {interval['sd']:.1f})"
                )

    if results['LT1'] is None and results['LT2'] is None:
        st.info("Not enough data to estimate thresholds - add more measurements")

    if diagnostics['method'] == 'fallback':
        st.warning(
            f"Only {diagnostics['n_points']} usable measurements: "
            "thresholds use the fixed-lactate and Dmax estimators only"
        )
    if diagnostics['noisy']:
        st.warning(
            f"Lactate dropped {diagnostics['violations']} times as effort increased; "
            "readings were smoothed to a monotonic curve"
        )

    table = candidate_table(results)
    if len(table) > 0:
        def highlight_threshold(row):
            if row['Threshold'] == 'LT1':
                color = 'background-color: rgba(144, 238, 144, 0.3)'  # light green
            else:
                color = 'background-color: rgba(255, 182, 193, 0.3)'  # light red
            if not row['Used']:
                color = 'color: gray'
            return [color] * len(row)

        styled_table = table.style.apply(highlight_threshold, axis=1).format({'Effort': '{:.1f}'}, na_rep='')

        st.subheader("Candidates")
        st.dataframe(styled_table, hide_index=True, width='stretch')
