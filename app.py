import logging
from typing import Optional

import streamlit as st
import pandas as pd

# Import tab modules
import tab_input
import tab_thresholds
from lactate_thresholds import compute_lactate_thresholds

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

# Page configuration
st.set_page_config(
    page_title="Lactate Threshold Estimator",
    page_icon="🩸",
    layout="wide"
)


def initialize_session_state():
    """Initialize session state variables."""
    if 'step_data' not in st.session_state:
        st.session_state.step_data = pd.DataFrame({
            'Effort': [100.0, 140.0, 180.0, 220.0, 260.0, 300.0, 340.0, 380.0],
            'Lactate (mmol/L)': [1.0, 1.1, 1.3, 2.0, 2.8, 4.2, 6.5, 9.0],
        })
    if 'smooth' not in st.session_state:
        st.session_state.smooth = False
    if 'bootstrap' not in st.session_state:
        st.session_state.bootstrap = False


def analyze_step_data(df: pd.DataFrame, smooth: bool, bootstrap: bool) -> Optional[dict]:
    """
    Run the threshold estimator on the edited step table.

    Args:
        df: DataFrame with 'Effort' and 'Lactate (mmol/L)' columns
        smooth: Apply moving median after isotonic repair
        bootstrap: Compute confidence intervals

    Returns:
        Threshold record, or None if the analysis failed unexpectedly
    """
    try:
        points = [
            {'effort': effort, 'lactate': lactate}
            for effort, lactate in zip(df['Effort'], df['Lactate (mmol/L)'])
        ]
        return compute_lactate_thresholds(points, smooth=smooth, bootstrap=bootstrap)

    except Exception as e:
        logger.exception("Threshold analysis failed")
        st.error(f"Error analyzing data: {str(e)}")
        return None


def main():
    """Main application."""
    initialize_session_state()

    st.title("Lactate Threshold Estimator")
    st.markdown("Estimate LT1 and LT2 from step test lactate measurements")

    tab1, tab2 = st.tabs(["Input", "Thresholds"])

    with tab1:
        tab_input.render()

    results = analyze_step_data(
        st.session_state.step_data,
        st.session_state.smooth,
        st.session_state.bootstrap,
    )

    with tab2:
        tab_thresholds.render(results)


if __name__ == "__main__":
    main()
