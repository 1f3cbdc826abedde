"""Input tab for step test measurements and analysis options."""
import streamlit as st
import pandas as pd


def render():
    """Render the input tab."""
    st.header("Step Test Data")

    # Add delete checkboxes column
    display_df = st.session_state.step_data.copy()
    display_df.insert(0, 'Delete', False)

    edited_df = st.data_editor(
        display_df,
        hide_index=True,
        width='stretch',
        num_rows="fixed",
        column_config={
            "Delete": st.column_config.CheckboxColumn(
                "Delete",
                help="Select rows to delete",
                default=False,
            ),
            "Effort": st.column_config.NumberColumn(
                "Effort",
                help="Power, speed or any other effort measure",
                min_value=0.0,
                step=5.0,
                format="%.1f"
            ),
            "Lactate (mmol/L)": st.column_config.NumberColumn(
                "Lactate (mmol/L)",
                min_value=0.0,
                step=0.1,
                format="%.2f"
            ),
        }
    )

    # Row management buttons
    col1, col2 = st.columns([1, 5])
    with col1:
        if st.button("Add Row"):
            last_effort = st.session_state.step_data['Effort'].max()
            new_row = pd.DataFrame({
                'Effort': [0.0 if pd.isna(last_effort) else float(last_effort) + 40.0],
                'Lactate (mmol/L)': [0.0],
            })
            st.session_state.step_data = pd.concat([st.session_state.step_data, new_row], ignore_index=True)
            st.rerun()

    with col2:
        if st.button("Delete Selected Rows"):
            data_without_delete = edited_df.drop('Delete', axis=1)
            filtered_df = data_without_delete[~edited_df['Delete']].reset_index(drop=True)
            st.session_state.step_data = filtered_df
            st.rerun()

    st.session_state.step_data = edited_df.drop('Delete', axis=1)

    st.header("Options")
    st.checkbox(
        "Smooth readings (moving median)",
        key='smooth',
        help="Apply a 3-point moving median after the monotonic repair"
    )
    st.checkbox(
        "Confidence intervals (bootstrap)",
        key='bootstrap',
        help="Resample the measurements 200 times to estimate uncertainty"
    )
