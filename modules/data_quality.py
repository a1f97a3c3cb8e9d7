"""
data_quality.py
2024-03-18 ZD

Ad hoc data quality checks for metadata tables. Results are printed for human
review and saved under reports/ with a run timestamp. Nothing here changes the
data or stops the run.

- Identical columns: groups of columns with the same values in every row,
  usually one concept delivered under two names by two sources
- Missing values: count and fraction of nulls per column
"""

import os
import sys

import pandas as pd

# Append the project's root directory to the Python path
# This allows for importing config when running as part of main.py or alone
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import config
from modules.utils import get_time



def find_identical_columns(df: pd.DataFrame) -> list:
    """Find groups of columns with identical values in every row.

    Nulls compare equal to nulls. Columns are compared as strings so '1' and 1
    match.

    Returns:
        List of column-name lists, each with two or more columns, in the
        order the first column of each group appears
    """

    groups = {}
    for col in df.columns:
        values = df[col].astype(object).where(df[col].notna(), None)
        signature = tuple(None if value is None else str(value)
                          for value in values)
        groups.setdefault(signature, []).append(col)

    return [cols for cols in groups.values() if len(cols) > 1]



def summarize_missing_values(df: pd.DataFrame) -> pd.DataFrame:
    """Count missing values per column, most missing first."""

    missing_count = df.isna().sum()
    summary = pd.DataFrame({
        'column': df.columns,
        'missing_count': missing_count.values,
        'missing_fraction': (missing_count / len(df)).values if len(df) else 0.0,
    })

    return (summary.sort_values(['missing_count', 'column'],
                                ascending=[False, True], kind='stable')
            .reset_index(drop=True))



def run_data_quality_checks(df: pd.DataFrame, table_name: str,
                            reports_dir: str = None) -> dict:
    """Run all checks on a table, print results, and save reports.

    Returns:
        Dict with 'identical_columns' (list of lists) and 'missing_values'
        (DataFrame)
    """

    reports_dir = config.DATA_QUALITY_REPORTS if reports_dir is None \
        else reports_dir

    print(f"---\nRunning data quality checks on {table_name}...")

    identical_columns = find_identical_columns(df)
    missing_values = summarize_missing_values(df)

    if identical_columns:
        print(f"Columns with identical values in {table_name}:")
        for cols in identical_columns:
            print(f"    {', '.join(str(col) for col in cols)}")
    else:
        print(f"No identical columns in {table_name}.")

    fully_missing = missing_values.loc[
        missing_values['missing_count'] == len(df), 'column'].to_list()
    if len(df) and fully_missing:
        print(f"Columns with no values in {table_name}: "
              f"{', '.join(str(col) for col in fully_missing)}")

    # Save reports tagged with run time
    os.makedirs(reports_dir, exist_ok=True)
    timestamp = get_time()

    identical_path = os.path.join(
        reports_dir, f"{table_name}_identicalColumns_{timestamp}.csv")
    pd.DataFrame({
        'group': [i for i, cols in enumerate(identical_columns) for _ in cols],
        'column': [col for cols in identical_columns for col in cols],
    }).to_csv(identical_path, index=False)

    missing_path = os.path.join(
        reports_dir, f"{table_name}_missingValues_{timestamp}.csv")
    missing_values.to_csv(missing_path, index=False)

    print(f"Data quality reports saved to {reports_dir}.")

    return {
        'identical_columns': identical_columns,
        'missing_values': missing_values,
    }
