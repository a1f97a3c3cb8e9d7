"""
test_data_quality.py
2024-03-25 ZD

Pytest test suite for the `data_quality.py` module.
"""

import os
import sys
import pandas as pd
import pytest
from unittest.mock import patch


sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.data_quality import (
    find_identical_columns,
    summarize_missing_values,
    run_data_quality_checks,
)



@pytest.fixture
def metadata_df():
    return pd.DataFrame({
        'sample_name': ['S1', 'S2', 'S3'],
        'visit_number': ['1', '2', None],
        'host_visit_number': pd.Series([1, 2, None], dtype=object),
        'body_site': ['posterior fornix', None, None],
        'notes': [None, None, None],
    })


def test_find_identical_columns(metadata_df):
    """Test grouping of columns with the same values, nulls included."""
    assert find_identical_columns(metadata_df) == [
        ['visit_number', 'host_visit_number']]


def test_find_identical_columns_none():
    """Test that distinct columns give no groups."""
    df = pd.DataFrame({'a': [1, 2], 'b': [2, 1]})

    assert find_identical_columns(df) == []


def test_summarize_missing_values(metadata_df):
    """Test missing counts sorted from most missing."""
    summary = summarize_missing_values(metadata_df)

    assert summary['column'].tolist() == ['notes', 'body_site',
                                          'host_visit_number', 'visit_number',
                                          'sample_name']
    assert summary['missing_count'].tolist() == [3, 2, 1, 1, 0]
    assert summary.loc[0, 'missing_fraction'] == 1.0


@patch('modules.data_quality.get_time', return_value='20240325_T120000')
def test_run_data_quality_checks(mock_time, metadata_df, tmp_path):
    """Test that both reports are saved with the run timestamp."""
    results = run_data_quality_checks(metadata_df, 'sample_metadata',
                                      str(tmp_path))

    assert results['identical_columns'] == [['visit_number',
                                             'host_visit_number']]
    assert os.path.exists(tmp_path /
                          "sample_metadata_identicalColumns_20240325_T120000.csv")
    missing = pd.read_csv(tmp_path /
                          "sample_metadata_missingValues_20240325_T120000.csv")
    assert missing['column'].tolist()[0] == 'notes'
