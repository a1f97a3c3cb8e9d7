"""
test_summary_statistics.py
2024-03-25 ZD

Pytest test suite for the `summary_statistics.py` module.
"""

import os
import sys
import pandas as pd
import pytest


sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
from modules.summary_statistics import (
    get_summary_statistics,
    get_threshold_stats_by_sample,
    get_matrix_stats,
)



@pytest.fixture
def records_df():
    return pd.DataFrame({
        'sample_name': ['S1', 'S1', 'S1', 'S2'],
        'otu_name': ['Lactobacillus_iners', 'Gardnerella_vaginalis',
                     'Lactobacillus_iners', 'Prevotella_bivia'],
        'threshold_flag': ['ABOVE', 'ABOVE', 'BELOW', 'BELOW'],
        'read_count': [6, 2, 2, 5],
        'percent': [75.0, 25.0, 100.0, 100.0],
        'avg_identity': [99.0, 98.0, 96.0, 94.0],
    })


@pytest.fixture
def matrix():
    return pd.DataFrame(
        {'Gardnerella_vaginalis': [2, 0], 'Lactobacillus_iners': [6, 0]},
        index=pd.Index(['S1', 'S2'], name='sample_name'))


@pytest.fixture
def taxonomy_df():
    return pd.DataFrame({
        'otu': ['Gardnerella_vaginalis', 'Lactobacillus_iners'],
        'control': [True, False],
    })


def test_get_threshold_stats_by_sample(records_df):
    """Test reads above and below threshold per sample."""
    stats = get_threshold_stats_by_sample(records_df)

    assert stats['sample_name'].tolist() == ['S1', 'S2']
    assert stats['reads_above_threshold'].tolist() == [8, 0]
    assert stats['reads_below_threshold'].tolist() == [2, 5]
    assert stats['fraction_retained'].tolist() == pytest.approx([0.8, 0.0])


def test_get_matrix_stats(matrix, taxonomy_df):
    """Test per-sample totals, observed OTUs and control reads."""
    stats = get_matrix_stats(matrix, taxonomy_df)

    assert stats['total_reads'].tolist() == [8, 0]
    assert stats['observed_otus'].tolist() == [2, 0]
    assert stats['control_reads'].tolist() == [2, 0]


def test_get_summary_statistics(records_df, matrix, taxonomy_df, tmp_path,
                                monkeypatch):
    """Test that both summary reports are saved."""
    monkeypatch.setattr(config, 'REPORTS_DIR', str(tmp_path))
    monkeypatch.setattr(config, 'STAT_THRESHOLD_BY_SAMPLE_FILENAME',
                        str(tmp_path / "threshold.csv"))
    monkeypatch.setattr(config, 'STAT_MATRIX_BY_SAMPLE_FILENAME',
                        str(tmp_path / "matrix.csv"))

    get_summary_statistics(records_df, matrix, taxonomy_df)

    assert (tmp_path / "threshold.csv").exists()
    assert len(pd.read_csv(tmp_path / "matrix.csv")) == 2
