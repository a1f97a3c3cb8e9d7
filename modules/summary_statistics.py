# summary_statistics.py
# 2024-03-22 ZD

# This script defines functions that will generate summary statistics relevant
# to the STIRRUPS profiles and abundance matrix. The goal of these statistics
# is not to publish with the tables, but rather for use in testing,
# validation, and general reporting.
# Summary statistics will be output to the reports/ directory with a versioning
# structure identical to the data/ directory.

import pandas as pd
import os
import sys
# Append the project's root directory to the Python path
# This allows for importing config when running as part of main.py or alone
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import config

def get_summary_statistics(records_df:pd.DataFrame,
                           matrix:pd.DataFrame,
                           taxonomy_df:pd.DataFrame):
    """Create reports with summary statistics of profile and matrix info"""

    # Define directory to store reports. Create if doesn't already exist
    reports_dir = config.REPORTS_DIR
    if not os.path.exists(reports_dir):
        os.makedirs(reports_dir)

    # Summary 1: Reads kept and discarded by the identity threshold
    threshold_stats = get_threshold_stats_by_sample(records_df)
    threshold_stats.to_csv(config.STAT_THRESHOLD_BY_SAMPLE_FILENAME,
                           index=False)

    # Summary 2: Per-sample matrix totals and control taxa reads
    matrix_stats = get_matrix_stats(matrix, taxonomy_df)
    matrix_stats.to_csv(config.STAT_MATRIX_BY_SAMPLE_FILENAME, index=False)

    print(f"Summary reports saved to {reports_dir}.")

    return threshold_stats, matrix_stats



def get_threshold_stats_by_sample(records_df:pd.DataFrame):
    """Sum above- and below-threshold reads per sample"""

    reads_by_flag = (records_df
                     .pivot_table(index='sample_name',
                                  columns='threshold_flag',
                                  values='read_count',
                                  aggfunc='sum',
                                  fill_value=0)
                     .reindex(columns=[config.FLAG_ABOVE, config.FLAG_BELOW],
                              fill_value=0))

    stats = pd.DataFrame({
        'sample_name': reads_by_flag.index,
        'reads_above_threshold': reads_by_flag[config.FLAG_ABOVE].values,
        'reads_below_threshold': reads_by_flag[config.FLAG_BELOW].values,
    })

    total = stats['reads_above_threshold'] + stats['reads_below_threshold']
    stats['fraction_retained'] = (stats['reads_above_threshold']
                                  / total.where(total > 0))

    return stats



def get_matrix_stats(matrix:pd.DataFrame, taxonomy_df:pd.DataFrame):
    """Get total reads, observed OTUs and control taxa reads per sample"""

    control_otus = taxonomy_df.loc[taxonomy_df['control'], 'otu'].to_list()

    stats = pd.DataFrame({
        'sample_name': matrix.index,
        'total_reads': matrix.sum(axis=1).values,
        'observed_otus': (matrix > 0).sum(axis=1).values,
        'control_reads': matrix[control_otus].sum(axis=1).values,
    })

    return stats
