"""
reconcile_sample_metadata.py
2024-03-18 ZD

This module defines functions that merge the three independent sources of
sample information into one sample table aligned row-for-row with the
abundance matrix:
    - the file manifest and sample manifest delivered with the STIRRUPS
      profiles, joined 1:1 on sample_id
    - the BioSample/ENA metadata table from `gather_biosample_data.py`
    - the sample_name rows of the abundance matrix

sample_name is derived from the file name in each file manifest URL by
dropping everything from its first dot, e.g. '.../SRS011061.stirrups.tsv'
becomes 'SRS011061'.

Gaps between sources that are known and tolerated (samples in one source but
not another) are printed as warnings and saved to reports. Inconsistencies
that would make the output tables disagree stop the run with ManifestMismatch
or RowSetMismatch.
"""

import os
import sys
import csv
from urllib.parse import urlparse

import pandas as pd

# Append the project's root directory to the Python path
# This allows for importing config when running as part of main.py or alone
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import config
from modules.errors import (ManifestMismatch, MalformedRecord, RowSetMismatch,
                            format_keys)
from modules.data_quality import run_data_quality_checks



def read_manifest(filepath: str) -> pd.DataFrame:
    """Read a tab-separated manifest with quoting disabled and string values."""

    df = pd.read_csv(filepath, sep='\t', dtype=str, quoting=csv.QUOTE_NONE,
                     keep_default_na=False, na_values=[''])
    print(f"Loaded manifest with {len(df)} rows from {filepath}")

    return df



def sample_name_from_url(urls) -> str:
    """Derive a sample_name from the first URL in a manifest URL field.

    Args:
        urls: Comma-separated URL string

    Returns:
        File name from the first URL with everything from the first dot removed

    Raises:
        MalformedRecord: If no file name can be found.
    """

    if pd.isna(urls):
        raise MalformedRecord("Manifest row has no URL to derive sample_name.")

    first_url = next((url.strip() for url in str(urls).split(',')
                      if url.strip()), '')
    path = urlparse(first_url).path or first_url
    filename = path.rstrip('/').split('/')[-1]
    sample_name = filename.split('.', 1)[0]

    if not sample_name:
        raise MalformedRecord(f"Cannot derive sample_name from URL '{urls}'.")

    return sample_name



def _check_unique_keys(df: pd.DataFrame, key: str, table_name: str):
    """Raise ManifestMismatch if a manifest lacks or repeats its key."""

    if key not in df.columns:
        raise ManifestMismatch(f"{table_name} has no '{key}' column.")

    duplicated = df.loc[df[key].duplicated(keep=False), key]
    if not duplicated.empty:
        raise ManifestMismatch(f"{table_name} repeats {key} values: "
                               f"{format_keys(duplicated.unique())}")



def join_manifests(file_manifest: pd.DataFrame,
                   sample_manifest: pd.DataFrame) -> pd.DataFrame:
    """
    Join the file and sample manifests 1:1 on sample_id and add sample_name.

    Raises:
        ManifestMismatch: If either manifest repeats a sample_id or the two
            sample_id sets differ.
    """

    key = config.MANIFEST_KEY

    _check_unique_keys(file_manifest, key, 'File manifest')
    _check_unique_keys(sample_manifest, key, 'Sample manifest')

    file_ids = set(file_manifest[key])
    sample_ids = set(sample_manifest[key])
    if file_ids != sample_ids:
        raise ManifestMismatch(
            f"Manifest {key} sets differ.\n"
            f"Only in file manifest: {format_keys(file_ids - sample_ids)}\n"
            f"Only in sample manifest: {format_keys(sample_ids - file_ids)}")

    manifest_df = file_manifest.merge(sample_manifest, on=key, how='inner',
                                      suffixes=('', '_sample'),
                                      validate='one_to_one')

    manifest_df.insert(0, config.SAMPLE_NAME_FIELD,
                       manifest_df[config.MANIFEST_URL_FIELD]
                       .apply(sample_name_from_url))

    return manifest_df



def _save_report(df: pd.DataFrame, report_path: str):
    """Save a discrepancy report, creating its directory if needed."""

    os.makedirs(os.path.dirname(report_path), exist_ok=True)
    df.to_csv(report_path, index=False)



def report_source_differences(manifest_df: pd.DataFrame,
                              biosample_df: pd.DataFrame) -> dict:
    """Print and save samples present in only one of manifest or BioSample.

    These are tolerated gaps between sources and never stop the run.

    Returns:
        Dict with sorted lists under 'manifest_only' and 'biosample_only'
    """

    name = config.SAMPLE_NAME_FIELD
    manifest_names = set(manifest_df[name])
    biosample_names = set(biosample_df[name].dropna())

    differences = {
        'manifest_only': sorted(manifest_names - biosample_names),
        'biosample_only': sorted(biosample_names - manifest_names),
    }

    if differences['manifest_only']:
        _save_report(pd.DataFrame({name: differences['manifest_only']}),
                     config.MANIFEST_ONLY_REPORT)
        print(f"WARNING: {len(differences['manifest_only'])} manifest samples "
              f"have no BioSample metadata. "
              f"Listed in {config.MANIFEST_ONLY_REPORT}.")

    if differences['biosample_only']:
        _save_report(pd.DataFrame({name: differences['biosample_only']}),
                     config.BIOSAMPLE_ONLY_REPORT)
        print(f"WARNING: {len(differences['biosample_only'])} BioSamples are "
              f"not in the manifests. "
              f"Listed in {config.BIOSAMPLE_ONLY_REPORT}.")

    return differences



def drop_undescribed_samples(matrix: pd.DataFrame, described_names) -> tuple:
    """Drop matrix rows whose sample_name has no metadata.

    OTU columns whose reads all came from dropped samples are dropped too.
    Columns that were already all zero are kept as they are.

    Returns:
        Tuple of (filtered matrix, sorted list of dropped sample names)
    """

    described = set(described_names)
    keep_mask = matrix.index.isin(described)
    dropped = sorted(matrix.index[~keep_mask])

    if not dropped:
        return matrix, dropped

    _save_report(pd.DataFrame({config.SAMPLE_NAME_FIELD: dropped}),
                 config.DROPPED_MATRIX_SAMPLES_REPORT)
    print(f"WARNING: {len(dropped)} matrix samples have no metadata and "
          f"were dropped. Listed in {config.DROPPED_MATRIX_SAMPLES_REPORT}.")

    filtered = matrix[keep_mask]
    removed = matrix[~keep_mask]
    dropped_only = ((removed > 0).any(axis=0)
                    & ~(filtered > 0).any(axis=0))
    if dropped_only.any():
        print(f"OTUs only found in dropped samples: {dropped_only.sum()}")
    filtered = filtered.loc[:, ~dropped_only]

    return filtered, dropped



def reconcile_sample_metadata(manifest_df: pd.DataFrame,
                              biosample_df: pd.DataFrame,
                              matrix: pd.DataFrame) -> pd.DataFrame:
    """
    Build the sample table aligned to the matrix rows.

    Inner-joins manifest and BioSample metadata on sample_name, keeps rows
    whose sample_name is a matrix row, and orders them like the matrix.

    Args:
        manifest_df: Output of join_manifests
        biosample_df: BioSample/ENA metadata keyed by sample_name
        matrix: Abundance matrix indexed by sample_name

    Returns:
        DataFrame with one row per matrix row in matrix order

    Raises:
        RowSetMismatch: If the result is not a bijection with matrix rows.
    """

    name = config.SAMPLE_NAME_FIELD

    merged = manifest_df.merge(biosample_df, on=name, how='inner',
                               suffixes=('', '_biosample'))
    merged = merged[merged[name].isin(matrix.index)]

    duplicated = merged.loc[merged[name].duplicated(keep=False), name]
    if not duplicated.empty:
        raise RowSetMismatch(f"More than one metadata row for matrix samples: "
                             f"{format_keys(duplicated.unique())}")

    matrix_names = set(matrix.index)
    merged_names = set(merged[name])
    if merged_names != matrix_names:
        raise RowSetMismatch(f"Sample metadata does not cover the matrix rows. "
                             f"Matrix samples without metadata: "
                             f"{format_keys(matrix_names - merged_names)}")

    sample_df = (merged.set_index(name)
                 .loc[list(matrix.index)]
                 .reset_index())

    return sample_df



def _values_agree(value_a, value_b) -> bool:
    """Compare two metadata values as numbers if possible, else as text."""

    text_a, text_b = str(value_a).strip(), str(value_b).strip()
    if text_a == text_b:
        return True

    number_a = pd.to_numeric(text_a, errors='coerce')
    number_b = pd.to_numeric(text_b, errors='coerce')

    return pd.notna(number_a) and pd.notna(number_b) and number_a == number_b



def check_field_agreement(df: pd.DataFrame, field_pairs=None) -> pd.DataFrame:
    """Find rows where two fields for the same concept disagree.

    Only rows where both fields are non-null are compared. Disagreement is a
    data quality warning, not an error.

    Returns:
        DataFrame of disagreements with sample_name, both field names and
        both values
    """

    field_pairs = config.FIELD_AGREEMENT_PAIRS if field_pairs is None \
        else field_pairs
    name = config.SAMPLE_NAME_FIELD

    disagreements = []
    for field_a, field_b in field_pairs:
        if field_a not in df.columns or field_b not in df.columns:
            print(f"Skipping agreement check for {field_a}/{field_b}: "
                  f"field not found.")
            continue

        both_set = df[df[field_a].notna() & df[field_b].notna()]
        for _, row in both_set.iterrows():
            if not _values_agree(row[field_a], row[field_b]):
                disagreements.append({
                    name: row[name],
                    'field_a': field_a,
                    'value_a': row[field_a],
                    'field_b': field_b,
                    'value_b': row[field_b],
                })

    return pd.DataFrame(disagreements,
                        columns=[name, 'field_a', 'value_a',
                                 'field_b', 'value_b'])



def report_field_disagreements(df: pd.DataFrame,
                               field_pairs=None) -> pd.DataFrame:
    """Print and save field disagreements."""

    disagreements = check_field_agreement(df, field_pairs)

    if not disagreements.empty:
        _save_report(disagreements, config.FIELD_DISAGREEMENT_REPORT)
        print(f"WARNING: {len(disagreements)} field disagreements found. "
              f"Details saved to {config.FIELD_DISAGREEMENT_REPORT}.")

    return disagreements



def gather_sample_metadata(matrix: pd.DataFrame,
                           biosample_df: pd.DataFrame,
                           file_manifest_path: str = None,
                           sample_manifest_path: str = None) -> tuple:
    """
    Main function for sample metadata reconciliation.

    Steps performed:
        1. Load and join the file and sample manifests
        2. Report samples found in only one of manifest or BioSample metadata
        3. Drop matrix samples lacking metadata (if configured)
        4. Reconcile into a sample table aligned with the matrix
        5. Report disagreeing field pairs and run data quality checks

    Returns:
        Tuple of (matrix, sample_df). The matrix may have lost rows in step 3.
    """

    file_manifest_path = config.FILE_MANIFEST_PATH \
        if file_manifest_path is None else file_manifest_path
    sample_manifest_path = config.SAMPLE_MANIFEST_PATH \
        if sample_manifest_path is None else sample_manifest_path

    print(f"\n---\nSAMPLE METADATA:\n"
          f"Reconciling manifests and BioSample metadata...\n---\n")

    file_manifest = read_manifest(file_manifest_path)
    sample_manifest = read_manifest(sample_manifest_path)
    manifest_df = join_manifests(file_manifest, sample_manifest)

    report_source_differences(manifest_df, biosample_df)

    if config.DROP_UNDESCRIBED_SAMPLES:
        described = (set(manifest_df[config.SAMPLE_NAME_FIELD])
                     & set(biosample_df[config.SAMPLE_NAME_FIELD].dropna()))
        matrix, _ = drop_undescribed_samples(matrix, described)

    sample_df = reconcile_sample_metadata(manifest_df, biosample_df, matrix)

    report_field_disagreements(sample_df)
    run_data_quality_checks(sample_df, 'sample_metadata')

    print(f"\nSample metadata reconciled.\n"
          f"Samples:    {len(sample_df)}\n"
          f"Fields:     {sample_df.shape[1]}")

    return matrix, sample_df
