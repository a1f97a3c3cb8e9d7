"""
parse_stirrups_profiles.py
2024-03-12 ZD

This module defines functions to parse STIRRUPS taxonomic profile files and
build a sample-by-OTU abundance matrix from them.

Each profile line holds six tab-separated fields:
    sample_name, otu_name, threshold_flag, read_count, percent, avg_identity

OTU names can contain literal double quotes (e.g. '"Lachnospiraceae"_BVAB1')
which are part of the taxon name, not field quoting. Lines are therefore split
on tabs directly and never passed through a quoting-aware reader.

The matrix keeps only above-threshold reads. Rows (samples) and columns (OTUs)
are sorted by codepoint order, so quoted names sort before unquoted ones.
"""

import os
import sys

import numpy as np
import pandas as pd

# Append the project's root directory to the Python path
# This allows for importing config when running as part of main.py or alone
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import config
from modules.errors import MalformedRecord, DuplicateRecord, format_keys



def parse_profile_line(line: str, source: str = '<string>',
                       line_number: int = 0) -> dict:
    """Parse one profile line into a record dict.

    Args:
        line: Raw text line without trailing newline
        source: File name used in error messages
        line_number: 1-based line number used in error messages

    Returns:
        Dict keyed by config.PROFILE_COLUMNS

    Raises:
        MalformedRecord: If the line does not have six fields, the flag is
            unknown, or a numeric field cannot be parsed.
    """

    fields = line.split('\t')
    location = f"{source}:{line_number}"

    if len(fields) != len(config.PROFILE_COLUMNS):
        raise MalformedRecord(f"Expected {len(config.PROFILE_COLUMNS)} "
                              f"tab-separated fields but found {len(fields)} "
                              f"at {location}: {line!r}")

    sample_name, otu_name, flag, read_count, percent, avg_identity = fields

    if not sample_name or not otu_name:
        raise MalformedRecord(f"Blank sample or OTU name at {location}: "
                              f"{line!r}")

    normalized_flag = config.THRESHOLD_FLAGS.get(flag.strip().upper())
    if normalized_flag is None:
        raise MalformedRecord(f"Unknown threshold flag '{flag}' at {location}. "
                              f"Expected one of "
                              f"{', '.join(config.THRESHOLD_FLAGS)}.")

    try:
        read_count = int(read_count)
        percent = float(percent)
        avg_identity = float(avg_identity)
    except ValueError as e:
        raise MalformedRecord(f"Unparseable number at {location}: {e}") from e

    if read_count < 0:
        raise MalformedRecord(f"Negative read count {read_count} at {location}.")

    return {
        'sample_name': sample_name,
        'otu_name': otu_name,
        'threshold_flag': normalized_flag,
        'read_count': read_count,
        'percent': percent,
        'avg_identity': avg_identity,
    }



def empty_profile_records() -> pd.DataFrame:
    """Build an empty record table with the expected columns and types."""

    return pd.DataFrame({
        'sample_name': pd.Series([], dtype='object'),
        'otu_name': pd.Series([], dtype='object'),
        'threshold_flag': pd.Series([], dtype='object'),
        'read_count': pd.Series([], dtype='int64'),
        'percent': pd.Series([], dtype='float64'),
        'avg_identity': pd.Series([], dtype='float64'),
    })



def parse_profile_file(filepath: str) -> pd.DataFrame:
    """Parse one STIRRUPS profile file into a DataFrame of records.

    Blank lines are skipped. Nothing is written to disk.
    """

    records = []
    source = os.path.basename(filepath)

    with open(filepath, 'r', encoding='utf-8') as f:
        for line_number, line in enumerate(f, start=1):
            line = line.rstrip('\r\n')
            if not line.strip():
                continue
            records.append(parse_profile_line(line, source, line_number))

    if not records:
        return empty_profile_records()

    return pd.DataFrame(records, columns=config.PROFILE_COLUMNS)



def list_profile_files(profile_dir: str, suffix: str = None) -> list:
    """List profile file paths in a directory, sorted by file name."""

    suffix = config.PROFILE_SUFFIX if suffix is None else suffix

    filenames = sorted(
        file for file in os.listdir(profile_dir)
        if file.endswith(suffix)
        and os.path.isfile(os.path.join(profile_dir, file))
    )

    return [os.path.join(profile_dir, file) for file in filenames]



def parse_profile_directory(profile_dir: str, suffix: str = None) -> pd.DataFrame:
    """Parse and concatenate every profile file within a directory."""

    print(f"\n---\nPROFILES - STIRRUPS:\n"
          f"Parsing STIRRUPS profiles in {profile_dir}...\n---\n")

    filepaths = list_profile_files(profile_dir, suffix)

    if not filepaths:
        print(f"WARNING: No profile files found in {profile_dir}.")
        return empty_profile_records()

    records_df = pd.concat([parse_profile_file(path) for path in filepaths],
                           ignore_index=True)

    print(f"Parsed {len(records_df)} records from {len(filepaths)} files.\n"
          f"Samples:    {records_df['sample_name'].nunique()}\n"
          f"OTUs:       {records_df['otu_name'].nunique()}")

    return records_df



def check_percent_invariant(records_df: pd.DataFrame,
                            rtol: float = None,
                            atol: float = None) -> pd.DataFrame:
    """Find records whose percent does not match their share of read counts.

    Percent is recomputed within each (sample_name, threshold_flag) group as
    read_count / group total * 100. Groups totalling zero reads are skipped.

    Returns:
        DataFrame of mismatching records with an added 'expected_percent'
        column. Empty if every record is consistent.
    """

    rtol = config.PERCENT_RTOL if rtol is None else rtol
    atol = config.PERCENT_ATOL if atol is None else atol

    df = records_df.copy()
    totals = df.groupby(['sample_name', 'threshold_flag'])['read_count'
                                                          ].transform('sum')
    df['expected_percent'] = df['read_count'] / totals.replace(0, np.nan) * 100

    checked = df[df['expected_percent'].notna()]
    consistent = np.isclose(checked['percent'], checked['expected_percent'],
                            rtol=rtol, atol=atol)

    return checked[~consistent].reset_index(drop=True)



def report_percent_mismatches(records_df: pd.DataFrame,
                              report_path: str = None) -> pd.DataFrame:
    """Print and save records failing the percent invariant. Not fatal."""

    report_path = config.PERCENT_MISMATCH_REPORT if report_path is None \
        else report_path

    mismatches = check_percent_invariant(records_df)

    if not mismatches.empty:
        os.makedirs(os.path.dirname(report_path), exist_ok=True)
        mismatches.to_csv(report_path, index=False)
        print(f"WARNING: {len(mismatches)} profile records have a percent "
              f"that does not match their read counts. "
              f"Details saved to {report_path}.")

    return mismatches



def build_abundance_matrix(records_df: pd.DataFrame) -> pd.DataFrame:
    """Pivot above-threshold records into a sample-by-OTU count matrix.

    Args:
        records_df: Concatenated profile records from all files

    Returns:
        DataFrame indexed by sample_name with one int64 column per OTU.
        Missing sample/OTU combinations are 0. Rows and columns are sorted.

    Raises:
        DuplicateRecord: If a sample/OTU pair appears more than once above
            threshold. Counts are never summed.
    """

    above = records_df[records_df['threshold_flag'] == config.FLAG_ABOVE]

    # Check for repeated sample/OTU pairs and raise error if found
    dup_mask = above.duplicated(subset=['sample_name', 'otu_name'], keep=False)
    if dup_mask.any():
        dup_pairs = (above.loc[dup_mask, ['sample_name', 'otu_name']]
                     .drop_duplicates()
                     .apply(lambda row: f"{row['sample_name']}/{row['otu_name']}",
                            axis=1))
        raise DuplicateRecord(f"Sample/OTU pairs found more than once above "
                              f"threshold: {format_keys(dup_pairs)}")

    samples = sorted(above['sample_name'].unique())
    otus = sorted(above['otu_name'].unique())

    if above.empty:
        return pd.DataFrame(index=pd.Index([], name='sample_name'),
                            columns=pd.Index([], name='otu'),
                            dtype='int64')

    matrix = (above.pivot(index='sample_name', columns='otu_name',
                          values='read_count')
              .reindex(index=samples, columns=otus)
              .fillna(0)
              .astype('int64'))

    matrix.index.name = 'sample_name'
    matrix.columns.name = 'otu'

    return matrix



def gather_abundance_matrix(profile_dir: str = None):
    """Parse all profiles, check them, and build the abundance matrix.

    Returns:
        Tuple of (records_df, matrix)
    """

    profile_dir = config.PROFILE_DIR if profile_dir is None else profile_dir

    records_df = parse_profile_directory(profile_dir)
    report_percent_mismatches(records_df)
    matrix = build_abundance_matrix(records_df)

    print(f"\nAbundance matrix built from above-threshold reads.\n"
          f"Samples (rows):    {matrix.shape[0]}\n"
          f"OTUs (columns):    {matrix.shape[1]}")

    return records_df, matrix


# Run module as a standalone script when called directly
if __name__ == "__main__":

    print(f"Running {os.path.basename(__file__)} as standalone module...")

    gather_abundance_matrix()
