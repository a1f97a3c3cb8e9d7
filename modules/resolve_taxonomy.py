"""
resolve_taxonomy.py
2024-03-20 ZD

This module defines functions to build the taxonomy table for the abundance
matrix columns. Each OTU gets a genus from its name, higher ranks from a
downloaded reference taxonomy, and a control flag.

The reference taxonomy is a tab-separated file without a header. Each row is
one lineage written as up to 10 alternating value/rank column pairs, with the
placeholder '0' for empty values, e.g.:
    Bacteria  domain  Firmicutes  phylum  ...  Lactobacillus  genus  0  0

Normalization reshapes every row into (rank, value) pairs, keeps the six ranks
of interest, and re-pivots into one row per genus. A genus given two different
values for the same rank is a TaxonomyConflict.

Known limitation: OTUs named after de novo clusters (leading quote) have no
genus and therefore no higher ranks. This reflects the reference coverage of
the profiles and is expected.
"""

import os
import sys
import csv

import pandas as pd
import requests

# Append the project's root directory to the Python path
# This allows for importing config when running as part of main.py or alone
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import config
from modules.cache import FileCache
from modules.errors import (MalformedRecord, RowSetMismatch, TaxonomyConflict,
                            format_keys)



def fetch_reference_taxonomy(url: str = None, cache: FileCache = None) -> str:
    """Download the reference taxonomy once and return its local path."""

    url = config.REFERENCE_TAXONOMY_URL if url is None else url
    cache = FileCache(config.TAXONOMY_CACHE_DIR) if cache is None else cache

    def fetch():
        print(f"Downloading reference taxonomy from {url}...")
        response = requests.get(url, timeout=config.REQUEST_TIMEOUT)
        response.raise_for_status()
        return response.content

    return cache.get_or_fetch_path(url, fetch)



def read_reference_taxonomy(filepath: str) -> pd.DataFrame:
    """Read the raw alternating value/rank reference file as strings."""

    n_cols = 2 * config.REFERENCE_RANK_PAIRS

    # Extra fields would otherwise be read as index columns
    with open(filepath, 'r', encoding='utf-8') as f:
        for line_number, line in enumerate(f, start=1):
            n_fields = len(line.rstrip('\r\n').split(config.REFERENCE_SEPARATOR))
            if n_fields > n_cols:
                raise MalformedRecord(
                    f"Reference taxonomy row {filepath}:{line_number} has "
                    f"{n_fields} fields, expected at most {n_cols}.")

    try:
        raw_df = pd.read_csv(filepath, sep=config.REFERENCE_SEPARATOR,
                             header=None, names=list(range(n_cols)),
                             index_col=False,
                             dtype=str, quoting=csv.QUOTE_NONE,
                             keep_default_na=False, na_values=[''])
    except pd.errors.ParserError as e:
        raise MalformedRecord(f"Reference taxonomy {filepath} has rows with "
                              f"more than {n_cols} fields: {e}") from e

    print(f"Loaded {len(raw_df)} reference lineages from {filepath}")

    return raw_df



def melt_rank_pairs(raw_df: pd.DataFrame) -> pd.DataFrame:
    """Reshape alternating value/rank columns into long (row_id, rank, value).

    Placeholder and blank values are dropped. Rank names are lowercased and
    mapped through config.RANK_ALIASES.
    """

    pair_frames = []
    for i in range(config.REFERENCE_RANK_PAIRS):
        value_col, rank_col = 2 * i, 2 * i + 1
        if rank_col not in raw_df.columns:
            break
        pair_frames.append(pd.DataFrame({
            'row_id': raw_df.index,
            'rank': raw_df[rank_col],
            'value': raw_df[value_col],
        }))

    long_df = pd.concat(pair_frames, ignore_index=True) if pair_frames \
        else pd.DataFrame(columns=['row_id', 'rank', 'value'])

    long_df = long_df.dropna(subset=['rank', 'value'])
    long_df['value'] = long_df['value'].str.strip()
    long_df['rank'] = (long_df['rank'].str.strip().str.lower()
                       .replace(config.RANK_ALIASES))

    long_df = long_df[(long_df['value'] != config.REFERENCE_NULL_SENTINEL)
                      & (long_df['value'] != '')]

    return long_df.reset_index(drop=True)



def _raise_on_conflicts(long_df: pd.DataFrame, key: str, where: str):
    """Raise TaxonomyConflict if any (key, rank) has more than one value."""

    conflicts = long_df[long_df.duplicated(subset=[key, 'rank'], keep=False)]
    if conflicts.empty:
        return

    details = (conflicts.groupby([key, 'rank'])['value']
               .apply(lambda values: '|'.join(sorted(set(values))))
               .reset_index()
               .apply(lambda row: f"{row[key]}/{row['rank']}={row['value']}",
                      axis=1))
    raise TaxonomyConflict(f"Conflicting reference values {where}: "
                           f"{format_keys(details)}")



def normalize_reference_taxonomy(raw_df: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize the raw reference into one row per genus with one column per rank.

    Args:
        raw_df: Output of read_reference_taxonomy

    Returns:
        DataFrame with config.TAXONOMY_RANKS columns, sorted by genus.
        Missing ranks are null.

    Raises:
        TaxonomyConflict: If one lineage row, or two rows for the same genus,
            give different values for the same rank.
    """

    ranks = config.TAXONOMY_RANKS

    long_df = melt_rank_pairs(raw_df)
    long_df = long_df[long_df['rank'].isin(ranks)]

    # Repeated identical (rank, value) pairs are allowed within a row
    long_df = long_df.drop_duplicates(subset=['row_id', 'rank', 'value'])
    _raise_on_conflicts(long_df, 'row_id', 'within one lineage row')

    # Each lineage describes the taxon named at its genus rank
    genus_by_row = long_df[long_df['rank'] == 'genus'
                           ].set_index('row_id')['value']
    long_df = long_df.assign(taxon=long_df['row_id'].map(genus_by_row))
    long_df = long_df.dropna(subset=['taxon'])

    long_df = long_df.drop_duplicates(subset=['taxon', 'rank', 'value'])
    _raise_on_conflicts(long_df, 'taxon', 'for the same genus')

    if long_df.empty:
        return pd.DataFrame(columns=ranks)

    reference_df = (long_df.pivot(index='taxon', columns='rank', values='value')
                    .reindex(columns=ranks)
                    .sort_index()
                    .reset_index(drop=True))
    reference_df.columns.name = None

    return reference_df



def extract_genus(otu_name: str):
    """Get the genus from an OTU name: the text before the first underscore.

    Names starting with a quote are unresolved (de novo) clusters and have no
    genus, so None is returned.
    """

    genus = str(otu_name).split(config.OTU_GENUS_DELIMITER, 1)[0]

    if not genus or genus.startswith(config.OTU_UNRESOLVED_PREFIX):
        return None

    return genus



def build_otu_taxonomy(otus, reference_df: pd.DataFrame,
                       control_otus=None) -> pd.DataFrame:
    """
    Build one taxonomy row per OTU, in the given order.

    Args:
        otus: OTU names, normally the abundance matrix columns
        reference_df: Output of normalize_reference_taxonomy
        control_otus: Control taxa list. Defaults to config.CONTROL_OTUS

    Returns:
        DataFrame with config.TAXONOMY_COLUMNS. OTUs whose genus is missing
        from the reference keep null higher ranks.
    """

    control_otus = config.CONTROL_OTUS if control_otus is None \
        else control_otus

    otu_df = pd.DataFrame({'otu': list(otus)}, dtype=object)
    otu_df['genus'] = otu_df['otu'].apply(extract_genus)

    # Genus-less OTUs must not match anything in the reference
    reference_df = reference_df.dropna(subset=['genus'])

    taxonomy_df = otu_df.merge(reference_df, on='genus', how='left',
                               validate='many_to_one')

    if len(taxonomy_df) != len(otu_df):
        raise RowSetMismatch("Taxonomy rows do not match the OTU list after "
                             "joining the reference.")

    taxonomy_df['control'] = taxonomy_df['otu'].isin(control_otus)

    return taxonomy_df[config.TAXONOMY_COLUMNS]



def report_taxonomy_coverage(taxonomy_df: pd.DataFrame, control_otus=None):
    """Print how many OTUs lack a genus or reference match, and missing controls."""

    control_otus = config.CONTROL_OTUS if control_otus is None \
        else control_otus

    no_genus = taxonomy_df['genus'].isna()
    unmatched = taxonomy_df['genus'].notna() & taxonomy_df['domain'].isna()

    print(f"OTUs without genus (de novo clusters):    {no_genus.sum()}")
    print(f"OTUs with genus not in reference:         {unmatched.sum()}")

    if unmatched.any():
        print(f"Unmatched genera: "
              f"{sorted(taxonomy_df.loc[unmatched, 'genus'].unique())}")

    absent_controls = sorted(set(control_otus) - set(taxonomy_df['otu']))
    if absent_controls:
        print(f"WARNING: Control taxa not found in the matrix: "
              f"{absent_controls}")



def gather_taxonomy(matrix: pd.DataFrame, url: str = None,
                    cache: FileCache = None) -> pd.DataFrame:
    """Main function to build the taxonomy table aligned to matrix columns."""

    print(f"\n---\nTAXONOMY:\n"
          f"Resolving taxonomy for {matrix.shape[1]} OTUs...\n---\n")

    reference_path = fetch_reference_taxonomy(url, cache)
    reference_df = normalize_reference_taxonomy(
        read_reference_taxonomy(reference_path))
    print(f"Reference genera after normalization: {len(reference_df)}")

    taxonomy_df = build_otu_taxonomy(matrix.columns, reference_df)
    report_taxonomy_coverage(taxonomy_df)

    return taxonomy_df
