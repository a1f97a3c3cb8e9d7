"""
test_resolve_taxonomy.py
2024-03-25 ZD

Pytest test suite for the `resolve_taxonomy.py` module.
"""

import os
import sys
import pandas as pd
import pytest
from unittest.mock import patch, MagicMock


sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
from modules.cache import FileCache
from modules.errors import MalformedRecord, TaxonomyConflict
from modules.resolve_taxonomy import (
    fetch_reference_taxonomy,
    read_reference_taxonomy,
    melt_rank_pairs,
    normalize_reference_taxonomy,
    extract_genus,
    build_otu_taxonomy,
    gather_taxonomy,
)

LACTOBACILLUS = ['Bacteria', 'domain', 'Firmicutes', 'phylum', 'Bacilli',
                 'class', 'Lactobacillales', 'order', 'Lactobacillaceae',
                 'family', 'Lactobacillus', 'genus', '0', '0', '0', '0',
                 '0', '0', '0', '0']
GARDNERELLA = ['Bacteria', 'superkingdom', 'Actinobacteria', 'phylum',
               'Actinobacteria', 'class', 'Bifidobacteriales', 'order',
               'Bifidobacteriaceae', 'family', 'Gardnerella', 'genus']
ATOPOBIUM = ['Bacteria', 'domain', 'Actinobacteria', 'phylum',
             'Coriobacteriia', 'class', 'Coriobacteriales', 'order',
             'Coriobacteriaceae', 'family', 'Atopobium', 'genus',
             'Atopobium vaginae', 'species']
# Lineage ending above genus describes no genus and is ignored
FIRMICUTES = ['Bacteria', 'domain', 'Firmicutes', 'phylum', '0', 'class']



def write_reference(path, rows):
    """Write reference lineages as tab-separated lines without a header."""
    with open(path, 'w', encoding='utf-8') as f:
        for row in rows:
            f.write('\t'.join(row) + '\n')
    return str(path)


@pytest.fixture
def reference_path(tmp_path):
    return write_reference(tmp_path / "reference.txt",
                           [LACTOBACILLUS, GARDNERELLA, ATOPOBIUM,
                            LACTOBACILLUS, FIRMICUTES])


@pytest.fixture
def reference_df(reference_path):
    return normalize_reference_taxonomy(read_reference_taxonomy(reference_path))


@pytest.fixture
def otus():
    return ['"Lachnospiraceae"_BVAB1', 'Atopobium_vaginae',
            'Gardnerella_vaginalis', 'Lactobacillus_iners', 'Prevotella_bivia']


def test_read_reference_taxonomy(reference_path):
    """Test that short rows are padded and values kept as strings."""
    raw_df = read_reference_taxonomy(reference_path)

    assert raw_df.shape == (5, 20)
    assert raw_df.loc[0, 12] == '0'
    assert pd.isna(raw_df.loc[1, 12])


def test_read_reference_taxonomy_too_many_fields(tmp_path):
    """Test that rows wider than 10 value/rank pairs are rejected."""
    wide = ['Bacteria', 'superkingdom'] + LACTOBACILLUS[2:12] + ['0'] * 10
    path = write_reference(tmp_path / "reference.txt", [wide, wide])

    with pytest.raises(MalformedRecord, match="22 fields"):
        read_reference_taxonomy(path)


def test_melt_rank_pairs(reference_path):
    """Test long (rank, value) pairs with placeholders and aliases handled."""
    long_df = melt_rank_pairs(read_reference_taxonomy(reference_path))

    # Placeholders are dropped
    assert '0' not in long_df['value'].tolist()
    # superkingdom is read as domain
    gardnerella_ranks = long_df.loc[long_df['row_id'] == 1, 'rank'].tolist()
    assert 'superkingdom' not in gardnerella_ranks
    assert 'domain' in gardnerella_ranks


def test_normalize_reference_taxonomy(reference_df):
    """Test one row per genus with all six ranks as columns."""
    assert reference_df.columns.tolist() == config.TAXONOMY_RANKS
    assert reference_df['genus'].tolist() == ['Atopobium', 'Gardnerella',
                                              'Lactobacillus']
    gardnerella = reference_df.set_index('genus').loc['Gardnerella']
    assert gardnerella['domain'] == 'Bacteria'
    assert gardnerella['family'] == 'Bifidobacteriaceae'


def test_normalize_reference_taxonomy_conflict_across_rows(tmp_path):
    """Test that two lineages disagreeing for a genus are rejected."""
    conflicting = list(LACTOBACILLUS)
    conflicting[2] = 'Bacillota'
    path = write_reference(tmp_path / "reference.txt",
                           [LACTOBACILLUS, conflicting])

    with pytest.raises(TaxonomyConflict,
                       match=r"Lactobacillus/phylum=Bacillota\|Firmicutes"):
        normalize_reference_taxonomy(read_reference_taxonomy(path))


def test_normalize_reference_taxonomy_conflict_within_row(tmp_path):
    """Test that one lineage giving a rank two values is rejected."""
    conflicting = GARDNERELLA + ['Bifidobacterium', 'genus']
    path = write_reference(tmp_path / "reference.txt", [conflicting])

    with pytest.raises(TaxonomyConflict, match="within one lineage row"):
        normalize_reference_taxonomy(read_reference_taxonomy(path))


def test_normalize_reference_taxonomy_empty(tmp_path):
    """Test that a reference without genera gives an empty table."""
    path = write_reference(tmp_path / "reference.txt", [FIRMICUTES])

    reference_df = normalize_reference_taxonomy(read_reference_taxonomy(path))

    assert reference_df.empty
    assert reference_df.columns.tolist() == config.TAXONOMY_RANKS


@pytest.mark.parametrize("otu_name, expected", [
    ('Lactobacillus_crispatus_cluster', 'Lactobacillus'),
    ('Gardnerella_vaginalis', 'Gardnerella'),
    ('Megasphaera', 'Megasphaera'),
    ('"Lachnospiraceae"_BVAB1', None),
    ('_unnamed', None),
])
def test_extract_genus(otu_name, expected):
    """Test genus as the text before the first underscore."""
    assert extract_genus(otu_name) == expected


def test_build_otu_taxonomy(otus, reference_df):
    """Test taxonomy rows aligned to the OTU list."""
    taxonomy_df = build_otu_taxonomy(otus, reference_df)

    assert taxonomy_df.columns.tolist() == config.TAXONOMY_COLUMNS
    assert taxonomy_df['otu'].tolist() == otus

    rows = taxonomy_df.set_index('otu')
    assert rows.loc['Lactobacillus_iners', 'phylum'] == 'Firmicutes'
    assert rows.loc['Atopobium_vaginae', 'class'] == 'Coriobacteriia'

    # No genus for de novo clusters, no higher ranks for unknown genera
    assert pd.isna(rows.loc['"Lachnospiraceae"_BVAB1', 'genus'])
    assert pd.isna(rows.loc['"Lachnospiraceae"_BVAB1', 'domain'])
    assert rows.loc['Prevotella_bivia', 'genus'] == 'Prevotella'
    assert pd.isna(rows.loc['Prevotella_bivia', 'domain'])


def test_build_otu_taxonomy_controls(otus, reference_df):
    """Test control flags by exact OTU name."""
    taxonomy_df = build_otu_taxonomy(otus, reference_df)

    assert taxonomy_df['control'].tolist() == [True, True, True, True, False]

    custom = build_otu_taxonomy(otus, reference_df,
                                control_otus=['Prevotella_bivia'])
    assert custom['control'].tolist() == [False, False, False, False, True]


@patch('modules.resolve_taxonomy.requests.get')
def test_fetch_reference_taxonomy_cached(mock_get, tmp_path):
    """Test that the reference is downloaded once and then reused."""
    mock_response = MagicMock()
    mock_response.content = b"Bacteria\tdomain\n"
    mock_get.return_value = mock_response
    cache = FileCache(str(tmp_path / "cache"))

    first = fetch_reference_taxonomy("https://example.org/ref.txt", cache)
    second = fetch_reference_taxonomy("https://example.org/ref.txt", cache)

    assert first == second
    mock_get.assert_called_once()
    mock_response.raise_for_status.assert_called_once()


@patch('modules.resolve_taxonomy.requests.get')
def test_gather_taxonomy(mock_get, reference_path, otus, tmp_path):
    """Test the full taxonomy step for matrix columns."""
    with open(reference_path, 'rb') as f:
        mock_response = MagicMock()
        mock_response.content = f.read()
    mock_get.return_value = mock_response
    matrix = pd.DataFrame([[1, 2, 3, 4, 5]], columns=otus,
                          index=pd.Index(['S1'], name='sample_name'))

    taxonomy_df = gather_taxonomy(matrix, "https://example.org/ref.txt",
                                  FileCache(str(tmp_path / "cache")))

    assert taxonomy_df['otu'].tolist() == otus
    assert taxonomy_df['genus'].notna().sum() == 4
