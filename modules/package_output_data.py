"""
package_output_data.py
2024-03-22 ZD

This script defines primary function package_output_data that validates the
three aligned output tables and saves them as gzip-compressed TSVs:
    - abundance_matrix.tsv.gz: sample_name column, then one column per OTU
    - sample_metadata.tsv.gz: one row per matrix row, same order
    - taxonomy.tsv.gz: one row per matrix column, same order

Tables are written with quoting disabled because OTU names contain literal
double quotes. The gzip header time is fixed so reruns on identical inputs
produce byte-identical files. An _md5.txt is written next to the tables for
validation, and load_output_tables reads all three back.
"""

import os
import sys
import csv
import hashlib

import pandas as pd

# Append the project's root directory to the Python path
# This allows for importing config when running as part of main.py or alone
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import config
from modules.errors import RowSetMismatch, format_keys



def validate_table_alignment(matrix: pd.DataFrame,
                             sample_df: pd.DataFrame,
                             taxonomy_df: pd.DataFrame):
    """Check that sample and taxonomy rows match matrix rows and columns.

    Raises:
        RowSetMismatch: If keys are duplicated, missing, or out of order.
    """

    name = config.SAMPLE_NAME_FIELD
    matrix_samples = list(matrix.index)
    matrix_otus = list(matrix.columns)

    if matrix.index.has_duplicates or matrix.columns.has_duplicates:
        raise RowSetMismatch("Abundance matrix has duplicate samples or OTUs.")

    table_samples = list(sample_df[name])
    if table_samples != matrix_samples:
        raise RowSetMismatch(
            f"Sample metadata rows do not match matrix rows.\n"
            f"Missing from metadata: "
            f"{format_keys(set(matrix_samples) - set(table_samples))}\n"
            f"Not in matrix: "
            f"{format_keys(set(table_samples) - set(matrix_samples))}")

    table_otus = list(taxonomy_df['otu'])
    if table_otus != matrix_otus:
        raise RowSetMismatch(
            f"Taxonomy rows do not match matrix columns.\n"
            f"Missing from taxonomy: "
            f"{format_keys(set(matrix_otus) - set(table_otus))}\n"
            f"Not in matrix: "
            f"{format_keys(set(table_otus) - set(matrix_otus))}")

    return None



def replace_delimiter_characters(text):
    """Replace tabs and line breaks inside a value with spaces."""

    # Return NaN and non-string values as-is
    if pd.isna(text) or not isinstance(text, str):
        return text

    translation_table = str.maketrans({
        '\t': ' ',      # Tab - would split the field
        '\r': ' ',      # Carriage return - would split the row
        '\n': ' ',      # Newline - would split the row
        })

    return text.translate(translation_table)



def write_table(df: pd.DataFrame, output_filepath: str):
    """Save a table as gzip-compressed TSV with quoting disabled."""

    os.makedirs(os.path.dirname(output_filepath), exist_ok=True)

    df.map(replace_delimiter_characters).to_csv(
        output_filepath, sep='\t', index=False, encoding='utf-8',
        quoting=csv.QUOTE_NONE, compression=config.OUTPUT_COMPRESSION)

    print(f"Done! {len(df)} rows saved as {output_filepath}.")



def get_output_paths(output_dir: str = None) -> dict:
    """Get matrix, samples and taxonomy paths, optionally in another directory."""

    paths = {
        'matrix': config.MATRIX_OUTPUT_PATH,
        'samples': config.SAMPLES_OUTPUT_PATH,
        'taxonomy': config.TAXONOMY_OUTPUT_PATH,
    }

    if output_dir is not None:
        paths = {key: os.path.join(output_dir, os.path.basename(path))
                 for key, path in paths.items()}

    return paths



def generate_md5_hash(file_path):
    """Generates the MD5 hash for a given file."""

    with open(file_path, "rb") as f:
        data = f.read()
        md5_hash = hashlib.md5(data).hexdigest()

    return md5_hash



def generate_md5_hash_file(directory):
    """Generate MD5s for all output tables in a directory and list in a file."""

    hashes_file = os.path.join(directory, "_md5.txt")

    filenames = sorted(file for file in os.listdir(directory)
                       if file.endswith(".tsv.gz"))

    with open(hashes_file, "w") as f:
        for file in filenames:
            file_path = os.path.join(directory, file)
            md5_hash = generate_md5_hash(file_path)
            f.write(f"{md5_hash}\t{file}\n")

    print(f"Done! MD5 hashes saved to {hashes_file}.")

    return hashes_file



def package_output_data(matrix: pd.DataFrame,
                        sample_df: pd.DataFrame,
                        taxonomy_df: pd.DataFrame,
                        output_dir: str = None) -> dict:
    """Validate and save all three output tables.

    Args:
        matrix: Abundance matrix indexed by sample_name
        sample_df: Sample metadata aligned to matrix rows
        taxonomy_df: Taxonomy aligned to matrix columns
        output_dir: Optional directory overriding config output paths

    Returns:
        Dict of output paths keyed by 'matrix', 'samples', 'taxonomy'
    """

    print(f"\n---\nDATA PACKAGING:\n"
          f"Performing final data packaging steps...\n---\n")

    # Nothing is written unless all tables agree
    validate_table_alignment(matrix, sample_df, taxonomy_df)

    paths = get_output_paths(output_dir)

    matrix_output = matrix.reset_index()
    matrix_output.columns.name = None

    write_table(matrix_output, paths['matrix'])
    write_table(sample_df, paths['samples'])
    write_table(taxonomy_df, paths['taxonomy'])

    # Generate md5.txt
    print(f"---\nGenerating md5 hashes for file validation...")
    generate_md5_hash_file(os.path.dirname(paths['matrix']))

    return paths



def load_output_tables(output_dir: str = None) -> tuple:
    """Read saved output tables back into memory.

    Returns:
        Tuple of (matrix, sample_df, taxonomy_df). The matrix is indexed by
        sample_name with columns named 'otu'.
    """

    paths = get_output_paths(output_dir)
    name = config.SAMPLE_NAME_FIELD
    read_args = dict(sep='\t', quoting=csv.QUOTE_NONE, keep_default_na=False,
                     na_values=[''])

    matrix = pd.read_csv(paths['matrix'], dtype={name: str}, **read_args)
    matrix = matrix.set_index(name)
    matrix.columns.name = 'otu'

    sample_df = pd.read_csv(paths['samples'], dtype=str, **read_args)

    rank_cols = [col for col in config.TAXONOMY_COLUMNS if col != 'control']
    taxonomy_df = pd.read_csv(paths['taxonomy'],
                              dtype={col: str for col in rank_cols},
                              **read_args)
    taxonomy_df['control'] = (taxonomy_df['control'].astype(str)
                              .map({'True': True, 'False': False})
                              .astype(bool))

    return matrix, sample_df, taxonomy_df
