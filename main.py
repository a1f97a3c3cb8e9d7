"""
main.py
2024-03-22 ZD

Main function for STIRRUPS data preparation intended to be run as a single
command.

Inputs required:
- Directory of STIRRUPS profile files (one line per sample/OTU/threshold)
- File manifest and sample manifest TSVs delivered with the profiles
- All other inputs (BioSample/ENA metadata, reference taxonomy) are gathered
  remotely and cached

Outputs generated:
- data/01_intermediate/
    - biosample_metadata.csv with BioSample and ENA fields per sample
    - Raw response caches reused on later runs

- data/02_output/
    - abundance_matrix.tsv.gz, sample_metadata.tsv.gz, taxonomy.tsv.gz
      aligned by sample_name (matrix rows) and otu (matrix columns)
    - _md5.txt for validation

- reports/:
    - Discrepancy, data quality, and summary statistic CSVs for review

Any fatal inconsistency stops the run before output tables are written.
"""

import config
from modules.parse_stirrups_profiles import gather_abundance_matrix
from modules.gather_biosample_data import gather_biosample_data
from modules.reconcile_sample_metadata import gather_sample_metadata
from modules.resolve_taxonomy import gather_taxonomy
from modules.summary_statistics import get_summary_statistics
from modules.package_output_data import package_output_data


def main():
    """Main function for the STIRRUPS data preparation pipeline."""

    # STEP 1: PROFILES
    # Parse all STIRRUPS profiles and build the above-threshold matrix
    records_df, matrix = gather_abundance_matrix(config.PROFILE_DIR)

    # STEP 2: BIOSAMPLE METADATA
    # Gather or reuse BioSample/ENA metadata keyed by sample_name
    biosample_df = gather_biosample_data(config.BIOPROJECT_ACCESSION)

    # STEP 3: SAMPLES
    # Reconcile manifests and metadata into a table aligned to matrix rows
    matrix, sample_df = gather_sample_metadata(matrix, biosample_df)

    # STEP 4: TAXONOMY
    # Resolve genus, higher ranks, and control flags for matrix columns
    taxonomy_df = gather_taxonomy(matrix)

    # STEP 5: STATS
    # Build and save reports describing the profiles and matrix
    get_summary_statistics(records_df, matrix, taxonomy_df)

    # STEP 6: PACKAGE
    # Validate alignment and save the three output tables
    package_output_data(matrix, sample_df, taxonomy_df)


if __name__ == "__main__":
    main()
