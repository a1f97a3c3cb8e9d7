"""
config.py for STIRRUPS Data Preparation
2024-03-12 ZD
Make changes here to affect variables throughout repo
"""

# FILEPATH CONFIGURATION

# Edit version below for each new STIRRUPS profile delivery
# Inputs and outputs will use this versioning
# Version must match the input subdirectory name

STIRRUPS_VERSION = "2024-03-01"     # <-- CHANGE VERSION HERE

# BioProject used to look up BioSample and ENA metadata for the profiled samples
BIOPROJECT_ACCESSION = "PRJNA46877"     # <-- CHANGE PROJECT HERE

# Reference taxonomy used to fill ranks above genus. Download is cached
REFERENCE_TAXONOMY_URL = ("https://sourceforge.net/projects/stirrups/files/"
                          "reference/stirrups_reference_taxonomy.txt/download")



# --- DO NOT EDIT BELOW FOR ROUTINE DATA PREPARATION ---

INPUT_DIR = "data/00_input/"
INTERMED_DIR = "data/01_intermediate/"
OUTPUT_DIR = "data/02_output/"

# Versioned input locations
STIRRUPS_INPUT_DIR = INPUT_DIR + "stirrups/" + STIRRUPS_VERSION + "/"
PROFILE_DIR = STIRRUPS_INPUT_DIR + "profiles/"
FILE_MANIFEST_PATH = STIRRUPS_INPUT_DIR + "file_manifest.tsv"
SAMPLE_MANIFEST_PATH = STIRRUPS_INPUT_DIR + "sample_manifest.tsv"

# Versioned directories for intermediates and outputs
VERSION_INTERMED_DIR = INTERMED_DIR + STIRRUPS_VERSION + "/"
VERSION_OUTPUT_DIR = OUTPUT_DIR + STIRRUPS_VERSION + "/"

# Raw fetch caches. Reused on subsequent runs
METADATA_CACHE_DIR = VERSION_INTERMED_DIR + "metadata_cache/"
TAXONOMY_CACHE_DIR = INTERMED_DIR + "taxonomy_cache/"

# Reports directory
REPORTS_DIR = "reports/" + STIRRUPS_VERSION + "/"



# ---
# PROFILE PARSING CONFIGURATION

# Only files ending with this suffix in PROFILE_DIR are parsed
PROFILE_SUFFIX = ".txt"

# Column names for the six tab-separated profile fields, in file order
PROFILE_COLUMNS = [
    'sample_name',
    'otu_name',
    'threshold_flag',
    'read_count',
    'percent',
    'avg_identity',
]

# Normalized threshold flags
FLAG_ABOVE = 'ABOVE'
FLAG_BELOW = 'BELOW'

# Dictionary of accepted flag spellings:normalized flag
# STIRRUPS writes AT (above threshold) and BT (below threshold)
THRESHOLD_FLAGS = {
    'AT': FLAG_ABOVE,
    'ABOVE': FLAG_ABOVE,
    'BT': FLAG_BELOW,
    'BELOW': FLAG_BELOW,
}

# Tolerances used when recomputing percent from read counts
# STIRRUPS writes percent rounded, so ATOL absorbs that rounding on top of
# the relative check
PERCENT_RTOL = 1e-6
PERCENT_ATOL = 0.01

# Percent invariant report
PERCENT_MISMATCH_REPORT = REPORTS_DIR + "percentMismatchReport.csv"



# ---
# BIOSAMPLE / ENA METADATA CONFIGURATION

# Number of attempts when NCBI returns 429 Too Many Requests
ENTREZ_MAX_RETRIES = 5

# Delay between E-utilities calls in seconds (3 requests/second without key)
ENTREZ_SLEEP = 0.34

# Upper limit on BioSample UIDs linked from one BioProject
BIOSAMPLE_RETMAX = 10000

# BioSample Id db attribute:column name. Other Id dbs become "<db>_id"
BIOSAMPLE_ID_RENAMER = {
    'BioSample': 'biosample_accession',
    'SRA': 'sra_id',
}

# BioSample field used as the sample_name join key
BIOSAMPLE_SAMPLE_NAME_FIELD = 'sra_id'

# ENA portal filereport endpoint and fields
ENA_FILEREPORT_URL = "https://www.ebi.ac.uk/ena/portal/api/filereport"
ENA_FIELDS = [
    'secondary_sample_accession',
    'run_accession',
    'center_name',
    'instrument_platform',
    'library_strategy',
    'library_layout',
    'first_public',
]
ENA_SAMPLE_KEY = 'secondary_sample_accession'

# Seconds to wait for remote responses
REQUEST_TIMEOUT = 120

# BioSample/ENA metadata output
BIOSAMPLE_METADATA_PATH = VERSION_INTERMED_DIR + "biosample_metadata.csv"



# ---
# SAMPLE RECONCILIATION CONFIGURATION

# Shared key between the file manifest and sample manifest
MANIFEST_KEY = 'sample_id'

# File manifest field holding comma-separated file URLs
MANIFEST_URL_FIELD = 'urls'

# Join key between manifests, metadata, and the abundance matrix
SAMPLE_NAME_FIELD = 'sample_name'

# Pairs of fields naming the same concept in two sources. Must agree if both set
FIELD_AGREEMENT_PAIRS = [
    ('visit_number', 'host_visit_number'),
]

# Drop matrix samples without metadata instead of failing reconciliation
DROP_UNDESCRIBED_SAMPLES = True

# Reconciliation reports
MANIFEST_ONLY_REPORT = REPORTS_DIR + "samplesMissingBiosampleReport.csv"
BIOSAMPLE_ONLY_REPORT = REPORTS_DIR + "samplesMissingManifestReport.csv"
DROPPED_MATRIX_SAMPLES_REPORT = REPORTS_DIR + "droppedMatrixSamplesReport.csv"
FIELD_DISAGREEMENT_REPORT = REPORTS_DIR + "fieldDisagreementReport.csv"

# Data quality reports. Run timestamp and table name are added in code
DATA_QUALITY_REPORTS = REPORTS_DIR + "dataQuality/"



# ---
# TAXONOMY CONFIGURATION

# Reference taxonomy layout: alternating value/rank columns
REFERENCE_RANK_PAIRS = 10

# Field separator of the reference taxonomy file
REFERENCE_SEPARATOR = "\t"

# Reference placeholder for an empty value
REFERENCE_NULL_SENTINEL = '0'

# Ranks of interest, highest first
TAXONOMY_RANKS = ['domain', 'phylum', 'class', 'order', 'family', 'genus']

# Dictionary of reference rank name:rank of interest
RANK_ALIASES = {
    'superkingdom': 'domain',
}

# Character separating genus from the rest of an OTU name
OTU_GENUS_DELIMITER = '_'

# Leading character of unresolved (de novo) cluster names
OTU_UNRESOLVED_PREFIX = '"'

# Clinically notable taxa used to sanity-check abundance results
CONTROL_OTUS = [
    'Lactobacillus_crispatus_cluster',
    'Lactobacillus_iners',
    'Lactobacillus_jensenii',
    'Lactobacillus_gasseri_cluster',
    'Gardnerella_vaginalis',
    'Atopobium_vaginae',
    '"Lachnospiraceae"_BVAB1',
]

# Output column order for the taxonomy table
TAXONOMY_COLUMNS = ['otu', 'genus', 'family', 'order', 'class', 'phylum',
                    'domain', 'control']



# ---
# STATISTICS CONFIGURATION

STAT_THRESHOLD_BY_SAMPLE_FILENAME = REPORTS_DIR + "thresholdStatsBySample.csv"
STAT_MATRIX_BY_SAMPLE_FILENAME = REPORTS_DIR + "matrixStatsBySample.csv"



# ---
# DATA PACKAGING CONFIGURATION

# Output tables. Each is re-joinable by sample_name or otu
MATRIX_OUTPUT_PATH = VERSION_OUTPUT_DIR + "abundance_matrix.tsv.gz"
SAMPLES_OUTPUT_PATH = VERSION_OUTPUT_DIR + "sample_metadata.tsv.gz"
TAXONOMY_OUTPUT_PATH = VERSION_OUTPUT_DIR + "taxonomy.tsv.gz"

# Fixed gzip header time keeps reruns byte-identical
OUTPUT_COMPRESSION = {'method': 'gzip', 'mtime': 0}
