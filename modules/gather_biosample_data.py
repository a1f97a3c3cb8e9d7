"""
gather_biosample_data.py
2024-03-14 ZD

This script defines functions to gather sample metadata for every BioSample
linked to the study BioProject and shape it into one table keyed by
sample_name (the SRA sample accession, e.g. SRS011061). The table is consumed
by `reconcile_sample_metadata.py`.

The workflow follows these steps:
1. Resolve the BioProject accession and link it to BioSample UIDs (E-utilities)
2. Fetch BioSample XML for each UID (E-utilities efetch, db=biosample)
3. Walk each XML document once, emitting (entity_id, field_name, field_value)
   triples, then pivot the triples into one row per BioSample
4. Fetch the ENA read_run file report for the same project to add center_name
   and sequencing run fields
5. Join both sources on sample_name and save biosample_metadata.csv

Raw responses are cached with FileCache and reused if they already exist. The
final CSV is also reused unless overwrite is requested.
"""

import os
import sys
import io
import csv
import json
import time
import xml.etree.ElementTree as ET
from typing import Callable, List, Tuple

import pandas as pd
import requests
from tqdm import tqdm  # for progress bars
from Bio import Entrez  # for e-Utils API
from dotenv import load_dotenv

# Append the project's root directory to the Python path
# This allows for importing config when running as part of main.py or alone
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
import config
from modules.cache import FileCache
from modules.errors import MalformedRecord

# Load .env from the repository root so os.environ.get(...) finds NCBI keys
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))), '.env'))



def configure_entrez():
    """Set Entrez credentials from the environment."""

    # Email and api key from hidden local env file. Use default if not defined
    Entrez.email = os.environ.get('NCBI_EMAIL', 'your-email@example.com')
    Entrez.api_key = os.environ.get('NCBI_API_KEY', '')
    Entrez.max_tries = 3
    Entrez.sleep_between_tries = 2

    if not Entrez.api_key:
        print("WARNING: No NCBI_API_KEY set; requests may be rate limited.")



def call_entrez_with_retry(request: Callable, description: str):
    """Run an Entrez request, backing off exponentially on 429 responses.

    Args:
        request: Zero-argument callable performing the Entrez call
        description: Short label used in error messages

    Returns:
        Whatever request() returns

    Raises:
        The last error if rate limiting persists, or any other error at once.
    """

    max_retries = config.ENTREZ_MAX_RETRIES
    retry_delay = 1.0

    for attempt in range(max_retries):
        # Small delay to control API rate
        time.sleep(config.ENTREZ_SLEEP)
        try:
            return request()

        except Exception as e:
            error_msg = str(e)
            # Retry only rate limiting errors (429)
            rate_limited = ("429" in error_msg
                            or "Too Many Requests" in error_msg)
            if rate_limited and attempt < max_retries - 1:
                # Exponential backoff: 1s, 2s, 4s, 8s
                time.sleep(retry_delay * (2 ** attempt))
                continue
            tqdm.write(f"Error during {description}: {e}")
            raise



def _entrez_read(handle):
    """Parse an Entrez handle into python objects and close it."""

    try:
        return Entrez.read(handle)
    finally:
        handle.close()



def _handle_bytes(handle) -> bytes:
    """Read an Entrez handle fully as bytes and close it."""

    try:
        data = handle.read()
    finally:
        handle.close()

    return data.encode('utf-8') if isinstance(data, str) else data



def search_bioproject_uid(bioproject: str) -> str:
    """Get the numeric E-utilities UID for a BioProject accession."""

    record = call_entrez_with_retry(
        lambda: _entrez_read(Entrez.esearch(db='bioproject', term=bioproject)),
        f"BioProject search for {bioproject}")

    uids = record.get('IdList', [])
    if not uids:
        raise ValueError(f"No BioProject found for accession '{bioproject}'.")

    return str(uids[0])



def link_biosample_ids(bioproject_uid: str) -> List[str]:
    """Get BioSample UIDs linked to a BioProject UID."""

    link_record = call_entrez_with_retry(
        lambda: _entrez_read(Entrez.elink(dbfrom='bioproject',
                                          db='biosample',
                                          id=bioproject_uid,
                                          retmax=config.BIOSAMPLE_RETMAX)),
        f"BioSample link for BioProject UID {bioproject_uid}")

    biosample_ids = [
        link['Id']
        for link_set in link_record
        for link_db in link_set.get('LinkSetDb', [])
        for link in link_db.get('Link', [])
    ]

    # Deduplicate and sort for a stable fetch order
    return sorted(set(str(uid) for uid in biosample_ids), key=int)



def get_biosample_ids_for_bioproject(bioproject: str,
                                     cache: FileCache) -> List[str]:
    """Get BioSample UIDs for a BioProject accession, cached as JSON."""

    def fetch():
        bioproject_uid = search_bioproject_uid(bioproject)
        biosample_ids = link_biosample_ids(bioproject_uid)
        return json.dumps(biosample_ids).encode('utf-8')

    data = cache.get_or_fetch(f"{bioproject}_biosample_ids.json", fetch)

    return json.loads(data.decode('utf-8'))



def fetch_biosample_xml(biosample_uid: str, cache: FileCache) -> bytes:
    """Fetch raw BioSample XML for one UID, keyed in the cache by UID."""

    def fetch():
        return call_entrez_with_retry(
            lambda: _handle_bytes(Entrez.efetch(db='biosample',
                                                id=str(biosample_uid),
                                                retmode='xml')),
            f"BioSample fetch for UID {biosample_uid}")

    return cache.get_or_fetch(f"biosample_{biosample_uid}.xml", fetch)



def _clean_text(value) -> str:
    """Strip whitespace from XML text, treating None as blank."""
    return value.strip() if isinstance(value, str) else ''



def extract_biosample_triples(xml_data: bytes) -> List[Tuple[str, str, str]]:
    """
    Walk a BioSampleSet XML document once and emit metadata triples.

    Each BioSample yields (entity_id, field_name, field_value) triples for its
    accession, numeric id, every <Id> keyed by its db attribute, title,
    organism name, owner, package, and every <Attribute> keyed by its
    harmonized_name (falling back to attribute_name). Blank values are
    skipped.

    Args:
        xml_data: Raw XML bytes from efetch

    Returns:
        List of (entity_id, field_name, field_value) tuples

    Raises:
        MalformedRecord: If the XML cannot be parsed or a BioSample has no
            accession.
    """

    try:
        root = ET.fromstring(xml_data)
    except ET.ParseError as e:
        raise MalformedRecord(f"Unparseable BioSample XML: {e}") from e

    # A single BioSample may also be returned without the wrapping set
    biosamples = [root] if root.tag == 'BioSample' else root.iter('BioSample')

    triples = []
    for biosample in biosamples:
        entity_id = _clean_text(biosample.get('accession'))
        if not entity_id:
            raise MalformedRecord(f"BioSample without accession attribute "
                                  f"(id={biosample.get('id')}).")

        fields = [
            ('accession', entity_id),
            ('biosample_id', _clean_text(biosample.get('id'))),
            ('publication_date', _clean_text(biosample.get('publication_date'))),
        ]

        for id_elem in biosample.findall('./Ids/Id'):
            db = _clean_text(id_elem.get('db'))
            if db:
                field_name = config.BIOSAMPLE_ID_RENAMER.get(
                    db, f"{db.lower()}_id")
                fields.append((field_name, _clean_text(id_elem.text)))

        fields.append(('title',
                       _clean_text(biosample.findtext('./Description/Title'))))

        organism = biosample.find('./Description/Organism')
        if organism is not None:
            fields.append(('taxonomy_name',
                           _clean_text(organism.get('taxonomy_name'))))

        fields.append(('owner', _clean_text(biosample.findtext('./Owner/Name'))))
        fields.append(('package', _clean_text(biosample.findtext('./Package'))))

        for attribute in biosample.findall('./Attributes/Attribute'):
            field_name = (_clean_text(attribute.get('harmonized_name'))
                          or _clean_text(attribute.get('attribute_name')))
            if field_name:
                fields.append((field_name, _clean_text(attribute.text)))

        triples.extend((entity_id, name, value)
                       for name, value in fields if value)

    return triples



def pivot_triples(triples: List[Tuple[str, str, str]]) -> pd.DataFrame:
    """Pivot (entity_id, field_name, field_value) triples to one row per entity.

    Repeated values for the same entity and field are deduplicated and joined
    with semicolons. Entities keep their first-seen order.
    """

    long_df = pd.DataFrame(triples,
                           columns=['entity_id', 'field_name', 'field_value'])

    if long_df.empty:
        return pd.DataFrame(columns=['entity_id'])

    entity_order = list(dict.fromkeys(long_df['entity_id']))
    field_order = list(dict.fromkeys(long_df['field_name']))

    wide_df = (long_df
               .groupby(['entity_id', 'field_name'], sort=False)['field_value']
               .agg(lambda values: ';'.join(dict.fromkeys(values)))
               .unstack('field_name')
               .reindex(index=entity_order, columns=field_order)
               .reset_index())

    wide_df.columns.name = None

    return wide_df



def gather_biosample_records(biosample_ids: List[str],
                             cache: FileCache) -> pd.DataFrame:
    """Fetch and pivot BioSample metadata for a list of UIDs."""

    triples = []
    for biosample_uid in tqdm(biosample_ids, unit="BioSample", ncols=80,
                              desc="Fetching BioSample XML"):
        xml_data = fetch_biosample_xml(biosample_uid, cache)
        triples.extend(extract_biosample_triples(xml_data))

    return pivot_triples(triples)



def fetch_ena_run_report(project: str, cache: FileCache) -> pd.DataFrame:
    """
    Fetch the ENA read_run file report for a project as a DataFrame.

    The raw TSV is cached. Values are read as strings with quoting disabled.

    Args:
        project: Study or project accession, e.g. 'PRJNA46877'
        cache: FileCache for the raw report

    Returns:
        DataFrame with config.ENA_FIELDS columns, one row per run
    """

    def fetch():
        params = {
            'accession': project,
            'result': 'read_run',
            'fields': ','.join(config.ENA_FIELDS),
            'format': 'tsv',
        }
        response = requests.get(config.ENA_FILEREPORT_URL, params=params,
                                timeout=config.REQUEST_TIMEOUT)
        response.raise_for_status()
        return response.content

    data = cache.get_or_fetch(f"{project}_ena_read_run.tsv", fetch)

    if not data.strip():
        print(f"WARNING: ENA returned no runs for {project}.")
        return pd.DataFrame(columns=config.ENA_FIELDS)

    return pd.read_csv(io.BytesIO(data), sep='\t', dtype=str,
                       quoting=csv.QUOTE_NONE, keep_default_na=False,
                       na_values=[''])



def merge_semicolon_fields(values):
    """Deduplicate values into a sorted semicolon-separated string."""

    unique_items = set()
    for val in values:
        if pd.notna(val) and val != '':
            items = [item.strip() for item in str(val).split(';')]
            unique_items.update(item for item in items if item)

    return ';'.join(sorted(unique_items)) if unique_items else None



def collapse_ena_runs(ena_df: pd.DataFrame) -> pd.DataFrame:
    """Collapse ENA runs to one row per sample, keyed by sample_name."""

    key = config.ENA_SAMPLE_KEY
    if key not in ena_df.columns:
        raise KeyError(f"ENA report is missing the '{key}' column.")

    collapsed = (ena_df.dropna(subset=[key])
                 .groupby(key, sort=True)
                 .agg(merge_semicolon_fields)
                 .reset_index()
                 .rename(columns={key: config.SAMPLE_NAME_FIELD}))

    return collapsed



def build_biosample_metadata(biosample_df: pd.DataFrame,
                             ena_df: pd.DataFrame) -> pd.DataFrame:
    """
    Combine pivoted BioSample records and ENA runs into one table.

    The configured BioSample field becomes sample_name. BioSamples without it
    cannot be joined to profiles and are dropped with a warning. ENA fields
    are left-joined so samples absent from ENA keep blank run fields.
    """

    name_field = config.BIOSAMPLE_SAMPLE_NAME_FIELD
    sample_name = config.SAMPLE_NAME_FIELD

    if name_field not in biosample_df.columns:
        raise KeyError(f"BioSample metadata has no '{name_field}' field to use "
                       f"as {sample_name}.")

    df = biosample_df.rename(columns={name_field: sample_name})

    unnamed = df[df[sample_name].isna()]
    if not unnamed.empty:
        print(f"WARNING: {len(unnamed)} BioSamples have no {name_field} and "
              f"were dropped: {unnamed['entity_id'].to_list()}")
    df = df[df[sample_name].notna()]

    duplicated = df[df[sample_name].duplicated(keep=False)]
    if not duplicated.empty:
        print(f"WARNING: {sample_name} shared by more than one BioSample: "
              f"{sorted(duplicated[sample_name].unique())}")

    ena_samples = collapse_ena_runs(ena_df)
    df = df.merge(ena_samples, on=sample_name, how='left')

    # Move key to first column
    df.insert(0, sample_name, df.pop(sample_name))
    df = df.drop(columns=['entity_id'])

    return df.sort_values(sample_name, kind='stable').reset_index(drop=True)



def gather_biosample_data(bioproject: str = None,
                          cache: FileCache = None,
                          output_path: str = None,
                          overwrite: bool = False) -> pd.DataFrame:
    """Main function to gather BioSample/ENA metadata keyed by sample_name.

    Args:
        bioproject: BioProject accession. Defaults to config value
        cache: FileCache for raw responses. Defaults to config cache dir
        output_path: CSV path for the combined table
        overwrite: If True, rebuild the CSV even if it already exists

    Returns:
        DataFrame of sample metadata with string values
    """

    bioproject = config.BIOPROJECT_ACCESSION if bioproject is None \
        else bioproject
    cache = FileCache(config.METADATA_CACHE_DIR) if cache is None else cache
    output_path = config.BIOSAMPLE_METADATA_PATH if output_path is None \
        else output_path

    print(f"\n---\nMETADATA - BIOSAMPLE/ENA:\n"
          f"Gathering sample metadata for {bioproject}...\n---\n")

    if os.path.exists(output_path) and not overwrite:
        print(f"Reusing BioSample metadata found in {output_path}.")
        return pd.read_csv(output_path, dtype=str, keep_default_na=False,
                           na_values=[''])

    configure_entrez()

    biosample_ids = get_biosample_ids_for_bioproject(bioproject, cache)
    print(f"BioSamples linked to {bioproject}: {len(biosample_ids)}")

    biosample_df = gather_biosample_records(biosample_ids, cache)
    ena_df = fetch_ena_run_report(bioproject, cache)
    metadata_df = build_biosample_metadata(biosample_df, ena_df)

    os.makedirs(os.path.dirname(output_path), exist_ok=True)
    metadata_df.to_csv(output_path, index=False)

    print(f"\n\nSuccess! BioSample metadata saved to {output_path}.\n"
          f"Total samples with metadata:    {len(metadata_df)}")

    return metadata_df


# Run module as a standalone script when called directly
if __name__ == "__main__":

    print(f"Running {os.path.basename(__file__)} as standalone module...")

    gather_biosample_data()
