"""
Faidx service module - index building and sequence retrieval for datasets.

Orchestrates the streaming index builder in fasta_utils for FASTA datasets
kept under DATA_DIR, publishes generated .fai files and serves subsequences
through the index.
"""
import os
import json
import hashlib
import time
import logging
import threading
from typing import Dict, Optional, Any, Tuple

import boto3
import regex

from fasta_utils import (
    CHUNK_SIZE,
    EmptyFasta,
    FastaIndexer,
    FaiRecord,
    build_index,
    fetch_sequence,
    index_to_dict,
    read_fai,
    write_fai
)

logger = logging.getLogger(__name__)

# Constants
DAY_IN_SECONDS = 86400
MAX_REGION_LENGTH = 10000000
FASTA_SUFFIXES = ('.seq', '.fa', '.fasta', '.fna', '.faa')
S3_PREFIX = 'faidx/'
FAI_CONTENT_TYPE = 'text/tab-separated-values'

# Default directories (can be overridden by environment variables)
DATA_DIR = os.environ.get('DATA_DIR', '/data/faidx/')
TMP_DIR = os.environ.get('TMP_DIR', '/var/www/tmp/')
CONF_DIR = os.environ.get('CONF_DIR', '/var/www/conf/')

REGION_RE = regex.compile(r'^(?P<name>.+?)(?::(?P<start>[\d,]+)(?:-(?P<end>[\d,]+))?)?$')

# Cached in-memory indices: path -> (mtime, {name: FaiRecord})
_index_cache: Dict[str, Tuple[float, Dict[str, FaiRecord]]] = {}
_index_lock = threading.Lock()


class DatasetNotFound(LookupError):
    """No FASTA file exists for a dataset name."""


def get_config(conf: Optional[str] = None) -> Dict:
    """
    Load configuration from JSON file.

    Args:
        conf: Configuration file name (without .json extension)

    Returns:
        Configuration dictionary
    """
    if conf is None:
        conf = 'faidx'
    if not conf.endswith('.json'):
        conf = conf + '.json'

    config_path = os.path.join(CONF_DIR, os.path.basename(conf))
    with open(config_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def clean_up_temp_files():
    """Remove temp files older than one day."""
    now = time.time()
    for f in os.listdir(TMP_DIR):
        file_path = os.path.join(TMP_DIR, f)
        if os.path.isfile(file_path) and os.stat(file_path).st_mtime < now - DAY_IN_SECONDS:
            try:
                os.remove(file_path)
            except OSError as e:
                logger.warning("Could not remove %s: %s", file_path, e)


def s3_object_url(bucket: str, key: str) -> str:
    return f"https://{bucket}.s3.amazonaws.com/{key}"


def upload_index_to_s3(path: str, bucket: str) -> str:
    """
    Publish one index file under the faidx/ prefix of a bucket.

    Returns:
        Public URL of the uploaded object
    """
    key = S3_PREFIX + os.path.basename(path)
    s3 = boto3.client('s3')
    s3.upload_file(path, bucket, key, ExtraArgs={'ACL': 'public-read', 'ContentType': FAI_CONTENT_TYPE})
    logger.info("Uploaded %s to s3://%s/%s", path, bucket, key)
    return s3_object_url(bucket, key)


def _publish_in_background(path: str, bucket: str):
    try:
        upload_index_to_s3(path, bucket)
    except Exception:
        logger.exception("Error uploading %s", path)


def _file_md5(path: str) -> str:
    md5 = hashlib.md5()
    with open(path, 'rb') as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b''):
            md5.update(chunk)
    return md5.hexdigest()


def get_download_url(tmp_file: str) -> str:
    """
    Publish a generated index file and return where to fetch it.

    The file is renamed after the md5 of its content, so identical indices
    share one name. With S3_BUCKET set the upload runs on a background
    thread and the S3 URL is returned right away.

    Args:
        tmp_file: File name under TMP_DIR

    Returns:
        Download URL (S3 or local), empty when the file is gone
    """
    download_file = os.path.join(TMP_DIR, tmp_file)
    if not os.path.exists(download_file):
        return ""

    published = _file_md5(download_file) + '.fai'
    published_path = os.path.join(TMP_DIR, published)
    os.replace(download_file, published_path)
    clean_up_temp_files()

    s3_bucket = os.environ.get('S3_BUCKET')
    if not s3_bucket:
        return f"/download/{published}"

    thread = threading.Thread(target=_publish_in_background, args=(published_path, s3_bucket), daemon=True)
    thread.start()
    return s3_object_url(s3_bucket, S3_PREFIX + published)


def resolve_dataset(dataset: str) -> str:
    """
    Map a dataset name to a FASTA file under DATA_DIR.

    The name may be given with or without one of the FASTA suffixes.

    Raises:
        DatasetNotFound: If no matching file exists
    """
    name = os.path.basename(dataset)
    if not name or name in ('.', '..'):
        raise DatasetNotFound(dataset)

    candidates = [name] if name.endswith(FASTA_SUFFIXES) else [name + s for s in FASTA_SUFFIXES]
    for candidate in candidates:
        path = os.path.join(DATA_DIR, candidate)
        if os.path.isfile(path):
            return path

    raise DatasetNotFound(dataset)


def parse_region(region: str) -> Tuple[str, int, Optional[int]]:
    """
    Parse a samtools-style region string.

    Args:
        region: 'name', 'name:start' or 'name:start-end', 1-based inclusive

    Returns:
        Tuple of (name, start, end) with 0-based start and exclusive end;
        end is None when the region runs to the end of the sequence
    """
    region = region.strip()
    match = REGION_RE.match(region)
    if not match:
        raise ValueError(f"Invalid region: '{region}'")

    name = match.group('name')
    if match.group('start') is None:
        return name, 0, None

    start = int(match.group('start').replace(',', ''))
    end = match.group('end')
    end = int(end.replace(',', '')) if end is not None else None

    if start < 1:
        raise ValueError(f"Region start must be at least 1: '{region}'")
    if end is not None and end < start:
        raise ValueError(f"Region end is before start: '{region}'")

    return name, start - 1, end


def load_dataset_index(datafile: str) -> Dict[str, FaiRecord]:
    """
    Return the index of a FASTA file, rebuilding it when the file changes.

    A '<datafile>.fai' newer than the FASTA file is used as is.

    Raises:
        MalformedFasta: If the file has uneven line widths
    """
    mtime = os.stat(datafile).st_mtime
    with _index_lock:
        cached = _index_cache.get(datafile)
        if cached and cached[0] == mtime:
            return cached[1]

    fai_file = datafile + '.fai'
    if os.path.isfile(fai_file) and os.stat(fai_file).st_mtime >= mtime:
        records = read_fai(fai_file)
    else:
        entries, _ = build_index(datafile)
        records = index_to_dict(entries)

    with _index_lock:
        _index_cache[datafile] = (mtime, records)
    return records


def get_sequence(dataset: str, region: str) -> Dict[str, Any]:
    """
    Get a subsequence of a dataset through its index.

    Args:
        dataset: Dataset name
        region: samtools-style region

    Returns:
        Dict with 'defline', 'seq' and 'length' keys

    Raises:
        DatasetNotFound: If the dataset does not exist
        KeyError: If the sequence name is not in the index
        ValueError: If the region is invalid for the sequence
    """
    datafile = resolve_dataset(dataset)
    records = load_dataset_index(datafile)

    # names may themselves contain ':'
    if region in records:
        name, start, end = region, 0, None
    else:
        name, start, end = parse_region(region)
    if name not in records:
        raise KeyError(name)
    record = records[name]
    if end is None:
        end = record.length
    end = min(end, record.length)
    if end - start > MAX_REGION_LENGTH:
        raise ValueError(f"Region is longer than {MAX_REGION_LENGTH} bases")

    with open(datafile, 'rb') as fh:
        seq = fetch_sequence(fh, record, start, end)

    return {'defline': f">{name}:{start + 1}-{end}", 'seq': seq, 'length': len(seq)}


def index_dataset(
    dataset: str,
    stop_on_mismatch: bool = True,
    request_id: str = '0'
) -> Dict[str, Any]:
    """
    Build the .fai index for a dataset and publish it.

    Args:
        dataset: Dataset name
        stop_on_mismatch: Stop at the first record with uneven line widths;
            otherwise such records are reported and left out
        request_id: Unique request identifier

    Returns:
        Result dictionary

    Raises:
        DatasetNotFound: If the dataset does not exist
        EmptyFasta: If the dataset has no record header
    """
    datafile = resolve_dataset(dataset)
    tmp_file = f"{os.path.basename(datafile)}.{request_id}.fai"
    download_file = os.path.join(TMP_DIR, tmp_file)

    entries = []
    anomalies = []
    with FastaIndexer(datafile, stop_on_mismatch=stop_on_mismatch) as indexer:
        for result in indexer:
            if result.is_valid:
                entries.append(result)
            else:
                anomalies.append(result.describe())
        skipped = indexer.skipped
        leading_offset = indexer.leading_offset
        if indexer.no_records:
            raise EmptyFasta(os.path.basename(datafile))

    error_message = '\n'.join(anomalies)
    if stop_on_mismatch and anomalies:
        logger.warning("Index of %s stopped: %s", datafile, error_message)
        return {
            "entries": [],
            "recordCount": 0,
            "skipped": skipped,
            "anomalies": len(anomalies),
            "leadingOffset": leading_offset,
            "downloadUrl": "",
            "error_message": error_message
        }

    with open(download_file, 'w', encoding='utf-8') as fw:
        write_fai(entries, fw)

    download_url = ''
    try:
        download_url = get_download_url(tmp_file)
    except Exception as e:
        error_message = (error_message + '\n' if error_message else '') + f"Error generating download URL: {e}"

    logger.info("Indexed %s: %d records, %d skipped", datafile, len(entries), skipped)

    return {
        "entries": [
            {
                "name": e.name,
                "length": e.seq_length,
                "offset": e.offset,
                "lineBases": e.line_bases,
                "lineBytes": e.line_bytes
            }
            for e in entries
        ],
        "recordCount": len(entries),
        "skipped": skipped,
        "anomalies": len(anomalies),
        "leadingOffset": leading_offset,
        "downloadUrl": download_url,
        "error_message": error_message
    }
