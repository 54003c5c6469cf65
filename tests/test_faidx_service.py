import json
import os

import pytest

import faidx_service
from faidx_service import (
    DatasetNotFound,
    get_config,
    get_sequence,
    index_dataset,
    load_dataset_index,
    parse_region,
    resolve_dataset,
)
from fasta_utils import EmptyFasta, FaiRecord, MalformedFasta


@pytest.mark.parametrize('region, expected', [
    ('chr1', ('chr1', 0, None)),
    ('chr1:5', ('chr1', 4, None)),
    ('chr1:1-4', ('chr1', 0, 4)),
    ('chr1:1,000-2,000', ('chr1', 999, 2000)),
    ('HLA:A', ('HLA:A', 0, None)),
    ('  s2:2-3 ', ('s2', 1, 3)),
])
def test_parse_region(region, expected):
    assert parse_region(region) == expected


@pytest.mark.parametrize('region', ['chr1:0-5', 'chr1:10-5', ''])
def test_parse_region_rejects_bad_coordinates(region):
    with pytest.raises(ValueError):
        parse_region(region)


def test_resolve_dataset_adds_suffix(service_dirs):
    assert resolve_dataset('genome') == os.path.join(faidx_service.DATA_DIR, 'genome.fa')
    assert resolve_dataset('genome.fa') == os.path.join(faidx_service.DATA_DIR, 'genome.fa')


def test_resolve_dataset_ignores_directories(service_dirs):
    assert resolve_dataset('../../etc/genome') == os.path.join(faidx_service.DATA_DIR, 'genome.fa')


@pytest.mark.parametrize('dataset', ['missing', '..', ''])
def test_resolve_dataset_unknown(service_dirs, dataset):
    with pytest.raises(DatasetNotFound):
        resolve_dataset(dataset)


def test_index_dataset_writes_fai(service_dirs):
    result = index_dataset('genome', request_id='42')

    assert result['recordCount'] == 2
    assert result['anomalies'] == 0
    assert result['skipped'] == 0
    assert result['error_message'] == ''
    assert result['entries'][1] == {
        'name': 's2', 'length': 4, 'offset': 21, 'lineBases': 4, 'lineBytes': 5
    }

    url = result['downloadUrl']
    assert url.startswith('/download/') and url.endswith('.fai')
    fai = service_dirs['tmp'] / os.path.basename(url)
    assert fai.read_text() == "s1\t10\t4\t4\t5\ns2\t4\t21\t4\t5\n"
    assert not (service_dirs['tmp'] / 'genome.fa.42.fai').exists()


def test_index_dataset_is_idempotent(service_dirs):
    first = index_dataset('genome', request_id='1')
    second = index_dataset('genome', request_id='2')
    assert first['downloadUrl'] == second['downloadUrl']
    assert first['entries'] == second['entries']


def test_index_dataset_strict_reports_mismatch(service_dirs):
    result = index_dataset('uneven')
    assert result['recordCount'] == 0
    assert result['anomalies'] == 1
    assert "'s1'" in result['error_message']
    assert result['downloadUrl'] == ''


def test_index_dataset_lenient_keeps_good_records(service_dirs):
    result = index_dataset('uneven', stop_on_mismatch=False)
    assert [e['name'] for e in result['entries']] == ['s2']
    assert result['anomalies'] == 1
    assert result['downloadUrl'].endswith('.fai')


def test_get_sequence(service_dirs):
    assert get_sequence('genome', 's1:2-5') == {'defline': '>s1:2-5', 'seq': 'CGTA', 'length': 4}
    assert get_sequence('genome', 's2')['seq'] == 'TTTT'
    assert get_sequence('genome', 's1:9-100')['seq'] == 'AC'


def test_get_sequence_errors(service_dirs):
    with pytest.raises(KeyError):
        get_sequence('genome', 'nope')
    with pytest.raises(DatasetNotFound):
        get_sequence('missing', 's1')
    with pytest.raises(MalformedFasta):
        get_sequence('uneven', 's2')
    with pytest.raises(ValueError):
        get_sequence('genome', 's2:10-12')


def test_load_dataset_index_prefers_fresh_fai(service_dirs):
    fasta = service_dirs['data'] / 'genome.fa'
    fai = service_dirs['data'] / 'genome.fa.fai'
    fai.write_text("s1\t10\t4\t4\t5\n")
    stat = fasta.stat()
    os.utime(fai, (stat.st_atime, stat.st_mtime + 10))

    assert load_dataset_index(str(fasta)) == {'s1': FaiRecord(10, 4, 4, 5)}


def test_load_dataset_index_rebuilds_stale_fai(service_dirs):
    fasta = service_dirs['data'] / 'genome.fa'
    fai = service_dirs['data'] / 'genome.fa.fai'
    fai.write_text("s1\t10\t4\t4\t5\n")
    stat = fasta.stat()
    os.utime(fai, (stat.st_atime, stat.st_mtime - 10))

    assert set(load_dataset_index(str(fasta))) == {'s1', 's2'}


def test_get_config(service_dirs):
    (service_dirs['conf'] / 'faidx.json').write_text(json.dumps({'dataset': {}}))
    assert get_config() == {'dataset': {}}
    assert get_config('faidx') == {'dataset': {}}
    with pytest.raises(OSError):
        get_config('missing')


def test_index_dataset_without_records(service_dirs):
    (service_dirs['data'] / 'reads.fa').write_bytes(b"@read1\nACGT\n+\nIIII\n")
    with pytest.raises(EmptyFasta):
        index_dataset('reads', request_id='7')
    assert list(service_dirs['tmp'].iterdir()) == []


class FakeS3:
    def __init__(self):
        self.uploads = []

    def upload_file(self, path, bucket, key, ExtraArgs=None):
        with open(path, 'rb') as fh:
            self.uploads.append((fh.read(), bucket, key, ExtraArgs))


class InlineThread:
    def __init__(self, target, args=(), daemon=None):
        self.target = target
        self.args = args

    def start(self):
        self.target(*self.args)


def test_get_download_url_uploads_to_s3(service_dirs, monkeypatch):
    s3 = FakeS3()
    monkeypatch.setattr(faidx_service.boto3, 'client', lambda name: s3)
    monkeypatch.setattr(faidx_service.threading, 'Thread', InlineThread)
    monkeypatch.setenv('S3_BUCKET', 'indices')
    (service_dirs['tmp'] / 'genome.fa.9.fai').write_text("s1\t10\t4\t4\t5\n")

    url = faidx_service.get_download_url('genome.fa.9.fai')

    published = os.listdir(service_dirs['tmp'])
    assert len(published) == 1 and published[0].endswith('.fai')
    assert url == f"https://indices.s3.amazonaws.com/faidx/{published[0]}"
    body, bucket, key, extra = s3.uploads[0]
    assert (body, bucket, key) == (b"s1\t10\t4\t4\t5\n", 'indices', 'faidx/' + published[0])
    assert extra['ACL'] == 'public-read'


def test_get_download_url_missing_file(service_dirs):
    assert faidx_service.get_download_url('nothing.fai') == ''
