import pytest

import faidx_service

SAMPLE = b">s1\nACGT\nACGT\nAC\n>s2\nTTTT\n"
UNEVEN = b">s1\nACGT\nACG\nACGT\n>s2\nTT\n"


@pytest.fixture
def write_fasta(tmp_path):
    """Return a helper that writes bytes to a FASTA file under tmp_path."""
    def _write(data: bytes, name: str = 'test.fa'):
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _write


@pytest.fixture
def service_dirs(tmp_path, monkeypatch):
    """Point the service at temporary data, tmp and conf directories."""
    dirs = {}
    for key in ('data', 'tmp', 'conf'):
        dirs[key] = tmp_path / key
        dirs[key].mkdir()
    monkeypatch.setattr(faidx_service, 'DATA_DIR', str(dirs['data']))
    monkeypatch.setattr(faidx_service, 'TMP_DIR', str(dirs['tmp']))
    monkeypatch.setattr(faidx_service, 'CONF_DIR', str(dirs['conf']))
    monkeypatch.delenv('S3_BUCKET', raising=False)

    (dirs['data'] / 'genome.fa').write_bytes(SAMPLE)
    (dirs['data'] / 'uneven.fa').write_bytes(UNEVEN)
    return dirs
