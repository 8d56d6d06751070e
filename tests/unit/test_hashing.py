"""
Unit tests for digest helpers (bundlevault/backup/hashing.py).
"""

import hashlib
import shutil

import pytest

from bundlevault.backup.commands import CommandResult
from bundlevault.backup.errors import HashError
from bundlevault.backup.hashing import parse_digest, sha256, sha256_with_output, verify_sha256

DIGEST = 'a' * 64


class TestParseDigest:

    def test_first_token(self):
        assert parse_digest(f"{DIGEST}  /tmp/file.tar.gz\n") == DIGEST

    def test_empty_output(self):
        with pytest.raises(HashError):
            parse_digest('  \n')


class TestSha256:
    """Test sha256 helpers against a fake runner."""

    def test_returns_digest_and_raw_output(self, fake_runner):
        raw = f"{DIGEST}  /tmp/x\n"
        fake_runner.results['sha256sum'] = CommandResult(status=0, stdout=raw)

        digest, output = sha256_with_output('/tmp/x', fake_runner)

        assert digest == DIGEST
        assert output == raw
        assert fake_runner.calls == [('sha256sum', ['/tmp/x'], None)]

    def test_failure_raises(self, fake_runner):
        fake_runner.results['sha256sum'] = CommandResult(
            status=1, stderr='sha256sum: /tmp/x: No such file or directory'
        )

        with pytest.raises(HashError, match='No such file'):
            sha256('/tmp/x', fake_runner)

    def test_verify_is_case_insensitive(self, fake_runner):
        fake_runner.results['sha256sum'] = CommandResult(status=0, stdout=f"{DIGEST}  /tmp/x\n")

        assert verify_sha256('/tmp/x', DIGEST.upper(), fake_runner)
        assert not verify_sha256('/tmp/x', 'b' * 64, fake_runner)


@pytest.mark.skipif(not shutil.which('sha256sum'), reason='sha256sum is required')
def test_matches_hashlib(tmp_path):
    data = b'bundlevault' * 1000
    path = tmp_path / 'blob.bin'
    path.write_bytes(data)

    assert sha256(str(path)) == hashlib.sha256(data).hexdigest()
