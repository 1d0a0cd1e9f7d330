"""
Shared pytest fixtures for cycler tests.

This module provides fixtures for:
- Test configuration with temporary directories
- Retention ledger and cycling engine
- A recording transfer adapter registered as the 'Fake' backend
- Mock fixtures for external services (S3, SSH)
- Artifact files in a temporary directory
"""

from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from cycler.config import TestingConfig
from cycler.backup.artifact import ArtifactDescriptor
from cycler.backup.ledger import RetentionLedger
from cycler.backup.retention import CyclingEngine
from cycler.backup.storage import (
    STORAGE_TYPES,
    TransferAdapter,
    UploadError,
    RemovalError
)


def run_timestamp(day: int, hour: int = 12) -> str:
    """Timestamp of a run on day `day` of January 2024."""
    return f"2024.01.{day:02d}.{hour:02d}.00.00"


class FakeStorage(TransferAdapter):
    """
    Transfer adapter that records calls instead of moving bytes.

    Removals of runs whose timestamp is in fail_removal_for raise RemovalError.
    """

    backend_type = 'Fake'
    defaults = {'path': 'backups'}

    def __init__(self):
        self.uploads = []
        self.remove_attempts = []
        self.removed_configs = []
        self.fail_upload = False
        self.fail_removal_for = set()

    def upload(self, config, descriptor, cancellation_check=None):
        if self.fail_upload:
            raise UploadError(config.backend_type, 'connection refused')
        self.uploads.append((config.remote_path, descriptor))

    def remove(self, config, descriptor, cancellation_check=None):
        self.remove_attempts.append(config.timestamp)
        if config.timestamp in self.fail_removal_for:
            raise RemovalError(config.backend_type, 'permission denied')
        self.removed_configs.append(config)


@pytest.fixture(scope='function')
def cfg(tmp_path):
    """Testing configuration pointing at temporary directories."""

    class Config(TestingConfig):
        DATA_PATH = str(tmp_path / 'data')
        TMP_PATH = str(tmp_path / 'tmp')
        LOG_DIR = str(tmp_path / 'logs')
        CONFIG_FILE = str(tmp_path / 'config.py')

    (tmp_path / 'tmp').mkdir()
    return Config


@pytest.fixture(scope='function')
def ledger(tmp_path):
    """Retention ledger in a temporary data directory."""
    return RetentionLedger(str(tmp_path / 'data'))


@pytest.fixture(scope='function')
def fake_storage(monkeypatch):
    """
    Register FakeStorage as the 'Fake' backend and return the instance
    every factory call hands out.
    """
    storage = FakeStorage()
    monkeypatch.setitem(STORAGE_TYPES, 'Fake', FakeStorage)
    return storage


@pytest.fixture(scope='function')
def engine(ledger, fake_storage):
    """Cycling engine wired to the ledger and the fake backend."""
    return CyclingEngine(ledger, storage_factory=lambda backend_type: fake_storage)


@pytest.fixture
def make_artifact():
    """Factory for artifact descriptors."""

    def _make(day=1, base_name='my_backup.tar', chunk_suffixes=None):
        return ArtifactDescriptor(base_name, run_timestamp(day), chunk_suffixes)

    return _make


@pytest.fixture
def artifact_files(tmp_path):
    """
    Create the files of a single-file and a chunked artifact in tmp_path/tmp.

    Returns:
        Tuple of (tmp dir, single-file descriptor, chunked descriptor)
    """
    tmp_dir = tmp_path / 'tmp'
    tmp_dir.mkdir(exist_ok=True)

    single = ArtifactDescriptor('my_backup.tar', run_timestamp(1))
    (tmp_dir / single.filename).write_bytes(b'backup data' * 100)

    chunked = ArtifactDescriptor('my_backup.tar', run_timestamp(2), ['aa', 'ab'])
    for chunk in chunked.chunks():
        (tmp_dir / chunk).write_bytes(b'chunk data')

    return tmp_dir, single, chunked


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


def make_channel_result(stderr=b'', exit_status=0):
    """Build the (stdin, stdout, stderr) triple returned by exec_command."""
    stdout = MagicMock()
    stdout.channel.recv_exit_status.return_value = exit_status
    stderr_file = MagicMock()
    stderr_file.read.return_value = stderr
    return MagicMock(), stdout, stderr_file


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SCP storage testing.

    Every exec_command succeeds with empty stderr unless reconfigured.
    """
    with patch('cycler.backup.storage.SSHClient') as mock_ssh_class:
        mock_ssh = MagicMock()
        mock_sftp = MagicMock()
        mock_ssh_class.return_value = mock_ssh
        mock_ssh.open_sftp.return_value = mock_sftp
        mock_ssh.connect.return_value = None
        mock_ssh.exec_command.side_effect = lambda *args, **kwargs: make_channel_result()

        yield mock_ssh


@pytest.fixture
def timestamp_for():
    """The run_timestamp helper as a fixture."""
    return run_timestamp


@pytest.fixture
def channel_result():
    """The make_channel_result helper as a fixture."""
    return make_channel_result
