"""
Storage configuration and transfer adapters for backup artifacts.

Supports:
- SCPStorage: Copy to a remote server over SSH/SFTP
- S3Storage: Upload to AWS S3
- LocalStorage: Copy to a local (or mounted) directory

Every adapter stores a run under "<path>/<trigger>/<timestamp>/" and can
remove that location again when the run falls out of the retention window.
"""

import os
import re
import shlex
import shutil
import logging
import posixpath
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Dict, Any, Callable

import boto3
import paramiko
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from .artifact import ArtifactDescriptor, generate_timestamp


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class TransferError(StorageError):
    """
    Raised by a transfer adapter when the backend fails.

    Attributes:
        backend_type: Backend that failed (e.g. 'SCP', 'S3')
        operation: 'upload' or 'remove'
        message: Backend specific description
    """

    operation = None

    def __init__(self, backend_type: str, message: str, operation: Optional[str] = None):
        self.backend_type = backend_type
        self.operation = operation or self.operation
        self.message = message
        super().__init__(f"{backend_type} {self.operation} failed: {message}")


class UploadError(TransferError):
    """The artifact did not reach the remote location."""
    operation = 'upload'


class RemovalError(TransferError):
    """A previously uploaded artifact could not be removed."""
    operation = 'remove'


def _parse_keep(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring invalid keep setting {value!r}, cycling disabled")
        return None


class StorageConfiguration:
    """
    Settings of one storage destination for one backup run.

    The backend settings (credentials, path, keep) are supplied by producer,
    a callable returning a dict. It is called again for every historical
    configuration reloaded from the retention ledger, so removals always use
    the current credentials and path.
    """

    def __init__(
        self,
        backend_type: str,
        trigger: str,
        producer: Optional[Callable[[], Dict[str, Any]]] = None,
        sub_identifier: Optional[str] = None,
        timestamp: Optional[str] = None,
        artifact: Optional[ArtifactDescriptor] = None,
        local_path: Optional[str] = None
    ):
        self.backend_type = backend_type
        self.trigger = trigger
        self.producer = producer
        self.sub_identifier = sub_identifier
        self.artifact = artifact
        self.local_path = local_path

        if timestamp is None:
            timestamp = artifact.timestamp if artifact else generate_timestamp()
        self.timestamp = timestamp

        self.retention_count = None
        self.settings = {}
        self.configure()

    def configure(self) -> 'StorageConfiguration':
        """
        Apply backend defaults, then the producer's settings, then let the
        backend normalise the result.
        """
        storage_class = get_storage_class(self.backend_type)

        settings = storage_class.pre_configure()
        if self.producer is not None:
            settings.update(self.producer() or {})

        self.retention_count = _parse_keep(settings.pop('keep', None))
        self.settings = storage_class.post_configure(settings)
        return self

    def get(self, key: str, default=None):
        return self.settings.get(key, default)

    @property
    def storage_name(self) -> str:
        """Storage name, with optional sub identifier."""
        if self.sub_identifier:
            return f"{self.backend_type} ({self.sub_identifier})"
        return self.backend_type

    @property
    def remote_path(self) -> str:
        """Remote location of this run: <path>/<trigger>/<timestamp>"""
        return posixpath.join(self.get('path') or '', self.trigger, self.timestamp)

    def same_storage(self, other: 'StorageConfiguration') -> bool:
        return (
            self.backend_type == other.backend_type
            and self.sub_identifier == other.sub_identifier
        )

    def reconcile(self, entry) -> 'StorageConfiguration':
        """
        Rebuild a historical configuration from a ledger entry using this
        run's producer.

        Args:
            entry: LedgerEntry loaded from the retention ledger

        Returns:
            StorageConfiguration for the stored artifact
        """
        return StorageConfiguration(
            self.backend_type,
            self.trigger,
            producer=self.producer,
            sub_identifier=self.sub_identifier,
            timestamp=entry.timestamp,
            artifact=entry.artifact,
            local_path=self.local_path
        )

    def __repr__(self):
        return f'<StorageConfiguration {self.storage_name} {self.trigger}@{self.timestamp}>'


class TransferAdapter(ABC):
    """Base class for backend transfer adapters."""

    backend_type = None

    # Settings applied before the producer runs
    defaults = {}

    @classmethod
    def pre_configure(cls) -> Dict[str, Any]:
        return dict(cls.defaults)

    @classmethod
    def post_configure(cls, settings: Dict[str, Any]) -> Dict[str, Any]:
        return settings

    @abstractmethod
    def upload(self, config: StorageConfiguration, descriptor: ArtifactDescriptor,
               cancellation_check: Optional[Callable] = None):
        """
        Transfer every file of descriptor to config.remote_path.

        Args:
            config: Storage configuration of the run
            descriptor: Artifact to transfer
            cancellation_check: Optional function called between files; it
                raises to abort the transfer

        Raises:
            UploadError: If the transfer fails
        """

    @abstractmethod
    def remove(self, config: StorageConfiguration, descriptor: ArtifactDescriptor,
               cancellation_check: Optional[Callable] = None):
        """
        Delete the remote location of a previous run.

        Missing files are not an error, errors reported by the backend are.

        Raises:
            RemovalError: If the backend reports an error
        """

    @staticmethod
    def _local_file(config: StorageConfiguration, local_file: str) -> str:
        return os.path.join(config.local_path or '', local_file)


class SCPStorage(TransferAdapter):
    """
    Stores backups on a remote server over SSH.

    Settings: ip, port, username, password or private_key, path, timeout
    """

    backend_type = 'SCP'
    defaults = {'port': 22, 'path': 'backups', 'timeout': 30}

    @classmethod
    def post_configure(cls, settings):
        settings['path'] = re.sub(r'^~/', '', settings.get('path') or '')
        return settings

    def _connect(self, config: StorageConfiguration, error_class) -> SSHClient:
        """
        Establish SSH connection.

        Raises:
            error_class: If connection fails
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': config.get('ip'),
            'port': int(config.get('port')),
            'username': config.get('username'),
            'timeout': config.get('timeout')
        }

        # Use password or private key
        if config.get('password'):
            connect_kwargs['password'] = config.get('password')
        elif config.get('private_key'):
            connect_kwargs['key_filename'] = str(Path(config.get('private_key')).expanduser())

        try:
            ssh_client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise error_class(config.backend_type, f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise error_class(config.backend_type, f"Failed to connect to {config.get('ip')}: {e}")

        return ssh_client

    @staticmethod
    def _exec(ssh_client: SSHClient, command: str, timeout=None):
        """
        Run a command on the remote server.

        Returns:
            Tuple of (exit status, stderr output)
        """
        _, stdout, stderr = ssh_client.exec_command(command, timeout=timeout)
        exit_status = stdout.channel.recv_exit_status()
        errors = stderr.read().decode('utf-8', errors='replace').strip()
        return exit_status, errors

    def _create_remote_directories(self, ssh_client: SSHClient, config: StorageConfiguration):
        """
        Create every level of the remote path one at a time.

        mkdir complains about levels that already exist; that output is ignored.
        """
        path_parts = []
        for path_part in config.remote_path.split('/'):
            path_parts.append(path_part)
            if not path_part:
                continue
            self._exec(ssh_client, f"mkdir {shlex.quote('/'.join(path_parts))}", config.get('timeout'))

    def upload(self, config, descriptor, cancellation_check=None):
        ssh_client = self._connect(config, UploadError)
        try:
            self._create_remote_directories(ssh_client, config)

            sftp_client = ssh_client.open_sftp()
            try:
                for local_file, remote_file in descriptor.files_to_transfer():
                    if cancellation_check:
                        cancellation_check()

                    logger.info(
                        f"{config.storage_name} started transferring '{local_file}' to '{config.get('ip')}'."
                    )
                    sftp_client.put(
                        self._local_file(config, local_file),
                        posixpath.join(config.remote_path, remote_file)
                    )
            finally:
                sftp_client.close()

        except (paramiko.SSHException, OSError) as e:
            raise UploadError(config.backend_type, f"Failed to transfer to {config.get('ip')}: {e}")
        finally:
            ssh_client.close()

    def remove(self, config, descriptor, cancellation_check=None):
        messages = [
            f"{config.storage_name} started removing '{local_file}' from '{config.get('ip')}'."
            for local_file in descriptor.local_file_names()
        ]
        logger.info('\n'.join(messages))

        ssh_client = self._connect(config, RemovalError)
        try:
            if cancellation_check:
                cancellation_check()
            exit_status, errors = self._exec(
                ssh_client, f"rm -rf {shlex.quote(config.remote_path)}", config.get('timeout')
            )
        except (paramiko.SSHException, OSError) as e:
            raise RemovalError(config.backend_type, f"Failed to remove from {config.get('ip')}: {e}")
        finally:
            ssh_client.close()

        if errors or exit_status != 0:
            raise RemovalError(
                config.backend_type,
                f"SSH reported the following errors (exit status {exit_status}):\n{errors}"
            )


class S3Storage(TransferAdapter):
    """
    Stores backups in an AWS S3 bucket.

    Settings: access_key_id, secret_access_key, bucket, region, path, timeout

    Keys have the format: {path}/{trigger}/{timestamp}/{remote_file}
    """

    backend_type = 'S3'
    defaults = {'region': 'us-east-1', 'path': 'backups', 'timeout': 60}

    # Use multipart upload for files larger than 100MB, in 10MB parts
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    CHUNK_SIZE = 10 * 1024 * 1024

    @classmethod
    def post_configure(cls, settings):
        settings['path'] = (settings.get('path') or '').strip('/')
        return settings

    def _client(self, config: StorageConfiguration):
        timeout = config.get('timeout')
        return boto3.client(
            's3',
            aws_access_key_id=config.get('access_key_id'),
            aws_secret_access_key=config.get('secret_access_key'),
            region_name=config.get('region'),
            config=BotoConfig(connect_timeout=timeout, read_timeout=timeout)
        )

    @staticmethod
    def _key(config: StorageConfiguration, remote_file: str) -> str:
        return posixpath.join(config.remote_path, remote_file).lstrip('/')

    def _ensure_bucket(self, s3_client, config: StorageConfiguration):
        """Create the bucket if it doesn't exist yet."""
        bucket = config.get('bucket')
        try:
            s3_client.head_bucket(Bucket=bucket)
            return
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code not in ('404', 'NoSuchBucket'):
                raise

        create_kwargs = {'Bucket': bucket}
        if config.get('region') != 'us-east-1':
            create_kwargs['CreateBucketConfiguration'] = {'LocationConstraint': config.get('region')}

        try:
            s3_client.create_bucket(**create_kwargs)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code not in ('BucketAlreadyOwnedByYou', 'BucketAlreadyExists'):
                raise

    def upload(self, config, descriptor, cancellation_check=None):
        try:
            s3_client = self._client(config)
            self._ensure_bucket(s3_client, config)

            for local_file, remote_file in descriptor.files_to_transfer():
                if cancellation_check:
                    cancellation_check()

                local_path = self._local_file(config, local_file)
                s3_key = self._key(config, remote_file)
                logger.info(
                    f"{config.storage_name} started transferring '{local_file}' to bucket '{config.get('bucket')}'."
                )

                if os.path.getsize(local_path) > self.MULTIPART_THRESHOLD:
                    self._multipart_upload(s3_client, config, local_path, s3_key, cancellation_check)
                else:
                    self._simple_upload(s3_client, config, local_path, s3_key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(config.backend_type, f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise UploadError(config.backend_type, f"S3 upload failed: {e}")

    def _simple_upload(self, s3_client, config, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            s3_client.put_object(
                Bucket=config.get('bucket'),
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, s3_client, config, local_path: str, s3_key: str,
                          cancellation_check: Optional[Callable] = None):
        """
        Upload large file using multipart upload with cancellation support.

        The upload is aborted if any part fails or the cancellation check raises.
        """
        bucket = config.get('bucket')
        response = s3_client.create_multipart_upload(Bucket=bucket, Key=s3_key)
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = s3_client.upload_part(
                        Bucket=bucket,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            s3_client.complete_multipart_upload(
                Bucket=bucket,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                s3_client.abort_multipart_upload(
                    Bucket=bucket,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {s3_key}: {abort_error}")
            raise

    def remove(self, config, descriptor, cancellation_check=None):
        bucket = config.get('bucket')
        keys = []
        for local_file, remote_file in descriptor.files_to_transfer():
            logger.info(f"{config.storage_name} started removing '{local_file}' from bucket '{bucket}'.")
            keys.append(self._key(config, remote_file))

        if cancellation_check:
            cancellation_check()

        try:
            response = self._client(config).delete_objects(
                Bucket=bucket,
                Delete={'Objects': [{'Key': key} for key in keys], 'Quiet': True}
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == 'NoSuchBucket':
                logger.info(f"{config.storage_name} bucket '{bucket}' no longer exists, nothing to remove.")
                return
            raise RemovalError(config.backend_type, f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise RemovalError(config.backend_type, f"S3 delete failed: {e}")

        errors = response.get('Errors') or []
        if errors:
            details = '\n'.join(
                f"{error.get('Key')}: {error.get('Code')} {error.get('Message')}" for error in errors
            )
            raise RemovalError(config.backend_type, f"S3 reported the following errors:\n{details}")


class LocalStorage(TransferAdapter):
    """
    Stores backups in a local directory.

    Settings: path
    """

    backend_type = 'Local'
    defaults = {'path': '~/backups'}

    @classmethod
    def post_configure(cls, settings):
        settings['path'] = os.path.expanduser(settings.get('path') or '')
        return settings

    def upload(self, config, descriptor, cancellation_check=None):
        dest_dir = Path(config.remote_path)

        try:
            dest_dir.mkdir(parents=True, exist_ok=True)

            for local_file, remote_file in descriptor.files_to_transfer():
                if cancellation_check:
                    cancellation_check()

                logger.info(f"{config.storage_name} started transferring '{local_file}' to '{dest_dir}'.")
                shutil.copy2(self._local_file(config, local_file), dest_dir / remote_file)

        except PermissionError as e:
            raise UploadError(config.backend_type, f"Permission denied writing to {dest_dir}: {e}")
        except OSError as e:
            raise UploadError(config.backend_type, f"Failed to store locally: {e}")

    def remove(self, config, descriptor, cancellation_check=None):
        dest_dir = Path(config.remote_path)
        for local_file in descriptor.local_file_names():
            logger.info(f"{config.storage_name} started removing '{local_file}' from '{dest_dir}'.")

        if cancellation_check:
            cancellation_check()

        try:
            if dest_dir.exists():
                shutil.rmtree(dest_dir)
        except PermissionError as e:
            raise RemovalError(config.backend_type, f"Permission denied deleting {dest_dir}: {e}")
        except OSError as e:
            raise RemovalError(config.backend_type, f"Failed to delete {dest_dir}: {e}")


STORAGE_TYPES = {
    'SCP': SCPStorage,
    'S3': S3Storage,
    'Local': LocalStorage
}


def register_storage(backend_type: str, storage_class):
    """Make a new backend available to storage configurations."""
    STORAGE_TYPES[backend_type] = storage_class


def get_storage_class(backend_type: str):
    try:
        return STORAGE_TYPES[backend_type]
    except KeyError:
        raise ValueError(f"Invalid storage type: {backend_type}")


def create_storage(backend_type: str) -> TransferAdapter:
    """
    Factory function to create the transfer adapter for a backend.

    Raises:
        ValueError: If backend_type is unknown
    """
    return get_storage_class(backend_type)()
