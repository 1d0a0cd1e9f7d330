"""
Retention ledger for backup cycling.

Every storage (backend type plus optional sub identifier) has one JSON
record listing the runs still kept on the remote, most recent first. Only
the artifact and timestamp of each run are stored; credentials and paths
are supplied again by the current configuration when the record is loaded.
"""

import os
import json
import logging
import tempfile
from pathlib import Path
from typing import List, Optional

from cycler import __version__
from .artifact import ArtifactDescriptor, REMOTE_PREFIX_LENGTH


logger = logging.getLogger(__name__)

SCHEMA_VERSION = __version__


class LedgerIOError(Exception):
    """Raised when a ledger record cannot be read or written."""
    pass


class LedgerEntry:
    """
    Persisted form of one uploaded run.

    Entries loaded from records written before versioning carry version None
    and keep their raw fields in legacy until upgrade_entry() migrates them.
    """

    def __init__(self, artifact: Optional[ArtifactDescriptor], timestamp: str,
                 version: Optional[str] = None, legacy: Optional[dict] = None):
        self.artifact = artifact
        self.timestamp = timestamp
        self.version = version
        self.legacy = legacy

    @classmethod
    def from_storage(cls, config) -> 'LedgerEntry':
        """Strip a storage configuration down to the fields that are stored."""
        return cls(artifact=config.artifact, timestamp=config.timestamp, version=SCHEMA_VERSION)

    def to_dict(self) -> dict:
        return {
            'artifact': self.artifact.to_dict(),
            'timestamp': self.timestamp,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LedgerEntry':
        if not isinstance(data, dict):
            raise ValueError(f"Ledger entry must be an object, got {type(data).__name__}")

        version = data.get('version')
        if version is None:
            return cls(artifact=None, timestamp=data.get('time') or data.get('timestamp'),
                       version=None, legacy=dict(data))

        return cls(
            artifact=ArtifactDescriptor.from_dict(data['artifact']),
            timestamp=data['timestamp'],
            version=version,
        )

    def __eq__(self, other):
        if not isinstance(other, LedgerEntry):
            return NotImplemented
        return (
            self.artifact == other.artifact
            and self.timestamp == other.timestamp
            and self.version == other.version
            and self.legacy == other.legacy
        )

    def __repr__(self):
        return f'<LedgerEntry {self.timestamp} version={self.version}>'


def upgrade_entry(entry: LedgerEntry) -> LedgerEntry:
    """
    Bring an entry loaded from an older record up to the current layout.

    Unversioned entries stored the full local filename as remote_file and
    the run time as time. Everything else they carried (credentials, paths)
    is dropped; the current configuration supplies it again. Versioned
    entries are returned unchanged.
    """
    if entry.version is not None:
        return entry

    legacy = entry.legacy or {}
    timestamp = legacy.get('time') or legacy.get('timestamp') or entry.timestamp
    filename = legacy.get('remote_file') or legacy.get('filename')
    if not timestamp or not filename:
        raise ValueError(f"Unversioned ledger entry is missing time or remote_file: {sorted(legacy)}")

    if filename.startswith(f"{timestamp}."):
        base_name = filename[REMOTE_PREFIX_LENGTH:]
    else:
        base_name = filename

    return LedgerEntry(
        artifact=ArtifactDescriptor(base_name, timestamp, chunk_suffixes=[]),
        timestamp=timestamp,
        version=SCHEMA_VERSION,
    )


class RetentionLedger:
    """
    JSON record store, one file per storage under data_path.

    File name: <backend_type>.json or <backend_type>-<sub_identifier>.json
    """

    def __init__(self, data_path: str):
        self.data_path = Path(data_path)

    def record_path(self, backend_type: str, sub_identifier: Optional[str] = None) -> Path:
        name = backend_type
        if sub_identifier:
            name = f"{backend_type}-{sub_identifier}"
        return self.data_path / f"{name}.json"

    def load(self, backend_type: str, sub_identifier: Optional[str] = None) -> List[LedgerEntry]:
        """
        Load the entries of a storage, most recent first.

        Returns:
            List of LedgerEntry, empty if nothing has been recorded yet

        Raises:
            LedgerIOError: If the record exists but cannot be read or parsed
        """
        path = self.record_path(backend_type, sub_identifier)
        if not path.exists():
            return []

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise LedgerIOError(f"Failed to read ledger {path}: {e}")

        # Records written before the envelope was introduced are a bare list
        if isinstance(data, dict):
            raw_entries = data.get('entries', [])
        else:
            raw_entries = data

        if not isinstance(raw_entries, list):
            raise LedgerIOError(f"Malformed ledger {path}: entries must be a list")

        try:
            entries = [LedgerEntry.from_dict(raw) for raw in raw_entries]
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerIOError(f"Malformed ledger entry in {path}: {e}")

        logger.debug(f"Loaded {len(entries)} entries from {path}")
        return entries

    def write(self, backend_type: str, sub_identifier: Optional[str], entries: List[LedgerEntry]):
        """
        Replace the record of a storage with entries.

        The record is written to a temporary file next to it and renamed over
        the previous one, so readers see either the old or the new record.

        Raises:
            LedgerIOError: If the record cannot be written
        """
        path = self.record_path(backend_type, sub_identifier)
        payload = {
            'version': SCHEMA_VERSION,
            'entries': [entry.to_dict() for entry in entries],
        }

        temp_path = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent))
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, str(path))
            temp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise LedgerIOError(f"Failed to write ledger {path}: {e}")
        finally:
            # Clean up temp file on error
            if temp_path and Path(temp_path).exists():
                Path(temp_path).unlink()

        logger.debug(f"Wrote {len(entries)} entries to {path}")
