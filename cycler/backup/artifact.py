"""
Artifact descriptor for a single backup run.

A run produces one artifact, named "<timestamp>.<base_name>", optionally
split into chunks named "<timestamp>.<base_name>-<suffix>". On the remote
side the timestamp prefix is dropped since every run is already stored
under its own timestamped directory.
"""

import re
from datetime import datetime
from typing import List, Optional, Tuple


# 2011.02.20.03.29.59
TIMESTAMP_FORMAT = '%Y.%m.%d.%H.%M.%S'

# 19-character timestamp plus the '.' separator
REMOTE_PREFIX_LENGTH = 20

_TIMESTAMP_RE = re.compile(r'^\d{4}\.\d{2}\.\d{2}\.\d{2}\.\d{2}\.\d{2}$')
_PREFIX_RE = re.compile(r'^\d{4}\.\d{2}\.\d{2}\.\d{2}\.\d{2}\.\d{2}\.')


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """
    Generate the run timestamp shared by every file of a backup run.

    Format: YYYY.MM.DD.HH.MM.SS

    Args:
        now: Point in time to format (default: current local time)

    Returns:
        Formatted timestamp
    """
    return (now or datetime.now()).strftime(TIMESTAMP_FORMAT)


def is_valid_timestamp(value) -> bool:
    return isinstance(value, str) and bool(_TIMESTAMP_RE.match(value))


class ArtifactDescriptor:
    """
    Names the local backup artifact produced by a run.

    If chunk_suffixes is empty the artifact is a single file, otherwise the
    artifact consists only of the chunks.
    """

    def __init__(self, base_name: str, timestamp: str, chunk_suffixes: Optional[List[str]] = None):
        if not base_name:
            raise ValueError("Artifact base name must not be empty")
        if not is_valid_timestamp(timestamp):
            raise ValueError(
                f"Invalid artifact timestamp {timestamp!r}, expected {TIMESTAMP_FORMAT}"
            )

        self.base_name = base_name
        self.timestamp = timestamp
        self.chunk_suffixes = list(chunk_suffixes or [])

    @property
    def filename(self) -> str:
        """Full local filename, e.g. 2011.08.30.11.00.02.backup.tar.gz"""
        return f"{self.timestamp}.{self.base_name}"

    def is_chunked(self) -> bool:
        return len(self.chunk_suffixes) > 0

    def chunks(self) -> List[str]:
        """Chunk filenames, sorted so transfer and removal use the same order."""
        return sorted(f"{self.filename}-{suffix}" for suffix in self.chunk_suffixes)

    def local_file_names(self) -> List[str]:
        if self.is_chunked():
            return self.chunks()
        return [self.filename]

    @staticmethod
    def remote_file_name(local_file: str) -> str:
        """
        Strip the timestamp prefix from a local filename.

        Args:
            local_file: e.g. "2011.08.30.11.00.02.backup.tar.gz"

        Returns:
            e.g. "backup.tar.gz"

        Raises:
            ValueError: If local_file does not start with a timestamp prefix
        """
        if not _PREFIX_RE.match(local_file) or len(local_file) <= REMOTE_PREFIX_LENGTH:
            raise ValueError(f"Not a timestamped artifact filename: {local_file!r}")
        return local_file[REMOTE_PREFIX_LENGTH:]

    def files_to_transfer(self) -> List[Tuple[str, str]]:
        """
        Pairs of (local_file, remote_file) for every file of the artifact.

        The local_file is the full file name: "2011.08.30.11.00.02.backup.tar.gz.enc"
        The remote_file is the full file name, minus the timestamp: "backup.tar.gz.enc"
        """
        return [(name, self.remote_file_name(name)) for name in self.local_file_names()]

    def to_dict(self) -> dict:
        return {
            'base_name': self.base_name,
            'timestamp': self.timestamp,
            'chunk_suffixes': list(self.chunk_suffixes),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ArtifactDescriptor':
        return cls(
            base_name=data['base_name'],
            timestamp=data['timestamp'],
            chunk_suffixes=data.get('chunk_suffixes') or [],
        )

    def __eq__(self, other):
        if not isinstance(other, ArtifactDescriptor):
            return NotImplemented
        return (
            self.base_name == other.base_name
            and self.timestamp == other.timestamp
            and self.chunk_suffixes == other.chunk_suffixes
        )

    def __hash__(self):
        return hash((self.base_name, self.timestamp, tuple(self.chunk_suffixes)))

    def __repr__(self):
        return f'<ArtifactDescriptor {self.filename} chunks={self.chunk_suffixes}>'
