"""
Backup cycling ("keep N" retention).

After every successful upload the storage's ledger is loaded, the current
run is put in front of it and every run beyond the configured keep count is
removed from the remote location and dropped from the ledger.

Only one run per storage (backend type plus sub identifier) may cycle at a
time; the ledger record is not locked across processes.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import List, Optional, Callable

from .ledger import RetentionLedger, LedgerEntry, LedgerIOError, upgrade_entry
from .storage import StorageConfiguration, TransferError, RemovalError, create_storage


logger = logging.getLogger(__name__)


class CycleReport:
    """Outcome of cycling one storage."""

    def __init__(self, storage_name: str):
        self.storage_name = storage_name
        self.skipped = False
        self.kept = []
        self.removed = []
        self.failed = []
        self.warnings = []

    def to_dict(self) -> dict:
        return {
            'storage_name': self.storage_name,
            'skipped': self.skipped,
            'kept': [entry.timestamp for entry in self.kept],
            'removed': [artifact.filename for artifact in self.removed],
            'failed': [artifact.filename for artifact in self.failed],
            'warnings': list(self.warnings),
        }


class CyclingEngine:
    """
    Enforces the keep count of a storage against its retention ledger.
    """

    def __init__(self, ledger: RetentionLedger, storage_factory: Callable = create_storage,
                 max_workers: int = 1):
        """
        Initialize cycling engine.

        Args:
            ledger: Retention ledger holding previous runs
            storage_factory: Returns the transfer adapter for a backend type
            max_workers: Number of removals run in parallel (1 = sequential)
        """
        self.ledger = ledger
        self.storage_factory = storage_factory
        self.max_workers = max(1, int(max_workers or 1))
        self.logs = []

    def cycle(self, config: StorageConfiguration) -> CycleReport:
        """
        Cycle the storage of config, which describes the run just uploaded.

        Returns:
            CycleReport

        Raises:
            LedgerIOError: If the ledger cannot be read or written
            ValueError: If config has no artifact
        """
        report = CycleReport(config.storage_name)
        keep = config.retention_count

        if keep is None or keep <= 0:
            self._log(f"{config.storage_name}: keep not set, cycling disabled", logging.DEBUG)
            report.skipped = True
            return report

        if config.artifact is None:
            raise ValueError(f"{config.storage_name}: cannot cycle a storage without an artifact")

        entries = self.ledger.load(config.backend_type, config.sub_identifier)
        historical = [self._reconcile(config, entry) for entry in entries]

        storages = [config] + historical
        excess = storages[keep:]
        survivors = storages[:keep]

        if excess:
            for storage, error in zip(excess, self._remove_all(excess)):
                if error is None:
                    report.removed.append(storage.artifact)
                    continue

                message = (
                    f"{config.storage_name} failed to remove '{storage.artifact.filename}': {error}"
                )
                self._log(message, logging.WARNING)
                report.failed.append(storage.artifact)
                report.warnings.append(message)

        report.kept = [LedgerEntry.from_storage(storage) for storage in survivors]
        self.ledger.write(config.backend_type, config.sub_identifier, report.kept)

        self._log(
            f"{config.storage_name} cycling complete. "
            f"Kept: {len(report.kept)}, "
            f"Removed: {len(report.removed)}, "
            f"Failed: {len(report.failed)}"
        )
        return report

    def _reconcile(self, config: StorageConfiguration, entry: LedgerEntry) -> StorageConfiguration:
        try:
            entry = upgrade_entry(entry)
        except ValueError as e:
            raise LedgerIOError(f"Cannot upgrade ledger entry for {config.storage_name}: {e}")
        return config.reconcile(entry)

    def _remove(self, storage: StorageConfiguration) -> Optional[Exception]:
        """
        Remove one excess run.

        Errors other than TransferError are returned wrapped in RemovalError.

        Returns:
            None on success, the error otherwise
        """
        self._log(f"{storage.storage_name} started removing (cycling) '{storage.artifact.filename}'.")
        try:
            self.storage_factory(storage.backend_type).remove(storage, storage.artifact)
        except TransferError as e:
            return e
        except Exception as e:
            return RemovalError(storage.backend_type, f"{type(e).__name__}: {e}")
        return None

    def _remove_all(self, storages: List[StorageConfiguration]) -> List[Optional[Exception]]:
        """Run removals, returning their outcome in the order of storages."""
        if self.max_workers == 1 or len(storages) == 1:
            return [self._remove(storage) for storage in storages]

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(pool.map(self._remove, storages))

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level used for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
