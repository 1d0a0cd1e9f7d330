"""
Backup executor - orchestrates one run of a backup model.

Workflow:
1. Generate the run timestamp
2. Have the archive producer create the artifact
3. Build the configuration of every storage from its producer
4. For each storage, in declaration order:
   a. Upload the artifact
   b. Cycle the storage (enforce keep)

A configuration or upload failure aborts the run. A ledger failure (or any
other cycling error) only aborts cycling of that storage. Failed removals
end up as warnings.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, List, Callable

from .artifact import ArtifactDescriptor, generate_timestamp
from .ledger import RetentionLedger
from .retention import CyclingEngine
from .storage import StorageConfiguration, UploadError, create_storage


logger = logging.getLogger(__name__)


class ArtifactError(Exception):
    """Raised when the archive producer fails to create the artifact."""
    pass


class ConfigurationError(Exception):
    """Raised when a storage of the model cannot be configured."""
    pass


class BackupModel:
    """
    A named backup job: how to produce the artifact and where to store it.

    artifact_producer is called as artifact_producer(trigger, timestamp, tmp_path)
    and must return the ArtifactDescriptor of the files it left in tmp_path.
    """

    def __init__(self, trigger: str, artifact_producer: Callable, schedule: Optional[str] = None):
        """
        Args:
            trigger: Name of the model, also used to namespace remote paths
            artifact_producer: Archive producer for this model
            schedule: Optional crontab expression for periodic runs
        """
        self.trigger = trigger
        self.artifact_producer = artifact_producer
        self.schedule = schedule
        self.storages = []

    def add_storage(self, backend_type: str, producer: Optional[Callable] = None,
                    sub_identifier: Optional[str] = None) -> 'BackupModel':
        self.storages.append({
            'backend_type': backend_type,
            'producer': producer,
            'sub_identifier': sub_identifier,
        })
        return self

    def __repr__(self):
        return f'<BackupModel {self.trigger}>'


class RunReport:
    """Result of one run, as reported back to the caller."""

    def __init__(self, trigger: str, timestamp: str):
        self.trigger = trigger
        self.timestamp = timestamp
        self.status = 'running'
        self.error = None
        self.cycle_errors = {}
        self.cycles = []
        self.warnings = []
        self.logs = []
        self.started_at = datetime.now(timezone.utc)
        self.completed_at = None

    @property
    def succeeded(self) -> bool:
        return self.status in ('success', 'warning')

    def to_dict(self) -> dict:
        return {
            'trigger': self.trigger,
            'timestamp': self.timestamp,
            'status': self.status,
            'error': str(self.error) if self.error else None,
            'cycle_errors': {name: str(error) for name, error in self.cycle_errors.items()},
            'cycles': [cycle.to_dict() for cycle in self.cycles],
            'warnings': list(self.warnings),
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class BackupExecutor:
    """
    Orchestrates upload and cycling for a backup model.
    """

    def __init__(self, model: BackupModel, engine: CyclingEngine, tmp_path: str,
                 now: Optional[datetime] = None, storage_factory: Callable = create_storage):
        """
        Initialize backup executor.

        Args:
            model: BackupModel to run
            engine: Cycling engine used after each upload
            tmp_path: Directory the archive producer writes the artifact to
            now: Time of the run (default: current time)
            storage_factory: Returns the transfer adapter for a backend type
        """
        self.model = model
        self.engine = engine
        self.tmp_path = tmp_path
        self.storage_factory = storage_factory
        self.timestamp = generate_timestamp(now)
        self.report = None

    def execute(self) -> RunReport:
        """
        Execute the backup model.

        Returns:
            RunReport with execution results
        """
        self.report = RunReport(self.model.trigger, self.timestamp)
        self._log(f"Starting backup: {self.model.trigger} ({self.timestamp})")

        try:
            self._execute_workflow()

            if self.report.cycle_errors or self.report.warnings:
                self.report.status = 'warning'
                self._log("Backup completed with warnings")
            else:
                self.report.status = 'success'
                self._log("Backup completed successfully")

        except (ArtifactError, ConfigurationError, UploadError) as e:
            self.report.status = 'failed'
            self.report.error = e
            self._log(f"Backup failed: {e}", logging.ERROR)

        finally:
            self.report.completed_at = datetime.now(timezone.utc)

        return self.report

    def _execute_workflow(self):
        descriptor = self._produce_artifact()
        self._log(f"Artifact: {', '.join(descriptor.local_file_names())}")

        configs = self._configure_storages(descriptor)

        for config in configs:
            self._log(f"{config.storage_name} started transfer")
            self.storage_factory(config.backend_type).upload(config, descriptor)
            self._log(f"{config.storage_name} transfer complete")

            self._cycle(config)

    def _configure_storages(self, descriptor: ArtifactDescriptor) -> List[StorageConfiguration]:
        """
        Build the configuration of every storage of the model.

        Raises:
            ConfigurationError: If a storage has an unknown backend, its producer
                fails, or two storages share a backend type and sub identifier
        """
        configs = []
        for storage in self.model.storages:
            try:
                config = StorageConfiguration(
                    storage['backend_type'],
                    self.model.trigger,
                    producer=storage['producer'],
                    sub_identifier=storage['sub_identifier'],
                    timestamp=self.timestamp,
                    artifact=descriptor,
                    local_path=self.tmp_path
                )
            except Exception as e:
                raise ConfigurationError(
                    f"Cannot configure storage {storage['backend_type']}: {e}"
                ) from e

            if any(config.same_storage(other) for other in configs):
                raise ConfigurationError(
                    f"{config.storage_name} is declared twice, add a sub identifier to tell them apart"
                )
            configs.append(config)
        return configs

    def _produce_artifact(self) -> ArtifactDescriptor:
        """
        Run the archive producer.

        Raises:
            ArtifactError: If the producer fails or returns something unusable
        """
        try:
            descriptor = self.model.artifact_producer(self.model.trigger, self.timestamp, self.tmp_path)
        except ArtifactError:
            raise
        except Exception as e:
            raise ArtifactError(f"Failed to create artifact: {e}") from e

        if not isinstance(descriptor, ArtifactDescriptor):
            raise ArtifactError(f"Archive producer returned {type(descriptor).__name__}, not an ArtifactDescriptor")
        if descriptor.timestamp != self.timestamp:
            raise ArtifactError(
                f"Artifact timestamp {descriptor.timestamp} does not match run timestamp {self.timestamp}"
            )
        return descriptor

    def _cycle(self, config: StorageConfiguration):
        try:
            cycle_report = self.engine.cycle(config)
        except Exception as e:
            # LedgerIOError or a producer failing during reconciliation. The
            # upload went through, only this storage's cycling is lost
            self.report.cycle_errors[config.storage_name] = e
            self._log(f"{config.storage_name} cycling failed: {e}", logging.ERROR)
            return

        self.report.cycles.append(cycle_report)
        self.report.warnings.extend(cycle_report.warnings)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level used for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.report.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup_model(model: BackupModel, cfg=None, now: Optional[datetime] = None) -> RunReport:
    """
    Execute a backup model with ledger and cycling set up from configuration.

    Args:
        model: BackupModel to run
        cfg: Configuration class (default: resolved from CYCLER_ENV)
        now: Time of the run (default: current time)

    Returns:
        RunReport with execution results
    """
    if cfg is None:
        from cycler.config import get_config
        cfg = get_config()

    engine = CyclingEngine(RetentionLedger(cfg.DATA_PATH), max_workers=cfg.CYCLE_MAX_WORKERS)
    executor = BackupExecutor(model, engine, cfg.TMP_PATH, now=now)
    return executor.execute()


def execute_backup_models(models: List[BackupModel], cfg=None) -> List[RunReport]:
    """Execute several models one after another."""
    return [execute_backup_model(model, cfg) for model in models]
