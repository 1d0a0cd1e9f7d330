"""
Unit tests for backup executor (cycler/backup/executor.py).

Tests BackupExecutor for orchestrating upload and cycling of a run.
"""

from datetime import datetime
from unittest.mock import MagicMock

from freezegun import freeze_time

from cycler.backup.artifact import ArtifactDescriptor
from cycler.backup.executor import (
    BackupExecutor,
    BackupModel,
    RunReport,
    ArtifactError,
    ConfigurationError,
    execute_backup_model,
    execute_backup_models
)
from cycler.backup.ledger import LedgerIOError


def artifact_producer(trigger, timestamp, tmp_path):
    return ArtifactDescriptor(f"{trigger}.tar", timestamp)


def make_model(keep=2, storages=(('Fake', None),), producer=artifact_producer):
    model = BackupModel('my_trigger', producer)
    for backend_type, sub_identifier in storages:
        model.add_storage(backend_type, lambda: {'keep': keep}, sub_identifier)
    return model


def make_executor(model, engine, fake_storage, cfg, day=1):
    return BackupExecutor(
        model, engine, cfg.TMP_PATH,
        now=datetime(2024, 1, day, 12, 0, 0),
        storage_factory=lambda backend_type: fake_storage
    )


class TestBackupModel:
    def test_add_storage(self):
        model = BackupModel('my_trigger', artifact_producer, schedule='0 2 * * *')

        result = model.add_storage('SCP', sub_identifier='offsite')

        assert result is model
        assert model.storages == [{'backend_type': 'SCP', 'producer': None, 'sub_identifier': 'offsite'}]
        assert model.schedule == '0 2 * * *'


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, engine, fake_storage, cfg):
        model = make_model()
        executor = make_executor(model, engine, fake_storage, cfg)

        assert executor.model == model
        assert executor.timestamp == '2024.01.01.12.00.00'
        assert executor.report is None

    def test_successful_run(self, engine, fake_storage, ledger, cfg):
        report = make_executor(make_model(), engine, fake_storage, cfg).execute()

        assert report.status == 'success'
        assert report.succeeded
        assert report.error is None
        assert report.trigger == 'my_trigger'
        assert report.timestamp == '2024.01.01.12.00.00'
        assert report.completed_at is not None
        assert len(report.cycles) == 1

        remote_path, descriptor = fake_storage.uploads[0]
        assert remote_path == 'backups/my_trigger/2024.01.01.12.00.00'
        assert descriptor.filename == '2024.01.01.12.00.00.my_trigger.tar'
        assert [entry.timestamp for entry in ledger.load('Fake')] == ['2024.01.01.12.00.00']

    def test_consecutive_runs_cycle(self, engine, fake_storage, ledger, cfg):
        for day in (1, 2, 3):
            make_executor(make_model(keep=2), engine, fake_storage, cfg, day=day).execute()

        assert [entry.timestamp for entry in ledger.load('Fake')] == [
            '2024.01.03.12.00.00',
            '2024.01.02.12.00.00',
        ]
        assert fake_storage.remove_attempts == ['2024.01.01.12.00.00']

    def test_removal_failure_is_warning(self, engine, fake_storage, ledger, cfg):
        make_executor(make_model(keep=1), engine, fake_storage, cfg, day=1).execute()
        fake_storage.fail_removal_for.add('2024.01.01.12.00.00')

        report = make_executor(make_model(keep=1), engine, fake_storage, cfg, day=2).execute()

        assert report.status == 'warning'
        assert report.succeeded
        assert report.error is None
        assert len(report.warnings) == 1
        assert [entry.timestamp for entry in ledger.load('Fake')] == ['2024.01.02.12.00.00']

    def test_upload_failure_skips_cycling(self, engine, fake_storage, ledger, cfg):
        make_executor(make_model(keep=1), engine, fake_storage, cfg, day=1).execute()
        fake_storage.fail_upload = True

        report = make_executor(make_model(keep=1), engine, fake_storage, cfg, day=2).execute()

        assert report.status == 'failed'
        assert not report.succeeded
        assert 'connection refused' in str(report.error)
        assert report.cycles == []
        assert fake_storage.remove_attempts == []
        assert [entry.timestamp for entry in ledger.load('Fake')] == ['2024.01.01.12.00.00']

    def test_upload_failure_aborts_remaining_storages(self, engine, fake_storage, cfg):
        fake_storage.fail_upload = True
        model = make_model(storages=(('Fake', 'primary'), ('Fake', 'offsite')))

        report = make_executor(model, engine, fake_storage, cfg).execute()

        assert report.status == 'failed'
        assert fake_storage.uploads == []

    def test_ledger_failure_is_reported_separately(self, fake_storage, cfg):
        engine = MagicMock()
        engine.cycle.side_effect = LedgerIOError('disk full')

        report = make_executor(make_model(), engine, fake_storage, cfg).execute()

        assert report.status == 'warning'
        assert report.error is None
        assert 'Fake' in report.cycle_errors
        assert isinstance(report.cycle_errors['Fake'], LedgerIOError)
        # The upload itself went through
        assert len(fake_storage.uploads) == 1

    def test_ledger_failure_does_not_stop_other_storages(self, engine, fake_storage, ledger, cfg, tmp_path):
        (tmp_path / 'data').mkdir()
        (tmp_path / 'data' / 'Fake-primary.json').write_text('garbage')
        model = make_model(storages=(('Fake', 'primary'), ('Fake', 'offsite')))

        report = make_executor(model, engine, fake_storage, cfg).execute()

        assert list(report.cycle_errors) == ['Fake (primary)']
        assert len(fake_storage.uploads) == 2
        assert [entry.timestamp for entry in ledger.load('Fake', 'offsite')] == ['2024.01.01.12.00.00']

    def test_unknown_backend_fails_run(self, engine, fake_storage, cfg):
        model = make_model(storages=(('Fake', None), ('Bogus', None)))

        report = make_executor(model, engine, fake_storage, cfg).execute()

        assert report.status == 'failed'
        assert isinstance(report.error, ConfigurationError)
        assert 'Invalid storage type: Bogus' in str(report.error)
        assert report.completed_at is not None
        assert fake_storage.uploads == []

    def test_failing_storage_producer_fails_run(self, engine, fake_storage, cfg):
        def missing_secret():
            raise KeyError('SECRET_ENV')

        model = BackupModel('my_trigger', artifact_producer).add_storage('Fake', missing_secret)

        report = make_executor(model, engine, fake_storage, cfg).execute()

        assert report.status == 'failed'
        assert isinstance(report.error, ConfigurationError)
        assert 'SECRET_ENV' in str(report.error)
        assert fake_storage.uploads == []

    def test_duplicate_storage_fails_run(self, engine, fake_storage, cfg):
        model = make_model(storages=(('Fake', 'primary'), ('Fake', 'primary')))

        report = make_executor(model, engine, fake_storage, cfg).execute()

        assert report.status == 'failed'
        assert isinstance(report.error, ConfigurationError)
        assert 'Fake (primary) is declared twice' in str(report.error)
        assert fake_storage.uploads == []

    def test_producer_failure_during_cycling_is_reported_separately(self, engine, fake_storage, ledger, cfg):
        make_executor(make_model(keep=1), engine, fake_storage, cfg, day=1).execute()
        calls = []

        def rotating_secret():
            calls.append(1)
            if len(calls) > 1:
                raise KeyError('SECRET_ENV')
            return {'keep': 1}

        model = BackupModel('my_trigger', artifact_producer).add_storage('Fake', rotating_secret)

        report = make_executor(model, engine, fake_storage, cfg, day=2).execute()

        assert report.status == 'warning'
        assert report.error is None
        assert isinstance(report.cycle_errors['Fake'], KeyError)
        assert len(fake_storage.uploads) == 2
        assert [entry.timestamp for entry in ledger.load('Fake')] == ['2024.01.01.12.00.00']

    def test_artifact_producer_failure(self, engine, fake_storage, cfg):
        def broken_producer(trigger, timestamp, tmp_path):
            raise RuntimeError('tar exited with 2')

        report = make_executor(make_model(producer=broken_producer), engine, fake_storage, cfg).execute()

        assert report.status == 'failed'
        assert isinstance(report.error, ArtifactError)
        assert 'tar exited with 2' in str(report.error)
        assert fake_storage.uploads == []

    def test_artifact_producer_wrong_timestamp(self, engine, fake_storage, cfg):
        def stale_producer(trigger, timestamp, tmp_path):
            return ArtifactDescriptor('old.tar', '2020.01.01.00.00.00')

        report = make_executor(make_model(producer=stale_producer), engine, fake_storage, cfg).execute()

        assert report.status == 'failed'
        assert 'does not match' in str(report.error)

    def test_artifact_producer_receives_run_details(self, engine, fake_storage, cfg):
        producer = MagicMock(side_effect=artifact_producer)

        make_executor(make_model(producer=producer), engine, fake_storage, cfg).execute()

        producer.assert_called_once_with('my_trigger', '2024.01.01.12.00.00', cfg.TMP_PATH)

    def test_storages_use_tmp_path(self, engine, fake_storage, cfg):
        storage = MagicMock()

        executor = BackupExecutor(
            make_model(keep=0), engine, cfg.TMP_PATH,
            now=datetime(2024, 1, 1, 12), storage_factory=lambda backend_type: storage
        )
        executor.execute()

        config, descriptor = storage.upload.call_args[0]
        assert config.local_path == cfg.TMP_PATH
        assert config.artifact is descriptor

    def test_logs_are_collected(self, engine, fake_storage, cfg):
        report = make_executor(make_model(), engine, fake_storage, cfg).execute()

        assert any('Starting backup: my_trigger' in log for log in report.logs)
        assert any('Backup completed successfully' in log for log in report.logs)


class TestRunReport:
    @freeze_time("2024-01-15 12:00:00")
    def test_to_dict(self):
        report = RunReport('my_trigger', '2024.01.15.12.00.00')
        report.status = 'warning'
        report.cycle_errors['SCP'] = LedgerIOError('disk full')

        data = report.to_dict()

        assert data['status'] == 'warning'
        assert data['cycle_errors'] == {'SCP': 'disk full'}
        assert data['started_at'].startswith('2024-01-15T12:00:00')
        assert data['completed_at'] is None


class TestExecuteBackupModel:
    @freeze_time("2024-01-15 12:00:00")
    def test_execute_backup_model_uses_config(self, fake_storage, cfg, tmp_path):
        report = execute_backup_model(make_model(), cfg)

        assert report.status == 'success'
        assert report.timestamp == '2024.01.15.12.00.00'
        assert (tmp_path / 'data' / 'Fake.json').exists()

    @freeze_time("2024-01-15 12:00:00")
    def test_execute_backup_models_runs_each_model(self, fake_storage, cfg, tmp_path):
        first = make_model(storages=(('Fake', 'first'),))
        second = make_model(storages=(('Fake', 'second'),), producer=lambda *args: None)

        reports = execute_backup_models([second, first], cfg)

        assert [report.status for report in reports] == ['failed', 'success']
        assert (tmp_path / 'data' / 'Fake-first.json').exists()
        assert not (tmp_path / 'data' / 'Fake-second.json').exists()
