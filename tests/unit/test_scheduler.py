"""
Unit tests for APScheduler integration (homevault/scheduler.py).
"""

from unittest.mock import MagicMock

import pytest

from homevault import scheduler as scheduler_module
from homevault.scheduler import (
    PERIODIC_JOB_ID,
    get_scheduled_jobs,
    init_scheduler,
    is_scheduler_running,
    start_scheduler,
    stop_scheduler,
    trigger_backup_now,
)


@pytest.fixture(autouse=True)
def reset_scheduler():
    yield
    stop_scheduler()


@pytest.fixture
def service():
    return MagicMock()


class TestSchedulerLifecycle:
    """Test scheduler initialization, start and stop."""

    def test_init_adds_periodic_job(self, mock_scheduler, service):
        """Test init registers the periodic backup check."""
        result = init_scheduler(service, check_interval_seconds=30)

        assert result is mock_scheduler
        assert scheduler_module.backup_service is service
        mock_scheduler.add_job.assert_called_once()
        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs['id'] == PERIODIC_JOB_ID
        assert kwargs['replace_existing'] is True

    def test_init_twice_returns_same_scheduler(self, mock_scheduler, service):
        """Test a second init keeps the existing scheduler."""
        first = init_scheduler(service)
        second = init_scheduler(MagicMock())

        assert first is second
        assert scheduler_module.backup_service is service

    def test_start_without_init(self):
        """Test starting an uninitialized scheduler fails."""
        with pytest.raises(RuntimeError):
            start_scheduler()

    def test_start(self, mock_scheduler, service):
        """Test start starts the scheduler once."""
        init_scheduler(service)

        start_scheduler()
        mock_scheduler.start.assert_called_once()

        mock_scheduler.running = True
        start_scheduler()
        mock_scheduler.start.assert_called_once()
        assert is_scheduler_running() is True

    def test_stop(self, mock_scheduler, service):
        """Test stop shuts the scheduler down and forgets it."""
        init_scheduler(service)
        mock_scheduler.running = True

        stop_scheduler()

        mock_scheduler.shutdown.assert_called_once()
        assert scheduler_module.scheduler is None
        assert scheduler_module.backup_service is None
        assert is_scheduler_running() is False


class TestJobs:
    """Test job functions."""

    def test_periodic_check_runs_service(self, mock_scheduler, service):
        """Test the periodic job runs the service check."""
        init_scheduler(service)

        scheduler_module._periodic_check_wrapper()

        service.run_periodic_check.assert_called_once_with()

    def test_periodic_check_swallows_errors(self, mock_scheduler, service):
        """Test a failing check does not raise into the scheduler."""
        init_scheduler(service)
        service.run_periodic_check.side_effect = RuntimeError('boom')

        scheduler_module._periodic_check_wrapper()

    def test_manual_backup_creates_full_backup(self, mock_scheduler, service):
        """Test the manual job creates a full backup."""
        init_scheduler(service)
        service.create_backup.side_effect = RuntimeError('boom')

        scheduler_module._manual_backup_wrapper()

        service.create_backup.assert_called_once_with(full=True)

    def test_trigger_backup_now(self, mock_scheduler, service):
        """Test a manual trigger schedules a one-off job."""
        init_scheduler(service)
        mock_scheduler.add_job.reset_mock()

        trigger_backup_now()

        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs['id'].startswith('manual_')
        assert kwargs['func'] is scheduler_module._manual_backup_wrapper

    def test_trigger_backup_now_without_init(self):
        """Test a manual trigger needs an initialized scheduler."""
        with pytest.raises(RuntimeError):
            trigger_backup_now()

    def test_get_scheduled_jobs(self, mock_scheduler, service):
        """Test job listing."""
        init_scheduler(service)
        job = MagicMock()
        job.id = PERIODIC_JOB_ID
        job.name = 'Periodic Backup Check'
        job.next_run_time = None
        job.trigger = 'interval[0:01:00]'
        mock_scheduler.get_jobs.return_value = [job]

        jobs = get_scheduled_jobs()

        assert jobs == [{
            'id': PERIODIC_JOB_ID,
            'name': 'Periodic Backup Check',
            'next_run': None,
            'trigger': 'interval[0:01:00]',
        }]

    def test_get_scheduled_jobs_without_init(self):
        """Test no jobs are listed without a scheduler."""
        assert get_scheduled_jobs() == []
