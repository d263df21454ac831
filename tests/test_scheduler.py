"""Tests for the queue-driven audit scheduler."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from site_audit.errors import InvalidOptions, NotFound
from site_audit.scheduler import AuditScheduler, next_run_at

NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)


class TestNextRunAt:

    def test_daily(self):
        assert next_run_at(NOW, "daily") == NOW + timedelta(days=1)

    def test_weekly(self):
        assert next_run_at(NOW, "weekly") == NOW + timedelta(days=7)

    def test_monthly_clamps_day(self):
        assert next_run_at(NOW, "monthly") == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)

    def test_monthly_wraps_year(self):
        dec = datetime(2023, 12, 15, 8, 30, tzinfo=timezone.utc)
        assert next_run_at(dec, "monthly") == datetime(2024, 1, 15, 8, 30, tzinfo=timezone.utc)

    def test_case_insensitive(self):
        assert next_run_at(NOW, "DAILY") == NOW + timedelta(days=1)

    @pytest.mark.parametrize("frequency", ["hourly", "", None])
    def test_unknown_defaults_to_weekly(self, frequency):
        assert next_run_at(NOW, frequency) == NOW + timedelta(days=7)

    def test_exposed_on_scheduler(self):
        assert AuditScheduler.next_run_at(NOW, "daily") == NOW + timedelta(days=1)


class TestTick:

    def test_due_daily_schedule(self, scheduler, store, queue, project):
        now = datetime.now(timezone.utc)
        sched = scheduler.save_schedule("p1", "daily", {"maxPages": 25}, next_run_at=now - timedelta(days=1))

        created = scheduler.tick(now)

        assert len(created) == 1
        audit = store.get_audit(created[0])
        assert audit.status == "PENDING"
        assert audit.project_id == "p1"
        assert audit.options["max_pages"] == 25
        updated = store.get_schedule(sched.id)
        assert updated.last_run_at == now
        assert updated.next_run_at == now + timedelta(days=1)
        assert len(queue.jobs(job_type="run-audit")) == 1

    def test_schedule_not_picked_twice(self, scheduler, project):
        now = datetime.now(timezone.utc)
        scheduler.save_schedule("p1", "weekly", None, next_run_at=now - timedelta(minutes=5))
        assert len(scheduler.tick(now)) == 1
        assert scheduler.tick(now) == []

    def test_inactive_and_future_schedules_skipped(self, scheduler, store, project):
        now = datetime.now(timezone.utc)
        scheduler.save_schedule("p1", "daily", None, next_run_at=now - timedelta(days=1), is_active=False)
        scheduler.save_schedule("p1", "daily", None, next_run_at=now + timedelta(hours=3))
        assert scheduler.tick(now) == []
        assert store.list_audits(project_id="p1") == []

    def test_uses_current_project_url(self, scheduler, store, project):
        now = datetime.now(timezone.utc)
        scheduler.save_schedule("p1", "daily", None, next_run_at=now - timedelta(hours=1))
        store.update_project_url("p1", "https://new.example.com")
        created = scheduler.tick(now)
        assert store.get_audit(created[0]).site_url == "https://new.example.com"

    def test_one_failing_schedule_does_not_block_others(self, scheduler, store, lifecycle, project):
        now = datetime.now(timezone.utc)
        first = scheduler.save_schedule("p1", "daily", None, next_run_at=now - timedelta(hours=2))
        second = scheduler.save_schedule("p1", "weekly", None, next_run_at=now - timedelta(hours=1))

        real_start = lifecycle.start_audit
        calls = []

        def flaky_start(project_id, options=None, site_url=None):
            calls.append(project_id)
            if len(calls) == 1:
                raise RuntimeError("database hiccup")
            return real_start(project_id, options, site_url)

        with patch.object(lifecycle, "start_audit", side_effect=flaky_start):
            created = scheduler.tick(now)

        assert len(created) == 1
        for sched_id, days in ((first.id, 1), (second.id, 7)):
            sched = store.get_schedule(sched_id)
            assert sched.last_run_at == now
            assert sched.next_run_at == now + timedelta(days=days)

    def test_enqueue_failure_still_advances(self, scheduler, store, queue, project, caplog):
        now = datetime.now(timezone.utc)
        sched = scheduler.save_schedule("p1", "daily", None, next_run_at=now - timedelta(hours=1))
        queue.stop()

        with caplog.at_level("ERROR", logger="site_audit.scheduler"):
            created = scheduler.tick(now)

        assert f"Schedule {sched.id} could not start an audit: Failed to queue audit job" in caplog.text

        assert len(created) == 1
        assert store.get_audit(created[0]).status == "FAILED"
        assert store.get_schedule(sched.id).next_run_at == now + timedelta(days=1)

    def test_scan_failure_is_swallowed(self, scheduler, store, caplog):
        with patch.object(store, "due_schedules", side_effect=RuntimeError("db down")):
            with caplog.at_level("ERROR", logger="site_audit.scheduler"):
                assert scheduler.tick() == []
        assert "Due schedule scan failed" in caplog.text
        assert "RuntimeError: db down" in caplog.text


class TestRunSchedule:

    def test_run_schedule(self, scheduler, store, project):
        sched = scheduler.save_schedule("p1", "monthly", None)
        audit_id = scheduler.run_schedule(sched.id)
        assert store.get_audit(audit_id).status == "PENDING"
        assert store.get_schedule(sched.id).last_run_at is not None

    def test_missing_schedule_skipped(self, scheduler, test_db):
        assert scheduler.run_schedule("missing") is None

    def test_inactive_schedule_skipped(self, scheduler, store, project):
        sched = scheduler.save_schedule("p1", "daily", None, is_active=False)
        assert scheduler.run_schedule(sched.id) is None
        assert store.get_schedule(sched.id).last_run_at is None

    def test_trigger_schedule_enqueues_job(self, scheduler, queue, project):
        sched = scheduler.save_schedule("p1", "daily", None)
        job = queue.get_job(scheduler.trigger_schedule(sched.id))
        assert job.job_type == "schedule-audit"
        assert job.payload == {"scheduleId": sched.id}

    def test_trigger_missing_schedule(self, scheduler, test_db):
        with pytest.raises(NotFound):
            scheduler.trigger_schedule("missing")


class TestScheduleManagement:

    def test_save_defaults_first_run_one_period_ahead(self, scheduler, project):
        before = datetime.now(timezone.utc)
        sched = scheduler.save_schedule("p1", "Weekly", None)
        assert sched.frequency == "weekly"
        assert sched.next_run_at >= before + timedelta(days=7)

    def test_save_rejects_unknown_frequency(self, scheduler, project):
        with pytest.raises(InvalidOptions):
            scheduler.save_schedule("p1", "hourly", None)

    def test_delete(self, scheduler, store, project):
        sched = scheduler.save_schedule("p1", "daily", None)
        scheduler.delete_schedule(sched.id)
        assert store.get_schedule(sched.id) is None


class TestSchedulerLifecycle:

    def test_start_registers_repeating_check(self, scheduler, queue):
        scheduler.start()
        assert scheduler.is_running
        assert [r["id"] for r in queue.list_repeating()] == ["repeat:check-audit-schedules"]
        scheduler.stop()
        assert not scheduler.is_running
        assert queue.list_repeating() == []
