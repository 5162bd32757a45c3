from datetime import datetime, timedelta, timezone

import pytest

from checkpoint import CaptureError, CheckpointError, CheckpointService, Outcome
from checkpoint.destinations import Destination, DestinationChain, LocalDestination
from checkpoint.errors import DeliveryError
from checkpoint.locks import ProjectLock

T0 = datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)


class StubLogger:
    def __init__(self):
        self.events = []

    def event(self, *, event, phase, ok, **extra):
        self.events.append(event)

    def info(self, event, **extra):
        self.events.append(event)

    def warning(self, event, **extra):
        self.events.append(event)

    def error(self, event, **extra):
        self.events.append(event)


class Clock:
    def __init__(self, moment):
        self.moment = moment

    def __call__(self):
        return self.moment


class SwitchableDestination(Destination):
    def __init__(self, name, healthy=True):
        self.name = name
        self.healthy = healthy
        self.received = []

    def is_healthy(self):
        return self.healthy

    def deliver(self, source, target):
        if not self.healthy:
            raise DeliveryError(f"ENET001: {self.name} is down")
        self.received.append(target)


@pytest.fixture()
def project(tmp_path, monkeypatch):
    monkeypatch.setenv("CHECKPOINT_CONFIG_HOME", str(tmp_path / "config-home"))
    root = tmp_path / "project"
    root.mkdir()
    return root


def _service(project, clock, **kwargs):
    kwargs.setdefault("settings", {})
    return CheckpointService(project, clock=clock, sleep=lambda _: None, **kwargs)


def test_capture_reconstruct_and_diff(project):
    clock = Clock(T0)
    service = _service(project, clock)
    config = project / "config.json"
    config.write_text('{"v": 1}', encoding="utf-8")

    first = service.capture_now()
    config.write_text('{"v": 2}', encoding="utf-8")
    clock.moment = T0 + timedelta(hours=1)
    second = service.capture_now()

    assert (first.outcome, first.added) == (Outcome.SUCCESS, 1)
    assert (second.modified, second.archived) == (1, 1)
    assert service.capture_points() == ["20260101_100000", "20260101_090000"]
    assert service.reconstruct("config.json", "20260101_093000").read_bytes() == b'{"v": 1}'
    assert service.reconstruct("config.json", "now").read_bytes() == b'{"v": 2}'
    assert service.diff().empty
    assert service.store.current_items() == ["config.json"]


def test_deleted_file_is_reported_removed_once(project):
    clock = Clock(T0)
    service = _service(project, clock)
    (project / "keep.txt").write_text("k", encoding="utf-8")
    doomed = project / "doomed.txt"
    doomed.write_text("d", encoding="utf-8")
    service.capture_now()

    doomed.unlink()
    clock.moment = T0 + timedelta(hours=1)
    first = service.capture_now()
    clock.moment = T0 + timedelta(hours=2)
    second = service.capture_now()

    assert first.removed == 1
    assert second.removed == 0
    assert service.diff().removed == ["doomed.txt"]
    assert service.reconstruct("doomed.txt", "now").read_bytes() == b"d"

    doomed.write_text("d", encoding="utf-8")
    clock.moment = T0 + timedelta(hours=3)
    service.capture_now()
    doomed.unlink()
    clock.moment = T0 + timedelta(hours=4)
    assert service.capture_now().removed == 1


def test_capture_is_skipped_while_locked(project):
    service = _service(project, Clock(T0))
    (project / "a.txt").write_text("a", encoding="utf-8")
    holder = ProjectLock(service.backup_dir)
    assert holder.acquire()
    try:
        result = service.capture_now()
        assert service.prune() is None
        assert service.process_queue() is None
    finally:
        holder.release()

    assert result.outcome is Outcome.SKIPPED
    assert result.timestamp is None
    assert service.journal.records() == []
    assert service.capture_now().outcome is Outcome.SUCCESS


def test_capture_stamps_never_go_backwards(project):
    clock = Clock(T0)
    service = _service(project, clock)
    target = project / "a.txt"
    target.write_text("1", encoding="utf-8")
    service.capture_now()

    target.write_text("2", encoding="utf-8")
    clock.moment = T0 - timedelta(minutes=10)
    result = service.capture_now()

    assert result.timestamp == "20260101_090001"
    assert [record.timestamp for record in service.journal.records()] == ["20260101_090000", "20260101_090001"]


def test_healthy_secondary_receives_artifacts_without_queueing(project):
    primary = SwitchableDestination("cloud", healthy=False)
    secondary = SwitchableDestination("remote")
    backup_dir = project / "backups"
    chain = DestinationChain([primary, secondary, LocalDestination(backup_dir)], logger=StubLogger())
    service = _service(project, Clock(T0), chain=chain)
    (project / "a.txt").write_text("a", encoding="utf-8")

    result = service.capture_now()

    assert result.destination == "remote"
    assert secondary.received == ["files/a.txt"]
    assert result.queue_depth == 0


def test_unhealthy_chain_queues_then_drains(project):
    primary = SwitchableDestination("cloud", healthy=False)
    secondary = SwitchableDestination("remote", healthy=False)
    backup_dir = project / "backups"
    chain = DestinationChain([primary, secondary, LocalDestination(backup_dir)], logger=StubLogger())
    clock = Clock(T0)
    service = _service(project, clock, chain=chain)
    (project / "a.txt").write_text("a", encoding="utf-8")
    (project / "b.txt").write_text("b", encoding="utf-8")

    result = service.capture_now()

    assert result.destination == "local"
    assert result.enqueued == 2
    assert service.queue.depth() == 2

    secondary.healthy = True
    report = service.process_queue()

    assert report.delivered == 2
    assert report.remaining == 0
    assert sorted(secondary.received) == ["files/a.txt", "files/b.txt"]
    status = service.queue_status()
    assert status["enqueued"] - status["delivered"] - status["dead_lettered"] == status["depth"] == 0


def test_backlog_drains_before_new_delivery(project):
    remote = SwitchableDestination("cloud", healthy=False)
    chain = DestinationChain([remote, LocalDestination(project / "backups")], logger=StubLogger())
    clock = Clock(T0)
    service = _service(project, clock, chain=chain)
    target = project / "a.txt"
    target.write_text("1", encoding="utf-8")
    service.capture_now()
    assert service.queue.depth() == 1

    remote.healthy = True
    target.write_text("2", encoding="utf-8")
    clock.moment = T0 + timedelta(hours=1)
    result = service.capture_now()

    assert result.queue.delivered == 1
    assert result.destination == "cloud"
    assert result.queue_depth == 0
    assert remote.received[0] == "files/a.txt"
    assert len(remote.received) == 3


def test_unwritable_store_raises_and_is_journaled(project, monkeypatch):
    service = _service(project, Clock(T0))
    (project / "a.txt").write_text("a", encoding="utf-8")
    monkeypatch.setattr("checkpoint.store.is_writable_dir", lambda path, **_: False)

    with pytest.raises(CaptureError):
        service.capture_now()

    assert service.journal.last().outcome == "failed"
    assert (project / "a.txt").read_text(encoding="utf-8") == "a"


def test_periodic_prune_runs_when_due(project):
    clock = Clock(T0)
    service = _service(project, clock)
    target = project / "a.txt"
    for hour, text in enumerate(["1", "2", "3"]):
        target.write_text(text, encoding="utf-8")
        clock.moment = T0 + timedelta(hours=hour)
        result = service.capture_now()
        if hour == 0:
            assert result.pruned is not None
        else:
            assert result.pruned is None

    clock.moment = T0 + timedelta(days=3)
    result = service.capture_now()

    assert result.pruned is not None
    assert len(result.pruned.removed) == 1
    survivors = service.store.archived_versions("a.txt")
    assert [version.captured_at for version in survivors] == [T0 + timedelta(hours=1)]


def test_prune_dry_run_and_stats(project):
    clock = Clock(T0)
    service = _service(project, clock)
    target = project / "a.txt"
    for hour in range(3):
        target.write_text(str(hour), encoding="utf-8")
        clock.moment = T0 + timedelta(hours=hour)
        service.capture_now()

    later = T0 + timedelta(days=2)
    stats = service.retention_stats(now=later)
    summary = service.prune(dry_run=True, now=later)

    assert stats.tiers["daily"].count == 2
    assert stats.tiers["daily"].prunable == 1
    assert summary.dry_run
    assert len(summary.removed) == 1
    assert len(service.store.archived_versions("a.txt")) == 2


def test_dumps_are_versioned_with_capture(project, tmp_path):
    clock = Clock(T0)
    service = _service(project, clock)
    (project / "a.txt").write_text("a", encoding="utf-8")
    dump = tmp_path / "app.sql.gz"
    dump.write_bytes(b"first")

    result = service.capture_now(dumps={"app_db": dump})
    dump.write_bytes(b"second")
    clock.moment = T0 + timedelta(hours=1)
    stored = service.store_dump("app_db", dump)

    assert result.dumps == 1
    assert stored.name == "app_db_20260101_100000.sql.gz"
    assert service.reconstruct_dump("app_db", "20260101_093000").read_bytes() == b"first"
    assert service.reconstruct_dump("app_db", "now").read_bytes() == b"second"


def test_newest_dump_is_never_a_retention_candidate(project, tmp_path):
    clock = Clock(T0)
    service = _service(project, clock)
    dump = tmp_path / "app.sql"
    dump.write_bytes(b"only")
    service.store_dump("app_db", dump)

    summary = service.prune(now=T0 + timedelta(days=800))

    assert summary.removed == []
    assert len(service.store.dump_versions("app_db")) == 1


def test_encryption_without_wrapper_is_a_configuration_error(project):
    with pytest.raises(CheckpointError) as excinfo:
        CheckpointService(project, settings={"encryption": {"enabled": True}})

    assert "ECONF001" in str(excinfo.value)


def test_project_settings_file_is_honoured(project):
    (project / ".checkpoint.json").write_text('{"store": {"backup_dir": ".snapshots"}}', encoding="utf-8")

    service = CheckpointService(project, clock=Clock(T0))

    assert service.backup_dir == project / ".snapshots"


def test_restore_and_history_through_service(project):
    clock = Clock(T0)
    service = _service(project, clock)
    target = project / "a.txt"
    target.write_text("old", encoding="utf-8")
    service.capture_now()
    target.write_text("new", encoding="utf-8")
    clock.moment = T0 + timedelta(hours=1)
    service.capture_now()

    entries = service.history("a.txt")
    outcome = service.restore("a.txt", at="20260101_093000")

    assert [entry.current for entry in entries] == [True, False]
    assert target.read_text(encoding="utf-8") == "old"
    assert outcome["restored"] == ["a.txt"]
    assert service.status()["last_capture"]["timestamp"] == "20260101_100000"
