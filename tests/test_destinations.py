import os
import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest
import requests

from checkpoint.destinations import (
    Destination,
    DestinationChain,
    FolderDestination,
    HttpDestination,
    LocalDestination,
    build_chain,
)
from checkpoint.errors import DeliveryError
from checkpoint.logs import CheckpointLogger


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


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, health_status=200, put_status=201, fail=False):
        self.health_status = health_status
        self.put_status = put_status
        self.fail = fail
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append(("GET", url, headers))
        if self.fail:
            raise requests.ConnectionError("connection refused")
        return FakeResponse(self.health_status)

    def put(self, url, data=None, headers=None, timeout=None):
        self.calls.append(("PUT", url, headers, data.read()))
        if self.fail:
            raise requests.ConnectionError("connection refused")
        return FakeResponse(self.put_status)


class StaticDestination(Destination):
    def __init__(self, name, healthy=True, fail_targets=()):
        self.name = name
        self.healthy = healthy
        self.fail_targets = set(fail_targets)
        self.received = []

    def is_healthy(self):
        return self.healthy

    def deliver(self, source, target):
        if target in self.fail_targets:
            raise DeliveryError(f"ENET001: refused {target}")
        self.received.append(target)


class HangingDestination(Destination):
    name = "hanging"

    def __init__(self):
        self.release = threading.Event()

    def is_healthy(self):
        self.release.wait(5)
        return True

    def deliver(self, source, target):
        raise AssertionError("never reached")


def _artifact(tmp_path, name="files/a.txt", data=b"payload"):
    source = tmp_path / "store" / name
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_bytes(data)
    return source, name


def test_folder_destination_requires_existing_sync_root(tmp_path):
    missing = FolderDestination("cloud", tmp_path / "not-mounted", "proj")
    assert not missing.is_healthy()
    assert not (tmp_path / "not-mounted").exists()

    (tmp_path / "sync").mkdir()
    present = FolderDestination("cloud", tmp_path / "sync", "proj")
    assert present.is_healthy()
    assert (tmp_path / "sync" / "proj").is_dir()


def test_folder_destination_delivers_atomically(tmp_path):
    (tmp_path / "sync").mkdir()
    destination = FolderDestination("cloud", tmp_path / "sync", "proj")
    source, target = _artifact(tmp_path)

    destination.deliver(source, target)

    delivered = tmp_path / "sync" / "proj" / "files" / "a.txt"
    assert delivered.read_bytes() == b"payload"
    assert [path.name for path in delivered.parent.iterdir()] == ["a.txt"]


def test_folder_destination_reports_missing_source(tmp_path):
    (tmp_path / "sync").mkdir()
    destination = FolderDestination("cloud", tmp_path / "sync", "proj")

    with pytest.raises(DeliveryError):
        destination.deliver(tmp_path / "absent.bin", "files/absent.bin")


def test_http_destination_health_and_put(tmp_path):
    session = FakeSession()
    destination = HttpDestination("remote", "https://backup.example/api/", token="s3cr3t-token", session=session)
    source, target = _artifact(tmp_path)

    assert destination.is_healthy()
    destination.deliver(source, target)

    assert session.calls[0][1] == "https://backup.example/api/health"
    method, url, headers, body = session.calls[1]
    assert (method, url, body) == ("PUT", "https://backup.example/api/files/a.txt", b"payload")
    assert headers == {"Authorization": "Bearer s3cr3t-token"}
    assert destination.describe()["token"] == "s3c***en"


def test_http_destination_failures(tmp_path):
    source, target = _artifact(tmp_path)

    assert not HttpDestination("remote", "https://x", session=FakeSession(health_status=503)).is_healthy()
    assert not HttpDestination("remote", "https://x", session=FakeSession(fail=True)).is_healthy()
    with pytest.raises(DeliveryError) as excinfo:
        HttpDestination("remote", "https://x", session=FakeSession(put_status=500)).deliver(source, target)
    assert str(excinfo.value).startswith("ENET001")


def test_chain_resolves_first_healthy_in_order(tmp_path):
    primary = StaticDestination("cloud", healthy=False)
    secondary = StaticDestination("remote", healthy=True)
    chain = DestinationChain([primary, secondary, LocalDestination(tmp_path)], logger=StubLogger())

    assert chain.resolve() is secondary
    secondary.healthy = False
    assert chain.resolve().local
    assert chain.resolve(include_local=False) is None


def test_chain_delivers_to_resolved_destination(tmp_path):
    secondary = StaticDestination("remote", fail_targets={"files/b.txt"})
    logger = StubLogger()
    chain = DestinationChain([StaticDestination("cloud", healthy=False), secondary], logger=logger)
    artifacts = [_artifact(tmp_path, "files/a.txt"), _artifact(tmp_path, "files/b.txt")]

    outcome = chain.deliver(artifacts)

    assert outcome.destination == "remote"
    assert outcome.delivered == ["files/a.txt"]
    assert outcome.failed == ["files/b.txt"]
    assert "delivery_failed" in logger.events


def test_chain_falls_back_to_local(tmp_path):
    chain = DestinationChain([StaticDestination("cloud", healthy=False), LocalDestination(tmp_path)], logger=StubLogger())

    outcome = chain.deliver([_artifact(tmp_path)])

    assert outcome.local_only
    assert outcome.destination == "local"
    assert outcome.delivered == ["files/a.txt"]


def test_chain_without_any_destination_fails_everything(tmp_path):
    chain = DestinationChain([StaticDestination("cloud", healthy=False)], logger=StubLogger())

    outcome = chain.deliver([_artifact(tmp_path)])

    assert outcome.destination == "none"
    assert outcome.failed == ["files/a.txt"]


def test_hung_health_check_counts_as_unhealthy(tmp_path):
    hanging = HangingDestination()
    logger = StubLogger()
    chain = DestinationChain([hanging, LocalDestination(tmp_path)], logger=logger, timeout_s=0.1)
    try:
        assert chain.resolve().local
    finally:
        hanging.release.set()
    assert "destination_health_timeout" in logger.events


def test_hung_destination_does_not_delay_process_exit(tmp_path):
    script = textwrap.dedent(
        """
        import time

        from checkpoint.destinations import Destination, DestinationChain

        class Sleeper(Destination):
            name = "cloud"

            def is_healthy(self):
                time.sleep(30)
                return True

        class QuietLogger:
            def warning(self, event, **extra):
                pass

            def info(self, event, **extra):
                pass

        chain = DestinationChain([Sleeper()], logger=QuietLogger(), timeout_s=0.2)
        assert chain.check(chain.destinations[0]) is False
        """
    )
    repo_root = Path(__file__).resolve().parents[1]
    env = dict(os.environ, PYTHONPATH=str(repo_root), CHECKPOINT_CONFIG_HOME=str(tmp_path / "cfg"))
    started = time.monotonic()
    result = subprocess.run(
        [sys.executable, "-c", script], cwd=tmp_path, env=env, capture_output=True, text=True, timeout=25
    )

    assert result.returncode == 0, result.stderr
    assert time.monotonic() - started < 10


def test_build_chain_from_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("CHECKPOINT_TOKEN", "abcdefgh")
    project = tmp_path / "myproj"
    block = {
        "cloud_folder": str(tmp_path / "Dropbox"),
        "http_url": "https://backup.example/api",
        "http_token_env": "CHECKPOINT_TOKEN",
        "timeout_s": 3,
    }

    chain = build_chain(
        block,
        project_root=project,
        backup_dir=project / "backups",
        logger=CheckpointLogger(project / "backups"),
        session=FakeSession(),
    )

    names = [destination.name for destination in chain.destinations]
    assert names == ["cloud", "remote", "local"]
    assert chain.destinations[0].root == tmp_path / "Dropbox" / "myproj"
    assert chain.destinations[1].base_url == "https://backup.example/api/myproj"
    assert [destination.name for destination in chain.remote] == ["cloud", "remote"]


def test_build_chain_defaults_to_local_only(tmp_path):
    chain = build_chain(None, project_root=tmp_path, backup_dir=tmp_path / "backups", logger=StubLogger())

    assert [destination.name for destination in chain.destinations] == ["local"]
    assert chain.remote == []
