"""End-to-end tests for docker_gc/gc_daemon.py against the fake runtime"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from docker_gc.config_manager import ConfigManager
from docker_gc.error_utils import ActionableError
from docker_gc.gc_daemon import ImageGCDaemon
from docker_gc.runtime_client import CONTAINER_DESTROYED, RuntimeEvent, RuntimeObserverError
from docker_gc.usage_ledger import UsageLedger
from docker_gc.usage_store import SqliteUsageStore


def _config(tmp_path, **gc):
    config = ConfigManager(config_file=str(tmp_path / "missing.yaml"), validate=False)
    config.set_override("store", "db_path", str(tmp_path / "db" / "state.db"))
    for key, value in gc.items():
        config.set_override("gc", key, value)
    return config


class TestLifecycle:
    """Tests combining reconciliation, events and sweeps"""

    def test_restart_preserves_history(self, runtime, clock, tmp_path):
        """Test that an image used before a restart is evicted on schedule after it"""
        runtime.add_image("sha256:aaa", ["app:1"])
        db_path = str(tmp_path / "state.db")

        first = ImageGCDaemon(runtime, UsageLedger(SqliteUsageStore(db_path)), clock=clock)
        first.bootstrap()
        first.close()

        clock.advance(hours=48)
        second = ImageGCDaemon(runtime, UsageLedger(SqliteUsageStore(db_path)), clock=clock)
        second.bootstrap()
        assert second.collect().removed == []

        clock.advance(hours=25)
        assert second.collect().removed == ["sha256:aaa"]
        second.close()

    def test_destroy_event_resets_retention_window(self, runtime, clock):
        runtime.add_image("sha256:aaa", ["app:1"])
        daemon = ImageGCDaemon(runtime, UsageLedger(), clock=clock)
        daemon.bootstrap()

        clock.advance(hours=70)
        daemon.ingestor.handle(RuntimeEvent(kind=CONTAINER_DESTROYED, resource_ref="app:1", actor_id="c1"))
        clock.advance(hours=70)

        assert daemon.collect().removed == []
        clock.advance(hours=3)
        assert daemon.collect().removed == ["sha256:aaa"]

    def test_memory_only_operation(self, runtime, clock):
        """Test that the daemon works without a usage store"""
        runtime.add_image("sha256:aaa", ["app:1"])
        daemon = ImageGCDaemon(runtime, UsageLedger(), clock=clock, max_age=timedelta(hours=1))

        daemon.bootstrap()
        clock.advance(hours=2)

        assert daemon.collect().removed == ["sha256:aaa"]
        assert not daemon.ledger.persistent

    def test_start_runs_until_stopped(self, runtime, clock):
        runtime.add_image("sha256:dangling")
        daemon = ImageGCDaemon(runtime, UsageLedger(), clock=clock, purge_frequency=timedelta(milliseconds=10))

        thread = threading.Thread(target=daemon.start, daemon=True)
        thread.start()
        try:
            for _ in range(500):
                if runtime.removed:
                    break
                threading.Event().wait(0.01)
        finally:
            daemon.stop()
            thread.join(5)

        assert not thread.is_alive()
        assert runtime.removed == ["sha256:dangling"]


class TestFromConfig:
    """Tests for ImageGCDaemon.from_config"""

    def test_builds_daemon_from_config(self, runtime, tmp_path):
        config = _config(tmp_path, max_age="1h30m", purge_frequency="10s", dry_run=True)

        daemon = ImageGCDaemon.from_config(config, runtime=runtime)
        try:
            assert daemon.max_age == timedelta(hours=1, minutes=30)
            assert daemon.scheduler.interval == 10
            assert daemon.collector.dry_run
            assert daemon.ledger.persistent
        finally:
            daemon.close()

    def test_unreachable_docker_raises_actionable_error(self, runtime, tmp_path):
        runtime.fail_on["ping"] = RuntimeObserverError("connection refused")

        with pytest.raises(ActionableError) as exc_info:
            ImageGCDaemon.from_config(_config(tmp_path), runtime=runtime)

        assert "Failed to connect to Docker daemon" in exc_info.value.message

    def test_unopenable_store_falls_back_to_memory(self, runtime, tmp_path):
        with patch("docker_gc.gc_daemon.open_usage_store", return_value=None):
            daemon = ImageGCDaemon.from_config(_config(tmp_path), runtime=runtime)

        assert not daemon.ledger.persistent
        daemon.close()


class TestEventsDuringSweep:
    """Tests that event updates and sweeps are applied one at a time"""

    def _blocking_sweep(self, runtime, daemon):
        """Start a sweep that blocks inside its first image removal"""
        removing = threading.Event()
        release = threading.Event()

        def block(image_id):
            removing.set()
            release.wait(5)

        runtime.on_remove = block
        sweep = threading.Thread(target=daemon.collect, daemon=True)
        sweep.start()
        assert removing.wait(5)
        return sweep, release

    def test_event_waits_for_running_sweep(self, runtime, clock):
        """Test that a destroy event is only recorded once the sweep releases the ledger"""
        runtime.add_image("sha256:old", ["old:1"])
        runtime.add_image("sha256:app", ["app:1"])
        daemon = ImageGCDaemon(runtime, UsageLedger(), clock=clock)
        daemon.ledger.set("sha256:old", clock.now - timedelta(hours=100))
        daemon.ledger.set("sha256:app", clock.now - timedelta(hours=10))
        sweep, release = self._blocking_sweep(runtime, daemon)

        event = RuntimeEvent(kind=CONTAINER_DESTROYED, resource_ref="app:1", actor_id="c1")
        ingest = threading.Thread(target=daemon.ingestor.handle, args=(event,), daemon=True)
        ingest.start()
        ingest.join(0.2)

        assert ingest.is_alive()
        assert daemon.ingestor.processed == 0

        release.set()
        sweep.join(5)
        ingest.join(5)

        assert daemon.ingestor.processed == 1
        assert daemon.ledger.get("sha256:app") == clock.now
        assert "sha256:old" not in daemon.ledger

    def test_event_for_image_removed_by_sweep_leaves_no_record(self, runtime, clock, tmp_path):
        """Test that an event racing the removal of its image does not resurrect the record"""
        runtime.add_image("sha256:zzz", ["app:z"])
        store = SqliteUsageStore(str(tmp_path / "state.db"))
        daemon = ImageGCDaemon(runtime, UsageLedger(store), clock=clock)
        daemon.ledger.set("sha256:zzz", clock.now - timedelta(hours=100))
        sweep, release = self._blocking_sweep(runtime, daemon)

        event = RuntimeEvent(kind=CONTAINER_DESTROYED, resource_ref="app:z", actor_id="c1")
        ingest = threading.Thread(target=daemon.ingestor.handle, args=(event,), daemon=True)
        ingest.start()
        ingest.join(0.2)
        release.set()
        sweep.join(5)
        ingest.join(5)

        assert runtime.removed == ["sha256:zzz"]
        assert "sha256:zzz" not in daemon.ledger
        assert store.load_all() == {}
        assert daemon.ingestor.dropped == 1
        daemon.close()


class TestStartup:
    """Tests for the order of startup steps"""

    def test_subscribes_to_events_before_reconciling(self, runtime, clock):
        """Test that containers destroyed while reconciling are not missed"""
        runtime.add_image("sha256:aaa", ["app:1"])
        runtime.add_container("c1", "app:1", exited=True, finished_at=clock.now - timedelta(hours=5))
        runtime.events = [RuntimeEvent(kind=CONTAINER_DESTROYED, resource_ref="app:1", actor_id="c1")]
        daemon = ImageGCDaemon(runtime, UsageLedger(), clock=clock)
        subscriptions_at_reconcile = []
        reconcile = daemon.bootstrapper.reconcile

        def recording_reconcile():
            subscriptions_at_reconcile.append(runtime.subscriptions)
            return reconcile()

        daemon.bootstrapper.reconcile = recording_reconcile

        thread = threading.Thread(target=daemon.start, daemon=True)
        thread.start()
        try:
            for _ in range(500):
                if subscriptions_at_reconcile and daemon.ingestor.processed:
                    break
                threading.Event().wait(0.01)
        finally:
            daemon.stop()
            thread.join(5)

        assert subscriptions_at_reconcile and subscriptions_at_reconcile[0] >= 1
        assert daemon.ledger.get("sha256:aaa") == clock.now
