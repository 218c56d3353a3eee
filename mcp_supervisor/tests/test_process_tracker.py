import json
import subprocess
import sys
import time

from mcp_supervisor.process_tracker import ProcessTracker


def test_register_and_unregister_persist(tmp_path):
    path = tmp_path / "procs.json"
    tracker = ProcessTracker(path)
    tracker.register("fs", 1234)
    tracker.register("web", 5678)
    assert json.loads(path.read_text()) == {"fs": 1234, "web": 5678}

    tracker.unregister("fs")
    tracker.unregister("never-registered")
    assert ProcessTracker(path).pids == {"web": 5678}


def test_cleanup_terminates_live_orphans(tmp_path):
    orphan = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    try:
        path = tmp_path / "procs.json"
        ProcessTracker(path).register("sleepy", orphan.pid)

        tracker = ProcessTracker(path)
        assert tracker.cleanup_orphaned_processes() == 1
        deadline = time.monotonic() + 5
        while orphan.poll() is None and time.monotonic() < deadline:
            time.sleep(0.05)
        assert orphan.poll() is not None
        assert json.loads(path.read_text()) == {}
    finally:
        if orphan.poll() is None:
            orphan.kill()


def test_cleanup_skips_dead_pids(tmp_path):
    finished = subprocess.Popen([sys.executable, "-c", "pass"])
    finished.wait()
    tracker = ProcessTracker(tmp_path / "procs.json")
    tracker.register("gone", finished.pid)
    assert tracker.cleanup_orphaned_processes() == 0
    assert tracker.pids == {}


def test_unreadable_file_starts_empty(tmp_path):
    path = tmp_path / "procs.json"
    path.write_text("{oops")
    assert ProcessTracker(path).pids == {}
