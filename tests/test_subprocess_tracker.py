from __future__ import annotations

import json
import signal
from pathlib import Path
from unittest.mock import patch

from workbridge.core import subprocess_tracker


class TestSubprocessTracker:
    def test_track_persists_pid_file(self, tmp_path: Path):
        pid_file = tmp_path / "children.json"
        subprocess_tracker.set_pid_file(pid_file)

        subprocess_tracker.track(1234, "cloudflared")
        assert json.loads(pid_file.read_text()) == {"1234": "cloudflared"}

        subprocess_tracker.untrack(1234)
        assert json.loads(pid_file.read_text()) == {}
        assert subprocess_tracker.tracked() == {}

    def test_untrack_unknown_pid(self):
        # Should not raise
        subprocess_tracker.untrack(99999)

    def test_terminate_all_signals_every_child(self):
        subprocess_tracker.track(111, "cloudflared")
        subprocess_tracker.track(222, "cloudflared")
        with patch("workbridge.core.subprocess_tracker.os.kill") as kill:
            subprocess_tracker.terminate_all()
        assert sorted(c.args for c in kill.call_args_list) == [
            (111, signal.SIGTERM), (222, signal.SIGTERM),
        ]
        assert subprocess_tracker.tracked() == {}

    def test_terminate_all_ignores_dead_processes(self):
        subprocess_tracker.track(333, "cloudflared")
        with patch("workbridge.core.subprocess_tracker.os.kill", side_effect=ProcessLookupError):
            subprocess_tracker.terminate_all()
        assert subprocess_tracker.tracked() == {}

    def test_reap_stale(self, tmp_path: Path):
        pid_file = tmp_path / "children.json"
        pid_file.write_text(json.dumps({"444": "cloudflared", "555": "cloudflared", "junk": "x"}))
        subprocess_tracker.set_pid_file(pid_file)

        def fake_kill(pid, sig):
            if pid == 555:
                raise ProcessLookupError

        with patch("workbridge.core.subprocess_tracker.os.kill", side_effect=fake_kill) as kill:
            assert subprocess_tracker.reap_stale() == 1

        assert kill.call_count == 2
        assert json.loads(pid_file.read_text()) == {}

    def test_reap_stale_without_file(self, tmp_path: Path):
        subprocess_tracker.set_pid_file(tmp_path / "missing.json")
        assert subprocess_tracker.reap_stale() == 0

    def test_reap_stale_unreadable_file(self, tmp_path: Path):
        pid_file = tmp_path / "children.json"
        pid_file.write_text("{broken")
        subprocess_tracker.set_pid_file(pid_file)
        assert subprocess_tracker.reap_stale() == 0
