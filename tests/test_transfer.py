import time
from pathlib import Path
from shutil import which

import pytest

import backup_to_server as bts
from conftest import FakeNotifier


def test_remote_rsync_command(make_config, source_dir):
    cfg = make_config(
        ssh_port=2222,
        exclude_file=Path("/etc/backup/exclude.patterns"),
        remote_log_path="logs/rsync.log",
    )

    assert bts.build_rsync_command(cfg, "2025-01-15") == [
        "rsync",
        "-az",
        "--exclude-from=/etc/backup/exclude.patterns",
        "--delete",
        "--delete-excluded",
        "--delete-delay",
        "--backup",
        "--backup-dir=../old/2025-01-15",
        "-e",
        "ssh -p 2222",
        "--remote-option=--log-file=logs/rsync.log",
        f"{source_dir}/",
        "joe@server:backup/joe/current",
    ]


def test_local_rsync_command(make_config, source_dir, tmp_path):
    dest = tmp_path / "dst"
    cfg = make_config(
        destination=bts.Destination("joe", "", str(dest)),
        remote_log_path=str(tmp_path / "rsync.log"),
    )

    rsync_cmd = bts.build_rsync_command(cfg, "run-1", progress=True)

    assert "-e" not in rsync_cmd
    assert f"--log-file={tmp_path / 'rsync.log'}" in rsync_cmd
    assert "--info=progress2" in rsync_cmd
    assert "--backup-dir=../old/run-1" in rsync_cmd
    assert rsync_cmd[-2:] == [f"{source_dir}/", f"{dest}/current"]


def test_rsync_command_uses_multiplexed_ssh(make_config):
    rsync_cmd = bts.build_rsync_command(make_config(multiplex=True), "x")
    ssh = rsync_cmd[rsync_cmd.index("-e") + 1]
    assert ssh.startswith("ssh -p 22 -o ControlMaster=auto")


def test_run_transfer_returns_rsync_status(monkeypatch, make_config):
    seen = []

    def fake_run(cmd, **kwargs):
        seen.append(cmd)
        return bts.subprocess.CompletedProcess(cmd, 23)

    monkeypatch.setattr(bts.subprocess, "run", fake_run)
    assert bts.run_transfer(make_config(), "2025-01-15") == 23
    assert seen[0][0] == "rsync"


def test_run_transfer_without_rsync(monkeypatch, make_config):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", "rsync")

    monkeypatch.setattr(bts.subprocess, "run", fake_run)
    assert bts.run_transfer(make_config(), "2025-01-15") == 127


def test_latest_progress(tmp_path):
    side_channel = tmp_path / "progress"
    side_channel.write_text(
        "sending incremental file list\n"
        "      1,024  10%    1.00MB/s    0:00:01\r"
        "      2,048  20%    1.00MB/s    0:00:02\r",
        encoding="utf-8",
    )
    assert bts.latest_progress(side_channel) == "2,048  20%    1.00MB/s    0:00:02"


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_progress_watcher_pushes_new_lines_and_stops(tmp_path):
    side_channel = tmp_path / "progress"
    side_channel.write_text("  512  50%  1.00MB/s\r", encoding="utf-8")
    notifier = FakeNotifier()

    watcher = bts.ProgressWatcher(side_channel, 0.01, notifier)
    watcher.start()
    assert wait_for(lambda: notifier.calls)
    watcher.stop()

    assert not watcher.is_alive()
    assert notifier.calls[0] == ("Backup in progress", "512  50%  1.00MB/s", "low")
    # unchanged progress is not repeated
    assert len(notifier.calls) == 1


def test_progress_watcher_survives_errors(tmp_path):
    class BrokenNotifier:
        calls = 0

        def notify(self, title, body, urgency="normal"):
            BrokenNotifier.calls += 1
            raise RuntimeError("display gone")

    side_channel = tmp_path / "progress"
    side_channel.write_text("1%\r", encoding="utf-8")
    watcher = bts.ProgressWatcher(side_channel, 0.01, BrokenNotifier())
    watcher.start()
    assert wait_for(lambda: BrokenNotifier.calls >= 1)
    side_channel.write_text("2%\r", encoding="utf-8")
    assert wait_for(lambda: BrokenNotifier.calls >= 2)
    watcher.stop()
    assert not watcher.is_alive()


_original_init = bts.ProgressWatcher.__init__


def _fast_watcher_init(self, path, interval, notifier):
    _original_init(self, path, 0.01, notifier)


def test_run_transfer_with_progress_observer(monkeypatch, make_config):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        stdout = kwargs["stdout"]
        seen["path"] = Path(stdout.name)
        stdout.write("  100  100%  1.00MB/s\r")
        stdout.flush()
        time.sleep(0.2)
        return bts.subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(bts.subprocess, "run", fake_run)
    notifier = FakeNotifier()
    cfg = make_config(notify_enabled=True, progress_interval=1)
    monkeypatch.setattr(bts.ProgressWatcher, "__init__", _fast_watcher_init)

    assert bts.run_transfer(cfg, "2025-01-15", notifier) == 0
    assert "--info=progress2" in seen["cmd"]
    assert not seen["path"].exists()
    assert ("Backup in progress", "100  100%  1.00MB/s", "low") in notifier.calls


def test_no_progress_observer_without_notifications(monkeypatch, make_config):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["stdout"] = kwargs["stdout"]
        seen["cmd"] = cmd
        return bts.subprocess.CompletedProcess(cmd, 0)

    monkeypatch.setattr(bts.subprocess, "run", fake_run)
    cfg = make_config(notify_enabled=False, progress_interval=5)

    assert bts.run_transfer(cfg, "2025-01-15", FakeNotifier()) == 0
    assert seen["stdout"] is None
    assert "--info=progress2" not in seen["cmd"]


@pytest.mark.skipif(which("rsync") is None or which("bash") is None, reason="needs rsync and bash")
def test_local_backup_keeps_replaced_and_deleted_files(make_config, source_dir, tmp_path):
    dest = tmp_path / "dst"
    cfg = make_config(destination=bts.Destination("joe", "", str(dest)))
    shell = bts.HostShell.from_config(cfg)
    bts.prepare(cfg, shell, bts.RunState())

    assert bts.run_transfer(cfg, "run1") == 0
    assert (dest / "current" / "notes.txt").read_text(encoding="utf-8") == "hello"
    assert not (dest / "old" / "run1").exists()

    (source_dir / "notes.txt").write_text("changed", encoding="utf-8")
    (source_dir / "extra.txt").write_text("extra", encoding="utf-8")
    assert bts.run_transfer(cfg, "run2") == 0
    assert (dest / "current" / "notes.txt").read_text(encoding="utf-8") == "changed"
    assert (dest / "old" / "run2" / "notes.txt").read_text(encoding="utf-8") == "hello"

    (source_dir / "extra.txt").unlink()
    assert bts.run_transfer(cfg, "run3") == 0
    assert not (dest / "current" / "extra.txt").exists()
    assert (dest / "old" / "run3" / "extra.txt").read_text(encoding="utf-8") == "extra"
