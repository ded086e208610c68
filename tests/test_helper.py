"""
Tests for the tunnel helper program and its SSH utilities.
"""

import json
import os
import shlex
import socket
import subprocess
import sys
import textwrap
import time
from pathlib import Path

import pytest

from spank_tunnel.helper import StepState, build_parser, main, wait_for_listener
from spank_tunnel.tunnel.ssh import SSH_OPTIONS, build_ssh_argv, pick_bound_port, port_is_free


class TestBuildSshArgv:
    """Tests for build_ssh_argv function."""

    def test_local_forward(self):
        argv = build_ssh_argv("ssh -F cfg", "-p 2200", "node01", 10000, 2222)
        assert argv == [
            "ssh", "-F", "cfg", *SSH_OPTIONS, "-p", "2200",
            "-L", "10000:localhost:2222", "-N", "node01",
        ]

    def test_reverse_forward_with_user_and_remote_command(self):
        argv = build_ssh_argv("ssh", "", "login1", 10000, 2222, reverse=True, user="alice",
                              remote_cmd=["spank-tunnel-helper", "-i", "1.0", "--hold", "10000"])
        assert "-R" in argv and "-L" not in argv
        assert "-N" not in argv
        assert argv[argv.index("alice@login1") + 1:] == ["spank-tunnel-helper", "-i", "1.0", "--hold", "10000"]


class TestPorts:
    """Tests for bound port selection."""

    def test_ephemeral_port(self):
        port = pick_bound_port()
        assert 0 < port < 65536

    def test_busy_port_moves_up(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            taken = busy.getsockname()[1]
            assert not port_is_free(taken)
            assert pick_bound_port(taken) > taken

    def test_wait_for_listener(self):
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
                server.bind(("127.0.0.1", 0))
                server.listen(1)
                assert wait_for_listener(server.getsockname()[1], proc, timeout=2)
        finally:
            proc.kill()
            proc.wait()

    def test_wait_for_listener_process_exit(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        assert not wait_for_listener(pick_bound_port(), proc, timeout=2)


class TestParser:
    """Tests for the helper's command-line parsing."""

    def test_remove_with_wait_rejected(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["-i", "1.0", "-r", "-w", "--state-dir", str(tmp_path)])
        assert exc_info.value.code == 2

    def test_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-i", "1.0", "-c", "-r"])

    def test_mode_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-i", "1.0"])

    def test_connect_requires_node(self, tmp_path):
        with pytest.raises(SystemExit):
            main(["-i", "1.0", "-c", "--state-dir", str(tmp_path)])

    def test_dash_values_in_name_value_form(self):
        args = build_parser().parse_args(
            ["-i", "1.0", "-c", "-t", "n1", "--ssh-args=-o BatchMode=yes", "--ssh-args=-q", "--", "-x"]
        )
        assert args.ssh_args == "-q"
        assert args.task_args == ["-x"]


class TestGreetAndRemove:
    """Tests for greet and remove modes."""

    def test_greet_without_record(self, tmp_path, capsys):
        assert main(["-i", "5.0", "-g", "--state-dir", str(tmp_path)]) == 1
        assert capsys.readouterr().out == ""

    def test_greet_prints_record(self, tmp_path, capsys):
        StepState(str(tmp_path), "5.0").record_forward("10022")
        assert main(["-i", "5.0", "-g", "--state-dir", str(tmp_path)]) == 0
        assert capsys.readouterr().out == "10022\n"

    def test_greet_wait_times_out(self, tmp_path):
        assert main(["-i", "5.0", "-g", "-w", "--timeout", "0.2", "--state-dir", str(tmp_path)]) == 1

    def test_remove_kills_recorded_pids(self, tmp_path):
        state = StepState(str(tmp_path), "6.1")
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        state.record_pid(proc.pid)
        state.record_forward("10000")

        assert main(["-i", "6.1", "-r", "--state-dir", str(tmp_path)]) == 0
        assert proc.wait(timeout=5) != 0
        assert not state.root.exists()

    def test_remove_unknown_step(self, tmp_path):
        assert main(["-i", "7.0", "-r", "--state-dir", str(tmp_path)]) == 0

    def test_step_state_ignores_bad_pid_files(self, tmp_path):
        state = StepState(str(tmp_path), "8.0")
        state.root.mkdir(parents=True)
        (state.root / "junk.pid").write_text("not a pid")
        state.record_pid(12345)
        assert state.pids() == [12345]


ROOT = Path(__file__).resolve().parents[1]

FAKE_SSH = textwrap.dedent("""
    import json, os, socket, sys, time
    argv = sys.argv[1:]
    with open(os.environ["FAKE_SSH_LOG"], "w") as f:
        json.dump(argv, f)
    if os.environ.get("FAKE_SSH_LISTEN"):
        port = int(argv[argv.index("-L") + 1].split(":")[0])
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        server.bind(("127.0.0.1", port))
        server.listen(1)
    time.sleep(float(os.environ.get("FAKE_SSH_SLEEP", "0")))
""")


@pytest.fixture
def helper_path(monkeypatch):
    """Make the package importable for helper subprocesses."""
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(filter(None, [str(ROOT), os.environ.get("PYTHONPATH")])))


@pytest.fixture
def fake_ssh(tmp_path, monkeypatch, helper_path):
    script = tmp_path / "fake_ssh.py"
    script.write_text(FAKE_SSH)
    log = tmp_path / "ssh.json"
    monkeypatch.setenv("FAKE_SSH_LOG", str(log))
    monkeypatch.delenv("FAKE_SSH_LISTEN", raising=False)
    monkeypatch.delenv("FAKE_SSH_SLEEP", raising=False)
    return shlex.join([sys.executable, str(script)]), log


def run_helper(*args, **kwargs):
    return subprocess.run(
        [sys.executable, "-m", "spank_tunnel.helper", *args],
        cwd=ROOT, capture_output=True, text=True, timeout=20, **kwargs,
    )


def remote_command(argv):
    """Split the command ssh would run on the node."""
    dest = argv.index("node01")
    assert len(argv) == dest + 2
    return shlex.split(argv[dest + 1])


class TestConnect:
    """Tests for connect mode, run as a real process against a fake ssh."""

    def test_local_forward_with_task_args(self, tmp_path, fake_ssh):
        ssh_cmd, log = fake_ssh
        state_dir = tmp_path / "state"
        port = pick_bound_port()

        result = run_helper(
            "-i", "7.0", "-c", "-t", "node01", f"--ssh-cmd={ssh_cmd}", "--ssh-args=-q",
            "-L", f"{port}:22", "--state-dir", str(state_dir), "--", "-v",
        )
        assert result.returncode == 0, result.stderr
        assert result.stdout == f"{port}\n"

        argv = json.loads(log.read_text())
        assert argv[argv.index("-L") + 1] == f"{port}:localhost:22"
        assert "-q" in argv and "-N" not in argv

        remote = remote_command(argv)
        assert remote[0] == "spank-tunnel-helper"
        args = build_parser().parse_args(remote[1:])
        assert args.step == "7.0"
        assert args.hold == str(port)
        assert args.state_dir == str(state_dir)
        assert args.task_args == ["-v"]

        state = StepState(str(state_dir), "7.0")
        assert state.read_forward() == str(port)
        assert state.pids() == []

    def test_wait_for_local_listener(self, tmp_path, fake_ssh, monkeypatch):
        ssh_cmd, _ = fake_ssh
        monkeypatch.setenv("FAKE_SSH_LISTEN", "1")
        monkeypatch.setenv("FAKE_SSH_SLEEP", "1")
        port = pick_bound_port()

        result = run_helper(
            "-i", "7.1", "-c", "-w", "--timeout", "5", "-t", "node01", f"--ssh-cmd={ssh_cmd}",
            "-L", f"{port}:22", "--state-dir", str(tmp_path),
        )
        assert result.returncode == 0, result.stderr
        assert result.stdout == f"{port}\n"

    def test_wait_fails_when_ssh_exits(self, tmp_path, fake_ssh):
        ssh_cmd, _ = fake_ssh
        result = run_helper(
            "-i", "7.2", "-c", "-w", "--timeout", "5", "-t", "node01", f"--ssh-cmd={ssh_cmd}",
            "-L", f"{pick_bound_port()}:22", "--state-dir", str(tmp_path),
        )
        assert result.returncode == 3
        assert result.stdout == ""
        state = StepState(str(tmp_path), "7.2")
        assert state.read_forward() is None
        assert state.pids() == []

    def test_remote_forward(self, tmp_path, fake_ssh, monkeypatch):
        ssh_cmd, log = fake_ssh
        monkeypatch.setenv("FAKE_SSH_SLEEP", "1.5")

        result = run_helper(
            "-i", "7.3", "-c", "-w", "--timeout", "5", "-t", "node01", "-u", "alice",
            f"--ssh-cmd={ssh_cmd}", "-R", "10022:22", "--state-dir", str(tmp_path),
        )
        assert result.returncode == 0, result.stderr
        assert result.stdout == "10022\n"

        argv = json.loads(log.read_text())
        assert argv[argv.index("-R") + 1] == "10022:localhost:22"
        assert "-L" not in argv
        dest = argv.index("alice@node01")
        remote = shlex.split(argv[dest + 1])
        assert build_parser().parse_args(remote[1:]).task_args == []

    def test_generic_reverse_forward(self, tmp_path, fake_ssh):
        ssh_cmd, log = fake_ssh
        result = run_helper(
            "-i", "7.4", "-c", "-t", "node01", f"--ssh-cmd={ssh_cmd}", "--reverse",
            "--state-dir", str(tmp_path),
        )
        assert result.returncode == 0, result.stderr
        port = result.stdout.strip()

        argv = json.loads(log.read_text())
        assert argv[argv.index("-R") + 1] == f"{port}:localhost:{port}"


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


class TestHold:
    """Tests for the node-side hold mode."""

    def test_hold_runs_task_until_session_ends(self, tmp_path, helper_path):
        marker = tmp_path / "task.pid"
        task = f"import os, time; open({str(marker)!r}, 'w').write(str(os.getpid())); time.sleep(30)"
        proc = subprocess.Popen(
            [sys.executable, "-m", "spank_tunnel.helper", "-i", "9.0", "--hold", "10022",
             "--state-dir", str(tmp_path), "--", sys.executable, "-c", task],
            cwd=ROOT, stdin=subprocess.PIPE,
        )
        state = StepState(str(tmp_path), "9.0")
        try:
            assert wait_until(lambda: state.read_forward() == "10022")
            assert wait_until(lambda: marker.exists() and marker.read_text())
            task_pid = int(marker.read_text())
        finally:
            proc.stdin.close()
            assert proc.wait(timeout=10) == 0

        assert not state.root.exists()
        with pytest.raises(ProcessLookupError):
            os.kill(task_pid, 0)

    def test_hold_survives_unstartable_task(self, tmp_path, helper_path):
        proc = subprocess.Popen(
            [sys.executable, "-m", "spank_tunnel.helper", "-i", "9.1", "--hold", "10023",
             "--state-dir", str(tmp_path), "--", "-v"],
            cwd=ROOT, stdin=subprocess.PIPE, stderr=subprocess.PIPE,
        )
        state = StepState(str(tmp_path), "9.1")
        try:
            assert wait_until(lambda: state.read_forward() == "10023")
            assert proc.poll() is None
        finally:
            proc.stdin.close()
            assert proc.wait(timeout=10) == 0
        assert b"Unable to start task -v" in proc.stderr.read()
        proc.stderr.close()
