"""Unit tests for ProcessLauncher and ManagedProcess."""

import os
import subprocess
from unittest.mock import Mock, patch

import psutil
import pytest

from frpc_manager.exceptions import ConfigError, SpawnError
from frpc_manager.process import ManagedProcess, ProcessLauncher, find_tunnel_binary


@pytest.fixture
def launcher():
    return ProcessLauncher(logger=Mock(), sweep_wait=0.1)


@pytest.fixture
def running_popen():
    popen = Mock()
    popen.pid = 4242
    popen.poll.return_value = None
    popen.wait.return_value = 0
    return popen


def make_process(popen) -> ManagedProcess:
    return ManagedProcess(pid=popen.pid, image_name="frpc", popen=popen)


class TestLaunch:
    """Spawning the tunnel executable."""

    @patch("frpc_manager.process.subprocess.Popen")
    def test_launch_starts_process_with_pipes(self, mock_popen, launcher, temp_paths):
        binary, config = temp_paths
        mock_popen.return_value = Mock(pid=12345)

        process = launcher.launch(binary, ["-c", str(config)], working_dir=binary.parent)

        assert process.pid == 12345
        assert process.image_name == "frpc"
        command = mock_popen.call_args.args[0]
        assert command == [str(binary), "-c", str(config)]
        kwargs = mock_popen.call_args.kwargs
        assert kwargs["stdout"] is subprocess.PIPE
        assert kwargs["stderr"] is subprocess.PIPE
        assert kwargs["text"] is True
        assert kwargs["bufsize"] == 1
        assert kwargs["cwd"] == str(binary.parent)

    def test_launch_missing_executable(self, launcher, tmp_path):
        with pytest.raises(SpawnError, match="Executable not found"):
            launcher.launch(tmp_path / "missing")

    @patch("frpc_manager.process.subprocess.Popen")
    def test_launch_os_error_becomes_spawn_error(self, mock_popen, launcher, temp_paths):
        binary, _ = temp_paths
        mock_popen.side_effect = PermissionError("Permission denied")

        with pytest.raises(SpawnError, match="Permission denied"):
            launcher.launch(binary)


class TestManagedProcess:
    def test_poll_records_exit_code(self, running_popen):
        process = make_process(running_popen)
        assert process.is_running()

        running_popen.poll.return_value = 3

        assert process.poll() == 3
        assert process.last_exit_code == 3
        assert not process.is_running()


class TestKillTree:
    """Terminating a process and its descendants."""

    def test_already_exited(self, launcher, running_popen):
        running_popen.poll.return_value = 0

        assert launcher.kill_tree(make_process(running_popen), grace=1.0) is True
        running_popen.terminate.assert_not_called()

    @patch("frpc_manager.process.psutil.wait_procs")
    @patch("frpc_manager.process.psutil.Process")
    def test_terminates_children_and_root(
        self, mock_process_cls, mock_wait_procs, launcher, running_popen
    ):
        child = Mock(pid=4243)
        mock_process_cls.return_value.children.return_value = [child]
        mock_wait_procs.return_value = ([child], [])

        exited = launcher.kill_tree(make_process(running_popen), grace=1.0)

        assert exited is True
        mock_process_cls.assert_called_once_with(4242)
        child.terminate.assert_called_once()
        running_popen.terminate.assert_called_once()
        running_popen.wait.assert_called_once_with(timeout=1.0)
        running_popen.kill.assert_not_called()
        child.kill.assert_not_called()

    @patch("frpc_manager.process.psutil.wait_procs")
    @patch("frpc_manager.process.psutil.Process")
    def test_survivor_is_force_killed(
        self, mock_process_cls, mock_wait_procs, launcher, running_popen
    ):
        child = Mock(pid=4243)
        mock_process_cls.return_value.children.return_value = [child]
        mock_wait_procs.return_value = ([], [child])
        running_popen.wait.side_effect = subprocess.TimeoutExpired("frpc", 0.5)

        exited = launcher.kill_tree(make_process(running_popen), grace=0.5)

        assert exited is False
        running_popen.kill.assert_called_once()
        child.kill.assert_called_once()
        launcher._logger.warning.assert_called()

    @patch("frpc_manager.process.psutil.Process")
    def test_missing_psutil_process_still_terminates_root(
        self, mock_process_cls, launcher, running_popen
    ):
        mock_process_cls.side_effect = psutil.NoSuchProcess(4242)

        assert launcher.kill_tree(make_process(running_popen), grace=1.0) is True
        running_popen.terminate.assert_called_once()


class TestKillPid:
    def test_refuses_own_pid(self, launcher):
        assert launcher.kill_pid(os.getpid(), grace=1.0) is False

    @patch("frpc_manager.process.psutil.Process")
    def test_kills_and_waits(self, mock_process_cls, launcher):
        assert launcher.kill_pid(999999, grace=1.0) is True
        mock_process_cls.return_value.kill.assert_called_once()
        mock_process_cls.return_value.wait.assert_called_once_with(timeout=1.0)

    @patch("frpc_manager.process.psutil.Process")
    def test_already_gone_counts_as_killed(self, mock_process_cls, launcher):
        mock_process_cls.side_effect = psutil.NoSuchProcess(999999)

        assert launcher.kill_pid(999999, grace=1.0) is True

    @patch("frpc_manager.process.psutil.Process")
    def test_survivor_reports_false(self, mock_process_cls, launcher):
        mock_process_cls.return_value.wait.side_effect = psutil.TimeoutExpired(1.0)

        assert launcher.kill_pid(999999, grace=1.0) is False

    @patch("frpc_manager.process.psutil.Process")
    def test_access_denied_reports_false(self, mock_process_cls, launcher):
        mock_process_cls.return_value.kill.side_effect = psutil.AccessDenied(999999)

        assert launcher.kill_pid(999999, grace=1.0) is False


class TestKillAllByName:
    """Sweeping stray tunnel processes."""

    @staticmethod
    def fake_proc(pid, name):
        proc = Mock(pid=pid)
        proc.info = {"pid": pid, "name": name}
        return proc

    @patch("frpc_manager.process.psutil.wait_procs")
    @patch("frpc_manager.process.psutil.process_iter")
    def test_matches_case_and_extension_insensitively(
        self, mock_iter, mock_wait_procs, launcher
    ):
        matching = [self.fake_proc(10, "frpc"), self.fake_proc(11, "FRPC.exe")]
        others = [self.fake_proc(12, "frps"), self.fake_proc(13, "python3")]
        mock_iter.return_value = matching + others
        mock_wait_procs.return_value = (matching, [])

        assert launcher.kill_all_by_name("frpc.exe") == 2

        for proc in matching:
            proc.kill.assert_called_once()
        for proc in others:
            proc.kill.assert_not_called()
        assert mock_wait_procs.call_args.args[0] == matching

    @patch("frpc_manager.process.psutil.wait_procs")
    @patch("frpc_manager.process.psutil.process_iter")
    def test_never_kills_own_process(self, mock_iter, mock_wait_procs, launcher):
        own = self.fake_proc(os.getpid(), "frpc")
        mock_iter.return_value = [own]

        assert launcher.kill_all_by_name("frpc") == 0
        own.kill.assert_not_called()
        mock_wait_procs.assert_not_called()

    @patch("frpc_manager.process.psutil.wait_procs")
    @patch("frpc_manager.process.psutil.process_iter")
    def test_vanished_and_protected_processes_are_skipped(
        self, mock_iter, mock_wait_procs, launcher
    ):
        vanished = self.fake_proc(20, "frpc")
        vanished.kill.side_effect = psutil.NoSuchProcess(20)
        protected = self.fake_proc(21, "frpc")
        protected.kill.side_effect = psutil.AccessDenied(21)
        killable = self.fake_proc(22, "frpc")
        mock_iter.return_value = [vanished, protected, killable]
        mock_wait_procs.return_value = ([killable], [])

        assert launcher.kill_all_by_name("frpc") == 1
        assert mock_wait_procs.call_args.args[0] == [killable]


class TestRunAndCapture:
    @patch("frpc_manager.process.subprocess.run")
    def test_returns_stdout(self, mock_run, launcher):
        mock_run.return_value = Mock(stdout="4242\n")

        assert launcher.run_and_capture("lsof", ["-t", "-iTCP:6000"]) == "4242\n"
        assert mock_run.call_args.args[0] == ["lsof", "-t", "-iTCP:6000"]

    @patch("frpc_manager.process.subprocess.run")
    def test_missing_command_returns_empty(self, mock_run, launcher):
        mock_run.side_effect = FileNotFoundError("lsof")

        assert launcher.run_and_capture("lsof") == ""

    @patch("frpc_manager.process.subprocess.run")
    def test_timeout_returns_empty(self, mock_run, launcher):
        mock_run.side_effect = subprocess.TimeoutExpired("netstat", 5.0)

        assert launcher.run_and_capture("netstat", timeout=5.0) == ""


class TestTryCapture:
    """Failed diagnostics are distinguishable from empty output."""

    @patch("frpc_manager.process.subprocess.run")
    def test_nonzero_exit_with_no_output_is_empty(self, mock_run, launcher):
        mock_run.return_value = Mock(stdout="", returncode=1)

        assert launcher.try_capture("lsof", ["-t", "-iTCP:6000"]) == ""

    @patch("frpc_manager.process.subprocess.run")
    def test_missing_command_is_none(self, mock_run, launcher):
        mock_run.side_effect = FileNotFoundError("lsof")

        assert launcher.try_capture("lsof") is None

    @patch("frpc_manager.process.subprocess.run")
    def test_timeout_is_none(self, mock_run, launcher):
        mock_run.side_effect = subprocess.TimeoutExpired("lsof", 5.0)

        assert launcher.try_capture("lsof", timeout=5.0) is None


class TestFindTunnelBinary:
    def test_search_dirs_take_precedence(self, temp_paths):
        binary, _ = temp_paths

        with patch("frpc_manager.process.shutil.which", return_value="/usr/bin/frpc"):
            assert find_tunnel_binary(search_dirs=[binary.parent]) == binary

    def test_falls_back_to_path(self, tmp_path):
        with patch("frpc_manager.process.shutil.which", return_value="/usr/bin/frpc"):
            found = find_tunnel_binary(search_dirs=[tmp_path])

        assert str(found) == "/usr/bin/frpc"

    def test_not_found(self, tmp_path):
        with (
            patch("frpc_manager.process.shutil.which", return_value=None),
            patch("frpc_manager.process.COMMON_BINARY_DIRS", ()),
        ):
            with pytest.raises(ConfigError, match="frpc binary not found"):
                find_tunnel_binary(search_dirs=[tmp_path])
