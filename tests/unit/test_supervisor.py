"""
测试 transcribe/core/supervisor.py
进程用 MagicMock 模拟；spawn 失败的用例使用真实的不可执行文件
"""
import subprocess
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from transcribe.core.errors import NotLoaded, ServerCrashed, ServerStartTimeout
from transcribe.core.supervisor import ServerConfig, ServerState, ServerSupervisor


def make_config(tmp_path, **overrides):
    values = dict(
        binary="/usr/local/bin/whisperfile",
        model_path=tmp_path / "ggml-small.bin",
        host="127.0.0.1",
        port=8080,
        startup_timeout_secs=0.5,
        health_check_interval_secs=0.1,
    )
    values.update(overrides)
    return ServerConfig(**values)


@pytest.fixture
def process():
    proc = MagicMock()
    proc.pid = 4242
    proc.poll.return_value = None
    return proc


@pytest.fixture
def mock_popen(process):
    with patch("transcribe.core.supervisor.subprocess.Popen", return_value=process) as mock:
        yield mock


@pytest.fixture
def mock_sleep():
    with patch("transcribe.core.supervisor.time.sleep") as mock:
        yield mock


@pytest.fixture
def http():
    return MagicMock()


class TestServerConfig:

    def test_max_attempts(self, tmp_path):
        assert make_config(tmp_path).max_attempts == 5
        assert make_config(tmp_path, startup_timeout_secs=0.0).max_attempts == 1

    def test_command(self, tmp_path, http):
        sup = ServerSupervisor(make_config(tmp_path), http=http)
        assert sup.command() == [
            "/usr/local/bin/whisperfile",
            "--server",
            "-m",
            str(tmp_path / "ggml-small.bin"),
            "--host",
            "127.0.0.1",
            "--port",
            "8080",
        ]
        assert sup.base_url == "http://127.0.0.1:8080"
        assert sup.state == ServerState.NOT_STARTED

    def test_port_zero_picks_free_port(self, tmp_path, http):
        sup = ServerSupervisor(make_config(tmp_path, port=0), http=http)
        assert sup.port > 0


class TestStartup:

    def test_start_ready(self, tmp_path, http, mock_popen, mock_sleep):
        sup = ServerSupervisor(make_config(tmp_path), http=http)
        sup.start()

        assert sup.state == ServerState.READY
        assert sup.pid == 4242
        args, kwargs = mock_popen.call_args
        assert args[0] == sup.command()
        assert kwargs["stdout"] == subprocess.DEVNULL
        http.get.assert_called_once_with("http://127.0.0.1:8080/", timeout=1.0)

    def test_ready_after_retries(self, tmp_path, http, mock_popen, mock_sleep):
        """前两次探测失败（连接拒绝 / 超时），第三次成功"""
        http.get.side_effect = [requests.ConnectionError(), requests.Timeout(), MagicMock()]
        sup = ServerSupervisor(make_config(tmp_path), http=http)
        sup.start()

        assert sup.state == ServerState.READY
        assert http.get.call_count == 3
        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(0.1)

    def test_health_timeout_terminates(self, tmp_path, http, process, mock_popen, mock_sleep):
        http.get.side_effect = requests.ConnectionError()
        sup = ServerSupervisor(make_config(tmp_path), http=http)

        with pytest.raises(ServerStartTimeout, match="5 health checks"):
            sup.start()

        assert http.get.call_count == 5
        process.terminate.assert_called_once()
        assert sup.state == ServerState.STOPPED
        assert sup.pid is None

    def test_broken_responses_during_startup_retried(self, tmp_path, http, process, mock_popen, mock_sleep):
        """半启动的服务器返回非连接类错误时同样重试，最终报 ServerStartTimeout"""
        http.get.side_effect = requests.exceptions.ChunkedEncodingError("connection broken")
        sup = ServerSupervisor(make_config(tmp_path), http=http)

        with pytest.raises(ServerStartTimeout, match="5 health checks"):
            sup.start()

        assert http.get.call_count == 5
        process.terminate.assert_called_once()
        assert sup.state == ServerState.STOPPED

    def test_exit_during_startup(self, tmp_path, http, process, mock_popen, mock_sleep):
        process.poll.return_value = 1
        sup = ServerSupervisor(make_config(tmp_path), http=http)

        with pytest.raises(ServerStartTimeout, match="exited during startup"):
            sup.start()
        process.terminate.assert_not_called()
        assert sup.state == ServerState.STOPPED

    def test_spawn_failure_non_executable(self, tmp_path, http):
        """二进制不可执行：不会有进程残留"""
        binary = tmp_path / "whisperfile"
        binary.write_text("not a program")
        binary.chmod(0o644)
        sup = ServerSupervisor(make_config(tmp_path, binary=str(binary)), http=http)

        with pytest.raises(ServerStartTimeout, match="failed to spawn"):
            sup.start()
        assert sup.state == ServerState.STOPPED
        assert sup.pid is None

    def test_spawn_failure_missing_binary(self, tmp_path, http):
        sup = ServerSupervisor(make_config(tmp_path, binary=str(tmp_path / "missing")), http=http)
        with pytest.raises(ServerStartTimeout):
            sup.start()

    def test_start_twice(self, tmp_path, http, mock_popen, mock_sleep):
        sup = ServerSupervisor(make_config(tmp_path), http=http)
        sup.start()
        with pytest.raises(RuntimeError):
            sup.start()


class TestRequests:

    @pytest.fixture
    def supervisor(self, tmp_path, http, mock_popen):
        sup = ServerSupervisor(make_config(tmp_path, health_check_interval_secs=0.01), http=http)
        sup.start()
        return sup

    def test_request_returns_result(self, supervisor):
        seen_states = []

        def fn(base_url):
            seen_states.append(supervisor.state)
            return f"{base_url}/inference"

        assert supervisor.request(fn) == "http://127.0.0.1:8080/inference"
        assert seen_states == [ServerState.BUSY]
        assert supervisor.state == ServerState.READY

    def test_request_before_start(self, tmp_path, http):
        sup = ServerSupervisor(make_config(tmp_path), http=http)
        with pytest.raises(NotLoaded, match="not_started"):
            sup.request(lambda url: None)

    def test_crash_during_request(self, supervisor, process):
        """请求进行中进程退出 → ServerCrashed，之后的请求报 NotLoaded"""
        release = threading.Event()

        def fn(base_url):
            process.poll.return_value = 137
            release.wait(2.0)
            return "late"

        try:
            with pytest.raises(ServerCrashed, match="137"):
                supervisor.request(fn)
        finally:
            release.set()

        assert supervisor.state == ServerState.STOPPED
        with pytest.raises(NotLoaded):
            supervisor.request(lambda url: None)

    def test_connection_error_after_exit(self, supervisor, process):
        def fn(base_url):
            process.poll.return_value = 1
            raise requests.ConnectionError("connection reset")

        with pytest.raises(ServerCrashed):
            supervisor.request(fn)
        assert supervisor.state == ServerState.STOPPED

    def test_request_error_with_live_server(self, supervisor):
        def fn(base_url):
            raise requests.ConnectionError("connection reset")

        with pytest.raises(requests.ConnectionError):
            supervisor.request(fn)
        assert supervisor.state == ServerState.READY

    def test_requests_serialized(self, supervisor):
        active = []
        overlap = []
        lock = threading.Lock()

        def fn(base_url):
            with lock:
                active.append(1)
                overlap.append(len(active))
            time.sleep(0.05)
            with lock:
                active.pop()
            return True

        threads = [threading.Thread(target=supervisor.request, args=(fn,)) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5.0)

        assert overlap == [1, 1, 1]
        assert supervisor.state == ServerState.READY


class TestShutdown:

    def test_stop(self, tmp_path, http, process, mock_popen, mock_sleep):
        sup = ServerSupervisor(make_config(tmp_path), http=http)
        sup.start()
        sup.stop()

        process.terminate.assert_called_once()
        process.wait.assert_called_once_with(timeout=5.0)
        process.kill.assert_not_called()
        http.close.assert_called_once()
        assert sup.state == ServerState.STOPPED

        sup.stop()
        process.terminate.assert_called_once()

    def test_kill_when_terminate_ignored(self, tmp_path, http, process, mock_popen, mock_sleep):
        process.wait.side_effect = [subprocess.TimeoutExpired("whisperfile", 5.0), 0]
        sup = ServerSupervisor(make_config(tmp_path), http=http)
        sup.start()
        sup.stop()

        process.kill.assert_called_once()
        assert sup.state == ServerState.STOPPED

    def test_context_manager(self, tmp_path, http, process, mock_popen, mock_sleep):
        with ServerSupervisor(make_config(tmp_path), http=http) as sup:
            sup.start()
            assert sup.state == ServerState.READY
        process.terminate.assert_called_once()
        assert sup.state == ServerState.STOPPED

    def test_stop_before_start(self, tmp_path, http):
        sup = ServerSupervisor(make_config(tmp_path), http=http)
        sup.stop()
        assert sup.state == ServerState.STOPPED
