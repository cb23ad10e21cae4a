import threading
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from dockwright.ACCESS import docker_sdk_access
from dockwright.ACCESS.docker_access import ContainerCreateConfig
from dockwright.ACCESS.docker_sdk_access import DockerSdkAccess
from dockwright.ACCESS.log_requestor import LogRequestor
from dockwright.MANAGERS.run_service import RunService
from dockwright.MODELS.image_config import ImageSpec, RunConfig
from dockwright.UTILS.port_mapping import PortBinding
from dockwright.exceptions import DockerAccessError


@pytest.fixture
def api():
    client = MagicMock()
    client.api.create_container.return_value = {"Id": "abc123", "Warnings": []}
    return client.api


@pytest.fixture
def access(api):
    client = MagicMock()
    client.api = api
    return DockerSdkAccess(client=client)


def test_create_container(access, api):
    config = ContainerCreateConfig(
        image="org/web",
        name="web",
        env={"A": "1"},
        exposed_ports=["80/tcp", "53/udp", "443/tcp"],
        port_bindings={
            "80/tcp": [{"HostPort": "8080"}],
            "443/tcp": [{"HostPort": "8443", "HostIp": "127.0.0.1"}],
        },
        links={"db": "database"},
        network_mode="backend",
        network_aliases=["web"],
    )
    assert access.create_container(config) == "abc123"

    host_config = api.create_host_config.call_args.kwargs
    assert host_config["port_bindings"] == {"80/tcp": "8080", "53/udp": None, "443/tcp": ("127.0.0.1", "8443")}
    assert host_config["links"] == {"db": "database"}
    assert host_config["network_mode"] == "backend"
    api.create_endpoint_config.assert_called_once_with(aliases=["web"])

    kwargs = api.create_container.call_args.kwargs
    assert kwargs["image"] == "org/web"
    assert kwargs["name"] == "web"
    assert kwargs["ports"] == [("80", "tcp"), ("53", "udp"), ("443", "tcp")]
    assert kwargs["environment"] == {"A": "1"}


def test_dynamic_port_keeps_bind_ip(access, api, docker_access, tracker, monkeypatch):
    monkeypatch.delenv("MY_PORT", raising=False)
    service = RunService(docker_access, tracker)
    image = ImageSpec(name="org/web", run=RunConfig(ports=["127.0.0.1:${MY_PORT}:80", "53/udp"]))
    config = service.create_container_config(image, service.create_port_mapping(image, {}), None, {})
    assert config.dynamic_bind_ips == {"80/tcp": "127.0.0.1"}

    access.create_container(config)
    host_config = api.create_host_config.call_args.kwargs
    assert host_config["port_bindings"] == {"80/tcp": ("127.0.0.1", None), "53/udp": None}


def test_errors_are_wrapped(access, api):
    api.start.side_effect = APIError("boom")
    with pytest.raises(DockerAccessError) as excinfo:
        access.start_container("abc123")
    assert "start container abc123" in str(excinfo.value)


def test_stop_and_remove(access, api):
    access.stop_container("abc123", 3)
    api.stop.assert_called_once_with("abc123", timeout=3)
    access.remove_container("abc123", remove_volumes=True)
    api.remove_container.assert_called_once_with("abc123", v=True)


def test_exec(access, api):
    api.exec_create.return_value = {"Id": "exec1"}
    api.exec_start.return_value = b"hello\n"
    api.exec_inspect.return_value = {"ExitCode": 0}
    assert access.exec_in_container("abc123", ["echo", "hello"]) == "hello\n"

    api.exec_inspect.return_value = {"ExitCode": 2}
    with pytest.raises(DockerAccessError):
        access.exec_in_container("abc123", ["false"])


def test_inspect(access, api):
    api.inspect_container.return_value = {
        "Id": "abc123",
        "Name": "/web",
        "Created": "2024-05-01T10:00:00.123456789Z",
        "State": {"Running": True, "Health": {"Status": "healthy"}},
        "Config": {"Image": "org/web", "Labels": {"dockwright.run": "org:app:1"}},
        "HostConfig": {"NetworkMode": "bridge"},
        "NetworkSettings": {
            "IPAddress": "172.17.0.2",
            "Networks": {"bridge": {"IPAddress": "172.17.0.2"}},
            "Ports": {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "49153"}], "53/udp": None},
        },
    }
    info = access.get_container("web")
    assert info.id == "abc123"
    assert info.name == "web"
    assert info.image == "org/web"
    assert info.running
    assert info.exit_code is None
    assert info.health == "healthy"
    assert info.ip_address == "172.17.0.2"
    assert info.labels == {"dockwright.run": "org:app:1"}
    assert info.created > 0
    assert access.get_container_port_bindings("abc123") == {"80/tcp": PortBinding(49153, "0.0.0.0")}


def test_missing_container_and_image(access, api):
    api.inspect_container.side_effect = NotFound("gone")
    api.inspect_image.side_effect = NotFound("gone")
    assert access.get_container("web") is None
    assert not access.has_container("web")
    assert access.get_image_id("org/web") is None


def test_list_containers(access, api):
    api.containers.return_value = [
        {"Id": "1", "Names": ["/db"], "Image": "postgres", "State": "running",
         "Labels": {"dockwright.run": "org:app:1:x"}, "Created": 100},
    ]
    [info] = access.list_containers("dockwright.run")
    api.containers.assert_called_once_with(all=True, filters={"label": "dockwright.run"})
    assert info.name == "db"
    assert info.running
    assert info.created == 100.0


def test_pull_retries(access, api, monkeypatch):
    monkeypatch.setattr(docker_sdk_access, "PULL_RETRY_WAIT", 0)
    api.pull.side_effect = [APIError("timeout"), APIError("timeout"), None]
    access.pull_image("org/web", retries=2)
    assert api.pull.call_count == 3


def test_pull_gives_up(access, api, monkeypatch):
    monkeypatch.setattr(docker_sdk_access, "PULL_RETRY_WAIT", 0)
    api.pull.side_effect = APIError("timeout")
    with pytest.raises(DockerAccessError):
        access.pull_image("org/web", retries=1)
    assert api.pull.call_count == 2


class TestLogRequestor:
    def test_lines_across_chunks(self):
        lines = []
        requestor = LogRequestor("abc", [b"first li", b"ne\nsecond\r\nthi", b"rd"], lines.append).start()
        requestor.join(2)
        assert lines == ["first line", "second", "third"]
        assert not requestor.is_alive

    def test_callback_stops_stream(self):
        lines = []
        closed = threading.Event()

        def callback(line):
            lines.append(line)
            return line == "ready"

        requestor = LogRequestor("abc", [b"boot\nready\nmore\n"], callback, close=closed.set).start()
        requestor.join(2)
        assert lines == ["boot", "ready"]
        assert closed.is_set()

    def test_cancel_is_idempotent(self):
        closes = []
        requestor = LogRequestor("abc", [], lambda line: None, close=lambda: closes.append(1))
        requestor.cancel()
        requestor.cancel()
        assert closes == [1]
