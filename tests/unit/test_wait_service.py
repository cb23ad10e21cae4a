import pytest

from dockwright.ACCESS.docker_access import ContainerCreateConfig
from dockwright.MANAGERS.wait_service import ContainerRunningPrecondition, WaitService
from dockwright.MODELS.image_config import (
    HttpWaitConfig,
    ImageSpec,
    RunConfig,
    TcpWaitConfig,
    WaitConfig,
)
from dockwright.UTILS import wait_util
from dockwright.UTILS.wait_checkers import HttpPingChecker, LogWaitChecker, TcpPortChecker
from dockwright.exceptions import ConfigurationError, PreconditionFailedError, WaitTimeoutError


@pytest.fixture(autouse=True)
def fast_retry(monkeypatch):
    monkeypatch.setattr(wait_util, "WAIT_RETRY_WAIT", 20)


def image(name="app", ports=(), **wait):
    return ImageSpec(name=name, run=RunConfig(ports=list(ports), wait=WaitConfig(**wait)))


def start(access, spec, port_bindings=None):
    container_id = access.create_container(ContainerCreateConfig(
        image=spec.name,
        exposed_ports=[f"{p}/tcp" for p in spec.run.ports],
        port_bindings=port_bindings or {},
    ))
    access.start_container(container_id)
    return container_id


def test_no_conditions_returns_immediately(docker_access):
    spec = image()
    assert WaitService(docker_access).wait(spec, {}, start(docker_access, spec)) == 0


def test_plain_time_sleeps(docker_access):
    spec = image(time=50)
    assert WaitService(docker_access).wait(spec, {}, start(docker_access, spec)) == 50


def test_log_wait(docker_access):
    docker_access.logs["app"] = ["Started in 2s"]
    spec = image(log="Started", time=1000)
    assert WaitService(docker_access).wait(spec, {}, start(docker_access, spec)) < 1000


def test_timeout_message_names_image_and_condition(docker_access):
    docker_access.logs["app"] = ["booting"]
    spec = image(log="Started", time=100)
    with pytest.raises(WaitTimeoutError) as excinfo:
        WaitService(docker_access).wait(spec, {}, start(docker_access, spec))
    assert "app: Timeout after" in str(excinfo.value)
    assert "on log out 'Started'" in str(excinfo.value)


def test_exited_container_fails_fast(docker_access):
    docker_access.exiting.add("app")
    spec = image(log="Started", time=5000)
    with pytest.raises(PreconditionFailedError) as excinfo:
        WaitService(docker_access).wait(spec, {}, start(docker_access, spec))
    assert "exit code 1" in str(excinfo.value)


def test_url_is_filled_from_properties(docker_access):
    spec = image(url="http://${docker.host.address}:${web.port}/health",
                 http=HttpWaitConfig(method="GET", status="200"))
    container_id = start(docker_access, spec)
    checkers = WaitService(docker_access).prepare_checkers(
        spec, {"docker.host.address": "10.0.0.2", "web.port": "8080"}, container_id
    )
    assert len(checkers) == 1
    assert isinstance(checkers[0], HttpPingChecker)
    assert checkers[0].url == "http://10.0.0.2:8080/health"
    assert checkers[0].method == "GET"


def test_all_conditions_become_checkers(docker_access):
    spec = image(url="http://localhost", log="up", healthy=True)
    checkers = WaitService(docker_access).prepare_checkers(spec, {}, start(docker_access, spec))
    assert [type(c).__name__ for c in checkers] == ["HttpPingChecker", "LogWaitChecker", "HealthCheckChecker"]
    assert isinstance(checkers[1], LogWaitChecker)


def test_tcp_mapped_ports(docker_access):
    spec = image(ports=["80"], tcp=TcpWaitConfig(host="10.0.0.2", ports=[80]))
    container_id = start(docker_access, spec, {"80/tcp": [{"HostPort": "8080"}]})
    [checker] = WaitService(docker_access).prepare_checkers(spec, {}, container_id)
    assert isinstance(checker, TcpPortChecker)
    assert checker.host == "10.0.0.2"
    assert checker.ports == [8080]


def test_tcp_mapped_port_without_binding(docker_access):
    spec = image(tcp=TcpWaitConfig(host="10.0.0.2", ports=[80], mode="mapped"))
    with pytest.raises(ConfigurationError):
        WaitService(docker_access).prepare_checkers(spec, {}, start(docker_access, spec))


def test_tcp_direct_uses_container_ip(docker_access):
    spec = image(tcp=TcpWaitConfig(ports=[5432], mode="direct"))
    container_id = start(docker_access, spec)
    docker_access.containers[container_id].ip_address = "172.17.0.3"
    [checker] = WaitService(docker_access).prepare_checkers(spec, {}, container_id)
    assert checker.host == "172.17.0.3"
    assert checker.ports == [5432]


def test_precondition(docker_access):
    spec = image()
    container_id = start(docker_access, spec)
    precondition = ContainerRunningPrecondition(docker_access, container_id)
    assert precondition.is_ok()
    docker_access.stop_container(container_id)
    assert not precondition.is_ok()
    assert precondition.exit_code == 0
