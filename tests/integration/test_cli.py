import pytest
import yaml
from click.testing import CliRunner

from dockwright.CLI import main
from dockwright.CLI.main import cli
from dockwright.exceptions import DockerAccessError

SHOP = {
    "project": {"group": "org", "artifact": "shop", "version": "1.0"},
    "images": [
        {"name": "org/web", "alias": "web", "run": {"links": ["db"]}},
        {"name": "postgres", "alias": "db", "run": {"naming": "alias"}},
    ],
}


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "dockwright.yml"
    path.write_text(yaml.dump(SHOP))
    return str(path)


def invoke(docker_access, *args):
    return CliRunner().invoke(cli, list(args), obj={"access": docker_access})


def test_cli_help():
    result = CliRunner().invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'dependency order' in result.output
    for command in ('order', 'start', 'stop', 'watch'):
        assert command in result.output


def test_cli_no_file(docker_access):
    result = invoke(docker_access, '-f', 'non_existent.yml', 'order')
    assert result.exit_code == 1
    assert 'Error: non_existent.yml not found.' in result.output


def test_cli_order(docker_access, config_file):
    result = invoke(docker_access, '-f', config_file, 'order')
    assert result.exit_code == 0
    assert result.output.splitlines() == ['postgres', 'org/web']


def test_cli_config_from_environment(docker_access, config_file):
    result = CliRunner().invoke(cli, ['order'], obj={"access": docker_access},
                                env={"DOCKWRIGHT_CONFIG": config_file})
    assert result.exit_code == 0
    assert 'org/web' in result.output


def test_cli_cycle_is_reported(docker_access, tmp_path):
    path = tmp_path / "cycle.yml"
    path.write_text(yaml.dump({"images": [
        {"name": "a", "run": {"links": ["b"]}},
        {"name": "b", "run": {"links": ["a"]}},
    ]}))
    result = invoke(docker_access, '-f', str(path), 'order')
    assert result.exit_code == 1
    assert 'Cannot resolve image dependencies' in result.output
    assert 'a depends on b' in result.output


def test_cli_invalid_port(docker_access, tmp_path):
    path = tmp_path / "ports.yml"
    path.write_text(yaml.dump({"images": [{"name": "a", "run": {"ports": ["8080:http"]}}]}))
    result = invoke(docker_access, '-f', str(path), 'start')
    assert result.exit_code == 1
    assert "Invalid port mapping '8080:http'" in result.output


def test_cli_start_then_stop(docker_access, config_file):
    result = invoke(docker_access, '-f', config_file, 'start', '--run-id', 'build-7')
    assert result.exit_code == 0, result.output
    assert 'Run label: org:shop:1.0:build-7' in result.output
    assert docker_access.actions('start') == ['postgres', 'org/web']

    # A separate invocation only finds the containers through their labels
    result = invoke(docker_access, '-f', config_file, 'stop', '--run-id', 'build-7')
    assert result.exit_code == 0, result.output
    assert 'Stopped 2 container(s).' in result.output
    assert docker_access.actions('stop') == ['org/web', 'postgres']
    assert docker_access.containers == {}


def test_cli_stop_keep(docker_access, config_file):
    invoke(docker_access, '-f', config_file, 'start')
    result = invoke(docker_access, '-f', config_file, 'stop', '--keep')
    assert result.exit_code == 0
    assert docker_access.actions('remove') == []
    assert len(docker_access.containers) == 2


def test_cli_start_failure_rolls_back(docker_access, config_file):
    docker_access.failures.add(('start', 'org/web'))
    result = invoke(docker_access, '-f', config_file, 'start')
    assert result.exit_code == 1
    assert 'start of org/web failed' in result.output
    assert docker_access.actions('stop') == ['postgres']


@pytest.fixture
def no_daemon(monkeypatch):
    def unreachable(base_url=None):
        raise DockerAccessError("Cannot connect to the Docker daemon")

    monkeypatch.setattr(main, 'DockerSdkAccess', unreachable)


def test_cli_order_without_daemon(no_daemon, config_file):
    result = CliRunner().invoke(cli, ['-f', config_file, 'order'], obj={})
    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ['postgres', 'org/web']


def test_cli_order_external_dependency_needs_daemon(no_daemon, tmp_path):
    path = tmp_path / "external.yml"
    path.write_text(yaml.dump({"images": [{"name": "org/web", "run": {"links": ["ldap"]}}]}))
    result = CliRunner().invoke(cli, ['-f', str(path), 'order'], obj={})
    assert result.exit_code == 1
    assert 'Cannot connect to the Docker daemon' in result.output
