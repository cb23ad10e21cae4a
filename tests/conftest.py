import itertools
from typing import Dict, List, Optional

import pytest

from dockwright.ACCESS.docker_access import (
    ContainerCreateConfig,
    ContainerInfo,
    DockerAccess,
    LogHandle,
)
from dockwright.MANAGERS.container_tracker import ContainerTracker
from dockwright.UTILS.port_mapping import PortBinding
from dockwright.exceptions import DockerAccessError


class FakeLogHandle(LogHandle):
    def __init__(self):
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    @property
    def is_alive(self) -> bool:
        return not self.cancelled


class FakeDockerAccess(DockerAccess):
    """
    In-memory engine. Records every call in `calls` as (action, image name).
    """

    def __init__(self):
        self.containers: Dict[str, ContainerInfo] = {}
        self.configs: Dict[str, ContainerCreateConfig] = {}
        self.bindings: Dict[str, Dict[str, PortBinding]] = {}
        self.images: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.execs: List[tuple] = []
        # (action, image name) pairs which raise DockerAccessError
        self.failures = set()
        # image name -> log lines
        self.logs: Dict[str, List[str]] = {}
        # image name -> health status
        self.health: Dict[str, str] = {}
        # images whose containers exit right after start
        self.exiting = set()
        self._ids = itertools.count(1)
        self._host_ports = itertools.count(49153)

    def _image_of(self, container_id):
        return self.configs[container_id].image

    def _check(self, action, image):
        self.calls.append((action, image))
        if (action, image) in self.failures:
            raise DockerAccessError(f"{action} of {image} failed")

    def create_container(self, config: ContainerCreateConfig) -> str:
        self._check("create", config.image)
        number = next(self._ids)
        container_id = f"{number:012d}{'f' * 52}"
        self.configs[container_id] = config
        self.containers[container_id] = ContainerInfo(
            id=container_id,
            name=config.name or f"auto_{number}",
            image=config.image,
            labels=dict(config.labels),
            created=float(number),
        )
        return container_id

    def start_container(self, container_id: str):
        config = self.configs[container_id]
        self._check("start", config.image)
        info = self.containers[container_id]
        if config.image in self.exiting:
            info.running = False
            info.exit_code = 1
        else:
            info.running = True
        info.health = self.health.get(config.image)
        bindings = {}
        for port in config.exposed_ports:
            entries = config.port_bindings.get(port)
            if entries:
                bindings[port] = PortBinding(int(entries[0]["HostPort"]), entries[0].get("HostIp", "0.0.0.0"))
            else:
                bindings[port] = PortBinding(next(self._host_ports), "0.0.0.0")
        self.bindings[container_id] = bindings

    def stop_container(self, container_id: str, kill_wait_seconds: int = 0):
        self._check("stop", self._image_of(container_id))
        info = self.containers[container_id]
        info.running = False
        info.exit_code = 0

    def remove_container(self, container_id: str, remove_volumes: bool = False):
        self._check("remove", self._image_of(container_id))
        del self.containers[container_id]

    def exec_in_container(self, container_id: str, command: List[str]) -> str:
        self._check("exec", self._image_of(container_id))
        self.execs.append((container_id, command))
        return "done\n"

    def get_logs_sync(self, container_id: str, callback):
        for line in self.logs.get(self._image_of(container_id), []):
            if callback(line):
                break

    def get_logs_async(self, container_id: str, callback) -> LogHandle:
        handle = FakeLogHandle()
        for line in self.logs.get(self._image_of(container_id), []):
            if callback(line):
                handle.cancel()
                break
        return handle

    def get_container_port_bindings(self, container_id: str) -> Dict[str, PortBinding]:
        return self.bindings.get(container_id, {})

    def get_container(self, id_or_name: str) -> Optional[ContainerInfo]:
        if id_or_name in self.containers:
            return self.containers[id_or_name]
        for info in self.containers.values():
            if info.name == id_or_name:
                return info
        return None

    def get_image_id(self, image_name: str) -> Optional[str]:
        return self.images.get(image_name)

    def list_containers(self, label_key: str) -> List[ContainerInfo]:
        return [info for info in self.containers.values() if label_key in info.labels]

    def pull_image(self, image_name: str, retries: int = 0):
        self._check("pull", image_name)
        self.images[image_name] = f"sha256:{image_name}"

    def actions(self, action):
        """Image names of all calls of one kind, in call order."""
        return [image for name, image in self.calls if name == action]


@pytest.fixture
def docker_access():
    return FakeDockerAccess()


@pytest.fixture
def tracker():
    return ContainerTracker()
