# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Operations on the container engine needed to run, wait for and stop containers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..UTILS.port_mapping import PortBinding

# Receives one log line. Returning True stops the stream.
LogCallback = Callable[[str], Optional[bool]]


@dataclass
class ContainerCreateConfig:
    """Everything needed to create a container."""

    image: str
    name: Optional[str] = None
    cmd: List[str] = field(default_factory=list)
    entrypoint: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    working_dir: Optional[str] = None
    user: Optional[str] = None
    hostname: Optional[str] = None
    # 'port/proto' of every mapped container port
    exposed_ports: List[str] = field(default_factory=list)
    # Docker API 'PortBindings' document, dynamic ports are left out
    port_bindings: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)
    # 'port/proto' -> IP to publish a dynamic port on
    dynamic_bind_ips: Dict[str, str] = field(default_factory=dict)
    binds: List[str] = field(default_factory=list)
    volumes_from: List[str] = field(default_factory=list)
    # container name -> link alias
    links: Dict[str, str] = field(default_factory=dict)
    network_mode: Optional[str] = None
    network_aliases: List[str] = field(default_factory=list)
    restart_policy: Optional[str] = None


@dataclass
class ContainerInfo:
    """State of a container as reported by the engine."""

    id: str
    name: str
    image: Optional[str] = None
    running: bool = False
    exit_code: Optional[int] = None
    health: Optional[str] = None
    ip_address: Optional[str] = None
    network_mode: Optional[str] = None
    network_ips: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    created: float = 0.0


class LogHandle(ABC):
    """A running log stream that can be cancelled."""

    @abstractmethod
    def cancel(self):
        """Stop following the log. Safe to call more than once."""

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """True while lines are still being delivered."""


class DockerAccess(ABC):
    """
    Access to the container engine. All methods raise DockerAccessError on failure.
    """

    @abstractmethod
    def create_container(self, config: ContainerCreateConfig) -> str:
        """Create a container and return its id."""

    @abstractmethod
    def start_container(self, container_id: str):
        """Start a created container."""

    @abstractmethod
    def stop_container(self, container_id: str, kill_wait_seconds: int = 0):
        """Stop a container, killing it after the given number of seconds."""

    @abstractmethod
    def remove_container(self, container_id: str, remove_volumes: bool = False):
        """Remove a stopped container."""

    @abstractmethod
    def exec_in_container(self, container_id: str, command: List[str]) -> str:
        """Run a command inside a running container and return its output."""

    @abstractmethod
    def get_logs_sync(self, container_id: str, callback: LogCallback):
        """Deliver the current log of a container line by line."""

    @abstractmethod
    def get_logs_async(self, container_id: str, callback: LogCallback) -> LogHandle:
        """Follow the log of a container in the background."""

    @abstractmethod
    def get_container_port_bindings(self, container_id: str) -> Dict[str, PortBinding]:
        """Host side of every published container port."""

    @abstractmethod
    def get_container(self, id_or_name: str) -> Optional[ContainerInfo]:
        """Inspect a container, None if it doesn't exist."""

    @abstractmethod
    def get_image_id(self, image_name: str) -> Optional[str]:
        """Id of a local image, None if it doesn't exist."""

    @abstractmethod
    def list_containers(self, label_key: str) -> List[ContainerInfo]:
        """All containers, running or not, carrying the given label."""

    @abstractmethod
    def pull_image(self, image_name: str, retries: int = 0):
        """Pull an image, retrying the given number of times."""

    def has_container(self, id_or_name: str) -> bool:
        return self.get_container(id_or_name) is not None
