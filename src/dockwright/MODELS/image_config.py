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
Models for defining images, including how they run, wait, stop and are watched.
"""
from typing import List, Dict, Optional
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field

STANDARD_NETWORK_MODES = ("bridge", "host", "none", "default")


class NamingStrategy(str, Enum):
    """
    How the container created for an image is named.
    """
    NONE = "none"
    ALIAS = "alias"


class WatchMode(str, Enum):
    """
    What to do when a watched image changes.
    """
    BUILD = "build"
    RUN = "run"
    BOTH = "both"
    COPY = "copy"
    NONE = "none"

    @property
    def is_build(self) -> bool:
        return self in (WatchMode.BUILD, WatchMode.BOTH)

    @property
    def is_run(self) -> bool:
        return self in (WatchMode.RUN, WatchMode.BOTH)

    @property
    def is_copy(self) -> bool:
        return self == WatchMode.COPY


class HttpWaitConfig(BaseModel):
    """
    Request details for waiting on an URL.
    """
    model_config = ConfigDict(frozen=True)

    method: str = "HEAD"
    status: str = "200..399"
    allow_all_hosts: bool = False


class TcpWaitConfig(BaseModel):
    """
    Ports to probe for an open TCP socket.
    """
    model_config = ConfigDict(frozen=True)

    host: Optional[str] = None
    ports: List[int] = []
    # "mapped" probes the host side of a port binding, "direct" the container IP
    mode: Optional[str] = None


class ExecConfig(BaseModel):
    """
    Commands executed inside the container after start and before stop.
    """
    model_config = ConfigDict(frozen=True)

    post_start: Optional[str] = None
    pre_stop: Optional[str] = None


class WaitConfig(BaseModel):
    """
    Readiness conditions and shutdown timings of a container.
    All durations are milliseconds.
    """
    model_config = ConfigDict(frozen=True)

    time: Optional[int] = None
    url: Optional[str] = None
    http: Optional[HttpWaitConfig] = None
    log: Optional[str] = None
    tcp: Optional[TcpWaitConfig] = None
    healthy: bool = False
    exec: Optional[ExecConfig] = None
    shutdown: int = Field(default=0, ge=0)
    kill: int = Field(default=0, ge=0)


class WatchConfig(BaseModel):
    """
    Per-image watch settings. Unset values fall back to the global watch options.
    """
    model_config = ConfigDict(frozen=True)

    mode: Optional[WatchMode] = None
    interval: Optional[int] = None
    post_exec: Optional[str] = None
    paths: List[str] = []


class RunConfig(BaseModel):
    """
    How a container is created from an image.
    """
    model_config = ConfigDict(frozen=True)

    # Execution
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None
    user: Optional[str] = None
    hostname: Optional[str] = None

    # Environment
    env: Dict[str, str] = {}
    labels: Dict[str, str] = {}

    # Networking
    ports: List[str] = []
    links: List[str] = []
    network: Optional[str] = None
    network_aliases: List[str] = []
    depends_on: List[str] = []

    # Storage
    volumes_from: List[str] = []
    binds: List[str] = []

    # Lifecycle
    restart_policy: Optional[str] = None
    naming: NamingStrategy = NamingStrategy.NONE
    skip: bool = False
    wait: WaitConfig = Field(default_factory=WaitConfig)
    port_property_file: Optional[str] = None

    @property
    def is_custom_network(self) -> bool:
        """True if the container joins a user defined network."""
        return (self.network is not None
                and self.network not in STANDARD_NETWORK_MODES
                and not self.network.startswith("container:"))

    @property
    def container_network_alias(self) -> Optional[str]:
        """Image or container whose network stack is shared via 'container:<name>'."""
        if self.network and self.network.startswith("container:"):
            return self.network[len("container:"):]
        return None


class ImageSpec(BaseModel):
    """
    A named image together with its run configuration.
    Immutable for the lifetime of an orchestration run.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    alias: Optional[str] = None
    run: RunConfig = Field(default_factory=RunConfig)
    watch: Optional[WatchConfig] = None

    @property
    def dependencies(self) -> List[str]:
        """
        Names or aliases this image has to wait for, in declaration order and
        without duplicates.
        """
        deps: List[str] = list(self.run.volumes_from)
        # Custom networks may have circular links, so links don't order the start there
        if not self.run.is_custom_network:
            deps.extend(link.rsplit(":", 1)[0] for link in self.run.links)
        if self.run.container_network_alias:
            deps.append(self.run.container_network_alias)
        if self.run.is_custom_network:
            deps.extend(self.run.depends_on)
        return list(dict.fromkeys(deps))

    @property
    def description(self) -> str:
        """Label used in log messages."""
        if self.alias:
            return f"{self.alias} ({self.name})"
        return self.name
