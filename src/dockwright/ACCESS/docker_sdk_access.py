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
Container engine access through the Docker SDK for Python.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

import docker
import requests
from docker.errors import DockerException, NotFound
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..exceptions import DockerAccessError
from ..UTILS.port_mapping import PortBinding
from .docker_access import (
    ContainerCreateConfig,
    ContainerInfo,
    DockerAccess,
    LogCallback,
    LogHandle,
)
from .log_requestor import LogRequestor

logger = logging.getLogger(__name__)

# Seconds between two pull attempts
PULL_RETRY_WAIT = 1


@contextmanager
def _wrap_errors(action: str):
    try:
        yield
    except (DockerException, requests.RequestException) as e:
        raise DockerAccessError(f"Unable to {action}: {e}") from e


class DockerSdkAccess(DockerAccess):
    """
    DockerAccess backed by the low level API client of the Docker SDK.
    """

    def __init__(self, base_url: Optional[str] = None, client: Optional[docker.DockerClient] = None):
        """
        Connect to the engine.

        Args:
            base_url: Engine URL (e.g. 'unix:///var/run/docker.sock'). Defaults to the environment.
            client: Already configured client, mainly for tests.
        """
        if client is None:
            with _wrap_errors("connect to the Docker daemon"):
                client = docker.DockerClient(base_url=base_url) if base_url else docker.from_env()
        self.client = client
        self.api = client.api

    def create_container(self, config: ContainerCreateConfig) -> str:
        with _wrap_errors(f"create container for {config.image}"):
            host_config = self.api.create_host_config(
                port_bindings=self._port_bindings(config),
                binds=config.binds or None,
                volumes_from=config.volumes_from or None,
                links=config.links or None,
                network_mode=config.network_mode,
                restart_policy={"Name": config.restart_policy} if config.restart_policy else None,
            )
            networking_config = None
            if config.network_aliases and config.network_mode:
                networking_config = self.api.create_networking_config({
                    config.network_mode: self.api.create_endpoint_config(aliases=config.network_aliases)
                })
            response = self.api.create_container(
                image=config.image,
                name=config.name,
                command=config.cmd or None,
                entrypoint=config.entrypoint or None,
                environment=config.env or None,
                labels=config.labels or None,
                working_dir=config.working_dir,
                user=config.user,
                hostname=config.hostname,
                ports=[tuple(spec.split("/", 1)) for spec in config.exposed_ports] or None,
                host_config=host_config,
                networking_config=networking_config,
            )
        for warning in response.get("Warnings") or []:
            logger.warning("%s: %s", config.image, warning)
        return response["Id"]

    def start_container(self, container_id: str):
        with _wrap_errors(f"start container {container_id}"):
            self.api.start(container_id)

    def stop_container(self, container_id: str, kill_wait_seconds: int = 0):
        with _wrap_errors(f"stop container {container_id}"):
            self.api.stop(container_id, timeout=kill_wait_seconds)

    def remove_container(self, container_id: str, remove_volumes: bool = False):
        with _wrap_errors(f"remove container {container_id}"):
            self.api.remove_container(container_id, v=remove_volumes)

    def exec_in_container(self, container_id: str, command: List[str]) -> str:
        with _wrap_errors(f"execute {command} in container {container_id}"):
            exec_id = self.api.exec_create(container_id, command)["Id"]
            output = self.api.exec_start(exec_id)
            exit_code = self.api.exec_inspect(exec_id).get("ExitCode")
        text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else str(output)
        if exit_code:
            raise DockerAccessError(
                f"Command {command} in container {container_id} exited with {exit_code}: {text.strip()}"
            )
        return text

    def get_logs_sync(self, container_id: str, callback: LogCallback):
        with _wrap_errors(f"fetch logs of container {container_id}"):
            output = self.api.logs(container_id, stream=False)
        for line in output.decode("utf-8", errors="replace").splitlines():
            if callback(line):
                break

    def get_logs_async(self, container_id: str, callback: LogCallback) -> LogHandle:
        with _wrap_errors(f"follow logs of container {container_id}"):
            stream = self.api.logs(container_id, stream=True, follow=True)
        return LogRequestor(container_id, stream, callback, close=stream.close).start()

    def get_container_port_bindings(self, container_id: str) -> Dict[str, PortBinding]:
        with _wrap_errors(f"inspect container {container_id}"):
            details = self.api.inspect_container(container_id)
        bindings = {}
        ports = (details.get("NetworkSettings") or {}).get("Ports") or {}
        for container_port, host_bindings in ports.items():
            if not host_bindings:
                continue
            first = host_bindings[0]
            host_port = first.get("HostPort")
            bindings[container_port] = PortBinding(int(host_port) if host_port else None, first.get("HostIp"))
        return bindings

    def get_container(self, id_or_name: str) -> Optional[ContainerInfo]:
        try:
            with _wrap_errors(f"inspect container {id_or_name}"):
                details = self.api.inspect_container(id_or_name)
        except DockerAccessError as e:
            if isinstance(e.__cause__, NotFound):
                return None
            raise
        return self._to_container_info(details)

    def get_image_id(self, image_name: str) -> Optional[str]:
        try:
            with _wrap_errors(f"inspect image {image_name}"):
                return self.api.inspect_image(image_name)["Id"]
        except DockerAccessError as e:
            if isinstance(e.__cause__, NotFound):
                return None
            raise

    def list_containers(self, label_key: str) -> List[ContainerInfo]:
        with _wrap_errors(f"list containers labeled {label_key}"):
            containers = self.api.containers(all=True, filters={"label": label_key})
        return [
            ContainerInfo(
                id=c["Id"],
                name=(c.get("Names") or [""])[0].lstrip("/"),
                image=c.get("Image"),
                running=c.get("State") == "running",
                labels=c.get("Labels") or {},
                created=float(c.get("Created") or 0),
            )
            for c in containers
        ]

    def pull_image(self, image_name: str, retries: int = 0):
        retrying = Retrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_fixed(PULL_RETRY_WAIT),
            retry=retry_if_exception_type(DockerAccessError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("Retrying pull of %s (attempt %d)", image_name,
                                   attempt.retry_state.attempt_number)
                with _wrap_errors(f"pull image {image_name}"):
                    self.api.pull(image_name)
        logger.info("Pulled %s", image_name)

    # ==========================================================================

    @staticmethod
    def _port_bindings(config: ContainerCreateConfig) -> Optional[Dict[str, object]]:
        """
        Convert to the SDK's port binding format. Exposed ports without a
        binding are published on a port chosen by the engine, on their bind
        IP if one is configured.
        """
        if not config.exposed_ports:
            return None
        bindings: Dict[str, object] = {}
        for spec in config.exposed_ports:
            entries = config.port_bindings.get(spec)
            if not entries:
                bind_ip = config.dynamic_bind_ips.get(spec)
                bindings[spec] = (bind_ip, None) if bind_ip else None
                continue
            entry = entries[0]
            if entry.get("HostIp"):
                bindings[spec] = (entry["HostIp"], entry["HostPort"])
            else:
                bindings[spec] = entry["HostPort"]
        return bindings

    @staticmethod
    def _to_container_info(details: dict) -> ContainerInfo:
        state = details.get("State") or {}
        settings = details.get("NetworkSettings") or {}
        running = bool(state.get("Running"))
        health = (state.get("Health") or {}).get("Status")
        networks = {
            name: net.get("IPAddress")
            for name, net in (settings.get("Networks") or {}).items()
            if net.get("IPAddress")
        }
        return ContainerInfo(
            id=details["Id"],
            name=(details.get("Name") or "").lstrip("/"),
            image=(details.get("Config") or {}).get("Image"),
            running=running,
            exit_code=None if running else state.get("ExitCode"),
            health=health,
            ip_address=settings.get("IPAddress") or None,
            network_mode=(details.get("HostConfig") or {}).get("NetworkMode"),
            network_ips=networks,
            labels=(details.get("Config") or {}).get("Labels") or {},
            created=_parse_created(details.get("Created")),
        )


def _parse_created(value: Optional[str]) -> float:
    if not value:
        return 0.0
    # Engine timestamps carry nanoseconds, which fromisoformat doesn't take
    trimmed = value.rstrip("Z").split(".")[0]
    try:
        return datetime.fromisoformat(trimmed).timestamp()
    except ValueError:
        return 0.0
