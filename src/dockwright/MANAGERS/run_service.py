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
Lifecycle management for individual containers: create, start, exec and stop.
"""
import atexit
import logging
import shlex
import time
from typing import Callable, Dict, List, Optional

from ..ACCESS.docker_access import ContainerCreateConfig, DockerAccess
from ..MODELS.image_config import ImageSpec, NamingStrategy
from ..MODELS.run_label import RunLabel
from ..UTILS import wait_util
from ..UTILS.port_mapping import PortMapping
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..exceptions import ConfigurationError, DockerAccessError, DockwrightError
from .container_tracker import ContainerTracker, ShutdownDescriptor

logger = logging.getLogger(__name__)


class RunService:
    """
    Creates, starts and stops containers and keeps the tracker up to date.
    """

    def __init__(self, access: DockerAccess, tracker: ContainerTracker):
        """
        :param access: Container engine access.
        :param tracker: Registry of the containers started in this process.
        """
        self.access = access
        self.tracker = tracker

    def create_port_mapping(self, image: ImageSpec, properties: Dict[str, str]) -> PortMapping:
        """
        Parse the port specifications of an image.

        :raises InvalidPortMappingError: If a specification is malformed.
        """
        return PortMapping(image.run.ports, properties)

    def create_and_start_container(self, image: ImageSpec, port_mapping: PortMapping,
                                   run_label: Optional[RunLabel],
                                   properties: Dict[str, str]) -> str:
        """
        Create and start a container for an image and register it.

        Dynamically assigned ports are written back into the port mapping (and
        the properties) once the container runs.

        :return: The container id.
        """
        config = self.create_container_config(image, port_mapping, run_label, properties)
        container_id = self.access.create_container(config)

        logger.info("%s: Start container %s", image.description, container_id[:12])
        self.access.start_container(container_id)
        self.tracker.register_container(container_id, image, run_label)

        if port_mapping.needs_properties_update():
            self._update_mapped_ports(container_id, port_mapping)
        return container_id

    def create_container_config(self, image: ImageSpec, port_mapping: PortMapping,
                                run_label: Optional[RunLabel],
                                properties: Dict[str, str]) -> ContainerCreateConfig:
        run = image.run
        labels = dict(run.labels)
        if run_label is not None:
            labels[run_label.key] = run_label.value
        env = {
            key: EnvironmentInterpolator.interpolate(value, properties, strict=False)
            for key, value in run.env.items()
        }
        return ContainerCreateConfig(
            image=image.name,
            name=self._container_name(image),
            cmd=list(run.cmd),
            entrypoint=list(run.entrypoint),
            env=env,
            labels=labels,
            working_dir=run.working_dir,
            user=run.user,
            hostname=run.hostname,
            exposed_ports=port_mapping.container_ports,
            port_bindings=port_mapping.to_bindings_document(),
            dynamic_bind_ips=port_mapping.dynamic_bind_ips,
            binds=list(run.binds),
            volumes_from=self._volumes_from_containers(run.volumes_from),
            links=self._link_containers(run.links, run.is_custom_network),
            network_mode=self._network_mode(image),
            network_aliases=list(run.network_aliases) if run.is_custom_network else [],
            restart_policy=run.restart_policy,
        )

    def exec_in_container(self, container_id: str, command: str) -> str:
        """
        Run a command in a container, split like a shell would.
        """
        logger.debug("Executing '%s' in %s", command, container_id[:12])
        output = self.access.exec_in_container(container_id, shlex.split(command))
        for line in output.splitlines():
            logger.debug("%s> %s", container_id[:6], line)
        return output

    def lookup_container(self, name_or_alias: str) -> Optional[str]:
        return self.tracker.lookup_container(name_or_alias)

    def stop_container(self, descriptor: ShutdownDescriptor, keep_container: bool = False,
                       remove_volumes: bool = False):
        """
        Stop a container as described, running its pre-stop command first.
        Errors of the pre-stop command are only logged.
        """
        container_id = descriptor.container_id
        if descriptor.pre_stop:
            try:
                self.exec_in_container(container_id, descriptor.pre_stop)
            except DockerAccessError as e:
                logger.error("%s", e)

        kill_grace_period = self._adjust_grace_period(descriptor.kill_grace_period_ms)
        logger.debug("shutdown will wait max of %d seconds before removing container", kill_grace_period)

        start = time.monotonic()
        self.access.stop_container(container_id, kill_grace_period)
        waited = int((time.monotonic() - start) * 1000)

        if not keep_container:
            if descriptor.shutdown_grace_period_ms:
                logger.debug("Shutdown: Wait %d ms before removing container",
                             descriptor.shutdown_grace_period_ms)
                wait_util.sleep(descriptor.shutdown_grace_period_ms)
            self.access.remove_container(container_id, remove_volumes)

        logger.info("%s: Stop%s container %s after %d ms", descriptor.description,
                    "" if keep_container else " and removed", container_id[:12], waited)

    def stop_previously_started_container(self, container_id: str, keep_container: bool = False,
                                          remove_volumes: bool = False) -> bool:
        """
        Stop a container if it was started and registered before.

        :return: True if the container was tracked and stopped.
        """
        descriptor = self.tracker.remove_container(container_id)
        if descriptor is None:
            return False
        self.stop_container(descriptor, keep_container, remove_volumes)
        return True

    def stop_started_containers(self, keep_container: bool = False, remove_volumes: bool = False,
                                run_label: Optional[RunLabel] = None) -> List[ShutdownDescriptor]:
        """
        Stop all registered containers of a run, last started first.
        A failing container is logged and the others are still stopped.

        :param run_label: Run whose containers to stop, all if None.
        :return: Descriptors of the containers that were handled.
        """
        descriptors = self.tracker.remove_shutdown_descriptors(run_label)
        for descriptor in descriptors:
            try:
                self.stop_container(descriptor, keep_container, remove_volumes)
            except DockwrightError as e:
                logger.error("%s: Error while stopping container %s: %s",
                             descriptor.description, descriptor.container_id[:12], e)
        return descriptors

    def add_shutdown_hook(self, keep_container: bool = False, remove_volumes: bool = False,
                          run_label: Optional[RunLabel] = None) -> Callable[[], None]:
        """
        Stop all registered containers when the process exits.

        :return: The registered hook, to be passed to remove_shutdown_hook().
        """
        def hook():
            try:
                self.stop_started_containers(keep_container, remove_volumes, run_label)
            except Exception as e:
                logger.error("Error while stopping containers: %s", e)

        atexit.register(hook)
        return hook

    @staticmethod
    def remove_shutdown_hook(hook: Callable[[], None]):
        atexit.unregister(hook)

    # ==========================================================================

    def _update_mapped_ports(self, container_id: str, port_mapping: PortMapping):
        container = self.access.get_container(container_id)
        if container is not None and container.running:
            port_mapping.apply_observed_bindings(self.access.get_container_port_bindings(container_id))
        else:
            logger.warning("Container %s is not running anymore, can not extract dynamic ports",
                           container_id[:12])

    @staticmethod
    def _adjust_grace_period(grace_period_ms: int) -> int:
        seconds = (grace_period_ms + 500) // 1000
        if grace_period_ms != 0 and seconds == 0:
            logger.warning("A kill grace period of %d ms leads to no wait at all since it's rounded "
                           "to seconds. Please use at least 500 as value for wait.kill", grace_period_ms)
        return seconds

    @staticmethod
    def _container_name(image: ImageSpec) -> Optional[str]:
        if image.run.naming == NamingStrategy.NONE:
            return None
        if not image.alias:
            raise ConfigurationError(
                f"{image.name}: A naming scheme 'alias' requires an image alias to be set"
            )
        return image.alias

    def _find_container_id(self, name_or_alias: str, check_all_containers: bool) -> Optional[str]:
        container_id = self.lookup_container(name_or_alias)
        if container_id is None:
            # Not started by us, so the name is taken as an external container name
            container = self.access.get_container(name_or_alias)
            if container is not None and (check_all_containers or container.running):
                container_id = container.id
        return container_id

    def _container_name_for(self, container_id: str) -> str:
        container = self.access.get_container(container_id)
        return container.name if container is not None and container.name else container_id

    def _volumes_from_containers(self, images: List[str]) -> List[str]:
        names = []
        for image in images:
            container_id = self._find_container_id(image, True)
            if container_id is None:
                raise DockerAccessError(
                    f"No container found for image/alias '{image}', unable to mount volumes"
                )
            names.append(self._container_name_for(container_id))
        return names

    def _link_containers(self, links: List[str], leave_unresolved: bool) -> Dict[str, str]:
        resolved = {}
        for link in links:
            name, _, alias = link.rpartition(":")
            if not name:
                name = alias
            container_id = self._find_container_id(name, False)
            if container_id is not None:
                resolved[self._container_name_for(container_id)] = alias
            elif leave_unresolved:
                resolved[name] = alias
            else:
                raise DockerAccessError(
                    f"No container found for image/alias '{name}', unable to link"
                )
        return resolved

    def _network_mode(self, image: ImageSpec) -> Optional[str]:
        run = image.run
        alias = run.container_network_alias
        if alias is not None:
            container_id = self._find_container_id(alias, False)
            if container_id is None:
                raise DockerAccessError(
                    f"No container found for image/alias '{alias}', unable to share its network"
                )
            return f"container:{container_id}"
        return run.network
