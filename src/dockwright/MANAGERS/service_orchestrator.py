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
Orchestration for multiple images, starting them in dependency order and
stopping them again in reverse.
"""
import logging
from typing import Callable, Dict, List, Optional

from ..ACCESS.docker_access import ContainerInfo, DockerAccess
from ..MODELS.image_config import ImageSpec
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.run_label import LABEL_KEY, RunLabel
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..UTILS.port_mapping import PortPropertyWriter
from ..exceptions import ConfigurationError, DockwrightError
from .container_tracker import ContainerTracker, ShutdownDescriptor
from .run_service import RunService
from .wait_service import WaitService

logger = logging.getLogger(__name__)


class ServiceOrchestrator:
    """
    Starts and stops all configured images of a project.
    """
    def __init__(self, config: OrchestrationConfig, access: DockerAccess,
                 tracker: Optional[ContainerTracker] = None,
                 properties: Optional[Dict[str, str]] = None,
                 run_label: Optional[RunLabel] = None,
                 pull_retries: int = 0):
        """
        Initializes the orchestrator.

        :param config: Configuration for all images.
        :param access: Container engine access.
        :param tracker: Registry for started containers, shared with a watcher.
        :param properties: Project properties, updated with dynamic ports.
        :param run_label: Label for this run, derived from the project if not given.
        :param pull_retries: How often to retry pulling a missing image.
        """
        self.config = config
        self.access = access
        self.tracker = tracker if tracker is not None else ContainerTracker()
        self.properties = properties if properties is not None else dict(config.properties)
        project = config.project
        self.run_label = run_label or RunLabel.create(project.group, project.artifact, project.version)
        self.pull_retries = pull_retries

        self.run_service = RunService(access, self.tracker)
        self.wait_service = WaitService(access)
        self.resolver = DependencyResolver(container_exists=access.has_container)
        self._shutdown_hook: Optional[Callable[[], None]] = None

    @property
    def images(self) -> List[ImageSpec]:
        """Configured images which are not skipped."""
        return [image for image in self.config.images if not image.run.skip]

    def order(self) -> List[str]:
        """
        Image names in the order they would be started.

        :raises UnresolvableDependencyError: On cyclic or unknown dependencies.
        """
        return self.resolver.resolve_names(self.images)

    def start(self, shutdown_hook: bool = False) -> Dict[str, str]:
        """
        Starts all images in dependency order and waits for each to get ready.

        If any image fails, every container started so far in this run is
        stopped and removed again before the error is re-raised.

        :param shutdown_hook: Stop the started containers when the process exits.
        :return: Container ids by image alias (or name).
        """
        images = self.resolver.resolve(self.images)
        logger.info("Starting images in order: %s", ", ".join(image.description for image in images))

        if shutdown_hook and self._shutdown_hook is None:
            self._shutdown_hook = self.run_service.add_shutdown_hook(run_label=self.run_label)

        writer = PortPropertyWriter(self.config.port_property_file)
        started: Dict[str, str] = {}
        try:
            for image in images:
                started[image.alias or image.name] = self._start_image(image, writer)
            writer.write()
        except Exception:
            logger.error("Error occurred during container startup, shutting down...")
            self.run_service.stop_started_containers(run_label=self.run_label)
            raise
        return started

    def stop(self, keep_container: bool = False, remove_volumes: bool = False,
             all_runs: bool = False) -> List[str]:
        """
        Stops the containers of this run in reverse start order.

        Containers started by another process are found by their run label.

        :param keep_container: Only stop, don't remove.
        :param remove_volumes: Remove anonymous volumes along with the containers.
        :param all_runs: Stop the containers of every run of this project.
        :return: Ids of the stopped containers.
        """
        label = self.run_label.without_run_id() if all_runs else self.run_label
        descriptors = self.run_service.stop_started_containers(keep_container, remove_volumes, label)
        if not descriptors:
            descriptors = self._labeled_containers(label)
            for descriptor in descriptors:
                try:
                    self.run_service.stop_container(descriptor, keep_container, remove_volumes)
                except DockwrightError as e:
                    logger.error("%s: Error while stopping container %s: %s",
                                 descriptor.description, descriptor.container_id[:12], e)

        if self._shutdown_hook is not None:
            self.run_service.remove_shutdown_hook(self._shutdown_hook)
            self._shutdown_hook = None
        return [descriptor.container_id for descriptor in descriptors]

    def ps(self) -> Dict[str, str]:
        """
        Returns the tracked containers.

        :return: Container ids by image alias (or name).
        """
        return {
            descriptor.image.alias or descriptor.image.name: descriptor.container_id
            for descriptor in self.tracker.descriptors()
        }

    # ==========================================================================

    def _start_image(self, image: ImageSpec, writer: PortPropertyWriter) -> str:
        self._ensure_image(image)
        port_mapping = self.run_service.create_port_mapping(image, self.properties)
        container_id = self.run_service.create_and_start_container(
            image, port_mapping, self.run_label, self.properties
        )
        self.wait_service.wait(image, self.properties, container_id)

        exec_config = image.run.wait.exec
        if exec_config is not None and exec_config.post_start:
            self.run_service.exec_in_container(container_id, exec_config.post_start)

        writer.add(port_mapping, image.run.port_property_file)
        return container_id

    def _ensure_image(self, image: ImageSpec):
        if self.access.get_image_id(image.name) is None:
            logger.info("%s: Pulling image", image.description)
            self.access.pull_image(image.name, self.pull_retries)

    def _labeled_containers(self, label: RunLabel) -> List[ShutdownDescriptor]:
        matching: List[ContainerInfo] = []
        for container in self.access.list_containers(LABEL_KEY):
            try:
                container_label = RunLabel.parse(container.labels.get(LABEL_KEY, ""))
            except ConfigurationError as e:
                logger.debug("Ignoring container %s: %s", container.id[:12], e)
                continue
            if container_label.matches(label):
                matching.append(container)

        # Last created first, like the in-process registry
        matching.sort(key=lambda c: c.created, reverse=True)
        return [
            ShutdownDescriptor.for_image(container.id, self._image_for(container), label)
            for container in matching
        ]

    def _image_for(self, container: ContainerInfo) -> ImageSpec:
        for image in self.config.images:
            if container.name and container.name == image.alias:
                return image
        for image in self.config.images:
            if container.image == image.name:
                return image
        return ImageSpec(name=container.image or container.name)
