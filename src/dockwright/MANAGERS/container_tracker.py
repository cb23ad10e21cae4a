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
Registry of started containers, used to stop them again in reverse start order.
"""
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..MODELS.image_config import ImageSpec
from ..MODELS.run_label import RunLabel


@dataclass
class ShutdownDescriptor:
    """How and when a started container is stopped."""

    container_id: str
    image: ImageSpec = field(repr=False)
    run_label: Optional[RunLabel] = None
    shutdown_grace_period_ms: int = 0
    kill_grace_period_ms: int = 0
    pre_stop: Optional[str] = None
    post_start: Optional[str] = None

    @classmethod
    def for_image(cls, container_id: str, image: ImageSpec,
                  run_label: Optional[RunLabel] = None) -> "ShutdownDescriptor":
        """
        Take the grace periods and exec commands from the image's wait configuration.
        """
        wait = image.run.wait
        exec_config = wait.exec
        return cls(
            container_id=container_id,
            image=image,
            run_label=run_label,
            shutdown_grace_period_ms=wait.shutdown,
            kill_grace_period_ms=wait.kill,
            pre_stop=exec_config.pre_stop if exec_config else None,
            post_start=exec_config.post_start if exec_config else None,
        )

    @property
    def description(self) -> str:
        return self.image.description


class ContainerTracker:
    """
    Tracks started containers together with the image they were created from.

    One container per image name/alias is kept for lookups, while every
    registered container stays tracked until it is removed. All operations run
    under a single lock so that the watch thread and the main flow never see a
    half-updated registry.
    """

    def __init__(self):
        self._lock = threading.RLock()
        # name or alias -> container id
        self._image_to_container: Dict[str, str] = {}
        self._alias_to_container: Dict[str, str] = {}
        # container id -> descriptor, in registration order
        self._descriptors: Dict[str, ShutdownDescriptor] = {}

    def register_container(self, container_id: str, image: ImageSpec,
                           run_label: Optional[RunLabel] = None,
                           descriptor: Optional[ShutdownDescriptor] = None) -> ShutdownDescriptor:
        """
        Register a started container.

        :param container_id: Id of the started container.
        :param image: Image the container was created from.
        :param run_label: Label of the run which started the container.
        :param descriptor: Shutdown settings, derived from the image if not given.
        :return: The registered descriptor.
        """
        if descriptor is None:
            descriptor = ShutdownDescriptor.for_image(container_id, image, run_label)
        with self._lock:
            self._descriptors.pop(container_id, None)
            self._descriptors[container_id] = descriptor
            self._image_to_container[image.name] = container_id
            if image.alias:
                self._alias_to_container[image.alias] = container_id
        return descriptor

    def lookup_container(self, name_or_alias: str) -> Optional[str]:
        """
        Lookup the current container for an image name or alias.

        :return: Container id or None.
        """
        with self._lock:
            if name_or_alias in self._alias_to_container:
                return self._alias_to_container[name_or_alias]
            return self._image_to_container.get(name_or_alias)

    def remove_container(self, container_id: str) -> Optional[ShutdownDescriptor]:
        """
        Stop tracking a container.

        :return: The removed descriptor or None if the container was not tracked.
        """
        with self._lock:
            descriptor = self._descriptors.pop(container_id, None)
            if descriptor is not None:
                self._remove_from_lookup(container_id)
            return descriptor

    def remove_shutdown_descriptors(self, run_label: Optional[RunLabel] = None) -> List[ShutdownDescriptor]:
        """
        Remove and return the descriptors of a run, most recently registered first.

        :param run_label: Only descriptors whose label matches, or all if None.
        :return: The removed descriptors. Empty if nothing (more) matches.
        """
        with self._lock:
            if run_label is None:
                removed = list(self._descriptors.values())
            else:
                removed = [d for d in self._descriptors.values()
                           if d.run_label is not None and d.run_label.matches(run_label)]
            for descriptor in removed:
                del self._descriptors[descriptor.container_id]
                self._remove_from_lookup(descriptor.container_id)
            removed.reverse()
            return removed

    def descriptors(self) -> List[ShutdownDescriptor]:
        """Snapshot of all tracked descriptors in registration order."""
        with self._lock:
            return list(self._descriptors.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._descriptors)

    def _remove_from_lookup(self, container_id: str):
        for lookup in (self._image_to_container, self._alias_to_container):
            for key in [k for k, v in lookup.items() if v == container_id]:
                del lookup[key]
