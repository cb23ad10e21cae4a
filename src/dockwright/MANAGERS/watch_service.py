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
Watching images for changes, rebuilding them and restarting their containers.
"""
import heapq
import itertools
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from ..ACCESS.docker_access import DockerAccess
from ..MODELS.image_config import ImageSpec, WatchMode
from ..MODELS.orchestration_config import WatchOptions
from ..MODELS.run_label import RunLabel
from .run_service import RunService

logger = logging.getLogger(__name__)

# Smallest allowed interval between two runs of a watch task, in ms
MIN_WATCH_INTERVAL = 100


class BuildService(ABC):
    """
    Builds images. Provided by the host build tool.
    """

    @abstractmethod
    def build(self, image: ImageSpec):
        """Build the image so that a new image id gets tagged with its name."""


class ChangeDetector:
    """
    Detects changed, added or removed files below a set of paths by comparing
    modification times.
    """

    def __init__(self, paths: List[str]):
        self.paths = list(paths)
        self._snapshot = self.snapshot()

    def snapshot(self) -> Dict[str, float]:
        files: Dict[str, float] = {}
        for path in self.paths:
            if os.path.isfile(path):
                files[path] = os.path.getmtime(path)
                continue
            for root, _, names in os.walk(path):
                for name in names:
                    full = os.path.join(root, name)
                    try:
                        files[full] = os.path.getmtime(full)
                    except OSError:
                        # Removed while walking
                        continue
        return files

    def has_changed(self) -> bool:
        """
        Check for changes since the last call.
        """
        current = self.snapshot()
        changed = current != self._snapshot
        self._snapshot = current
        return changed


class ImageWatcher:
    """
    The watch state of one image: its current container and image id.
    Updated from the watch thread, read from any thread.
    """

    def __init__(self, image: ImageSpec, mode: WatchMode, interval: int,
                 post_exec: Optional[str], container_id: Optional[str],
                 image_id: Optional[str]):
        self.image = image
        self.mode = mode
        self.interval = max(interval, MIN_WATCH_INTERVAL)
        self.post_exec = post_exec
        self._lock = threading.Lock()
        self._container_id = container_id
        self._image_id = image_id

    @property
    def container_id(self) -> Optional[str]:
        with self._lock:
            return self._container_id

    @container_id.setter
    def container_id(self, value: Optional[str]):
        with self._lock:
            self._container_id = value

    @property
    def image_id(self) -> Optional[str]:
        with self._lock:
            return self._image_id

    @image_id.setter
    def image_id(self, value: Optional[str]):
        with self._lock:
            self._image_id = value


class TaskScheduler:
    """
    Runs periodic tasks one after another on a single daemon thread.

    A failing run of a task is logged and the task is scheduled again.
    """

    def __init__(self):
        self._tasks: List[Tuple[float, int, int, Callable[[], None]]] = []
        self._counter = itertools.count()
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def schedule(self, task: Callable[[], None], interval_ms: int):
        """
        Run a task every interval_ms, the first time after one interval.
        """
        with self._lock:
            heapq.heappush(self._tasks, (time.monotonic() + interval_ms / 1000.0,
                                         next(self._counter), interval_ms, task))

    def start(self):
        self._stopped.clear()
        self.thread = threading.Thread(target=self._run_loop, name="dockwright-watch", daemon=True)
        self.thread.start()

    def stop(self, timeout: float = 5.0):
        self._stopped.set()
        if self.thread:
            self.thread.join(timeout=timeout)

    @property
    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def _run_loop(self):
        while not self._stopped.is_set():
            with self._lock:
                entry = None
                delay = MIN_WATCH_INTERVAL / 1000.0
                if self._tasks:
                    delay = self._tasks[0][0] - time.monotonic()
                    if delay <= 0:
                        entry = heapq.heappop(self._tasks)
            if entry is None:
                self._stopped.wait(delay)
                continue

            _, _, interval_ms, task = entry
            try:
                task()
            except Exception as e:
                logger.error("Error while running watch task: %s", e, exc_info=logger.isEnabledFor(logging.DEBUG))
            self.schedule(task, interval_ms)


class WatchService:
    """
    Watches started images and rebuilds or restarts them on changes.
    """

    def __init__(self, access: DockerAccess, run_service: RunService,
                 properties: Dict[str, str], run_label: Optional[RunLabel] = None,
                 options: Optional[WatchOptions] = None,
                 build_service: Optional[BuildService] = None):
        """
        :param access: Container engine access.
        :param run_service: Used to restart containers.
        :param properties: Project properties, updated with dynamic ports on restart.
        :param run_label: Label for restarted containers.
        :param options: Global watch defaults.
        :param build_service: Builds images in build mode. Build mode is skipped without it.
        """
        self.access = access
        self.run_service = run_service
        self.properties = properties
        self.run_label = run_label
        self.options = options or WatchOptions()
        self.build_service = build_service
        self.scheduler = TaskScheduler()
        self.watchers: List[ImageWatcher] = []

    def schedule(self, images: List[ImageSpec]) -> List[ImageWatcher]:
        """
        Create watchers and their tasks for images with a started container.
        """
        for image in images:
            container_id = self.run_service.lookup_container(image.alias or image.name)
            if container_id is None:
                logger.debug("%s: No container started, not watching", image.description)
                continue
            watcher = self._create_watcher(image, container_id)
            mode = watcher.mode

            if mode.is_build:
                task = self._build_task(watcher)
                if task is not None:
                    self.scheduler.schedule(task, watcher.interval)
                    self.watchers.append(watcher)
                    logger.info("%s: Watching for file changes%s", image.description,
                                " (restart after build)" if mode.is_run else "")
                    continue
            if mode.is_run:
                self.scheduler.schedule(lambda w=watcher: self.check_image(w), watcher.interval)
                self.watchers.append(watcher)
                logger.info("%s: Watching for image changes", image.description)
            elif mode.is_copy:
                logger.warning("%s: Watch mode 'copy' is not supported, not watching", image.description)
        return self.watchers

    def watch(self, images: List[ImageSpec]):
        """
        Watch images until stop() is called or the user interrupts.
        """
        self.schedule(images)
        if not self.watchers:
            logger.warning("No images to watch")
            return
        self.scheduler.start()
        logger.info("Waiting for changes, press Ctrl-C to stop")
        try:
            while self.scheduler.is_running:
                self.scheduler.thread.join(timeout=1)
        except KeyboardInterrupt:
            logger.info("Stopping watch")
        finally:
            self.stop()

    def stop(self):
        self.scheduler.stop()

    def check_image(self, watcher: ImageWatcher) -> bool:
        """
        Restart the container if the image id changed since the last check.

        :return: True if the container was restarted.
        """
        image_id = self.access.get_image_id(watcher.image.name)
        if image_id is None or image_id == watcher.image_id:
            return False
        logger.info("%s: Image changed", watcher.image.description)
        watcher.image_id = image_id
        self.restart_container(watcher)
        return True

    def check_build(self, watcher: ImageWatcher, detector: ChangeDetector) -> bool:
        """
        Rebuild the image if watched files changed, restarting in 'both' mode.

        :return: True if the image was rebuilt.
        """
        if not detector.has_changed():
            return False
        logger.info("%s: Files changed, rebuilding", watcher.image.description)
        self.build_service.build(watcher.image)
        image_id = self.access.get_image_id(watcher.image.name)
        if watcher.mode.is_run and image_id != watcher.image_id:
            self.restart_container(watcher)
        watcher.image_id = image_id
        return True

    def restart_container(self, watcher: ImageWatcher) -> str:
        """
        Replace the watched container by a new one from the current image.

        :return: The new container id.
        """
        image = watcher.image
        old_id = watcher.container_id
        logger.info("%s: Restarting container", image.description)
        if old_id is not None:
            self.run_service.stop_previously_started_container(old_id)

        port_mapping = self.run_service.create_port_mapping(image, self.properties)
        container_id = self.run_service.create_and_start_container(
            image, port_mapping, self.run_label, self.properties
        )
        watcher.container_id = container_id

        if watcher.post_exec:
            self.run_service.exec_in_container(container_id, watcher.post_exec)
        return container_id

    # ==========================================================================

    def _create_watcher(self, image: ImageSpec, container_id: str) -> ImageWatcher:
        config = image.watch
        mode = self.options.mode
        interval = self.options.interval
        post_exec = self.options.post_exec
        if config is not None:
            mode = config.mode or mode
            interval = config.interval or interval
            post_exec = config.post_exec or post_exec
        return ImageWatcher(image, mode, interval, post_exec, container_id,
                            self.access.get_image_id(image.name))

    def _build_task(self, watcher: ImageWatcher) -> Optional[Callable[[], None]]:
        image = watcher.image
        paths = image.watch.paths if image.watch is not None else []
        if self.build_service is None:
            logger.warning("%s: No build service available, not watching for builds", image.description)
            return None
        if not paths:
            logger.warning("%s: No paths to watch for builds", image.description)
            return None
        detector = ChangeDetector(paths)
        return lambda: self.check_build(watcher, detector)
