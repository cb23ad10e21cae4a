"""
Dependency resolution for images to determine the start order of their containers.
"""
import logging
from typing import Callable, List, Optional, Set

from ..MODELS.image_config import ImageSpec
from ..exceptions import UnresolvableDependencyError

logger = logging.getLogger(__name__)

MAX_RESOLVE_RETRIES = 10


class DependencyResolver:
    """
    Resolves the start order of images based on their volume, link and network dependencies.

    Images without dependencies come first, in input order. The remaining
    images are picked up in repeated passes as soon as everything they depend
    on has been placed. The order within a pass follows the input order, so the
    result is stable for a given input.
    """
    def __init__(self, container_exists: Optional[Callable[[str], bool]] = None):
        """
        :param container_exists: Optional lookup for external containers. A dependency
            naming an existing container counts as satisfied.
        """
        self.container_exists = container_exists

    def resolve(self, images: List[ImageSpec]) -> List[ImageSpec]:
        """
        Determines the order in which containers for the given images must be started.

        :param images: Images to order.
        :return: Images such that every image comes after all of its dependencies.
        :raises UnresolvableDependencyError: On cyclic or unknown dependencies.
        """
        resolved: List[ImageSpec] = []
        processed: Set[str] = set()
        pending: List[ImageSpec] = []

        for image in images:
            if image.dependencies:
                pending.append(image)
            else:
                self._mark_processed(image, processed)
                resolved.append(image)

        passes = 0
        while pending:
            if passes >= MAX_RESOLVE_RETRIES:
                raise self._error(
                    f"Cannot resolve image dependencies after {MAX_RESOLVE_RETRIES} passes", pending
                )
            passes += 1

            still_pending = []
            for image in pending:
                if self._has_required_dependencies(image, processed):
                    self._mark_processed(image, processed)
                    resolved.append(image)
                else:
                    still_pending.append(image)

            if len(still_pending) == len(pending):
                raise self._error("Cannot resolve image dependencies for start order", pending)
            pending = still_pending

        logger.debug("Start order: %s", ", ".join(image.name for image in resolved))
        return resolved

    def resolve_names(self, images: List[ImageSpec]) -> List[str]:
        return [image.name for image in self.resolve(images)]

    def _has_required_dependencies(self, image: ImageSpec, processed: Set[str]) -> bool:
        for dependency in image.dependencies:
            if dependency in processed:
                continue
            # An already existing container is an external dependency which is assumed running
            if self.container_exists is not None and self.container_exists(dependency):
                continue
            return False
        return True

    @staticmethod
    def _mark_processed(image: ImageSpec, processed: Set[str]):
        processed.add(image.name)
        if image.alias:
            processed.add(image.alias)

    @staticmethod
    def _error(headline: str, pending: List[ImageSpec]) -> UnresolvableDependencyError:
        lines = [headline, "Unresolved images:"]
        for image in pending:
            lines.append(f"* {image.description} depends on {','.join(image.dependencies)}")
        return UnresolvableDependencyError("\n".join(lines), [image.name for image in pending])
