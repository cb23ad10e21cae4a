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
Errors raised while resolving, starting, waiting for and stopping containers.
"""
from typing import List


class DockwrightError(Exception):
    """Base class for all errors raised by dockwright."""


class ConfigurationError(DockwrightError, ValueError):
    """The configuration document or one of its values is invalid."""


class InvalidPortMappingError(DockwrightError, ValueError):
    """A port mapping specification does not follow the expected grammar."""

    FORMAT = "<hostIP>:<hostPort>:<containerPort>(/tcp|udp)"

    def __init__(self, mapping: str):
        self.mapping = mapping
        super().__init__(
            f"Invalid port mapping '{mapping}'\n"
            f"Required format: '{self.FORMAT}'"
        )


class UnresolvableHostError(DockwrightError, ValueError):
    """A host to bind a port to cannot be resolved to an IP address."""

    def __init__(self, host: str):
        self.host = host
        super().__init__(f"Host '{host}' to bind to cannot be resolved")


class PortMappingStateError(DockwrightError):
    """A dynamic port variable was resolved a second time with another value."""


class UnresolvableDependencyError(DockwrightError):
    """No start order exists for the given images (cycle or unknown dependency)."""

    def __init__(self, message: str, unresolved: List[str]):
        self.unresolved = unresolved
        super().__init__(message)


class WaitTimeoutError(DockwrightError):
    """Readiness was not reached within the configured time."""

    def __init__(self, message: str, waited: int):
        self.waited = waited
        super().__init__(message)


class PreconditionFailedError(DockwrightError):
    """The waited-on container stopped before it became ready."""

    def __init__(self, message: str, waited: int):
        self.waited = waited
        super().__init__(message)


class DockerAccessError(DockwrightError):
    """Talking to the container engine failed."""
