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
Port mappings between host and container, including ports which are only
known after the container engine assigned them.
"""

import logging
import os
import re
import socket
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Union

from jinja2 import Template

from ..exceptions import (
    InvalidPortMappingError,
    PortMappingStateError,
    UnresolvableHostError,
)
from .string_interpolation import extract_property_name

logger = logging.getLogger(__name__)

# Splits off an optional protocol suffix
PROTOCOL_SPLIT_PATTERN = re.compile(r"^(.*?)(?:/(tcp|udp))?$")

# Property holding the address of the docker host, used for "all interfaces" bindings
DOCKER_HOST_ADDRESS_PROPERTY = "docker.host.address"

ALL_INTERFACES = "0.0.0.0"

MAX_PORT = 65535

PROPERTY_FILE_TEMPLATE = """# Docker ports
{% for key, value in properties | dictsort %}{{ key }}={{ value }}
{% endfor %}"""


class PortBinding(NamedTuple):
    """A host port and host IP as reported by the engine for a container port."""

    host_port: Optional[int]
    host_ip: Optional[str] = None


class VariableState(str, Enum):
    """Lifecycle of a variable filled in from a dynamic assignment."""

    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"


class DynamicVariable:
    """
    A named variable whose value becomes known at most once.

    Resolving again with the same value is a no-op; another value is an error.
    """

    def __init__(self, name: str, value: Any = None):
        self.name = name
        self.value = value
        self.state = VariableState.RESOLVED if value is not None else VariableState.UNRESOLVED

    @property
    def is_resolved(self) -> bool:
        return self.state == VariableState.RESOLVED

    def resolve(self, value: Any) -> bool:
        """
        Resolve the variable.

        :return: True if the value was set now, False if it was already set to it.
        :raises PortMappingStateError: If already resolved to a different value.
        """
        if self.is_resolved:
            if self.value == value:
                return False
            raise PortMappingStateError(
                f"Variable '{self.name}' is already resolved to {self.value}, cannot set it to {value}"
            )
        self.value = value
        self.state = VariableState.RESOLVED
        return True

    def __repr__(self) -> str:
        return f"DynamicVariable({self.name!r}, {self.state.value}, {self.value!r})"


@dataclass
class PortSpec:
    """One configured mapping for a container port."""

    container_port_spec: str
    host_port: Optional[int] = None
    host_port_variable: Optional[DynamicVariable] = None
    bind_ip: Optional[str] = None
    bind_ip_variable: Optional[DynamicVariable] = None

    @property
    def resolved_host_port(self) -> Optional[int]:
        if self.host_port is not None:
            return self.host_port
        if self.host_port_variable is not None and self.host_port_variable.is_resolved:
            return self.host_port_variable.value
        return None

    @property
    def is_dynamic(self) -> bool:
        return self.resolved_host_port is None


class PortMapping:
    """
    Port mappings parsed from specifications of the form
    '[bindIP:]hostPort:containerPort[/proto]' or 'containerPort[/proto]'.

    A non-numeric host port is a variable name. If the variable is set in the
    environment or the project properties its value is used, otherwise the port
    is left to the engine and the variable is filled in by
    apply_observed_bindings() once the container runs.
    """

    def __init__(self, port_specs: List[str], properties: Dict[str, str]):
        """
        :param port_specs: Port mapping specifications.
        :param properties: Project properties, updated with dynamically assigned values.
        :raises InvalidPortMappingError: If a specification is malformed.
        :raises UnresolvableHostError: If a bind host cannot be resolved.
        """
        self.properties = properties
        self.specs: Dict[str, PortSpec] = {}
        self.dynamic_properties: Dict[str, str] = {}

        for spec in port_specs:
            self._parse(spec)

    @classmethod
    def parse(cls, port_specs: List[str], properties: Dict[str, str]) -> "PortMapping":
        return cls(port_specs, properties)

    @property
    def container_ports(self) -> List[str]:
        """All mapped container ports as 'port/proto'."""
        return list(self.specs.keys())

    def needs_properties_update(self) -> bool:
        """
        Check whether variables have to be filled in from the engine's assignment.
        """
        for spec in self.specs.values():
            for variable in (spec.host_port_variable, spec.bind_ip_variable):
                if variable is not None and not variable.is_resolved:
                    return True
        return False

    def to_bindings_document(self) -> Dict[str, List[Dict[str, str]]]:
        """
        Create the 'PortBindings' part of a container create request.

        Ports without a known host port are omitted: the engine assigns those
        itself and they are read back after start.
        """
        bindings = {}
        for container_port_spec, spec in self.specs.items():
            host_port = spec.resolved_host_port
            if host_port is None:
                continue
            entry = {"HostPort": str(host_port)}
            if spec.bind_ip is not None:
                entry["HostIp"] = spec.bind_ip
            bindings[container_port_spec] = [entry]
        return bindings

    @property
    def dynamic_bind_ips(self) -> Dict[str, str]:
        """
        Bind IPs of ports whose host port is left to the engine, by container port.
        """
        return {
            container_port_spec: spec.bind_ip
            for container_port_spec, spec in self.specs.items()
            if spec.is_dynamic and spec.bind_ip is not None
        }

    def apply_observed_bindings(self, observed: Mapping[str, Union[PortBinding, tuple, None]]):
        """
        Fill in variables with the host ports and IPs the engine assigned.

        Must be called once, after the container has been started. Applying the
        same observation again changes nothing.

        :param observed: Container port spec -> (host port, host ip).
        :raises PortMappingStateError: If a variable was already set to another value.
        """
        for container_port_spec, binding in observed.items():
            spec = self.specs.get(container_port_spec)
            if spec is None or binding is None:
                continue
            binding = PortBinding(*binding)

            port_var = spec.host_port_variable
            if port_var is not None and binding.host_port is not None:
                if port_var.resolve(int(binding.host_port)):
                    logger.debug("Dynamic port %s = %s", port_var.name, port_var.value)
                    self._publish(port_var.name, port_var.value)

            ip_var = spec.bind_ip_variable
            host_ip = binding.host_ip
            if host_ip == ALL_INTERFACES:
                host_ip = self.properties.get(DOCKER_HOST_ADDRESS_PROPERTY)
            if ip_var is not None and host_ip is not None:
                if ip_var.resolve(host_ip):
                    logger.debug("Dynamic host address %s = %s", ip_var.name, host_ip)
                    self._publish(ip_var.name, host_ip)

    # ==========================================================================

    def _publish(self, name: str, value: Any):
        self.properties[name] = str(value)
        self.dynamic_properties[name] = str(value)

    def _parse(self, mapping: str):
        match = PROTOCOL_SPLIT_PATTERN.match(mapping)
        ports = match.group(1)
        protocol = match.group(2) or "tcp"

        parts = ports.rsplit(":", 2)
        port_spec = self._create_port_spec(mapping, parts[-1], protocol)
        if len(parts) == 3:
            spec = self._map_host_port(mapping, parts[1], port_spec)
            self._map_bind_to(parts[0], spec)
        elif len(parts) == 2:
            spec = self._map_host_port(mapping, parts[0], port_spec)
        else:
            spec = PortSpec(port_spec)
        # Last definition for a container port wins
        self.specs[port_spec] = spec

    @staticmethod
    def _create_port_spec(mapping: str, port: str, protocol: str) -> str:
        try:
            container_port = int(port)
        except ValueError:
            raise InvalidPortMappingError(mapping) from None
        if not 0 < container_port <= MAX_PORT:
            raise InvalidPortMappingError(mapping)
        return f"{container_port}/{protocol}"

    def _map_host_port(self, mapping: str, host_port: str, port_spec: str) -> PortSpec:
        if not host_port:
            return PortSpec(port_spec)
        fixed = _as_int_or_none(host_port)
        if fixed is not None:
            if not 0 <= fixed <= MAX_PORT:
                raise InvalidPortMappingError(mapping)
            return PortSpec(port_spec, host_port=fixed)

        name = extract_property_name(host_port) or host_port
        value = self._lookup_port(name)
        if value is not None:
            if not 0 <= value <= MAX_PORT:
                raise InvalidPortMappingError(mapping)
            # Pre-filled from a property, counts as known
            self.dynamic_properties[name] = str(value)
            return PortSpec(port_spec, host_port=value,
                            host_port_variable=DynamicVariable(name, value))
        return PortSpec(port_spec, host_port_variable=DynamicVariable(name))

    def _map_bind_to(self, bind_to: str, spec: PortSpec):
        name = _extract_host_property_name(bind_to)
        if name is None:
            spec.bind_ip = _resolve_hostname(bind_to)
            return
        host = self.properties.get(name)
        if host is not None:
            spec.bind_ip = _resolve_hostname(host)
        spec.bind_ip_variable = DynamicVariable(name)

    def _lookup_port(self, name: str) -> Optional[int]:
        # System environment first, then project properties
        if name in os.environ:
            return _as_int_or_none(os.environ[name])
        if name in self.properties:
            return _as_int_or_none(self.properties[name])
        return None


class PortPropertyWriter:
    """
    Collects dynamically resolved port properties and writes them to
    'key=value' property files after all containers are started.
    """

    def __init__(self, global_file: Optional[str] = None):
        """
        :param global_file: File receiving the properties of all images without their own file.
        """
        self.global_file = global_file
        self.global_export: Dict[str, str] = {}
        self.to_export: Dict[str, Dict[str, str]] = {}
        self.template = Template(PROPERTY_FILE_TEMPLATE)

    def add(self, port_mapping: PortMapping, port_property_file: Optional[str] = None):
        if port_property_file:
            self.to_export[port_property_file] = port_mapping.dynamic_properties
        elif self.global_file:
            self.global_export.update(port_mapping.dynamic_properties)

    def write(self) -> List[str]:
        """
        Write all collected property files.

        :return: Paths written.
        """
        written = []
        for path, props in self.to_export.items():
            self._write_properties(props, path)
            self.global_export.update(props)
            written.append(path)

        if self.global_file and self.global_export:
            self._write_properties(self.global_export, self.global_file)
            written.append(self.global_file)
        return written

    def _write_properties(self, props: Dict[str, str], path: str):
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            target.write_text(self.template.render(properties=props))
        except OSError as e:
            raise OSError(f"Cannot write properties to {path}: {e}") from e
        logger.info("Wrote port properties to %s", path)


def _as_int_or_none(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _extract_host_property_name(name: str) -> Optional[str]:
    if name.startswith("+"):
        return name[1:]
    return extract_property_name(name)


def _resolve_hostname(host: str) -> str:
    try:
        return socket.gethostbyname(host)
    except (socket.gaierror, UnicodeError):
        raise UnresolvableHostError(host) from None
