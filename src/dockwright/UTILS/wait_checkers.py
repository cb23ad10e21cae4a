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
Readiness probes: HTTP ping, log pattern, TCP port and engine health status.
"""

import logging
import re
import socket
import threading
from typing import List, Optional

import requests

from ..ACCESS.docker_access import DockerAccess, LogHandle
from ..exceptions import ConfigurationError
from .wait_util import WaitChecker

logger = logging.getLogger(__name__)

# Timeout for a single ping or connect, in seconds
PING_TIMEOUT = 0.5

STATUS_RANGE_PATTERN = re.compile(r"^(\d+)\s*\.\.+\s*(\d+)$")


class HttpPingChecker(WaitChecker):
    """
    Ready when an URL answers with a status code in the accepted range.
    Connection problems only mean "not ready yet".
    """

    def __init__(self, url: str, method: str = "HEAD", status: str = "200..399",
                 allow_all_hosts: bool = False):
        """
        :param url: URL to ping.
        :param method: HTTP method to use.
        :param status: Accepted status, a single code or a range like '200..399'.
        :param allow_all_hosts: Skip TLS certificate and host name verification.
        """
        self.url = url
        self.method = method.upper()
        self.allow_all_hosts = allow_all_hosts
        match = STATUS_RANGE_PATTERN.match(status.strip())
        if match:
            self.status_min, self.status_max = int(match.group(1)), int(match.group(2))
        else:
            self.status_min = self.status_max = int(status)

    def check(self) -> bool:
        try:
            response = requests.request(
                self.method,
                self.url,
                timeout=PING_TIMEOUT,
                allow_redirects=False,
                verify=not self.allow_all_hosts,
            )
        except requests.RequestException:
            return False
        if response.status_code == 501:
            raise ConfigurationError(
                f"Invalid or not supported HTTP method '{self.method}' for checking {self.url}"
            )
        return self.status_min <= response.status_code <= self.status_max

    @property
    def log_label(self) -> str:
        return f"on url {self.url}"


class LogWaitChecker(WaitChecker):
    """
    Ready when a line of the container log matches a pattern.

    The log is followed in the background from the first check on. Patterns
    compiled with DOTALL (e.g. '(?s)') are matched against the whole log seen so
    far instead of single lines.
    """

    def __init__(self, pattern: str, access: DockerAccess, container_id: str):
        self.pattern = re.compile(pattern)
        self.access = access
        self.container_id = container_id
        self._buffer: Optional[List[str]] = [] if self.pattern.flags & re.DOTALL else None
        self._matched = threading.Event()
        self._handle: Optional[LogHandle] = None

    def check(self) -> bool:
        if self._handle is None:
            self._handle = self.access.get_logs_async(self.container_id, self._on_line)
        return self._matched.is_set()

    def _on_line(self, line: str) -> bool:
        logger.debug("LogWaitChecker: Trying to match '%s' [Pattern: %s]", line, self.pattern.pattern)
        if self._buffer is not None:
            self._buffer.append(line)
            text = "\n".join(self._buffer)
        else:
            text = line
        if self.pattern.search(text):
            logger.debug("Found log-wait pattern in log output")
            self._matched.set()
            return True
        return False

    def clean_up(self):
        if self._handle is not None and self._handle.is_alive:
            self._handle.cancel()

    @property
    def log_label(self) -> str:
        return f"on log out '{self.pattern.pattern}'"


class TcpPortChecker(WaitChecker):
    """
    Ready when every given port accepts a TCP connection.
    """

    def __init__(self, host: str, ports: List[int]):
        self.host = host
        self.ports = list(ports)
        self.pending = list(ports)

    def check(self) -> bool:
        for port in list(self.pending):
            try:
                with socket.create_connection((self.host, port), timeout=PING_TIMEOUT):
                    self.pending.remove(port)
            except OSError:
                pass
        return not self.pending

    @property
    def log_label(self) -> str:
        return f"on tcp port '{self.ports}'"


class HealthCheckChecker(WaitChecker):
    """
    Ready when the engine reports the container's health check as healthy.
    """

    def __init__(self, access: DockerAccess, container_id: str, image_description: str):
        self.access = access
        self.container_id = container_id
        self.image_description = image_description
        self._first = True

    def check(self) -> bool:
        container = self.access.get_container(self.container_id)
        if container is None:
            return False
        if container.health is None:
            if self._first:
                raise ConfigurationError(
                    f"Cannot wait for a health check on {self.image_description}, "
                    "it has none configured"
                )
            return False
        self._first = False
        return container.health == "healthy"

    @property
    def log_label(self) -> str:
        return "on healthcheck"
