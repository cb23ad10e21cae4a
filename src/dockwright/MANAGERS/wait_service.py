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
Waiting for started containers according to their wait configuration.
"""
import logging
from typing import Dict, List, Optional

from ..ACCESS.docker_access import DockerAccess
from ..MODELS.image_config import ImageSpec, TcpWaitConfig
from ..UTILS import wait_util
from ..UTILS.port_mapping import DOCKER_HOST_ADDRESS_PROPERTY
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..UTILS.wait_checkers import (
    HealthCheckChecker,
    HttpPingChecker,
    LogWaitChecker,
    TcpPortChecker,
)
from ..UTILS.wait_util import Precondition, WaitChecker
from ..exceptions import (
    ConfigurationError,
    DockerAccessError,
    PreconditionFailedError,
    WaitTimeoutError,
)

logger = logging.getLogger(__name__)


class ContainerRunningPrecondition(Precondition):
    """
    Holds while the container has not exited.
    """

    def __init__(self, access: DockerAccess, container_id: str):
        self.access = access
        self.container_id = container_id
        self.exit_code: Optional[int] = None

    def is_ok(self) -> bool:
        try:
            container = self.access.get_container(self.container_id)
        except DockerAccessError:
            return False
        if container is None:
            return False
        if not container.running:
            self.exit_code = container.exit_code
            return False
        return True

    def clean_up(self):
        if self.exit_code is not None and logger.isEnabledFor(logging.DEBUG):
            # Something went wrong during startup, show what the container said
            try:
                self.access.get_logs_sync(
                    self.container_id,
                    lambda line: logger.debug("%s> %s", self.container_id[:6], line),
                )
            except DockerAccessError as e:
                logger.debug("Cannot fetch log of %s: %s", self.container_id, e)


class WaitService:
    """
    Blocks until a container satisfies the readiness conditions of its image.
    """

    def __init__(self, access: DockerAccess):
        self.access = access

    def wait(self, image: ImageSpec, properties: Dict[str, str], container_id: str) -> int:
        """
        Wait for a started container.

        :param image: Image the container was created from.
        :param properties: Project properties, used to fill in the wait URL.
        :param container_id: The container to wait for.
        :return: Milliseconds waited.
        :raises WaitTimeoutError: If the container didn't get ready in time.
        :raises PreconditionFailedError: If the container exited while waiting.
        """
        checkers = self.prepare_checkers(image, properties, container_id)
        timeout = image.run.wait.time or 0

        if not checkers:
            if timeout > 0:
                logger.info("%s: Pausing for %d ms", image.description, timeout)
                wait_util.sleep(timeout)
            return timeout

        log_line = " and ".join(checker.log_label for checker in checkers)
        precondition = ContainerRunningPrecondition(self.access, container_id)
        try:
            waited = wait_util.wait(timeout, checkers, precondition)
        except WaitTimeoutError as e:
            message = f"{image.description}: Timeout after {e.waited} ms while waiting {log_line}"
            logger.error(message)
            raise WaitTimeoutError(message, e.waited) from e
        except PreconditionFailedError as e:
            message = (f"{image.description}: Container stopped with exit code "
                       f"{precondition.exit_code} unexpectedly after {e.waited} ms while waiting {log_line}")
            logger.error(message)
            raise PreconditionFailedError(message, e.waited) from e

        logger.info("%s: Waited %s %d ms", image.description, log_line, waited)
        return waited

    def prepare_checkers(self, image: ImageSpec, properties: Dict[str, str],
                         container_id: str) -> List[WaitChecker]:
        wait = image.run.wait
        checkers: List[WaitChecker] = []

        if wait.url:
            url = EnvironmentInterpolator.interpolate(wait.url, properties, strict=False)
            http = wait.http
            if http is not None:
                checkers.append(HttpPingChecker(url, http.method, http.status, http.allow_all_hosts))
                logger.info("%s: Waiting on url %s with method %s for status %s.",
                            image.description, url, http.method, http.status)
            else:
                checkers.append(HttpPingChecker(url))
                logger.info("%s: Waiting on url %s.", image.description, url)

        if wait.log:
            logger.debug("LogWaitChecker: Waiting on %s", wait.log)
            checkers.append(LogWaitChecker(wait.log, self.access, container_id))

        if wait.tcp is not None:
            checkers.append(self._tcp_checker(image, properties, container_id, wait.tcp))

        if wait.healthy:
            checkers.append(HealthCheckChecker(self.access, container_id, image.description))

        return checkers

    def _tcp_checker(self, image: ImageSpec, properties: Dict[str, str], container_id: str,
                     tcp: TcpWaitConfig) -> TcpPortChecker:
        if not tcp.ports:
            raise ConfigurationError("TCP wait config given but no ports to wait on")
        host = tcp.host or properties.get(DOCKER_HOST_ADDRESS_PROPERTY) or "localhost"
        mode = tcp.mode or ("direct" if host == "localhost" else "mapped")

        if mode == "mapped":
            bindings = self.access.get_container_port_bindings(container_id)
            ports = []
            for port in tcp.ports:
                binding = bindings.get(f"{port}/tcp")
                if binding is None or binding.host_port is None:
                    raise ConfigurationError(
                        f"Cannot watch on port {port}, since there is no network binding"
                    )
                ports.append(binding.host_port)
            logger.info("%s: Waiting for mapped ports %s on host %s", image.description, ports, host)
            return TcpPortChecker(host, ports)

        container = self.access.get_container(container_id)
        if container is not None:
            network_mode = container.network_mode
            if not network_mode or network_mode in ("bridge", "default"):
                host = container.ip_address or host
            elif network_mode != "host":
                host = container.network_ips.get(network_mode, host)
        logger.info("%s: Waiting for ports %s directly on container with IP (%s).",
                    image.description, tcp.ports, host)
        return TcpPortChecker(host, tcp.ports)
