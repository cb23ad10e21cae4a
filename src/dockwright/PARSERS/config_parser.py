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
Parser for dockwright.yml files.
"""
import logging
import os
import shlex
from typing import Any, Dict, List, Optional

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..MODELS.orchestration_config import OrchestrationConfig
from ..UTILS.string_interpolation import EnvironmentInterpolator
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "dockwright.yml"


class ConfigParser:
    """
    Parser for dockwright.yml files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables for interpolation, the process environment by default.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, config_path: str) -> OrchestrationConfig:
        """
        Parses a config file from a path. Property files are resolved relative to it.

        :param config_path: Path to the config file.
        :return: Parsed configuration.
        :raises ConfigurationError: If the file can't be read or is invalid.
        """
        try:
            with open(config_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e
        return self.parse_from_string(content, base_dir=os.path.dirname(os.path.abspath(config_path)))

    def parse_from_string(self, content: str, base_dir: str = ".") -> OrchestrationConfig:
        """
        Parses a config document from a string.

        Unknown ${VAR} references are kept, so that they can still be filled in
        from project properties later on.

        :param content: YAML content of the config file.
        :param base_dir: Directory relative property files are looked up in.
        :return: Parsed configuration.
        """
        content = EnvironmentInterpolator.interpolate(content, self.context, strict=False)
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML: {e}") from e
        if not data:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")

        data = self._normalize(data)
        try:
            config = OrchestrationConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        # Inline properties win over property files
        properties = self.load_property_files(config.property_files, base_dir)
        properties.update(config.properties)
        return config.model_copy(update={"properties": properties})

    @staticmethod
    def load_property_files(paths: List[str], base_dir: str = ".") -> Dict[str, str]:
        """
        Reads key=value property files, later files overriding earlier ones.

        :raises ConfigurationError: If a file doesn't exist.
        """
        properties: Dict[str, str] = {}
        for path in paths:
            full = path if os.path.isabs(path) else os.path.join(base_dir, path)
            if not os.path.isfile(full):
                raise ConfigurationError(f"Property file {full} does not exist")
            values = dotenv_values(full)
            properties.update({k: v for k, v in values.items() if v is not None})
            logger.debug("Read %d properties from %s", len(values), full)
        return properties

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Converts scalar YAML values to the strings the models expect.
        """
        data = dict(data)
        if isinstance(data.get('project'), dict):
            data['project'] = self._to_str_dict(data['project'])
        if 'properties' in data:
            data['properties'] = self._to_str_dict(data['properties'])
        data['property_files'] = self._to_list(data.get('property_files'))

        images = data.get('images') or []
        if not isinstance(images, list):
            raise ConfigurationError("'images' must be a list")
        data['images'] = [self._normalize_image(image) for image in images]
        return data

    def _normalize_image(self, image: Any) -> Any:
        if not isinstance(image, dict) or not isinstance(image.get('run'), dict):
            return image
        image = dict(image)
        run = dict(image['run'])
        for key in ('env', 'labels'):
            if key in run:
                run[key] = self._to_str_dict(run[key])
        for key in ('cmd', 'entrypoint'):
            if isinstance(run.get(key), str):
                try:
                    run[key] = shlex.split(run[key])
                except ValueError as e:
                    raise ConfigurationError(f"Invalid {key} '{run[key]}': {e}") from e
        self._check_ports(image.get('name'), run.get('ports'))
        for key in ('ports', 'links', 'volumes_from', 'binds', 'depends_on', 'network_aliases'):
            if key in run:
                run[key] = self._to_list(run[key])
        image['run'] = run
        return image

    @staticmethod
    def _check_ports(image_name: Any, ports: Any):
        # YAML reads unquoted '2222:22' as the base 60 integer 133342
        if ports is None:
            return
        for port in ports if isinstance(ports, list) else [ports]:
            if not isinstance(port, str):
                raise ConfigurationError(
                    f"{image_name}: Port mapping {port!r} is not a string. "
                    f"Quote port mappings in the config file, e.g. \"2222:22\""
                )

    def _to_str_dict(self, val: Any) -> Any:
        if not isinstance(val, dict):
            return val
        return {str(k): "" if v is None else str(v) for k, v in val.items()}

    def _to_list(self, val: Any) -> List[Any]:
        if val is None:
            return []
        if isinstance(val, list):
            return [str(v) if isinstance(v, (int, float)) else v for v in val]
        return [str(val)]
