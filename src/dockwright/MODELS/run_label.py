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
Label marking every container started by one orchestration run.
"""
import uuid
from dataclasses import dataclass, field
from typing import Optional

from ..exceptions import ConfigurationError

LABEL_KEY = "dockwright.run"


def _new_run_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class RunLabel:
    """
    Build coordinates plus an optional run id.

    Two labels match when their coordinates are equal and either run id is
    unset or both run ids are equal.
    """

    coordinates: str
    run_id: Optional[str] = field(default_factory=_new_run_id)

    @classmethod
    def create(cls, group: str, artifact: str, version: str,
               run_id: Optional[str] = None) -> "RunLabel":
        """
        Build a label from project coordinates. A random run id is used if none is given.
        """
        return cls(f"{group}:{artifact}:{version}", run_id or _new_run_id())

    @classmethod
    def parse(cls, value: str) -> "RunLabel":
        """
        Parse a label value as stored on a container.

        :param value: '<group>:<artifact>:<version>[:<runId>]'
        :raises ConfigurationError: If the value has another shape.
        """
        parts = value.split(":")
        if len(parts) not in (3, 4):
            raise ConfigurationError(
                f"Label '{value}' has not the format <group>:<artifact>:<version>[:<runId>]"
            )
        return cls(":".join(parts[:3]), parts[3] if len(parts) == 4 else None)

    @property
    def key(self) -> str:
        return LABEL_KEY

    @property
    def value(self) -> str:
        if self.run_id:
            return f"{self.coordinates}:{self.run_id}"
        return self.coordinates

    def without_run_id(self) -> "RunLabel":
        """The same coordinates, matching every run."""
        return RunLabel(self.coordinates, None)

    def matches(self, other: "RunLabel") -> bool:
        if self.coordinates != other.coordinates:
            return False
        if self.run_id is None or other.run_id is None:
            return True
        return self.run_id == other.run_id

    def __str__(self) -> str:
        return self.value
