"""
Models for overall orchestration configuration.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, Field, model_validator
from .image_config import ImageSpec, WatchMode


class ProjectCoordinates(BaseModel):
    """
    Identifies the build that starts containers. Used for the run label.
    """
    group: str = "default"
    artifact: str = "dockwright"
    version: str = "0.0.0"


class WatchOptions(BaseModel):
    """
    Global watch defaults, overridable per image.
    """
    mode: WatchMode = WatchMode.BOTH
    interval: int = 5000
    post_exec: Optional[str] = None
    keep_running: bool = False


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a set of images.
    Equivalent to a parsed dockwright.yml file.
    """
    project: ProjectCoordinates = Field(default_factory=ProjectCoordinates)
    images: List[ImageSpec] = []
    properties: Dict[str, str] = {}
    property_files: List[str] = []
    port_property_file: Optional[str] = None
    watch: WatchOptions = Field(default_factory=WatchOptions)

    @model_validator(mode="after")
    def check_unique_images(self) -> "OrchestrationConfig":
        """Image names, and aliases where set, identify an image and must be unique."""
        for label, keys in (("name", [image.name for image in self.images]),
                            ("alias", [image.alias for image in self.images if image.alias])):
            duplicates = sorted({key for key in keys if keys.count(key) > 1})
            if duplicates:
                raise ValueError(f"Duplicate image {label}: {', '.join(duplicates)}")
        return self
