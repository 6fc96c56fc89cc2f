from hyperbranch.adapters.base import (
    CommandError,
    CommandFailure,
    ComposeProject,
    ContainerAdapter,
    ContainerSpec,
    ContainerStatus,
    LaunchTimeoutError,
    VcsAdapter,
)
from hyperbranch.adapters.docker import DockerAdapter
from hyperbranch.adapters.git import GitAdapter

__all__ = [
    "CommandError",
    "CommandFailure",
    "ComposeProject",
    "ContainerAdapter",
    "ContainerSpec",
    "ContainerStatus",
    "DockerAdapter",
    "GitAdapter",
    "LaunchTimeoutError",
    "VcsAdapter",
]
