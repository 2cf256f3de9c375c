"""
Container runtime client used by the garbage collector.

``RuntimeObserver`` is the contract the collector, bootstrapper and event
ingestor consume: list images and containers, inspect them, remove images
and subscribe to lifecycle events. ``DockerRuntime`` implements it on top
of the docker SDK's low-level ``APIClient``.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException

from docker_gc.logging_utils import get_logger

logger = get_logger(__name__)

CONTAINER_DESTROYED = "container.destroy"

# Docker reports nanosecond precision; datetime only keeps microseconds
_TIMESTAMP = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$")

# requests errors surface when the daemon socket is unreachable
DOCKER_ERRORS = (DockerException, RequestException)


class RuntimeObserverError(Exception):
    """Raised when a runtime call (list, inspect, remove, events) fails"""


class ImageNotFoundError(RuntimeObserverError):
    """Raised when an image reference does not resolve to an existing image"""


class ContainerNotFoundError(RuntimeObserverError):
    """Raised when a container no longer exists"""


@dataclass
class ImageDescriptor:
    """An image as reported by the runtime"""

    id: str
    tags: List[str] = field(default_factory=list)
    dangling: bool = False


@dataclass
class ContainerDescriptor:
    """A container (running or stopped) as reported by the runtime"""

    id: str
    image_ref: str
    image_id: Optional[str] = None  # canonical id, when the runtime lists it
    status: str = ""  # human readable, e.g. "Exited (0) 2 hours ago"
    state: str = ""  # machine readable, e.g. "exited"

    @property
    def exited(self) -> bool:
        return self.state == "exited" or self.status.startswith("Exit")


@dataclass
class ContainerDetail:
    id: str
    finished_at: Optional[datetime] = None


@dataclass
class RuntimeEvent:
    """A lifecycle event; ``kind`` is "<type>.<action>", e.g. "container.destroy"."""

    kind: str
    resource_ref: Optional[str] = None
    actor_id: Optional[str] = None
    time: Optional[datetime] = None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Docker RFC3339 timestamp into an aware UTC datetime.

    Returns None for empty values and for Docker's zero time
    (``0001-01-01T00:00:00Z``), which marks containers that never finished.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    if not value:
        return None
    match = _TIMESTAMP.match(value.strip())
    if not match:
        raise ValueError(f"invalid timestamp: {value!r}")
    base, fraction, zone = match.groups()
    if base.startswith("0001-01-01"):
        return None
    text = base
    if fraction:
        text += "." + fraction[:6].ljust(6, "0")
    if zone and zone != "Z":
        text += zone
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class RuntimeObserver(ABC):
    """Capabilities the garbage collector needs from the container runtime"""

    @abstractmethod
    def ping(self) -> bool:
        """Verify the runtime is reachable; raise RuntimeObserverError if not"""

    @abstractmethod
    def list_images(self, dangling: Optional[bool] = None) -> List[ImageDescriptor]:
        """List top-level images, optionally filtered on dangling state"""

    @abstractmethod
    def list_containers(self, all: bool = True) -> List[ContainerDescriptor]:
        """List containers, including stopped ones when ``all`` is set"""

    @abstractmethod
    def inspect_image(self, ref: str) -> ImageDescriptor:
        """Resolve a tag or partial id to the canonical image"""

    @abstractmethod
    def inspect_container(self, container_id: str) -> ContainerDetail:
        pass

    @abstractmethod
    def remove_image(self, image_id: str) -> None:
        """Remove an image; raise RuntimeObserverError on failure"""

    @abstractmethod
    def subscribe_events(self) -> Iterator[RuntimeEvent]:
        """Return a blocking iterator over live lifecycle events"""


class DockerRuntime(RuntimeObserver):
    """RuntimeObserver backed by the Docker Engine API"""

    def __init__(self, client: Optional[docker.APIClient] = None, base_url: Optional[str] = None,
                 timeout: int = 60):
        """Initialize DockerRuntime

        Args:
            client: Pre-built low-level client (mostly for tests)
            base_url: Docker daemon URL; None uses DOCKER_HOST / the default socket
            timeout: API call timeout in seconds
        """
        self.base_url = base_url
        if client is None:
            try:
                if base_url:
                    client = docker.APIClient(base_url=base_url, timeout=timeout)
                else:
                    client = docker.from_env(timeout=timeout).api
            except DOCKER_ERRORS as e:
                raise RuntimeObserverError(f"Failed to setup docker client: {e}") from e
        self.client = client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except DOCKER_ERRORS as e:
            raise RuntimeObserverError(f"Cannot reach Docker daemon: {e}") from e

    def list_images(self, dangling: Optional[bool] = None) -> List[ImageDescriptor]:
        filters = {"dangling": dangling} if dangling is not None else None
        try:
            images = self.client.images(filters=filters)
        except DOCKER_ERRORS as e:
            raise RuntimeObserverError(f"Cannot list images: {e}") from e
        return [self._image_from_summary(image) for image in images]

    def list_containers(self, all: bool = True) -> List[ContainerDescriptor]:
        try:
            containers = self.client.containers(all=all)
        except DOCKER_ERRORS as e:
            raise RuntimeObserverError(f"Cannot list containers: {e}") from e
        return [
            ContainerDescriptor(
                id=container["Id"],
                image_ref=container.get("Image", ""),
                image_id=container.get("ImageID") or None,
                status=container.get("Status", ""),
                state=container.get("State", ""),
            )
            for container in containers
        ]

    def inspect_image(self, ref: str) -> ImageDescriptor:
        try:
            details = self.client.inspect_image(ref)
        except (ImageNotFound, NotFound) as e:
            raise ImageNotFoundError(f"Image {ref} not found") from e
        except DOCKER_ERRORS as e:
            raise RuntimeObserverError(f"Cannot inspect image {ref}: {e}") from e
        tags = self._real_tags(details.get("RepoTags"))
        return ImageDescriptor(id=details["Id"], tags=tags, dangling=not tags)

    def inspect_container(self, container_id: str) -> ContainerDetail:
        try:
            details = self.client.inspect_container(container_id)
        except NotFound as e:
            raise ContainerNotFoundError(f"Container {container_id} not found") from e
        except DOCKER_ERRORS as e:
            raise RuntimeObserverError(f"Cannot inspect container {container_id}: {e}") from e
        state = details.get("State") or {}
        try:
            finished_at = parse_timestamp(state.get("FinishedAt"))
        except ValueError as e:
            raise RuntimeObserverError(f"Cannot parse FinishedAt for container {container_id}: {e}") from e
        return ContainerDetail(id=details.get("Id", container_id), finished_at=finished_at)

    def remove_image(self, image_id: str) -> None:
        try:
            self.client.remove_image(image_id)
        except (ImageNotFound, NotFound) as e:
            raise ImageNotFoundError(f"Image {image_id} not found") from e
        except DOCKER_ERRORS as e:
            raise RuntimeObserverError(f"Cannot remove image {image_id}: {e}") from e

    def subscribe_events(self) -> Iterator[RuntimeEvent]:
        try:
            stream = self.client.events(decode=True, filters={"type": "container"})
        except DOCKER_ERRORS as e:
            raise RuntimeObserverError(f"Cannot subscribe to Docker events: {e}") from e
        logger.debug("Subscribed to Docker container events")
        return self._iter_events(stream)

    def _iter_events(self, stream) -> Iterator[RuntimeEvent]:
        try:
            for raw in stream:
                yield self._event_from_raw(raw)
        except DOCKER_ERRORS as e:
            raise RuntimeObserverError(f"Docker event stream failed: {e}") from e

    @staticmethod
    def _event_from_raw(raw: Dict[str, Any]) -> RuntimeEvent:
        event_type = raw.get("Type", "container")
        action = raw.get("Action") or raw.get("status") or ""
        actor = raw.get("Actor") or {}
        attributes = actor.get("Attributes") or {}
        when = None
        if raw.get("timeNano"):
            when = datetime.fromtimestamp(raw["timeNano"] / 1e9, tz=timezone.utc)
        elif raw.get("time"):
            when = datetime.fromtimestamp(raw["time"], tz=timezone.utc)
        return RuntimeEvent(
            kind=f"{event_type}.{action}",
            resource_ref=attributes.get("image") or raw.get("from"),
            actor_id=actor.get("ID") or raw.get("id"),
            time=when,
        )

    @classmethod
    def _image_from_summary(cls, image: Dict[str, Any]) -> ImageDescriptor:
        tags = cls._real_tags(image.get("RepoTags"))
        return ImageDescriptor(id=image["Id"], tags=tags, dangling=not tags)

    @staticmethod
    def _real_tags(tags: Optional[List[str]]) -> List[str]:
        # Untagged images are listed with the placeholder "<none>:<none>"
        return [tag for tag in (tags or []) if tag != "<none>:<none>"]
