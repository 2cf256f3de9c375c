"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides an in-memory fake of the container runtime.
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

from docker_gc.runtime_client import (  # noqa: E402
    ContainerDescriptor,
    ContainerDetail,
    ImageDescriptor,
    ImageNotFoundError,
    RuntimeEvent,
    RuntimeObserver,
    RuntimeObserverError,
)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeRuntime(RuntimeObserver):
    """In-memory container runtime.

    Images are keyed by id; ``refs`` maps tags and short ids to image ids.
    Set ``fail_on`` entries (e.g. "list_containers") to make a call raise.
    """

    def __init__(self):
        self.images: Dict[str, ImageDescriptor] = {}
        self.refs: Dict[str, str] = {}
        self.containers: List[ContainerDescriptor] = []
        self.finished_at: Dict[str, Optional[datetime]] = {}
        self.events: List[RuntimeEvent] = []
        self.removed: List[str] = []
        self.remove_failures: Dict[str, Exception] = {}
        self.fail_on: Dict[str, Exception] = {}
        self.subscriptions = 0
        # Called with the image id before a removal, e.g. to block a sweep
        self.on_remove: Optional[Callable[[str], None]] = None

    # helpers
    def add_image(self, image_id: str, tags: Optional[List[str]] = None) -> ImageDescriptor:
        tags = list(tags or [])
        image = ImageDescriptor(id=image_id, tags=tags, dangling=not tags)
        self.images[image_id] = image
        self.refs[image_id] = image_id
        for tag in tags:
            self.refs[tag] = image_id
        return image

    def add_container(self, container_id: str, image_ref: str, exited: bool = False,
                      finished_at: Optional[datetime] = None, list_image_id: bool = True) -> ContainerDescriptor:
        container = ContainerDescriptor(
            id=container_id,
            image_ref=image_ref,
            image_id=self.refs.get(image_ref) if list_image_id else None,
            status="Exited (0) 3 hours ago" if exited else "Up 2 hours",
            state="exited" if exited else "running",
        )
        self.containers.append(container)
        self.finished_at[container_id] = finished_at
        return container

    def _check(self, call: str) -> None:
        if call in self.fail_on:
            raise self.fail_on[call]

    # RuntimeObserver
    def ping(self) -> bool:
        self._check("ping")
        return True

    def list_images(self, dangling: Optional[bool] = None) -> List[ImageDescriptor]:
        self._check("list_images_dangling" if dangling else "list_images")
        images = list(self.images.values())
        if dangling is not None:
            images = [image for image in images if image.dangling == dangling]
        return images

    def list_containers(self, all: bool = True) -> List[ContainerDescriptor]:
        self._check("list_containers")
        return list(self.containers)

    def inspect_image(self, ref: str) -> ImageDescriptor:
        self._check("inspect_image")
        image_id = self.refs.get(ref)
        if image_id is None or image_id not in self.images:
            raise ImageNotFoundError(f"Image {ref} not found")
        return self.images[image_id]

    def inspect_container(self, container_id: str) -> ContainerDetail:
        self._check("inspect_container")
        if container_id not in self.finished_at:
            raise RuntimeObserverError(f"Container {container_id} not found")
        return ContainerDetail(id=container_id, finished_at=self.finished_at[container_id])

    def remove_image(self, image_id: str) -> None:
        if self.on_remove is not None:
            self.on_remove(image_id)
        if image_id in self.remove_failures:
            raise self.remove_failures[image_id]
        if image_id not in self.images:
            raise ImageNotFoundError(f"Image {image_id} not found")
        image = self.images.pop(image_id)
        for ref in [ref for ref, target in self.refs.items() if target == image.id]:
            del self.refs[ref]
        self.removed.append(image_id)

    def subscribe_events(self) -> Iterator[RuntimeEvent]:
        self._check("subscribe_events")
        self.subscriptions += 1
        return iter(list(self.events))


class FakeClock:
    """Controllable clock for time dependent components"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def clock():
    return FakeClock()
