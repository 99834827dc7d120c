"""device.py - The device-automation boundary the executor drives."""

from dataclasses import dataclass, field
from typing import Protocol


class DeviceActionError(RuntimeError):
    """A gesture or lookup could not be carried out on the device."""


@dataclass(frozen=True)
class ElementHandle:
    """A resolved, actionable element."""

    x: int
    y: int
    identifier: str | None = None
    label: str | None = None
    type: str = "Unknown"
    frame: dict = field(default_factory=dict, compare=False, hash=False)


class DeviceDriver(Protocol):
    def find_by_id(self, identifier: str) -> ElementHandle | None: ...

    def find_by_text(self, text: str) -> ElementHandle | None: ...

    def find_by_label(self, label: str) -> ElementHandle | None: ...

    def find_control(self, label: str) -> ElementHandle | None: ...

    def find_scrollable(self) -> ElementHandle | None: ...

    def screen_size(self) -> tuple[int, int]: ...

    def tap(self, element: ElementHandle) -> None: ...

    def tap_point(self, x: int, y: int) -> None: ...

    def clear_and_type(self, element: ElementHandle, text: str) -> None: ...

    def long_press(self, element: ElementHandle, seconds: float = 1.0) -> None: ...

    def scroll(self, direction: str, container: ElementHandle | None = None) -> None: ...

    def swipe(self, direction: str, container: ElementHandle | None = None) -> None: ...

    def press_back(self) -> bool: ...
