"""Read-only mirror of the profiles stored on the device."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from .core.listeners import ListenerSet
from .core.models import Profile, ProfileError
from .core.throttle import arm_floor_percent
from .telemetry import CurrentProfileMessage, Message, ProfileMessage, ProfilesMessage

LOGGER = logging.getLogger(__name__)

ActiveProfileListener = Callable[[Optional[Profile]], Any]


class ProfileCatalog:
    """Tracks the device's profiles and which one is active.

    Feed it decoder messages via ``handle_message``. Malformed profiles are
    logged and skipped so one bad entry never hides the rest.
    """

    def __init__(self) -> None:
        self._profiles: Dict[str, Profile] = {}
        self._active_name: Optional[str] = None
        self._active_listeners: ListenerSet[ActiveProfileListener] = ListenerSet("active-profile")

    @property
    def profiles(self) -> List[Profile]:
        return list(self._profiles.values())

    @property
    def active_name(self) -> Optional[str]:
        return self._active_name

    @property
    def active(self) -> Optional[Profile]:
        if self._active_name is None:
            return None
        return self._profiles.get(self._active_name)

    def arm_floor_percent(self) -> float:
        active = self.active
        return arm_floor_percent(active.arm_throttle_raw if active else None)

    def add_active_listener(self, listener: ActiveProfileListener) -> Callable[[], None]:
        return self._active_listeners.add(listener)

    def get(self, name: str) -> Optional[Profile]:
        return self._profiles.get(name)

    def clear(self) -> None:
        self._profiles.clear()
        self._set_active(None)

    def handle_message(self, message: Message) -> None:
        if isinstance(message, ProfilesMessage):
            self.replace(message.profiles)
        elif isinstance(message, ProfileMessage):
            self.upsert(message.profile)
        elif isinstance(message, CurrentProfileMessage):
            self._set_active(message.name or None)

    def replace(self, items: Any) -> None:
        profiles: Dict[str, Profile] = {}
        for item in items:
            profile = _parse(item)
            if profile is not None:
                profiles[profile.name] = profile
        previous = self.active
        self._profiles = profiles
        LOGGER.info("Loaded %d profile(s) from device", len(profiles))
        if self.active != previous:
            self._active_listeners.emit(self.active)

    def upsert(self, item: Mapping[str, Any]) -> Optional[Profile]:
        profile = _parse(item)
        if profile is None:
            return None
        self._profiles[profile.name] = profile
        if profile.name == self._active_name:
            self._active_listeners.emit(profile)
        return profile

    def _set_active(self, name: Optional[str]) -> None:
        if name == self._active_name:
            return
        self._active_name = name
        if name is not None and name not in self._profiles:
            LOGGER.warning("Active profile %r is not in the catalog yet", name)
        else:
            LOGGER.info("Active profile: %s", name or "none")
        self._active_listeners.emit(self.active)


def _parse(item: Any) -> Optional[Profile]:
    try:
        return Profile.from_wire(item)
    except ProfileError as exc:
        LOGGER.warning("Skipping invalid profile: %s", exc)
        return None
