from __future__ import annotations

import logging
import random
import string
import threading
import time

from dragons_keep.room import CampaignRoom

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 4


class SessionRegistry:
    """Process-wide table of room code -> CampaignRoom.

    Constructed once at startup and handed to every connection handler. State
    lives only in this process's memory; a restart loses every room.

    One room per code: creation goes through a registry-level lock, so two
    connections joining an unknown code at the same time end up in the same room.
    """

    def __init__(
        self,
        *,
        default_speed: float = 30.0,
        sight_radius: float = 40.0,
        code_prefix: str = "DRGN",
        rng: random.Random | None = None,
    ) -> None:
        self.default_speed = default_speed
        self.sight_radius = sight_radius
        self.code_prefix = code_prefix
        self._rng = rng or random.SystemRandom()
        self._rooms: dict[str, CampaignRoom] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)

    def __contains__(self, code: object) -> bool:
        with self._lock:
            return code in self._rooms

    def _new_room(self, code: str, default_speed: float | None) -> CampaignRoom:
        room = CampaignRoom(
            code,
            default_speed=self.default_speed if default_speed is None else default_speed,
            sight_radius=self.sight_radius,
        )
        self._rooms[code] = room
        logger.info("Created room %s (default speed %.1f)", code, room.default_speed)
        return room

    def get(self, code: str) -> CampaignRoom | None:
        with self._lock:
            return self._rooms.get(code)

    def get_or_create(self, code: str) -> CampaignRoom:
        with self._lock:
            room = self._rooms.get(code)
            if room is None:
                room = self._new_room(code, None)
            return room

    def generate_code(self) -> str:
        # Caller must hold the lock when uniqueness matters.
        while True:
            suffix = "".join(self._rng.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            code = f"{self.code_prefix}-{suffix}"
            if code not in self._rooms:
                return code

    def create(self, code: str | None = None, *, default_speed: float | None = None) -> CampaignRoom:
        """Create a room, generating a `PREFIX-XXXX` code when none is given.

        An existing code returns the existing room untouched so its round counter
        keeps counting up.
        """

        with self._lock:
            if code is None:
                code = self.generate_code()
            room = self._rooms.get(code)
            if room is not None:
                return room
            return self._new_room(code, default_speed)

    def codes(self) -> list[str]:
        with self._lock:
            return list(self._rooms)

    def discard(self, code: str) -> bool:
        with self._lock:
            return self._rooms.pop(code, None) is not None

    def evict_idle(self, ttl_s: float, *, now: float | None = None) -> list[str]:
        """Drop empty rooms whose last activity is older than `ttl_s` seconds."""

        now = time.monotonic() if now is None else now
        evicted: list[str] = []
        with self._lock:
            for code, room in list(self._rooms.items()):
                if room.is_empty() and now - room.last_activity >= ttl_s:
                    del self._rooms[code]
                    evicted.append(code)
        for code in evicted:
            logger.info("Evicted idle room %s", code)
        return evicted
