from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import time

from .models import Room


class RoomStore(ABC):
    """Storage for rooms, kept apart from the signaling protocol."""

    @abstractmethod
    def create(self, code: str, now: Optional[float] = None) -> Room:
        """Return the room for *code*, creating it if needed."""

    @abstractmethod
    def get(self, code: str) -> Optional[Room]:
        ...

    @abstractmethod
    def delete(self, code: str) -> bool:
        ...

    @abstractmethod
    def list_expired(self, ttl: float, now: Optional[float] = None) -> List[Room]:
        ...

    @abstractmethod
    def all(self) -> List[Room]:
        ...

    def __len__(self) -> int:
        return len(self.all())


class InMemoryRoomStore(RoomStore):
    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def create(self, code: str, now: Optional[float] = None) -> Room:
        room = self._rooms.get(code)
        if room is None:
            room = Room(code=code, created_at=time.time() if now is None else now)
            self._rooms[code] = room
        return room

    def get(self, code: str) -> Optional[Room]:
        return self._rooms.get(code)

    def delete(self, code: str) -> bool:
        return self._rooms.pop(code, None) is not None

    def list_expired(self, ttl: float, now: Optional[float] = None) -> List[Room]:
        now = time.time() if now is None else now
        return [room for room in self._rooms.values() if room.age(now) > ttl]

    def all(self) -> List[Room]:
        return list(self._rooms.values())

    def __len__(self) -> int:
        return len(self._rooms)
