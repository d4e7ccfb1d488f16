"""
Venue lookup for the verification service.

The service only needs to know where a popup is, which brand runs it and
whether it is currently accepting check-ins. Venues are loaded once at
startup from a JSON file of the form::

    [
      {"popup_id": "store-001", "brand_name": "Acme",
       "latitude": 37.5665, "longitude": 126.978, "status": "active"}
    ]
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from .geo import Coordinates

logger = logging.getLogger(__name__)

ACTIVE = "active"


@dataclass(frozen=True)
class Popup:
    popup_id: str
    brand_name: str
    location: Coordinates
    status: str = ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "popup_id": self.popup_id,
            "brand_name": self.brand_name,
            "location": self.location.to_dict(),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Popup":
        return cls(
            popup_id=str(data["popup_id"]),
            brand_name=str(data["brand_name"]),
            location=Coordinates(float(data["latitude"]), float(data["longitude"])),
            status=str(data.get("status", ACTIVE)),
        )


class PopupDirectory(ABC):
    """Abstract interface for looking up venues."""

    @abstractmethod
    def get(self, popup_id: str) -> Optional[Popup]:
        """Return the venue, or None if unknown."""
        pass


class InMemoryPopupDirectory(PopupDirectory):

    def __init__(self, popups: Iterable[Popup] = ()):
        self._popups: Dict[str, Popup] = {p.popup_id: p for p in popups}

    def __len__(self) -> int:
        return len(self._popups)

    def add(self, popup: Popup) -> None:
        self._popups[popup.popup_id] = popup

    def get(self, popup_id: str) -> Optional[Popup]:
        return self._popups.get(popup_id)

    @classmethod
    def from_file(cls, path: str) -> "InMemoryPopupDirectory":
        """
        Load venues from a JSON file.

        Raises:
            OSError: the file cannot be read
            ValueError: the file is not a JSON list of venue objects
        """
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, list):
            raise ValueError(f"{path}: expected a JSON list of popups")
        try:
            popups = [Popup.from_dict(item) for item in raw]
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"{path}: invalid popup entry: {e}") from e
        logger.info("Loaded %d popups from %s", len(popups), path)
        return cls(popups)
