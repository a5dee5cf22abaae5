# components/narrative_payload.py

import logging
from datetime import datetime
from typing import Dict, List, Optional

from core.database import PhotoStore

logger = logging.getLogger(__name__)

TOP_TAGS = 10


def season(date: datetime) -> str:
    """Northern-hemisphere season of a date's month"""
    month = date.month
    if 3 <= month <= 5:
        return "spring"
    if 6 <= month <= 8:
        return "summer"
    if 9 <= month <= 11:
        return "fall"
    return "winter"


def fallback_title(start: datetime) -> str:
    return f"Photos from {start.strftime('%B %d, %Y')}"


class NarrativePayloadBuilder:
    """
    Gathers the facts an external writer needs to title an event.

    The engine never produces narrative text itself; it hands out payloads
    and records whatever comes back.
    """

    def __init__(self, store: PhotoStore, max_payloads_per_run: int = 10):
        self.store = store
        self.max_payloads_per_run = max_payloads_per_run

    def build_payload(self, event_id: int) -> Optional[Dict]:
        event = self.store.get_event(event_id)
        if event is None:
            logger.warning("No event with id %d", event_id)
            return None

        return {
            'event_id': event.id,
            'event_date_start': event.start.isoformat(),
            'event_date_end': event.end.isoformat(),
            'center_lat': event.center_lat,
            'center_lng': event.center_lng,
            'photo_count': event.photo_count,
            'people': self.store.event_people(event.id),
            'tags': self.store.event_top_tags(event.id, TOP_TAGS),
            'season': season(event.start),
        }

    def pending_payloads(self, limit: Optional[int] = None) -> List[Dict]:
        """Payloads for events still missing a title, oldest first"""
        limit = self.max_payloads_per_run if limit is None else limit
        events = self.store.events_without_title(limit)
        return [self.build_payload(event.id) for event in events]

    def record_narrative(self, event_id: int, title: Optional[str] = None,
                         narrative: Optional[str] = None,
                         location_label: Optional[str] = None):
        """
        Store a writer's result. An empty title falls back to a dated
        default so the event is not handed out again.
        """
        if not title:
            event = self.store.get_event(event_id)
            if event is None:
                raise ValueError(f"No event with id {event_id}")
            title = fallback_title(event.start)
        self.store.set_event_narrative(event_id, title, narrative or None,
                                       location_label or None)
        logger.info("Recorded title for event %d: %s", event_id, title)
