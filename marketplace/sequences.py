"""Monotonic integer identifiers per entity type, persisted in the counters collection."""
from __future__ import annotations

from pymongo import ReturnDocument
from pymongo.collection import Collection

ACCOUNT = "account_id"
USER = "user_id"
ORGANIZER = "organizer_id"
ADMIN = "admin_id"
EVENT = "event_id"
ORDER = "order_id"
TICKET = "ticket_id"
GENRE = "genre_id"
LOCATION = "location_id"
ARTIST = "artist_id"


class SequenceGenerator:
    def __init__(self, counters: Collection):
        self._counters = counters

    def next_value(self, name: str) -> int:
        """Atomically increment and return the counter; the first call for a name returns 1.

        A caller that fails after drawing a value leaves a gap, never a duplicate.
        """
        doc = self._counters.find_one_and_update(
            {"_id": name},
            {"$inc": {"sequence_value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["sequence_value"])

    def current_value(self, name: str) -> int:
        doc = self._counters.find_one({"_id": name})
        return int(doc["sequence_value"]) if doc else 0
