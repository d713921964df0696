"""Reference data: genres, locations and artists."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from marketplace import sequences
from marketplace.db import Store
from marketplace.errors import ConflictError, NotFoundError, field_error
from marketplace.models import public_catalog_item
from marketplace.sequences import SequenceGenerator
from marketplace.validation import optional_text, parse_id, require_text


class CatalogService:
    def __init__(self, store: Store, seq: SequenceGenerator):
        self.store = store
        self.seq = seq

    def create_genre(self, data: Dict[str, Any]) -> Dict[str, Any]:
        name = require_text(data, "name", "Genre name", max_length=100)
        if self.store.genres.find_one({"name": name}):
            raise ConflictError("Genre already exists.", details={"field": "name"})
        doc = {"genre_id": self.seq.next_value(sequences.GENRE), "name": name,
               "icon": optional_text(data, "icon")}
        try:
            self.store.genres.insert_one(doc)
        except DuplicateKeyError:
            raise ConflictError("Genre already exists.", details={"field": "name"})
        return public_catalog_item(doc)

    def list_genres(self) -> List[Dict[str, Any]]:
        return [public_catalog_item(g) for g in self.store.genres.find().sort("name", ASCENDING)]

    def create_location(self, data: Dict[str, Any]) -> Dict[str, Any]:
        doc = {
            "location_id": self.seq.next_value(sequences.LOCATION),
            "city": require_text(data, "city", "City", max_length=100),
            "venue_name": optional_text(data, "venue_name"),
            "address": optional_text(data, "address", max_length=1000),
            "map_link": optional_text(data, "map_link"),
        }
        self.store.locations.insert_one(doc)
        return public_catalog_item(doc)

    def list_locations(self, city: str = "") -> List[Dict[str, Any]]:
        query = {"city": city} if city else {}
        return [public_catalog_item(loc) for loc in self.store.locations.find(query).sort("city", ASCENDING)]

    def create_artist(self, data: Dict[str, Any]) -> Dict[str, Any]:
        doc = {
            "artist_id": self.seq.next_value(sequences.ARTIST),
            "name": require_text(data, "name", "Artist name"),
            "bio": optional_text(data, "bio", max_length=5000),
            "image": optional_text(data, "image"),
        }
        self.store.artists.insert_one(doc)
        return public_catalog_item(doc)

    def list_artists(self) -> List[Dict[str, Any]]:
        return [public_catalog_item(a) for a in self.store.artists.find().sort("name", ASCENDING)]

    def genre(self, genre_id: Optional[int]) -> Optional[Dict[str, Any]]:
        return self.store.genres.find_one({"genre_id": genre_id}) if genre_id else None

    def location(self, location_id: Optional[int]) -> Optional[Dict[str, Any]]:
        return self.store.locations.find_one({"location_id": location_id}) if location_id else None

    def require_genre(self, value: Any) -> int:
        genre_id = parse_id(value, "genre_id")
        if not self.genre(genre_id):
            raise NotFoundError("Genre not found.", details={"field": "genre_id"})
        return genre_id

    def require_location(self, value: Any) -> int:
        location_id = parse_id(value, "location_id")
        if not self.location(location_id):
            raise NotFoundError("Location not found.", details={"field": "location_id"})
        return location_id

    def resolve_artists(self, values: Any) -> List[Dict[str, Any]]:
        """Embed artist snapshots for the given artist ids, keeping request order."""
        if values in (None, ""):
            return []
        if not isinstance(values, list):
            raise field_error("artists", "artists must be a list of artist ids.")
        ids = [parse_id(v.get("artist_id") if isinstance(v, dict) else v, "artist_id") for v in values]
        found = {a["artist_id"]: a for a in self.store.artists.find({"artist_id": {"$in": ids}})}
        missing = [i for i in ids if i not in found]
        if missing:
            raise NotFoundError("Artist not found.", details={"artist_ids": missing})
        return [
            {"artist_id": i, "name": found[i].get("name", ""), "bio": found[i].get("bio", ""),
             "image": found[i].get("image", "")}
            for i in ids
        ]
