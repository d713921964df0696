"""MongoDB access: client construction, collection handles and indexes."""
from __future__ import annotations

import logging

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

logger = logging.getLogger("marketplace.db")


def connect(uri: str, db_name: str) -> Database:
    try:
        client = MongoClient(
            uri,
            serverSelectionTimeoutMS=3000,
            connectTimeoutMS=3000,
            socketTimeoutMS=5000,
            retryWrites=True,
        )
        # Verify connectivity early (will raise if unreachable)
        client.admin.command("ping")
        return client[db_name]
    except Exception as e:
        logger.exception("MongoDB connection failed")
        raise RuntimeError(f"MongoDB connection failed: {e}") from e


class Store:
    """Named collection handles, built once per process and shared by the services."""

    def __init__(self, database: Database):
        self.database = database
        self.counters = database["counters"]
        self.accounts = database["accounts"]
        self.users = database["users"]
        self.organizers = database["organizers"]
        self.admins = database["admins"]
        self.events = database["events"]
        self.orders = database["orders"]
        self.tickets = database["tickets"]
        self.genres = database["genres"]
        self.locations = database["locations"]
        self.artists = database["artists"]

    def ensure_indexes(self) -> None:
        self.accounts.create_index([("email", ASCENDING)], unique=True)
        self.accounts.create_index([("account_id", ASCENDING)], unique=True)
        self.users.create_index([("user_id", ASCENDING)], unique=True)
        self.users.create_index([("account_id", ASCENDING)], unique=True)
        self.organizers.create_index([("organizer_id", ASCENDING)], unique=True)
        self.organizers.create_index([("account_id", ASCENDING)], unique=True)
        self.organizers.create_index([("status", ASCENDING)])
        self.admins.create_index([("admin_id", ASCENDING)], unique=True)
        self.admins.create_index([("account_id", ASCENDING)], unique=True)

        self.events.create_index([("event_id", ASCENDING)], unique=True)
        self.events.create_index([("organizer_id", ASCENDING), ("created_at", DESCENDING)])
        self.events.create_index([("status", ASCENDING), ("start_date", ASCENDING)])
        self.events.create_index([("genre_id", ASCENDING)])
        self.events.create_index([("location_id", ASCENDING)])

        self.orders.create_index([("order_id", ASCENDING)], unique=True)
        self.orders.create_index([("user_id", ASCENDING), ("payment_status", ASCENDING)])
        self.orders.create_index([("order_items.event_id", ASCENDING), ("payment_status", ASCENDING)])

        self.tickets.create_index([("ticket_id", ASCENDING)], unique=True)
        self.tickets.create_index([("pass_id", ASCENDING)], unique=True)
        self.tickets.create_index([("order_id", ASCENDING)])
        self.tickets.create_index([("event_id", ASCENDING), ("is_validated", ASCENDING)])

        self.genres.create_index([("genre_id", ASCENDING)], unique=True)
        self.genres.create_index([("name", ASCENDING)], unique=True)
        self.locations.create_index([("location_id", ASCENDING)], unique=True)
        self.artists.create_index([("artist_id", ASCENDING)], unique=True)
