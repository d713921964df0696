"""The service graph shared by every request of one application."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from marketplace.accounts import AccountService
from marketplace.analytics import SalesAggregator
from marketplace.catalog import CatalogService
from marketplace.db import Store
from marketplace.events import EventService, InventoryLedger
from marketplace.moderation import ModerationService
from marketplace.orders import OrderService
from marketplace.scanner import ScannerService
from marketplace.sequences import SequenceGenerator
from marketplace.tickets import TicketIssuer
from marketplace.uploads import LocalUploader


@dataclass
class Services:
    store: Store
    seq: SequenceGenerator
    accounts: AccountService
    catalog: CatalogService
    analytics: SalesAggregator
    events: EventService
    ledger: InventoryLedger
    moderation: ModerationService
    issuer: TicketIssuer
    orders: OrderService
    scanner: ScannerService
    uploader: LocalUploader


def build_services(store: Store, config: Mapping) -> Services:
    seq = SequenceGenerator(store.counters)
    catalog = CatalogService(store, seq)
    analytics = SalesAggregator(store, config["ANALYTICS_DEFAULT_MONTHS"])
    moderation = ModerationService(store)
    events = EventService(store, seq, catalog, analytics, moderation, config["DEFAULT_MAX_PER_ORDER"])
    ledger = InventoryLedger(store)
    issuer = TicketIssuer(store, seq)
    return Services(
        store=store,
        seq=seq,
        accounts=AccountService(store, seq, config["PASSWORD_HASH_METHOD"]),
        catalog=catalog,
        analytics=analytics,
        events=events,
        ledger=ledger,
        moderation=moderation,
        issuer=issuer,
        orders=OrderService(store, seq, events, ledger, issuer, config["CHECKOUT_CLAIM_TIMEOUT"]),
        scanner=ScannerService(store),
        uploader=LocalUploader.from_config(config),
    )
