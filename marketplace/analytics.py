"""Sales rollups computed on demand from completed orders.

Nothing here is persisted: every figure is derived by scanning the
``order_items`` of orders whose ``payment_status`` is ``completed``. Sums
are kept as ``Decimal`` and rounded to cents only in the returned dicts.
"""
from __future__ import annotations

import calendar
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional

from marketplace.db import Store
from marketplace.models import EventStatus, OrganizerStatus, PaymentStatus, iter_ticket_types
from marketplace.util import (
    ZERO,
    money_out,
    month_bounds,
    month_key,
    now_utc,
    parse_iso,
    start_of_day,
    to_decimal,
    to_iso,
    trailing_months,
)

ACTIVE_EVENT_STATUSES = (EventStatus.APPROVED.value, EventStatus.LIVE.value)


def _ends_on_or_after(event: Dict[str, Any], moment: datetime) -> bool:
    end = parse_iso(event.get("end_date"))
    return end is not None and end >= moment


def percentage_change(current, previous) -> float:
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return float((Decimal(str(current)) - Decimal(str(previous))) / Decimal(str(previous)) * 100)


def empty_event_sales() -> Dict[str, Any]:
    return {"tickets_sold": 0, "revenue": 0.0, "total_orders": 0,
            "total_tickets_available": 0, "sold_percentage": 0.0}


class SalesAggregator:
    def __init__(self, store: Store, default_months: int = 6):
        self.store = store
        self.default_months = default_months

    # -------------------------
    # Scans
    # -------------------------
    def completed_items(self, event_ids: Optional[Iterable[int]] = None,
                        since: Optional[str] = None, until: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Yield one row per line item of a completed order: order_id, created_at, item."""
        match: Dict[str, Any] = {"payment_status": PaymentStatus.COMPLETED.value}
        ids = list(event_ids) if event_ids is not None else None
        if ids is not None:
            if not ids:
                return
            match["order_items.event_id"] = {"$in": ids}
        created: Dict[str, Any] = {}
        if since:
            created["$gte"] = since
        if until:
            created["$lt"] = until
        if created:
            match["created_at"] = created

        pipeline: List[Dict[str, Any]] = [
            {"$match": match},
            {"$project": {"_id": 0, "order_id": 1, "created_at": 1, "order_items": 1}},
            {"$unwind": "$order_items"},
        ]
        if ids is not None:
            pipeline.append({"$match": {"order_items.event_id": {"$in": ids}}})
        for row in self.store.orders.aggregate(pipeline):
            yield {"order_id": row["order_id"], "created_at": row.get("created_at", ""), "item": row["order_items"]}

    @staticmethod
    def item_revenue(item: Dict[str, Any]) -> Decimal:
        return to_decimal(item.get("unit_price")) * int(item.get("quantity", 0))

    def _organizer_events(self, organizer_id: int, projection: Optional[Dict[str, int]] = None) -> List[Dict[str, Any]]:
        return list(self.store.events.find({"organizer_id": organizer_id}, projection))

    # -------------------------
    # Per event
    # -------------------------
    def event_totals(self, event_id: int) -> Dict[str, Any]:
        tickets = 0
        revenue = ZERO
        orders = set()
        for row in self.completed_items([event_id]):
            tickets += int(row["item"].get("quantity", 0))
            revenue += self.item_revenue(row["item"])
            orders.add(row["order_id"])
        return {"tickets_sold": tickets, "revenue": revenue, "total_orders": len(orders)}

    def event_sales(self, event: Dict[str, Any]) -> Dict[str, Any]:
        totals = self.event_totals(event["event_id"])
        # capacity is what the counters currently hold, matching what organizers see on the event
        capacity = sum(int(t.get("quantity_available", 0)) for _, t in iter_ticket_types(event))
        sold_pct = (Decimal(totals["tickets_sold"]) / capacity * 100) if capacity > 0 else ZERO
        return {
            "tickets_sold": totals["tickets_sold"],
            "revenue": money_out(totals["revenue"]),
            "total_orders": totals["total_orders"],
            "total_tickets_available": capacity,
            "sold_percentage": money_out(sold_pct),
        }

    def ticket_type_sales(self, event: Dict[str, Any]) -> List[Dict[str, Any]]:
        sold: Dict[int, int] = defaultdict(int)
        revenue: Dict[int, Decimal] = defaultdict(lambda: ZERO)
        for row in self.completed_items([event["event_id"]]):
            tt_id = row["item"].get("ticket_type_id")
            sold[tt_id] += int(row["item"].get("quantity", 0))
            revenue[tt_id] += self.item_revenue(row["item"])
        return [
            {
                "ticket_type_id": t["ticket_type_id"],
                "name": t.get("name", ""),
                "category": c.get("name", ""),
                "tickets_sold": sold.get(t["ticket_type_id"], 0),
                "revenue": money_out(revenue.get(t["ticket_type_id"], ZERO)),
                "quantity_available": int(t.get("quantity_available", 0)),
            }
            for c, t in iter_ticket_types(event)
        ]

    # -------------------------
    # Per organizer
    # -------------------------
    def organizer_overview(self, organizer_id: int) -> Dict[str, Any]:
        events = self._organizer_events(organizer_id, {"event_id": 1, "title": 1})
        titles = {e["event_id"]: e.get("title", "") for e in events}
        revenue_by_event: Dict[int, Decimal] = defaultdict(lambda: ZERO)
        tickets = 0
        for row in self.completed_items(titles.keys()):
            revenue_by_event[row["item"]["event_id"]] += self.item_revenue(row["item"])
            tickets += int(row["item"].get("quantity", 0))
        total = sum(revenue_by_event.values(), ZERO)
        top = None
        if revenue_by_event:
            top_id = max(revenue_by_event, key=lambda eid: revenue_by_event[eid])
            if revenue_by_event[top_id] > 0:
                top = {"event_id": top_id, "title": titles.get(top_id, ""),
                       "revenue": money_out(revenue_by_event[top_id])}
        return {
            "total_revenue": money_out(total),
            "total_tickets_sold": tickets,
            "avg_revenue_per_ticket": money_out(total / tickets) if tickets else 0.0,
            "top_selling_event": top,
            "total_events": len(events),
        }

    def genre_revenue(self, organizer_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = {"organizer_id": organizer_id} if organizer_id is not None else {}
        events = list(self.store.events.find(query, {"event_id": 1, "genre_id": 1}))
        genres = {g["genre_id"]: g.get("name", "") for g in self.store.genres.find({}, {"genre_id": 1, "name": 1})}
        event_genre = {e["event_id"]: e.get("genre_id") for e in events}
        totals: Dict[Optional[int], Decimal] = defaultdict(lambda: ZERO)
        for row in self.completed_items(event_genre.keys()):
            totals[event_genre.get(row["item"]["event_id"])] += self.item_revenue(row["item"])
        out = [
            {"genre_id": gid, "name": genres.get(gid, "Other"), "revenue": money_out(value)}
            for gid, value in totals.items()
        ]
        out.sort(key=lambda g: g["revenue"], reverse=True)
        return out

    def monthly_revenue(self, organizer_id: Optional[int] = None, months: Optional[int] = None,
                        now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Revenue and tickets per order-creation month, oldest first; empty months are zero."""
        months = months or self.default_months
        now = now or now_utc()
        window = trailing_months(months, now)
        first_year, first_month = window[0]
        since = to_iso(now.replace(year=first_year, month=first_month, day=1,
                                   hour=0, minute=0, second=0, microsecond=0))
        buckets = {f"{y:04d}-{m:02d}": {"revenue": ZERO, "tickets_sold": 0} for y, m in window}

        event_ids = None
        if organizer_id is not None:
            event_ids = [e["event_id"] for e in self._organizer_events(organizer_id, {"event_id": 1})]
        for row in self.completed_items(event_ids, since=since):
            bucket = buckets.get(month_key(row["created_at"]))
            if bucket is None:
                continue
            bucket["revenue"] += self.item_revenue(row["item"])
            bucket["tickets_sold"] += int(row["item"].get("quantity", 0))

        return [
            {
                "month": calendar.month_abbr[m],
                "year": y,
                "key": f"{y:04d}-{m:02d}",
                "revenue": money_out(buckets[f"{y:04d}-{m:02d}"]["revenue"]),
                "tickets_sold": buckets[f"{y:04d}-{m:02d}"]["tickets_sold"],
            }
            for y, m in window
        ]

    def event_breakdown(self, organizer_id: int) -> List[Dict[str, Any]]:
        events = self._organizer_events(organizer_id)
        genres = {g["genre_id"]: g.get("name", "") for g in self.store.genres.find({}, {"genre_id": 1, "name": 1})}
        by_event: Dict[int, Dict[str, Any]] = {}
        for e in events:
            by_event[e["event_id"]] = {
                "event_id": e["event_id"],
                "name": e.get("title", ""),
                "genre": genres.get(e.get("genre_id"), "Other"),
                "revenue": ZERO,
                "tickets_sold": 0,
                "ticket_types": defaultdict(lambda: ZERO),
                "_names": {t["ticket_type_id"]: t.get("name", "") for _, t in iter_ticket_types(e)},
            }
        for row in self.completed_items(by_event.keys()):
            entry = by_event.get(row["item"]["event_id"])
            if entry is None:
                continue
            revenue = self.item_revenue(row["item"])
            entry["revenue"] += revenue
            entry["tickets_sold"] += int(row["item"].get("quantity", 0))
            name = entry["_names"].get(row["item"].get("ticket_type_id"), "Unknown")
            entry["ticket_types"][name] += revenue

        out = []
        for entry in by_event.values():
            out.append({
                "event_id": entry["event_id"],
                "name": entry["name"],
                "genre": entry["genre"],
                "revenue": money_out(entry["revenue"]),
                "tickets_sold": entry["tickets_sold"],
                "ticket_types": {k: money_out(v) for k, v in entry["ticket_types"].items()},
            })
        out.sort(key=lambda e: e["revenue"], reverse=True)
        return out

    def dashboard_stats(self, organizer_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or now_utc()
        last_start, this_start, next_start = month_bounds(now)
        events = self._organizer_events(organizer_id, {"event_id": 1, "status": 1, "end_date": 1, "created_at": 1})
        event_ids = [e["event_id"] for e in events]

        totals = {"all": [ZERO, 0], "current": [ZERO, 0], "previous": [ZERO, 0]}
        for row in self.completed_items(event_ids):
            revenue = self.item_revenue(row["item"])
            quantity = int(row["item"].get("quantity", 0))
            periods = ["all"]
            created = row["created_at"] or ""
            if this_start <= created < next_start:
                periods.append("current")
            elif last_start <= created < this_start:
                periods.append("previous")
            for period in periods:
                totals[period][0] += revenue
                totals[period][1] += quantity

        day_start = parse_iso(start_of_day(now))
        active = sum(
            1 for e in events
            if e.get("status") in ACTIVE_EVENT_STATUSES and _ends_on_or_after(e, day_start)
        )
        current_events = sum(1 for e in events if this_start <= (e.get("created_at") or "") < next_start)
        previous_events = sum(1 for e in events if last_start <= (e.get("created_at") or "") < this_start)
        return {
            "total_revenue": money_out(totals["all"][0]),
            "total_tickets_sold": totals["all"][1],
            "total_attendees": totals["all"][1],
            "active_events": active,
            "total_events": len(events),
            "changes": {
                "revenue_change": round(percentage_change(totals["current"][0], totals["previous"][0]), 2),
                "tickets_change": round(percentage_change(totals["current"][1], totals["previous"][1]), 2),
                "events_change": round(percentage_change(current_events, previous_events), 2),
            },
        }

    # -------------------------
    # Platform (admin)
    # -------------------------
    def _count_by_status(self, collection) -> Dict[str, int]:
        rows = collection.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
        return {row["_id"]: int(row["count"]) for row in rows if row["_id"]}

    def _order_revenue(self, since: Optional[str] = None, until: Optional[str] = None) -> Decimal:
        query: Dict[str, Any] = {"payment_status": PaymentStatus.COMPLETED.value}
        created: Dict[str, Any] = {}
        if since:
            created["$gte"] = since
        if until:
            created["$lt"] = until
        if created:
            query["created_at"] = created
        return sum((to_decimal(o.get("total_amount")) for o in self.store.orders.find(query, {"total_amount": 1})), ZERO)

    def platform_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or now_utc()
        last_start, this_start, next_start = month_bounds(now)

        def between(start: str, end: str) -> Dict[str, Any]:
            return {"created_at": {"$gte": start, "$lt": end}}

        events_by_status = {s.value: 0 for s in EventStatus}
        events_by_status.update(self._count_by_status(self.store.events))
        organizers_by_status = {s.value: 0 for s in OrganizerStatus}
        organizers_by_status.update(self._count_by_status(self.store.organizers))

        current = {
            "events": self.store.events.count_documents(between(this_start, next_start)),
            "organizers": self.store.organizers.count_documents(between(this_start, next_start)),
            "users": self.store.users.count_documents(between(this_start, next_start)),
            "revenue": self._order_revenue(this_start, next_start),
        }
        previous = {
            "events": self.store.events.count_documents(between(last_start, this_start)),
            "organizers": self.store.organizers.count_documents(between(last_start, this_start)),
            "users": self.store.users.count_documents(between(last_start, this_start)),
            "revenue": self._order_revenue(last_start, this_start),
        }
        completed = PaymentStatus.COMPLETED.value
        return {
            "events": {"total": self.store.events.count_documents({}), "by_status": events_by_status},
            "organizers": {"total": self.store.organizers.count_documents({}), "by_status": organizers_by_status},
            "users": {"total": self.store.users.count_documents({})},
            "orders": {
                "completed": self.store.orders.count_documents({"payment_status": completed}),
                "total_revenue": money_out(self._order_revenue()),
            },
            "tickets": {
                "issued": self.store.tickets.count_documents({}),
                "validated": self.store.tickets.count_documents({"is_validated": True}),
            },
            "changes": {
                key: round(percentage_change(current[key], previous[key]), 2)
                for key in ("events", "organizers", "users", "revenue")
            },
            "current_month_revenue": money_out(current["revenue"]),
            "last_month_revenue": money_out(previous["revenue"]),
        }

