"""Supabase persistence for orders, drivers and delivery batches.

Single-row conditional updates are expressed as filtered PostgREST updates:
an empty result means the expected state no longer holds. Multi-row writes
go through Postgres functions so they commit as one transaction:

- ``create_delivery_batch(p_batch jsonb, p_batch_orders jsonb)``
- ``attach_batch_order(p_batch_order jsonb, p_driver_id text)``
- ``detach_batch_order(p_batch_id text, p_order_id text, p_resequence jsonb)``

Uniqueness is backed by partial unique indexes on ``delivery_batches(driver_id)``
and ``batch_orders(order_id)`` restricted to open batches.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

import httpx
from postgrest.exceptions import APIError

from ..db.supabase import get_supabase_client
from ..errors import ConflictError, StoreError, ValidationError
from ..models.domain import (
    Batch,
    BatchOrder,
    BatchStatus,
    Driver,
    DriverPerformance,
    Order,
    OrderStatus,
    StopStatus,
)
from .ports import BatchStore, DriverStore, OrderStore

logger = logging.getLogger(__name__)

ORDERS_TABLE = "orders"
DRIVERS_TABLE = "drivers"
BATCHES_TABLE = "delivery_batches"
BATCH_ORDERS_TABLE = "batch_orders"

# unique_violation, serialization_failure, raise_exception (function preconditions)
CONFLICT_SQLSTATES = {"23505", "40001", "P0001"}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def order_from_row(row: dict) -> Order:
    return Order(
        order_id=str(row["id"]),
        status=OrderStatus(row["status"]),
        vendor_id=str(row["vendor_id"]),
        pickup_latitude=float(row["pickup_latitude"]),
        pickup_longitude=float(row["pickup_longitude"]),
        delivery_latitude=float(row["delivery_latitude"]),
        delivery_longitude=float(row["delivery_longitude"]),
        created_at=_parse_datetime(row["created_at"]),
        estimated_delivery_time=_parse_datetime(row["estimated_delivery_time"]),
        item_count=int(row.get("item_count") or 1),
        assigned_driver_id=row.get("assigned_driver_id"),
    )


def driver_from_row(row: dict) -> Driver:
    performance = None
    if row.get("total_deliveries"):
        performance = DriverPerformance(
            rating=float(row.get("rating") or 0.0),
            on_time_rate=float(row.get("on_time_rate") or 0.0),
            total_deliveries=int(row["total_deliveries"]),
        )
    latitude = row.get("latitude")
    longitude = row.get("longitude")
    return Driver(
        driver_id=str(row["id"]),
        is_online=row.get("status") == "online",
        is_active=bool(row.get("is_active")),
        latitude=float(latitude) if latitude is not None else None,
        longitude=float(longitude) if longitude is not None else None,
        workload_count=int(row.get("workload_count") or 0),
        performance=performance,
        current_batch_id=row.get("current_batch_id"),
    )


def batch_from_row(row: dict) -> Batch:
    return Batch(
        batch_id=str(row["id"]),
        driver_id=str(row["driver_id"]),
        batch_number=row["batch_number"],
        status=BatchStatus(row["status"]),
        total_distance_km=float(row.get("total_distance_km") or 0.0),
        estimated_duration_minutes=int(row.get("estimated_duration_minutes") or 0),
        optimization_score=float(row.get("optimization_score") or 0.0),
        max_orders=int(row["max_orders"]),
        max_deviation_km=float(row["max_deviation_km"]),
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"]),
        actual_start_time=_parse_datetime(row.get("actual_start_time")),
        actual_completion_time=_parse_datetime(row.get("actual_completion_time")),
        metadata=row.get("metadata") or {},
    )


def batch_to_row(batch: Batch) -> dict:
    return {
        "id": batch.batch_id,
        "driver_id": batch.driver_id,
        "batch_number": batch.batch_number,
        "status": batch.status.value,
        "total_distance_km": batch.total_distance_km,
        "estimated_duration_minutes": batch.estimated_duration_minutes,
        "optimization_score": batch.optimization_score,
        "max_orders": batch.max_orders,
        "max_deviation_km": batch.max_deviation_km,
        "created_at": _iso(batch.created_at),
        "updated_at": _iso(batch.updated_at),
        "actual_start_time": _iso(batch.actual_start_time),
        "actual_completion_time": _iso(batch.actual_completion_time),
        "metadata": batch.metadata,
    }


def batch_order_from_row(row: dict) -> BatchOrder:
    return BatchOrder(
        batch_id=str(row["batch_id"]),
        order_id=str(row["order_id"]),
        pickup_sequence=int(row["pickup_sequence"]),
        delivery_sequence=int(row["delivery_sequence"]),
        pickup_status=StopStatus(row.get("pickup_status") or "pending"),
        delivery_status=StopStatus(row.get("delivery_status") or "pending"),
        actual_pickup_time=_parse_datetime(row.get("actual_pickup_time")),
        actual_delivery_time=_parse_datetime(row.get("actual_delivery_time")),
    )


def batch_order_to_row(batch_order: BatchOrder) -> dict:
    return {
        "batch_id": batch_order.batch_id,
        "order_id": batch_order.order_id,
        "pickup_sequence": batch_order.pickup_sequence,
        "delivery_sequence": batch_order.delivery_sequence,
        "pickup_status": batch_order.pickup_status.value,
        "delivery_status": batch_order.delivery_status.value,
        "actual_pickup_time": _iso(batch_order.actual_pickup_time),
        "actual_delivery_time": _iso(batch_order.actual_delivery_time),
    }


class SupabaseStore(OrderStore, DriverStore, BatchStore):
    """Order, driver and batch store backed by Supabase/PostgREST."""

    def __init__(self, client=None) -> None:
        self.client = client or get_supabase_client()
        if self.client is None:
            raise ValueError("Supabase is not configured. Set BATCHING_SUPABASE_URL and BATCHING_SUPABASE_KEY.")

    def _execute(self, query, *, context: str) -> list[dict]:
        try:
            response = query.execute()
        except APIError as exc:
            if exc.code in CONFLICT_SQLSTATES:
                raise ConflictError(f"{context}: {exc.message}", sqlstate=exc.code) from exc
            raise StoreError(f"{context}: {exc.message}", sqlstate=exc.code) from exc
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            logger.warning(f"Supabase request failed during {context}: {exc}")
            raise StoreError(f"{context}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"{context}: {exc}") from exc
        data = response.data
        if data is None:
            return []
        return data if isinstance(data, list) else [data]

    def _single(self, rows: list[dict], message: str, **metadata: Any) -> dict:
        if not rows:
            raise ConflictError(message, **metadata)
        return rows[0]

    # Orders

    def get_orders(self, order_ids: Sequence[str]) -> list[Order]:
        if not order_ids:
            return []
        rows = self._execute(
            self.client.table(ORDERS_TABLE).select("*").in_("id", list(order_ids)),
            context="get orders",
        )
        by_id = {str(row["id"]): order_from_row(row) for row in rows}
        return [by_id[oid] for oid in order_ids if oid in by_id]

    def list_ready_orders(self) -> list[Order]:
        rows = self._execute(
            self.client.table(ORDERS_TABLE)
            .select("*")
            .eq("status", OrderStatus.READY.value)
            .is_("assigned_driver_id", "null")
            .order("created_at")
            .order("id"),
            context="list ready orders",
        )
        return [order_from_row(row) for row in rows]

    def claim_order(self, order_id: str, driver_id: str) -> Order:
        rows = self._execute(
            self.client.table(ORDERS_TABLE)
            .update({"status": OrderStatus.ASSIGNED.value, "assigned_driver_id": driver_id})
            .eq("id", order_id)
            .eq("status", OrderStatus.READY.value)
            .is_("assigned_driver_id", "null"),
            context=f"claim order {order_id}",
        )
        return order_from_row(self._single(rows, f"Order {order_id} is no longer ready and unassigned", order_id=order_id))

    def release_order(self, order_id: str, *, expected_driver_id: Optional[str]) -> Order:
        query = (
            self.client.table(ORDERS_TABLE)
            .update({"status": OrderStatus.READY.value, "assigned_driver_id": None})
            .eq("id", order_id)
            .in_(
                "status",
                [OrderStatus.READY.value, OrderStatus.ASSIGNED.value, OrderStatus.PICKED_UP.value],
            )
        )
        if expected_driver_id is not None:
            query = query.or_(f"assigned_driver_id.eq.{expected_driver_id},assigned_driver_id.is.null")
        rows = self._execute(query, context=f"release order {order_id}")
        return order_from_row(self._single(rows, f"Order {order_id} cannot be released", order_id=order_id))

    def set_order_status(
        self, order_id: str, status: OrderStatus, *, expected: Iterable[OrderStatus]
    ) -> Order:
        rows = self._execute(
            self.client.table(ORDERS_TABLE)
            .update({"status": status.value})
            .eq("id", order_id)
            .in_("status", [item.value for item in expected]),
            context=f"set order {order_id} status",
        )
        return order_from_row(
            self._single(rows, f"Order {order_id} cannot move to {status.value}", order_id=order_id)
        )

    def transfer_order(self, order_id: str, *, from_driver_id: str, to_driver_id: str) -> Order:
        rows = self._execute(
            self.client.table(ORDERS_TABLE)
            .update({"assigned_driver_id": to_driver_id})
            .eq("id", order_id)
            .eq("assigned_driver_id", from_driver_id),
            context=f"transfer order {order_id}",
        )
        return order_from_row(
            self._single(rows, f"Order {order_id} is not assigned to {from_driver_id}", order_id=order_id)
        )

    # Drivers

    def get_driver(self, driver_id: str) -> Optional[Driver]:
        rows = self._execute(
            self.client.table(DRIVERS_TABLE).select("*").eq("id", driver_id).limit(1),
            context=f"get driver {driver_id}",
        )
        return driver_from_row(rows[0]) if rows else None

    def list_available_drivers(self) -> list[Driver]:
        rows = self._execute(
            self.client.table(DRIVERS_TABLE)
            .select("*")
            .eq("is_active", True)
            .eq("status", "online")
            .order("id"),
            context="list available drivers",
        )
        return [driver_from_row(row) for row in rows]

    def set_current_batch(
        self, driver_id: str, batch_id: Optional[str], *, expected_batch_id: Optional[str]
    ) -> Driver:
        query = self.client.table(DRIVERS_TABLE).update({"current_batch_id": batch_id}).eq("id", driver_id)
        if expected_batch_id is None:
            query = query.is_("current_batch_id", "null")
        else:
            query = query.eq("current_batch_id", expected_batch_id)
        rows = self._execute(query, context=f"set current batch for driver {driver_id}")
        return driver_from_row(
            self._single(rows, f"Driver {driver_id} batch reference changed concurrently", driver_id=driver_id)
        )

    # Batches

    def insert_batch(self, batch: Batch, batch_orders: Sequence[BatchOrder]) -> Batch:
        rows = self._execute(
            self.client.rpc(
                "create_delivery_batch",
                {
                    "p_batch": batch_to_row(batch),
                    "p_batch_orders": [batch_order_to_row(row) for row in batch_orders],
                },
            ),
            context=f"create batch {batch.batch_id}",
        )
        return batch_from_row(rows[0]) if rows else batch

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        rows = self._execute(
            self.client.table(BATCHES_TABLE).select("*").eq("id", batch_id).limit(1),
            context=f"get batch {batch_id}",
        )
        return batch_from_row(rows[0]) if rows else None

    def get_batch_orders(self, batch_id: str) -> list[BatchOrder]:
        rows = self._execute(
            self.client.table(BATCH_ORDERS_TABLE)
            .select("*")
            .eq("batch_id", batch_id)
            .order("pickup_sequence"),
            context=f"get orders of batch {batch_id}",
        )
        return [batch_order_from_row(row) for row in rows]

    def list_batches(
        self, statuses: Iterable[BatchStatus], *, driver_id: Optional[str] = None
    ) -> list[Batch]:
        query = (
            self.client.table(BATCHES_TABLE)
            .select("*")
            .in_("status", [status.value for status in statuses])
        )
        if driver_id is not None:
            query = query.eq("driver_id", driver_id)
        rows = self._execute(query.order("created_at").order("id"), context="list batches")
        return [batch_from_row(row) for row in rows]

    def update_batch_status(
        self,
        batch_id: str,
        status: BatchStatus,
        *,
        expected: Iterable[BatchStatus],
        at: datetime,
        fields: Optional[dict] = None,
    ) -> Batch:
        expected_values = [item.value for item in expected]
        payload: dict[str, Any] = {"status": status.value, "updated_at": at.isoformat()}
        for key, value in (fields or {}).items():
            if key == "metadata":
                current = self.get_batch(batch_id)
                merged = dict(current.metadata) if current else {}
                merged.update(value)
                payload["metadata"] = merged
            else:
                payload[key] = value.isoformat() if isinstance(value, datetime) else value
        rows = self._execute(
            self.client.table(BATCHES_TABLE).update(payload).eq("id", batch_id).in_("status", expected_values),
            context=f"move batch {batch_id} to {status.value}",
        )
        if not rows:
            if self.get_batch(batch_id) is None:
                raise ValidationError(f"Batch {batch_id} not found", batch_id=batch_id)
            raise ConflictError(f"Batch {batch_id} cannot move to {status.value}", batch_id=batch_id)
        return batch_from_row(rows[0])

    def update_batch_metrics(
        self,
        batch_id: str,
        *,
        total_distance_km: float,
        estimated_duration_minutes: int,
        optimization_score: float,
        at: datetime,
    ) -> Batch:
        rows = self._execute(
            self.client.table(BATCHES_TABLE)
            .update(
                {
                    "total_distance_km": total_distance_km,
                    "estimated_duration_minutes": estimated_duration_minutes,
                    "optimization_score": optimization_score,
                    "updated_at": at.isoformat(),
                }
            )
            .eq("id", batch_id),
            context=f"update metrics of batch {batch_id}",
        )
        if not rows:
            raise ValidationError(f"Batch {batch_id} not found", batch_id=batch_id)
        return batch_from_row(rows[0])

    def update_batch_driver(
        self, batch_id: str, driver_id: str, *, expected_driver_id: str, at: datetime
    ) -> Batch:
        rows = self._execute(
            self.client.table(BATCHES_TABLE)
            .update({"driver_id": driver_id, "updated_at": at.isoformat()})
            .eq("id", batch_id)
            .eq("driver_id", expected_driver_id)
            .eq("status", BatchStatus.PLANNED.value),
            context=f"reassign batch {batch_id}",
        )
        return batch_from_row(
            self._single(rows, f"Batch {batch_id} can no longer be moved from driver {expected_driver_id}", batch_id=batch_id)
        )

    def update_stop_status(
        self,
        batch_id: str,
        order_id: str,
        *,
        leg: str,
        status: StopStatus,
        at: datetime,
    ) -> BatchOrder:
        if leg not in ("pickup", "delivery"):
            raise ValidationError(f"Unknown leg '{leg}'", leg=leg)
        payload: dict[str, Any] = {f"{leg}_status": status.value}
        if status == StopStatus.COMPLETED:
            payload[f"actual_{leg}_time"] = at.isoformat()
        rows = self._execute(
            self.client.table(BATCH_ORDERS_TABLE)
            .update(payload)
            .eq("batch_id", batch_id)
            .eq("order_id", order_id)
            .eq(f"{leg}_status", StopStatus.PENDING.value),
            context=f"update {leg} status of order {order_id}",
        )
        return batch_order_from_row(
            self._single(rows, f"{leg.capitalize()} for order {order_id} is no longer pending", order_id=order_id)
        )

    def attach_order(self, batch_order: BatchOrder, *, driver_id: str) -> BatchOrder:
        rows = self._execute(
            self.client.rpc(
                "attach_batch_order",
                {"p_batch_order": batch_order_to_row(batch_order), "p_driver_id": driver_id},
            ),
            context=f"attach order {batch_order.order_id}",
        )
        return batch_order_from_row(rows[0]) if rows else batch_order

    def detach_order(
        self, batch_id: str, order_id: str, *, resequence: dict[str, tuple[int, int]]
    ) -> list[BatchOrder]:
        self._execute(
            self.client.rpc(
                "detach_batch_order",
                {
                    "p_batch_id": batch_id,
                    "p_order_id": order_id,
                    "p_resequence": [
                        {"order_id": oid, "pickup_sequence": pickup, "delivery_sequence": delivery}
                        for oid, (pickup, delivery) in resequence.items()
                    ],
                },
            ),
            context=f"detach order {order_id}",
        )
        return self.get_batch_orders(batch_id)
