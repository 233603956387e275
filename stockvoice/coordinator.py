"""Applies inventory mutations and keeps them reversible.

Every quantity change goes through ``MutationCoordinator.apply``: resolve the
item, convert units, write with compare-and-set, replace the user's undo
record for that item, then notify listeners.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Any, Callable

from . import units
from .errors import NotFound, PersistenceError, ValidationError
from .feedback import describe
from .models import (
    MUTATING_ACTIONS,
    Actor,
    CatalogItem,
    ChangeEvent,
    MutationResult,
    UndoRecord,
)

logger = logging.getLogger("stockvoice.coordinator")


class MutationCoordinator:
    """The only writer of catalog quantities."""

    MAX_RETRIES = 3
    UNDO_EXPIRATION_HOURS = 168.0

    def __init__(
        self,
        store: Any,
        resolver: Any,
        undo_expiration_hours: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.resolver = resolver
        self.undo_expiration_hours = (
            self.UNDO_EXPIRATION_HOURS if undo_expiration_hours is None else undo_expiration_hours
        )
        self.clock = clock
        self._listeners: list[Callable[[ChangeEvent], None]] = []
        self._item_locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # -- notifications --

    def on_change(self, callback: Callable[[ChangeEvent], None]):
        self._listeners.append(callback)

    def _emit(self, event: ChangeEvent):
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("change listener failed for %s", event.item_id)

    def _lock_for(self, item_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._item_locks.get(item_id)
            if lock is None:
                lock = self._item_locks[item_id] = threading.RLock()
            return lock

    # ------------------------------------------------------------------
    # Quantity updates
    # ------------------------------------------------------------------

    def apply(
        self,
        update: Any,
        actor: Actor,
        method: str = "voice",
        record_undo: bool = True,
    ) -> MutationResult:
        """
        Apply an add/remove/set to the item named by ``update.item``.

        Raises
        ------
        ValidationError
            Bad action or quantity, or units that cannot be converted.
        NotFound, Ambiguous
            The item name did not resolve.
        PersistenceError
            The conditional write kept conflicting.
        """
        action, quantity = self._validate(update)
        item = self.resolver.resolve(update.item)
        return self._apply_to_item(item, action, quantity, update.unit, actor, method, record_undo)

    def apply_to_item(
        self,
        item: CatalogItem,
        update: Any,
        actor: Actor,
        method: str = "voice",
        record_undo: bool = True,
    ) -> MutationResult:
        """Like ``apply`` for an item that has already been resolved."""
        action, quantity = self._validate(update)
        return self._apply_to_item(item, action, quantity, update.unit, actor, method, record_undo)

    @staticmethod
    def _validate(update: Any) -> tuple[str, float]:
        action = (update.action or "").lower()
        if action not in MUTATING_ACTIONS:
            raise ValidationError(f"Unsupported action: {update.action!r}")
        quantity = update.quantity
        if quantity is None or isinstance(quantity, bool):
            raise ValidationError("A quantity is required")
        quantity = float(quantity)
        if math.isnan(quantity) or quantity < 0:
            raise ValidationError(f"Quantity must be non-negative, got {update.quantity!r}")
        return action, quantity

    def _apply_to_item(
        self,
        item: CatalogItem,
        action: str,
        quantity: float,
        unit: str | None,
        actor: Actor,
        method: str,
        record_undo: bool,
    ) -> MutationResult:
        applied = quantity
        if unit and units.normalize_unit(unit) != units.normalize_unit(item.unit):
            applied = units.convert(quantity, unit, item.unit)
            logger.debug("converted %g %s -> %g %s", quantity, unit, applied, item.unit)

        undo_id = None
        with self._lock_for(item.id):
            for attempt in range(1, self.MAX_RETRIES + 1):
                current = self.store.find_by_id(item.id)
                if current is None:
                    raise NotFound(item.name)

                previous = current.quantity
                if action == "add":
                    new = previous + applied
                elif action == "remove":
                    new = max(0.0, previous - applied)
                else:
                    new = applied
                new = round(new, 6)

                with self.store.transaction():
                    if not self.store.update_quantity(item.id, new, expected_quantity=previous):
                        logger.warning(
                            "conflicting write on %s (attempt %d/%d)", item.id, attempt, self.MAX_RETRIES,
                        )
                        continue
                    if record_undo:
                        undo_id = self._record_undo(
                            actor,
                            "inventory_update",
                            current,
                            describe(action, quantity, unit or item.unit, current.name),
                            previous_state={"quantity": previous, "unit": current.unit},
                            current_state={"quantity": new, "unit": current.unit},
                            method=method,
                        )
                break
            else:
                raise PersistenceError(
                    f"Could not update {item.name} after {self.MAX_RETRIES} conflicting writes"
                )

        fresh = self.store.find_by_id(item.id) or current
        logger.info(
            "%s %s: %g -> %g %s (by %s via %s)",
            action, fresh.name, previous, new, fresh.unit, actor.user_id, method,
        )
        self._emit(ChangeEvent(
            item_id=fresh.id,
            item=fresh.name,
            quantity=new,
            unit=fresh.unit,
            action=action,
            actor=actor.user_id,
            method=method,
        ))
        return MutationResult(
            item=fresh,
            action=action,
            previous_quantity=previous,
            new_quantity=new,
            applied_quantity=applied,
            undo_id=undo_id,
        )

    def _record_undo(
        self,
        actor: Actor,
        action_type: str,
        item: CatalogItem,
        description: str,
        previous_state: dict,
        current_state: dict,
        method: str,
    ) -> str:
        """Replace the actor's live record for (item, action type). Call inside a transaction."""
        now = self.clock()
        self.store.delete_undo_records_for(actor.user_id, item.id, action_type)
        record = UndoRecord(
            id=UndoRecord.generate_id(),
            user_id=actor.user_id,
            action_type=action_type,
            item_id=item.id,
            item_name=item.name,
            description=description,
            previous_state=previous_state,
            current_state=current_state,
            method=method,
            created_at=now,
            expires_at=now + self.undo_expiration_hours * 3600,
        )
        self.store.insert_undo_record(record)
        return record.id

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self, undo_id: str, actor: Actor) -> MutationResult:
        """Revert one live undo record owned by *actor*. The record is consumed."""
        record = self.store.get_undo_record(undo_id, actor.user_id, now=self.clock())
        if record is None:
            raise NotFound(undo_id, "Undo record not found or expired")

        # Item lock before store lock, same order as apply()
        with self._lock_for(record.item_id), self.store.transaction():
            if record.action_type == "inventory_update":
                item = self.store.find_by_id(record.item_id)
                if item is None:
                    raise NotFound(record.item_name)
                result = self._apply_to_item(
                    item,
                    "set",
                    float(record.previous_state["quantity"]),
                    record.previous_state.get("unit"),
                    actor,
                    method="undo",
                    record_undo=False,
                )
            elif record.action_type == "item_create":
                result = self._undo_create(record, actor)
            elif record.action_type == "item_delete":
                result = self._undo_delete(record, actor)
            else:
                raise ValidationError(f"Unknown undo action type: {record.action_type!r}")

            self.store.delete_undo_record(record.id)

        logger.info("undid %s (%s) for %s", record.id, record.description, actor.user_id)
        return result

    def undo_last(self, actor: Actor) -> MutationResult:
        records = self.store.list_undo_records(actor.user_id, limit=1, now=self.clock())
        if not records:
            raise NotFound("last", "Nothing to undo")
        return self.undo(records[0].id, actor)

    def list_undo(self, actor: Actor, limit: int = 20) -> list[UndoRecord]:
        return self.store.list_undo_records(actor.user_id, limit=limit, now=self.clock())

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_undo_records(now=self.clock())
        if removed:
            logger.info("swept %d expired undo records", removed)
        return removed

    def _undo_create(self, record: UndoRecord, actor: Actor) -> MutationResult:
        item = self.store.find_by_id(record.item_id)
        if item is None:
            raise NotFound(record.item_name)
        self.store.delete(item.id)
        self._emit(ChangeEvent(item.id, item.name, 0.0, item.unit, "delete", actor.user_id, "undo"))
        return MutationResult(item, "delete", item.quantity, 0.0, item.quantity)

    def _undo_delete(self, record: UndoRecord, actor: Actor) -> MutationResult:
        state = record.previous_state
        if self.store.find_by_id(state["id"]) is not None:
            raise ValidationError(f"Item {state['name']!r} already exists")
        item = self.store.create(CatalogItem(**state))
        self._emit(ChangeEvent(item.id, item.name, item.quantity, item.unit, "create", actor.user_id, "undo"))
        return MutationResult(item, "create", 0.0, item.quantity, item.quantity)

    # ------------------------------------------------------------------
    # Catalog entries
    # ------------------------------------------------------------------

    def create_item(
        self,
        name: str,
        quantity: float,
        unit: str,
        actor: Actor,
        category: str = "general",
        threshold: float | None = None,
        description: str = "",
        method: str = "ui",
    ) -> CatalogItem:
        if not name or not name.strip():
            raise ValidationError("Item name is required")
        if quantity is None or quantity < 0:
            raise ValidationError("Quantity must be non-negative")
        if self.store.find_by_name(name) is not None:
            raise ValidationError(f"Item {name.strip()!r} already exists")

        with self.store.transaction():
            item = self.store.create(CatalogItem(
                id=CatalogItem.generate_id(),
                name=name.strip(),
                quantity=float(quantity),
                unit=units.normalize_unit(unit),
                category=category,
                threshold=threshold,
                description=description,
            ))
            self._record_undo(
                actor, "item_create", item, f"create {item.name}",
                previous_state={}, current_state=item.snapshot(), method=method,
            )

        logger.info("created %s (%s) by %s", item.name, item.id, actor.user_id)
        self._emit(ChangeEvent(item.id, item.name, item.quantity, item.unit, "create", actor.user_id, method))
        return item

    def delete_item(self, item_id: str, actor: Actor, method: str = "ui") -> CatalogItem:
        item = self.store.find_by_id(item_id)
        if item is None:
            raise NotFound(item_id)

        with self._lock_for(item.id), self.store.transaction():
            self.store.delete(item.id)
            self._record_undo(
                actor, "item_delete", item, f"delete {item.name}",
                previous_state=item.snapshot(), current_state={}, method=method,
            )

        logger.info("deleted %s (%s) by %s", item.name, item.id, actor.user_id)
        self._emit(ChangeEvent(item.id, item.name, 0.0, item.unit, "delete", actor.user_id, method))
        return item
