"""Tests for the InventoryStore module."""

import os
import time

import pytest

from stockvoice.models import CatalogItem, ConfirmationHistory, RecentCommand, UndoRecord
from stockvoice.store import InventoryStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_item(name: str = "Whole Milk", quantity: float = 10.0, unit: str = "gallons", **kwargs) -> CatalogItem:
    return CatalogItem(id=CatalogItem.generate_id(), name=name, quantity=quantity, unit=unit, **kwargs)


def _make_undo(
    user_id: str = "u1",
    item_id: str = "itm_1",
    created_at: float | None = None,
    ttl: float = 3600.0,
    action_type: str = "inventory_update",
) -> UndoRecord:
    created = created_at if created_at is not None else time.time()
    return UndoRecord(
        id=UndoRecord.generate_id(),
        user_id=user_id,
        action_type=action_type,
        item_id=item_id,
        item_name="Whole Milk",
        description="add 5 gallons of Whole Milk",
        previous_state={"quantity": 10.0, "unit": "gallons"},
        current_state={"quantity": 15.0, "unit": "gallons"},
        method="voice",
        created_at=created,
        expires_at=created + ttl,
    )


class _ShortEmbedder:
    def encode(self, text):
        return [1.0, 0.0, 0.0]


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

class TestInitialization:
    def test_creates_database(self, tmp_path, embedder):
        db_path = str(tmp_path / "new.db")
        InventoryStore(db_path, embedder=embedder).close()
        assert os.path.exists(db_path)

    def test_tables_created(self, store):
        rows = store.db.execute("SELECT name FROM sqlite_master").fetchall()
        names = {r["name"] for r in rows}
        for table in ("items", "undo_records", "recent_commands", "confirmation_stats", "items_fts", "items_vec"):
            assert table in names

    def test_wrong_embedding_dimension(self, tmp_path):
        store = InventoryStore(str(tmp_path / "dim.db"), embedder=_ShortEmbedder())
        with pytest.raises(ValueError):
            store.embed("milk")
        store.close()


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class TestCatalog:
    def test_create_and_find(self, store):
        created = store.create(_make_item(category="dairy", threshold=2.0))
        found = store.find_by_id(created.id)
        assert found.name == "Whole Milk"
        assert found.quantity == 10.0
        assert found.category == "dairy"
        assert found.threshold == 2.0
        assert found.last_updated > 0

    def test_find_by_name_is_case_insensitive(self, store):
        created = store.create(_make_item())
        assert store.find_by_name("whole milk ").id == created.id
        assert store.find_by_name("skim milk") is None

    def test_negative_quantity_rejected(self, store):
        with pytest.raises(ValueError):
            store.create(_make_item(quantity=-1))

    def test_list_and_count(self, catalog, store):
        assert store.item_count() == len(catalog)
        assert {i.name for i in store.list_items()} == set(catalog)

    def test_find_similar_exact_name_first(self, catalog, store):
        hits = store.find_similar(store.embed("Coffee Beans"), k=3)
        assert hits[0][0].name == "Coffee Beans"
        assert hits[0][1] == pytest.approx(1.0, abs=1e-3)
        assert len(hits) == 3
        assert hits[0][1] >= hits[1][1] >= hits[2][1]

    def test_find_similar_empty_catalog(self, store):
        assert store.find_similar(store.embed("milk"), k=5) == []

    def test_search_text(self, catalog, store):
        names = {i.name for i in store.search_text("milk")}
        assert names == {"Whole Milk", "Oat Milk"}

    def test_search_text_blank_query(self, catalog, store):
        assert store.search_text("  ") == []

    def test_delete_removes_from_every_index(self, catalog, store):
        milk = catalog["Whole Milk"]
        assert store.delete(milk.id) is True
        assert store.find_by_id(milk.id) is None
        assert all(i.id != milk.id for i, _ in store.find_similar(store.embed("Whole Milk"), k=5))
        assert all(i.id != milk.id for i in store.search_text("whole"))
        assert store.delete(milk.id) is False


# ---------------------------------------------------------------------------
# update_quantity
# ---------------------------------------------------------------------------

class TestUpdateQuantity:
    def test_unconditional(self, catalog, store):
        milk = catalog["Whole Milk"]
        assert store.update_quantity(milk.id, 7.5) is True
        assert store.find_by_id(milk.id).quantity == 7.5

    def test_compare_and_set_success(self, catalog, store):
        milk = catalog["Whole Milk"]
        assert store.update_quantity(milk.id, 25.0, expected_quantity=20.0) is True
        assert store.find_by_id(milk.id).quantity == 25.0

    def test_compare_and_set_conflict(self, catalog, store):
        milk = catalog["Whole Milk"]
        assert store.update_quantity(milk.id, 25.0, expected_quantity=19.0) is False
        assert store.find_by_id(milk.id).quantity == 20.0

    def test_negative_rejected(self, catalog, store):
        with pytest.raises(ValueError):
            store.update_quantity(catalog["Sugar"].id, -1.0)

    def test_transaction_rolls_back(self, catalog, store):
        milk = catalog["Whole Milk"]
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.update_quantity(milk.id, 1.0)
                raise RuntimeError("boom")
        assert store.find_by_id(milk.id).quantity == 20.0


# ---------------------------------------------------------------------------
# Undo records
# ---------------------------------------------------------------------------

class TestUndoRecords:
    def test_insert_and_get(self, store):
        record = _make_undo()
        store.insert_undo_record(record)
        fetched = store.get_undo_record(record.id, "u1")
        assert fetched.previous_state == {"quantity": 10.0, "unit": "gallons"}
        assert fetched.method == "voice"

    def test_other_user_cannot_see_record(self, store):
        record = _make_undo(user_id="u1")
        store.insert_undo_record(record)
        assert store.get_undo_record(record.id, "u2") is None

    def test_expired_record_is_not_live(self, store):
        record = _make_undo(created_at=time.time() - 7200, ttl=3600)
        store.insert_undo_record(record)
        assert store.get_undo_record(record.id, "u1") is None
        assert store.list_undo_records("u1") == []

    def test_list_newest_first(self, store):
        now = time.time()
        older = _make_undo(item_id="a", created_at=now - 10)
        newer = _make_undo(item_id="b", created_at=now)
        store.insert_undo_record(older)
        store.insert_undo_record(newer)
        assert [r.id for r in store.list_undo_records("u1")] == [newer.id, older.id]

    def test_delete_for_key(self, store):
        store.insert_undo_record(_make_undo(item_id="a"))
        store.insert_undo_record(_make_undo(item_id="a", action_type="item_create"))
        assert store.delete_undo_records_for("u1", "a", "inventory_update") == 1
        assert [r.action_type for r in store.list_undo_records("u1")] == ["item_create"]

    def test_delete_expired(self, store):
        now = time.time()
        store.insert_undo_record(_make_undo(item_id="a", created_at=now - 7200, ttl=3600))
        live = _make_undo(item_id="b", created_at=now)
        store.insert_undo_record(live)
        assert store.delete_expired_undo_records() == 1
        assert [r.id for r in store.list_undo_records("u1")] == [live.id]


# ---------------------------------------------------------------------------
# Recent commands and confirmation stats
# ---------------------------------------------------------------------------

class TestRecentCommands:
    def test_newest_first_and_bounded(self, store):
        for i in range(7):
            store.add_recent_command("s1", RecentCommand("add", f"item {i}", float(i), "bags"), keep=5)
        recent = store.get_recent_commands("s1", limit=10)
        assert [c.item for c in recent] == ["item 6", "item 5", "item 4", "item 3", "item 2"]

    def test_sessions_are_separate(self, store):
        store.add_recent_command("s1", RecentCommand("add", "sugar", 1.0, "pounds"))
        store.add_recent_command("s2", RecentCommand("set", "milk", 2.0, "gallons"))
        assert [c.item for c in store.get_recent_commands("s1")] == ["sugar"]
        assert store.clear_recent_commands("s1") == 1
        assert store.get_recent_commands("s1") == []
        assert len(store.get_recent_commands("s2")) == 1


class TestConfirmationStats:
    def test_defaults_for_unknown_user(self, store):
        stats = store.get_confirmation_stats("nobody")
        assert (stats.correct, stats.total, stats.recent_mistakes) == (0, 0, [])
        assert stats.accuracy == 1.0

    def test_save_keeps_last_ten_mistakes(self, store):
        mistakes = ["item"] * 5 + ["quantity"] * 10
        store.save_confirmation_stats("u1", ConfirmationHistory(correct=3, total=18, recent_mistakes=mistakes))
        stats = store.get_confirmation_stats("u1")
        assert stats.total == 18
        assert stats.recent_mistakes == ["quantity"] * 10
