"""Shared fixtures: a real SQLite store with a deterministic embedder."""

import json
import math
import zlib
from unittest.mock import MagicMock

import pytest

from stockvoice.models import CatalogItem
from stockvoice.store import InventoryStore
from stockvoice.text import normalize


class HashingEmbedder:
    """Bag of words + character trigrams hashed into 384 buckets.

    Names sharing words or spelling land close together, which is all the
    resolver needs, and no model has to be downloaded.
    """

    def __init__(self, dim: int = 384):
        self.dim = dim

    def encode(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        for word in normalize(text).split():
            vector[zlib.crc32(f"w:{word}".encode()) % self.dim] += 1.0
            padded = f"#{word}#"
            for i in range(len(padded) - 2):
                vector[zlib.crc32(f"t:{padded[i:i + 3]}".encode()) % self.dim] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


def cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    return dot / (math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b)))


CATALOG = [
    # name, quantity, unit, category, threshold
    ("Whole Milk", 20.0, "gallons", "dairy", 5.0),
    ("Oat Milk", 12.0, "cartons", "dairy", None),
    ("Coffee Beans", 50.0, "pounds", "coffee", 10.0),
    ("16 oz Paper Cups", 40.0, "sleeves", "supplies", None),
    ("Sugar", 30.0, "pounds", "baking", None),
]


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def store(tmp_path, embedder):
    db = InventoryStore(str(tmp_path / "inventory.db"), embedder=embedder)
    yield db
    db.close()


@pytest.fixture
def catalog(store):
    """The store seeded with CATALOG; returns {name: CatalogItem}."""
    items = {}
    for name, quantity, unit, category, threshold in CATALOG:
        items[name] = store.create(CatalogItem(
            id=CatalogItem.generate_id(),
            name=name,
            quantity=quantity,
            unit=unit,
            category=category,
            threshold=threshold,
        ))
    return items


def make_llm_client(*payloads):
    """Mock chat-completions client returning each payload in turn.

    Dicts and lists are JSON-encoded; strings are returned verbatim.
    """
    responses = []
    for payload in payloads:
        resp = MagicMock()
        resp.choices = [MagicMock()]
        resp.choices[0].message.content = payload if isinstance(payload, str) else json.dumps(payload)
        responses.append(resp)

    client = MagicMock()
    client.chat.completions.create = MagicMock(side_effect=responses)
    return client


@pytest.fixture
def llm_client():
    return make_llm_client
