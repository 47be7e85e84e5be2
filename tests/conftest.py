from __future__ import annotations

from pathlib import Path

import pytest

from storeflow.inventory import InventoryStore
from storeflow.storage import LocalStore


@pytest.fixture()
def local_store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "storeflow.json")


@pytest.fixture()
def store(local_store: LocalStore) -> InventoryStore:
    return InventoryStore(local_store)
