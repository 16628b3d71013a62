"""Tests for the constraint catalog."""

import pytest
from unittest.mock import MagicMock
from core.catalog import ConstraintCatalog, BUILTIN_ENTRIES, DEFAULT_DATASETS


class TestSelectDatasets:
    """Profile selection."""

    def test_before_load_returns_defaults(self):
        catalog = ConstraintCatalog()
        selected = [e.dataset_id for e in catalog.select_datasets("comprehensive")]
        assert set(selected) == set(DEFAULT_DATASETS)

    def test_basic_profile(self):
        catalog = ConstraintCatalog().load()
        selected = [e.dataset_id for e in catalog.select_datasets("basic")]
        assert "conservation-area" in selected
        assert "flood-risk-zone" in selected
        assert "scheduled-monument" not in selected
        assert "transport-access-node" not in selected

    def test_declaration_order_preserved(self):
        catalog = ConstraintCatalog().load()
        selected = catalog.select_datasets("comprehensive")
        order = [e.dataset_id for e in catalog.entries]
        indexes = [order.index(e.dataset_id) for e in selected]
        assert indexes == sorted(indexes)

    def test_residential_adds_transport(self):
        catalog = ConstraintCatalog().load()
        selected = [e.dataset_id for e in catalog.select_datasets("basic", "residential")]
        assert "transport-access-node" in selected

    def test_unknown_profile_falls_back_to_basic(self):
        catalog = ConstraintCatalog().load()
        assert catalog.select_datasets("nonsense") == catalog.select_datasets("basic")

    def test_non_string_profile_falls_back_to_basic(self):
        catalog = ConstraintCatalog().load()
        assert catalog.select_datasets(["basic"]) == catalog.select_datasets("basic")


class TestLoad:
    """Entity-count refresh."""

    def test_refresh_updates_hints(self):
        client = MagicMock()
        client.fetch_dataset_counts.return_value = {"green-belt": 999}
        catalog = ConstraintCatalog().load(client)
        assert catalog.get("green-belt").entity_count_hint == 999
        assert catalog.loaded

    def test_failed_refresh_keeps_builtin_hints(self):
        client = MagicMock()
        client.fetch_dataset_counts.side_effect = RuntimeError("offline")
        catalog = ConstraintCatalog().load(client)
        original = next(e for e in BUILTIN_ENTRIES if e.dataset_id == "green-belt")
        assert catalog.get("green-belt").entity_count_hint == original.entity_count_hint
        assert catalog.loaded

    def test_entries_are_immutable(self):
        entry = ConstraintCatalog().get("listed-building")
        with pytest.raises(Exception):
            entry.severity = "low"


def test_get_by_candidate_name():
    catalog = ConstraintCatalog()
    assert catalog.get("bus-stop").dataset_id == "transport-access-node"
    assert catalog.get("no-such-dataset") is None


def test_describe():
    summary = ConstraintCatalog().load().describe()
    assert summary["total_datasets"] == len(BUILTIN_ENTRIES)
    assert "heritage" in summary["datasets_by_category"]
    assert summary["recommended_combinations"]["basic"]["estimated_query_time"]
