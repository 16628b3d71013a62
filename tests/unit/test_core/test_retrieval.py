"""Tests for the layered evidence retrieval chain."""

import json
import time
import pytest
from unittest.mock import MagicMock
from core.llm import LLMResponse
from core.rag import DocumentType, PolicyDocument, PolicyLibrary
from core.retrieval import EvidenceItem, EvidenceRetrievalChain, merge_evidence


@pytest.fixture
def library():
    lib = PolicyLibrary()
    lib.ingest_document(PolicyDocument(
        id="lp:H1", title="Housing Delivery", policy_ref="H1", local_plan_id="lp-2030",
        content="Residential development must provide 35% affordable housing on major sites.",
    ))
    lib.ingest_document(PolicyDocument(
        id="lp:HE2", title="Conservation Areas", policy_ref="HE2", local_plan_id="lp-2030",
        content="Development in conservation areas must preserve or enhance their character.",
    ))
    lib.ingest_document(PolicyDocument(
        id="other:H1", title="Housing", policy_ref="OH1", local_plan_id="other-plan",
        content="Affordable housing requirement of 20% on all residential sites.",
    ))
    lib.ingest_document(PolicyDocument(
        id="appeal-7", title="Appeal 7", doc_type=DocumentType.PRECEDENT,
        content="Appeal allowed: affordable housing benefits outweighed harm to character.",
    ))
    return lib


def generator_returning(plan):
    generator = MagicMock()
    generator.is_available = True
    generator.generate.return_value = LLMResponse(content=json.dumps(plan), model="test")
    return generator


class TestLayerSelection:

    def test_hybrid_without_generator(self, library):
        result = EvidenceRetrievalChain(library).retrieve("affordable housing", {"local_plan_id": "lp-2030"})
        assert result.strategy == "hybrid"
        assert result.items
        assert any(d.startswith("agentic") for d in result.degraded_layers)
        assert all(0.0 <= i.relevance_score <= 1.0 for i in result.items)

    def test_plan_filter_admits_unscoped_documents(self, library):
        result = EvidenceRetrievalChain(library).retrieve("affordable housing", {"local_plan_id": "lp-2030"})
        references = {i.reference for i in result.items}
        assert "OH1" not in references
        assert "H1" in references
        assert any(i.source_type == "precedent" for i in result.items)

    def test_empty_library_falls_back_to_vector(self):
        result = EvidenceRetrievalChain(PolicyLibrary()).retrieve("anything")
        assert result.strategy == "vector"
        assert result.items == []
        assert len(result.degraded_layers) == 2

    def test_agentic_layer(self, library):
        generator = generator_returning({
            "needs_policy_data": True,
            "needs_constraint_data": True,
            "needs_precedent_data": True,
            "additional_queries": ["conservation area character"],
        })
        dataset_item = EvidenceItem("dataset", "conservation-area", "Site within conservation area", 0.9)
        chain = EvidenceRetrievalChain(library, generator=generator)
        result = chain.retrieve("affordable housing", {
            "local_plan_id": "lp-2030",
            "constraint_evidence": [dataset_item],
        })

        assert result.strategy == "agentic"
        assert generator.generate.called
        sources = {i.source_type for i in result.items}
        assert {"policy", "dataset", "precedent"} <= sources
        dataset = next(i for i in result.items if i.source_type == "dataset")
        assert dataset.relevance_score == pytest.approx(0.72)
        scores = [i.relevance_score for i in result.items]
        assert scores == sorted(scores, reverse=True)

    def test_unparseable_plan_falls_back(self, library):
        generator = MagicMock()
        generator.is_available = True
        generator.generate.return_value = LLMResponse(content="not json", model="test")
        result = EvidenceRetrievalChain(library, generator=generator).retrieve("affordable housing")
        assert result.strategy == "hybrid"

    def test_generator_error_falls_back(self, library):
        generator = MagicMock()
        generator.is_available = True
        generator.generate.side_effect = ConnectionError("refused")
        result = EvidenceRetrievalChain(library, generator=generator).retrieve("affordable housing")
        assert result.strategy == "hybrid"
        assert any("refused" in d for d in result.degraded_layers)

    def test_slow_layer_times_out(self, library):
        generator = MagicMock()
        generator.is_available = True
        generator.generate.side_effect = lambda *a, **k: time.sleep(1.0)
        chain = EvidenceRetrievalChain(library, generator=generator, layer_timeout=0.2)
        started = time.time()
        result = chain.retrieve("affordable housing")
        assert result.strategy == "hybrid"
        assert "agentic: timeout" in result.degraded_layers
        assert time.time() - started < 1.0

    def test_vector_scores_in_unit_range(self, library):
        chain = EvidenceRetrievalChain(library)
        items = chain._vector("conservation character", {})
        assert items
        assert all(0.0 <= i.relevance_score <= 1.0 for i in items)


def test_merge_evidence_keeps_best_score():
    items = [
        EvidenceItem("policy", "H1", "text", 0.4),
        EvidenceItem("policy", "H1", "text", 0.8),
        EvidenceItem("dataset", "flood-risk-zone", "Zone 3", 0.9),
    ]
    merged = merge_evidence(items)
    assert len(merged) == 2
    assert merged[0].reference == "flood-risk-zone"
    assert merged[1].relevance_score == 0.8
    assert len(merge_evidence(items, limit=1)) == 1


def test_evidence_item_is_immutable():
    item = EvidenceItem("policy", "H1", "text", 0.5)
    with pytest.raises(Exception):
        item.relevance_score = 1.0
