"""
Evidence Retrieval Chain - Layered policy and precedent lookup.

Layers are tried in a fixed order, each under its own deadline:

    agentic  - LLM plans follow-up searches around a first local pass
    hybrid   - TF-IDF and embedding rankings fused with reciprocal rank fusion
    vector   - plain cosine similarity over the embedding index

A layer that is unavailable, times out or finds nothing hands over to the
next. Only the vector layer may return an empty result.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.errors import RetrievalLayerUnavailable

log = logging.getLogger(__name__)

RRF_K = 60
MAX_AGENTIC_ITEMS = 25
MAX_ADDITIONAL_QUERIES = 3

AGENTIC_SYSTEM_PROMPT = (
    "You plan evidence searches for UK planning assessments. "
    "Reply with JSON only."
)

AGENTIC_PLAN_PROMPT = """A planning officer asked: "{query}"

Site context: {context}

Evidence already found:
{found}

Decide what further evidence is needed. Reply with JSON:
{{"needs_policy_data": true/false, "needs_constraint_data": true/false,
  "needs_precedent_data": true/false, "additional_queries": ["up to 3 short search queries"]}}"""


@dataclass(frozen=True)
class EvidenceItem:
    """A retrieved piece of evidence. Immutable once created."""
    source_type: str          # policy | dataset | precedent
    reference: str
    text: str
    relevance_score: float    # 0-1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type,
            "reference": self.reference,
            "text": self.text,
            "relevance_score": self.relevance_score,
        }


@dataclass
class RetrievalResult:
    """Items plus the layer that produced them."""
    items: List[EvidenceItem] = field(default_factory=list)
    strategy: str = "vector"
    degraded_layers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [i.to_dict() for i in self.items],
            "strategy": self.strategy,
            "degraded_layers": list(self.degraded_layers),
        }


def merge_evidence(items: List[EvidenceItem], limit: Optional[int] = None) -> List[EvidenceItem]:
    """Deduplicate by (source_type, reference, text) keeping the best score; highest first."""
    best: Dict[Tuple[str, str, str], EvidenceItem] = {}
    for item in items:
        key = (item.source_type, item.reference, item.text)
        if key not in best or item.relevance_score > best[key].relevance_score:
            best[key] = item
    merged = sorted(best.values(), key=lambda i: (-i.relevance_score, i.source_type, i.reference))
    return merged[:limit] if limit else merged


# ═══════════════════════════════════════════════════════════════════════════
# CHAIN
# ═══════════════════════════════════════════════════════════════════════════
class EvidenceRetrievalChain:
    """
    Usage:
        chain = EvidenceRetrievalChain(library, generator=LLMClient(url))
        result = chain.retrieve("affordable housing in conservation areas",
                                {"local_plan_id": "lp-2030"})
    """

    LAYERS = ("agentic", "hybrid", "vector")

    def __init__(self, library, generator=None, layer_timeout: float = 10.0, top_k: int = 10):
        self.library = library
        self.generator = generator
        self.layer_timeout = layer_timeout
        self.top_k = top_k

    def retrieve(self, query: str, context: Optional[Dict[str, Any]] = None) -> RetrievalResult:
        """Run the layers in order; never raises."""
        context = context or {}
        degraded = []
        layers: List[Tuple[str, Callable]] = [
            ("agentic", self._agentic),
            ("hybrid", self._hybrid),
            ("vector", self._vector),
        ]

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="retrieval")
        try:
            for name, layer in layers:
                future = executor.submit(layer, query, context)
                try:
                    items = future.result(timeout=self.layer_timeout)
                except RetrievalLayerUnavailable as e:
                    log.info(f"Retrieval layer {name} unavailable: {e.reason}")
                    degraded.append(f"{name}: {e.reason}")
                    continue
                except FuturesTimeout:
                    future.cancel()
                    log.warning(f"Retrieval layer {name} exceeded {self.layer_timeout}s")
                    degraded.append(f"{name}: timeout")
                    # The timed-out layer still holds the worker thread
                    executor.shutdown(wait=False)
                    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="retrieval")
                    continue
                except Exception as e:
                    log.warning(f"Retrieval layer {name} failed: {e}")
                    degraded.append(f"{name}: {e}")
                    continue

                if items or name == "vector":
                    log.debug(f"Retrieved {len(items)} items via {name}")
                    return RetrievalResult(items=items, strategy=name, degraded_layers=degraded)
                degraded.append(f"{name}: no results")
        finally:
            executor.shutdown(wait=False)

        return RetrievalResult(items=[], strategy="vector", degraded_layers=degraded)

    # ───────────────────────────────────────────────────────────────────────
    # Layers
    # ───────────────────────────────────────────────────────────────────────
    def _agentic(self, query: str, context: Dict[str, Any]) -> List[EvidenceItem]:
        if self.generator is None or not getattr(self.generator, "is_available", True):
            raise RetrievalLayerUnavailable("agentic", "no generation capability configured")
        if len(self.library.lexical_index) == 0:
            raise RetrievalLayerUnavailable("agentic", "policy index is empty")

        local = self._fused_search(query, context, self.top_k)
        found = "\n".join(f"- [{i.source_type}] {i.reference}: {i.text[:120]}" for i in local[:5]) or "- none"
        prompt = AGENTIC_PLAN_PROMPT.format(query=query, context=_describe_context(context), found=found)

        response = self.generator.generate(prompt, system_prompt=AGENTIC_SYSTEM_PROMPT)
        plan = response.parse_json()
        if not isinstance(plan, dict):
            raise RetrievalLayerUnavailable("agentic", "generation returned no usable plan")

        collected = list(local)
        if plan.get("needs_policy_data"):
            collected += _rescale(self._fused_search(query, context, self.top_k, source_type="policy"), 0.9)
        else:
            collected += _rescale(self._fused_search(query, context, 3, source_type="policy"), 0.6)
        if plan.get("needs_constraint_data"):
            collected += _rescale(context.get("constraint_evidence") or [], 0.8)
        if plan.get("needs_precedent_data"):
            collected += self._fused_search(query, context, self.top_k, source_type="precedent")

        additional = [q for q in plan.get("additional_queries") or [] if isinstance(q, str) and q.strip()]
        for follow_up in additional[:MAX_ADDITIONAL_QUERIES]:
            collected += _rescale(self._fused_search(follow_up, context, 5), 0.6)

        return merge_evidence(collected, limit=MAX_AGENTIC_ITEMS)

    def _hybrid(self, query: str, context: Dict[str, Any]) -> List[EvidenceItem]:
        if len(self.library.lexical_index) == 0:
            raise RetrievalLayerUnavailable("hybrid", "lexical index is empty")
        return self._fused_search(query, context, self.top_k)

    def _vector(self, query: str, context: Dict[str, Any]) -> List[EvidenceItem]:
        index = self.library.embedding_index
        if len(index) == 0:
            return []
        try:
            query_vec = self.library.embedder.embed(query)
        except Exception as e:
            log.warning(f"Embedding capability failed: {e}")
            return []
        hits = [(c, s) for c, s in index.search(query_vec, top_k=len(index)) if _matches(c, context)]
        return [_to_item(chunk, (score + 1) / 2) for chunk, score in hits[:self.top_k]]

    # ───────────────────────────────────────────────────────────────────────
    # Search helpers
    # ───────────────────────────────────────────────────────────────────────
    def _fused_search(
        self,
        query: str,
        context: Dict[str, Any],
        top_k: int,
        source_type: Optional[str] = None,
    ) -> List[EvidenceItem]:
        """Reciprocal rank fusion of lexical and vector rankings, scaled to 0-1."""
        pool = len(self.library.lexical_index)
        lexical = self.library.lexical_index.search(query, top_k=pool)

        vector = []
        if len(self.library.embedding_index):
            try:
                query_vec = self.library.embedder.embed(query)
                vector = [(c, s) for c, s in self.library.embedding_index.search(query_vec, top_k=pool) if s > 0]
            except Exception as e:
                log.warning(f"Embedding capability failed, lexical ranking only: {e}")

        def keep(chunk) -> bool:
            return _matches(chunk, context) and (source_type is None or chunk.source_type == source_type)

        fused: Dict[str, float] = {}
        chunks = {}
        for ranking in (lexical, vector):
            kept = [chunk for chunk, _ in ranking if keep(chunk)]
            for rank, chunk in enumerate(kept, 1):
                fused[chunk.id] = fused.get(chunk.id, 0.0) + 1.0 / (RRF_K + rank)
                chunks[chunk.id] = chunk

        best_possible = 2.0 / (RRF_K + 1)
        ranked = sorted(fused.items(), key=lambda kv: kv[1], reverse=True)[:top_k]
        return [_to_item(chunks[cid], min(1.0, score / best_possible)) for cid, score in ranked]


def _matches(chunk, context: Dict[str, Any]) -> bool:
    """Plan-scoped retrieval still admits national policy and precedents."""
    plan_id = context.get("local_plan_id")
    chunk_plan = chunk.metadata.get("local_plan_id")
    return not plan_id or chunk_plan is None or chunk_plan == plan_id


def _to_item(chunk, score: float) -> EvidenceItem:
    return EvidenceItem(
        source_type=chunk.source_type,
        reference=chunk.reference,
        text=chunk.content,
        relevance_score=round(max(0.0, min(1.0, score)), 4),
    )


def _rescale(items: List[EvidenceItem], factor: float) -> List[EvidenceItem]:
    return [
        EvidenceItem(i.source_type, i.reference, i.text, round(i.relevance_score * factor, 4))
        for i in items
    ]


def _describe_context(context: Dict[str, Any]) -> str:
    parts = []
    for key in ("address", "development_type", "local_plan_id"):
        if context.get(key):
            parts.append(f"{key}={context[key]}")
    categories = context.get("constraint_categories")
    if categories:
        parts.append(f"constraints={', '.join(categories)}")
    return "; ".join(parts) or "none"
