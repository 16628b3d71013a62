"""
Policy Library - Document ingestion, chunking and indexing for local plan policies.

Provides the retrieval substrate for the evidence chain: section-aware
chunking of policy text, a TF-IDF lexical index, and a numpy embedding
index searched by cosine similarity.
"""

import re
import math
import hashlib
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

log = logging.getLogger(__name__)


class DocumentType(Enum):
    """Type of planning document."""
    LOCAL_PLAN_POLICY = "local_plan_policy"
    NATIONAL_POLICY = "national_policy"
    SUPPLEMENTARY_GUIDANCE = "supplementary_guidance"
    PRECEDENT = "precedent"


@dataclass
class DocumentChunk:
    """A chunk of a document for indexing."""
    id: str
    document_id: str
    content: str
    metadata: Dict[str, Any]
    embedding: Optional[List[float]] = None
    section_path: str = ""  # e.g., "Policy H1 Housing Delivery"

    @property
    def source_type(self) -> str:
        return "precedent" if self.metadata.get("doc_type") == DocumentType.PRECEDENT.value else "policy"

    @property
    def reference(self) -> str:
        return self.metadata.get("policy_ref") or self.section_path or self.metadata.get("title") or self.document_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "content": self.content[:200] + "..." if len(self.content) > 200 else self.content,
            "section_path": self.section_path,
            "metadata": self.metadata,
        }


@dataclass
class PolicyDocument:
    """A full policy (or precedent decision) document."""
    id: str
    title: str
    content: str
    doc_type: DocumentType = DocumentType.LOCAL_PLAN_POLICY
    local_plan_id: Optional[str] = None
    policy_ref: Optional[str] = None
    category: Optional[str] = None
    source_url: Optional[str] = None
    chunks: List[DocumentChunk] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.doc_type.value,
            "local_plan_id": self.local_plan_id,
            "policy_ref": self.policy_ref,
            "category": self.category,
            "chunk_count": len(self.chunks),
        }


# ═══════════════════════════════════════════════════════════════════════════
# CHUNKING
# ═══════════════════════════════════════════════════════════════════════════
class TextChunker:
    """Chunks documents with awareness of policy and section headings."""

    SECTION_PATTERNS = [
        r"(Policy\s+[A-Z]{0,4}\s?\d+[A-Za-z]?[:\.\s\-][^\n]*)",
        r"(Chapter\s+\d+[A-Z]?[\.\s\-:]+[^\n]+)",
        r"(Section\s+\d+[\.\d]*[\.\s\-:]+[^\n]+)",
    ]

    def __init__(self, chunk_size: int = 200, chunk_overlap: int = 30, respect_sections: bool = True):
        self.chunk_size = chunk_size
        self.chunk_overlap = min(chunk_overlap, chunk_size - 1)
        self.respect_sections = respect_sections

    def chunk_document(self, doc: PolicyDocument) -> List[DocumentChunk]:
        if not self.respect_sections:
            return self._chunk_text(doc.content, doc.id, doc.title)

        chunks = []
        for section_path, section_content in self._parse_sections(doc.content, doc.title):
            chunks.extend(self._chunk_text(section_content, doc.id, section_path))
        return chunks

    def _parse_sections(self, content: str, default_title: str) -> List[Tuple[str, str]]:
        combined = "|".join(self.SECTION_PATTERNS)
        matches = list(re.finditer(combined, content, re.IGNORECASE))
        if not matches:
            return [(default_title, content)]

        sections = []
        preamble = content[:matches[0].start()].strip()
        if preamble:
            sections.append((default_title, preamble))
        for i, match in enumerate(matches):
            title = match.group(0).strip()
            start = match.end()
            end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
            body = content[start:end].strip()
            if body:
                sections.append((title, body))
        return sections or [(default_title, content)]

    def _chunk_text(self, text: str, doc_id: str, section_path: str) -> List[DocumentChunk]:
        words = text.split()
        if not words:
            return []

        chunks = []
        step = self.chunk_size - self.chunk_overlap
        chunk_num = 0
        for i in range(0, len(words), step):
            chunk_words = words[i:i + self.chunk_size]
            chunk_id = hashlib.md5(f"{doc_id}:{section_path}:{chunk_num}".encode()).hexdigest()[:12]
            chunks.append(DocumentChunk(
                id=chunk_id,
                document_id=doc_id,
                content=" ".join(chunk_words),
                metadata={"word_count": len(chunk_words), "chunk_num": chunk_num},
                section_path=section_path,
            ))
            chunk_num += 1
            if i + self.chunk_size >= len(words):
                break
        return chunks


# ═══════════════════════════════════════════════════════════════════════════
# EMBEDDING
# ═══════════════════════════════════════════════════════════════════════════
def tokenize(text: str) -> List[str]:
    text = text.lower()
    text = re.sub(r"[^\w\s]", " ", text)
    return text.split()


class HashEmbedder:
    """
    Deterministic feature-hashing embedder.

    Each token is hashed to a signed dimension, so texts that share words
    have positive cosine similarity. Stands in for a hosted embedding model;
    anything with `embed(text) -> List[float]` can replace it.
    """

    def __init__(self, dimension: int = 256):
        self.dimension = dimension

    def embed(self, text: str) -> List[float]:
        vector = np.zeros(self.dimension, dtype=float)
        for token in tokenize(text):
            digest = hashlib.sha256(token.encode()).digest()
            index = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[index] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector.tolist()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed(text) for text in texts]

    def classify(self, text: str, labels: List[str]) -> List[Tuple[str, float]]:
        """Zero-shot style label ranking by embedding similarity."""
        text_vec = self.embed(text)
        scored = [(label, cosine_similarity(text_vec, self.embed(label))) for label in labels]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """Cosine similarity in [-1, 1]; 0 for mismatched or zero vectors."""
    va, vb = np.asarray(a, dtype=float), np.asarray(b, dtype=float)
    if va.shape != vb.shape:
        return 0.0
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


# ═══════════════════════════════════════════════════════════════════════════
# INDEXES
# ═══════════════════════════════════════════════════════════════════════════
class EmbeddingIndex:
    """In-memory vector index; rows are unit-normalised so a dot product is the cosine."""

    def __init__(self):
        self.chunks: List[DocumentChunk] = []
        self._matrix: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.chunks)

    def add(self, chunk: DocumentChunk, embedding: List[float]):
        row = np.asarray(embedding, dtype=float)
        norm = np.linalg.norm(row)
        if norm > 0:
            row = row / norm
        if self._matrix is None:
            self._matrix = row.reshape(1, -1)
        else:
            self._matrix = np.vstack([self._matrix, row])
        chunk.embedding = list(embedding)
        self.chunks.append(chunk)

    def search(self, query_embedding: List[float], top_k: int = 5) -> List[Tuple[DocumentChunk, float]]:
        if self._matrix is None or not self.chunks:
            return []
        query = np.asarray(query_embedding, dtype=float)
        if query.shape[0] != self._matrix.shape[1]:
            log.warning(f"Query dimension {query.shape[0]} does not match index {self._matrix.shape[1]}")
            return []
        norm = np.linalg.norm(query)
        if norm == 0:
            return []
        scores = self._matrix @ (query / norm)
        order = np.argsort(-scores)[:top_k]
        return [(self.chunks[i], float(np.clip(scores[i], -1.0, 1.0))) for i in order]


class LexicalIndex:
    """
    TF-IDF index over chunk text.

    Refit lazily on the first search after new chunks are added.
    """

    def __init__(self):
        self.chunks: List[DocumentChunk] = []
        self.idf: Dict[str, float] = {}
        self.tf_idf_vectors: List[Dict[str, float]] = []
        self._dirty = False

    def __len__(self) -> int:
        return len(self.chunks)

    def add(self, chunk: DocumentChunk):
        self.chunks.append(chunk)
        self._dirty = True

    def fit(self):
        doc_term_freqs = []
        doc_frequencies = Counter()
        for chunk in self.chunks:
            tf = Counter(tokenize(chunk.content + " " + chunk.section_path))
            doc_term_freqs.append(tf)
            for token in tf:
                doc_frequencies[token] += 1

        n = len(self.chunks)
        # Smoothed IDF stays positive even for a single-document corpus
        self.idf = {token: math.log((n + 1) / (df + 1)) + 1.0 for token, df in doc_frequencies.items()}
        self.tf_idf_vectors = [self._compute_vector(tf) for tf in doc_term_freqs]
        self._dirty = False

    def _compute_vector(self, tf: Counter) -> Dict[str, float]:
        total_terms = sum(tf.values())
        if total_terms == 0:
            return {}
        vec = {}
        norm = 0.0
        for token, count in tf.items():
            val = (count / total_terms) * self.idf.get(token, 0.0)
            if val:
                vec[token] = val
                norm += val * val
        norm = math.sqrt(norm)
        if norm > 0:
            for token in vec:
                vec[token] /= norm
        return vec

    def search(self, query: str, top_k: int = 5) -> List[Tuple[DocumentChunk, float]]:
        if self._dirty:
            self.fit()
        query_vec = self._compute_vector(Counter(tokenize(query)))
        if not query_vec:
            return []

        scores = []
        for i, doc_vec in enumerate(self.tf_idf_vectors):
            score = sum(val * doc_vec[token] for token, val in query_vec.items() if token in doc_vec)
            if score > 0:
                scores.append((self.chunks[i], score))
        scores.sort(key=lambda x: x[1], reverse=True)
        return scores[:top_k]


# ═══════════════════════════════════════════════════════════════════════════
# LIBRARY
# ═══════════════════════════════════════════════════════════════════════════
class PolicyLibrary:
    """
    Owns the chunker, embedder and both indexes.

    The embedder is injected so a hosted embedding service can replace the
    hashing embedder without touching retrieval code.
    """

    def __init__(self, embedder=None, chunker: Optional[TextChunker] = None):
        self.embedder = embedder or HashEmbedder()
        self.chunker = chunker or TextChunker()
        self.lexical_index = LexicalIndex()
        self.embedding_index = EmbeddingIndex()
        self.documents: Dict[str, PolicyDocument] = {}
        self._lock = threading.RLock()

    def ingest_document(self, doc: PolicyDocument) -> int:
        """Chunk and index a document. Re-ingesting the same id is a no-op."""
        with self._lock:
            if doc.id in self.documents:
                log.debug(f"Document already indexed: {doc.id}")
                return 0

            chunks = self.chunker.chunk_document(doc)
            doc.chunks = chunks
            self.documents[doc.id] = doc

            for chunk in chunks:
                chunk.metadata.update({
                    "doc_type": doc.doc_type.value,
                    "title": doc.title,
                    "local_plan_id": doc.local_plan_id,
                    "policy_ref": doc.policy_ref,
                    "category": doc.category,
                })
                self.lexical_index.add(chunk)
                try:
                    self.embedding_index.add(chunk, self.embedder.embed(chunk.content))
                except Exception as e:
                    log.warning(f"Embedding failed for chunk {chunk.id}, lexical only: {e}")

            log.info(f"Indexed '{doc.title}': {len(chunks)} chunks")
            return len(chunks)

    def documents_for_plan(self, local_plan_id: str) -> List[PolicyDocument]:
        return [d for d in self.documents.values() if d.local_plan_id == local_plan_id]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "documents": len(self.documents),
            "chunks": len(self.lexical_index),
            "embedded_chunks": len(self.embedding_index),
            "local_plans": sorted({d.local_plan_id for d in self.documents.values() if d.local_plan_id}),
        }
