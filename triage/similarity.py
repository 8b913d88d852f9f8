"""
Similarity Index: "which stored issues look like this vector?"

Two backends share one contract:

    search(query_vector, threshold, top_k) -> [SimilarityMatch, ...]  best first

- `BruteForceSimilarityIndex` (default) scans every stored embedding with numpy.
  Fine for a municipal issue table (thousands of rows, not millions).
- `RpcSimilarityIndex` delegates to the `match_issues()` database function on
  pgvector deployments, then re-applies the same ordering rules.

Ordering rules:
1. score descending
2. ties: newer created_at first
3. still tied: higher id first

Only scores >= threshold are returned. An empty result is normal, not an error.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

import numpy as np

from triage.models import Issue
from triage.store import IssueStore

logger = logging.getLogger("similarity-index")


@dataclass(frozen=True)
class SimilarityMatch:
    issue: Issue
    score: float

    def to_dict(self) -> dict:
        created_at = self.issue.created_at
        return {
            "id": self.issue.id,
            "title": self.issue.title,
            "description": self.issue.description,
            "status": self.issue.status,
            "severity": self.issue.severity,
            "category": self.issue.category,
            "created_at": created_at.isoformat() if created_at else None,
            "similarity": round(float(self.score), 4),
        }


@runtime_checkable
class SimilarityIndex(Protocol):
    def search(self, query_vector: list[float], threshold: float, top_k: int) -> list[SimilarityMatch]: ...


def _check_arguments(threshold: float, top_k: int) -> None:
    if not 0.0 <= float(threshold) <= 1.0:
        raise ValueError(f"threshold must be within [0, 1], got {threshold}")
    if int(top_k) < 1:
        raise ValueError(f"top_k must be >= 1, got {top_k}")


def _timestamp(value: Optional[datetime.datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.timestamp()


def rank_matches(matches: list[SimilarityMatch], top_k: int) -> list[SimilarityMatch]:
    """Apply the ordering rules and truncate."""
    ordered = sorted(
        matches,
        key=lambda m: (-m.score, -_timestamp(m.issue.created_at), -(m.issue.id or 0)),
    )
    return ordered[:top_k]


class BruteForceSimilarityIndex:
    def __init__(self, store: IssueStore):
        self.store = store

    def search(self, query_vector: list[float], threshold: float, top_k: int) -> list[SimilarityMatch]:
        _check_arguments(threshold, top_k)
        query = np.asarray(query_vector, dtype=np.float32)
        if query.ndim != 1 or query.size == 0:
            raise ValueError("query_vector must be a non-empty 1-D vector")

        candidates: list[Issue] = []
        rows: list[np.ndarray] = []
        for issue in self.store.issues_with_embeddings():
            vector = np.asarray(issue.embedding, dtype=np.float32)
            if vector.shape != query.shape:
                # Usually an embedding left over from a different model.
                logger.warning(
                    f"similarity_skip issue_id={issue.id} dim={vector.size} expected_dim={query.size}"
                )
                continue
            candidates.append(issue)
            rows.append(vector)

        if not candidates:
            return []

        matrix = np.vstack(rows)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        # Zero vectors have no direction; they score 0 instead of NaN.
        sims = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        keep = np.nonzero(sims >= threshold)[0]
        matches = [SimilarityMatch(issue=candidates[i], score=float(sims[i])) for i in keep]
        return rank_matches(matches, int(top_k))


class RpcSimilarityIndex:
    def __init__(self, store: IssueStore):
        self.store = store

    def search(self, query_vector: list[float], threshold: float, top_k: int) -> list[SimilarityMatch]:
        _check_arguments(threshold, top_k)
        rows = self.store.match_issues_rpc(list(query_vector), float(threshold), int(top_k))
        issues = self.store.get_issues_by_ids(row["id"] for row in rows)
        matches = []
        for row in rows:
            issue = issues.get(row["id"])
            score = float(row.get("similarity") or 0.0)
            if issue is None or score < threshold:
                continue
            matches.append(SimilarityMatch(issue=issue, score=score))
        return rank_matches(matches, int(top_k))


def build_similarity_index(store: IssueStore, backend: str = "numpy") -> SimilarityIndex:
    if backend == "rpc":
        return RpcSimilarityIndex(store)
    if backend not in ("numpy", "bruteforce"):
        logger.warning(f"Unknown SIMILARITY_BACKEND={backend!r}; using numpy brute force.")
    return BruteForceSimilarityIndex(store)
