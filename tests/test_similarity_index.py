import datetime
import logging
from unittest.mock import MagicMock

import pytest

from triage.models import Issue
from triage.similarity import (
    BruteForceSimilarityIndex,
    RpcSimilarityIndex,
    SimilarityMatch,
    build_similarity_index,
    rank_matches,
)


def test_results_are_ordered_by_score(store, make_issue):
    far = make_issue("Garbage pile", "Overflowing bin", embedding=[0.8, 0.6, 0.0])
    exact = make_issue("Streetlight out", "Dark road", embedding=[1.0, 0.0, 0.0])
    make_issue("Unrelated", "Orthogonal vector", embedding=[0.0, 1.0, 0.0])

    matches = BruteForceSimilarityIndex(store).search([1.0, 0.0, 0.0], threshold=0.5, top_k=5)

    assert [m.issue.id for m in matches] == [exact.id, far.id]
    assert matches[0].score == pytest.approx(1.0)
    assert matches[1].score == pytest.approx(0.8)


def test_raising_threshold_never_adds_results(store, make_issue):
    make_issue(embedding=[1.0, 0.0, 0.0])
    make_issue(embedding=[0.9, 0.1, 0.0])
    make_issue(embedding=[0.5, 0.5, 0.0])
    make_issue(embedding=[0.0, 0.0, 1.0])
    index = BruteForceSimilarityIndex(store)

    previous = None
    for threshold in (0.0, 0.3, 0.7, 0.95, 1.0):
        ids = {m.issue.id for m in index.search([1.0, 0.0, 0.0], threshold, top_k=10)}
        if previous is not None:
            assert ids <= previous
        previous = ids


def test_top_k_truncates(store, make_issue):
    for _ in range(4):
        make_issue(embedding=[1.0, 0.0, 0.0])
    matches = BruteForceSimilarityIndex(store).search([1.0, 0.0, 0.0], 0.1, top_k=2)
    assert len(matches) == 2


def test_ties_prefer_newer_then_higher_id(store, make_issue):
    same_time = datetime.datetime(2026, 3, 1, 12, 0, 0)
    older = make_issue(embedding=[1.0, 0.0], created_at=datetime.datetime(2026, 2, 1))
    first = make_issue(embedding=[2.0, 0.0], created_at=same_time)
    second = make_issue(embedding=[3.0, 0.0], created_at=same_time)

    matches = BruteForceSimilarityIndex(store).search([1.0, 0.0], 0.9, top_k=3)

    assert [m.issue.id for m in matches] == [second.id, first.id, older.id]


def test_empty_result_is_not_an_error(store, make_issue):
    make_issue(embedding=[0.0, 1.0])
    assert BruteForceSimilarityIndex(store).search([1.0, 0.0], 0.75, 3) == []


def test_issues_without_embedding_are_ignored(store, make_issue):
    make_issue(embedding=None)
    assert BruteForceSimilarityIndex(store).search([1.0, 0.0], 0.0, 3) == []


def test_dimension_mismatch_is_skipped_with_warning(store, make_issue, caplog):
    stale = make_issue(embedding=[1.0, 0.0, 0.0, 0.0])
    ok = make_issue(embedding=[1.0, 0.0, 0.0])

    with caplog.at_level(logging.WARNING, logger="similarity-index"):
        matches = BruteForceSimilarityIndex(store).search([1.0, 0.0, 0.0], 0.5, 5)

    assert [m.issue.id for m in matches] == [ok.id]
    assert f"issue_id={stale.id}" in caplog.text


def test_zero_vector_scores_zero(store, make_issue):
    make_issue(embedding=[0.0, 0.0])
    matches = BruteForceSimilarityIndex(store).search([1.0, 0.0], 0.0, 3)
    assert len(matches) == 1
    assert matches[0].score == 0.0


@pytest.mark.parametrize("threshold,top_k", [(-0.1, 3), (1.5, 3), (0.5, 0), (0.5, -2)])
def test_invalid_arguments_raise(store, threshold, top_k):
    with pytest.raises(ValueError):
        BruteForceSimilarityIndex(store).search([1.0, 0.0], threshold, top_k)


def test_rpc_backend_filters_and_reorders_rows():
    newer = Issue(id=7, title="a", description="b", created_at=datetime.datetime(2026, 5, 2))
    older = Issue(id=9, title="c", description="d", created_at=datetime.datetime(2026, 5, 1))
    store = MagicMock()
    store.match_issues_rpc.return_value = [
        {"id": 9, "similarity": 0.9},
        {"id": 7, "similarity": 0.9},
        {"id": 3, "similarity": 0.95},  # gone from the table
        {"id": 11, "similarity": 0.2},
    ]
    store.get_issues_by_ids.return_value = {7: newer, 9: older}

    matches = RpcSimilarityIndex(store).search([0.1, 0.2], 0.5, 5)

    assert [m.issue.id for m in matches] == [7, 9]
    store.match_issues_rpc.assert_called_once_with([0.1, 0.2], 0.5, 5)


def test_rank_matches_without_created_at():
    a = SimilarityMatch(issue=Issue(id=1, title="x", description="y"), score=0.8)
    b = SimilarityMatch(issue=Issue(id=2, title="x", description="y"), score=0.8)
    assert [m.issue.id for m in rank_matches([a, b], 5)] == [2, 1]


def test_match_to_dict_rounds_similarity():
    issue = Issue(id=4, title="Leak", description="Pipe burst", status="new", severity="High",
                  created_at=datetime.datetime(2026, 1, 2, 3, 4, 5))
    data = SimilarityMatch(issue=issue, score=0.876543).to_dict()
    assert data["id"] == 4
    assert data["similarity"] == 0.8765
    assert data["created_at"] == "2026-01-02T03:04:05"


def test_backend_selection(store):
    assert isinstance(build_similarity_index(store, "rpc"), RpcSimilarityIndex)
    assert isinstance(build_similarity_index(store, "numpy"), BruteForceSimilarityIndex)
    assert isinstance(build_similarity_index(store, "faiss"), BruteForceSimilarityIndex)
