"""
Test suite for the prompt version store (in-memory SQLite).

Run: pytest tests/ -v
"""

from __future__ import annotations

import pytest

from extraction_guard.exceptions import ActivationError, PromptVersionNotFoundError
from extraction_guard.models import PromptRole, PromptStatus
from extraction_guard.prompts import DEFAULT_PROMPTS, default_prompt_pair

DOC = "patente_empresa"
MODEL = "gpt-4o"


@pytest.fixture
def active(store):
    return store.initialize(DOC, MODEL, "SYSTEM v1", "USER v1", created_by="seed")


def _children(store, pair, system="SYSTEM v2", user="USER v2"):
    system_v = store.create(DOC, MODEL, PromptRole.SYSTEM, system, parent_version_id=pair.system_version_id)
    user_v = store.create(DOC, MODEL, PromptRole.USER, user, parent_version_id=pair.user_version_id)
    return system_v, user_v


def _statuses(store) -> dict[str, str]:
    return {v.id: v.status.value for v in store.list_versions(DOC, MODEL)}


# ═══════════════════════════════════════════════════════════════════════
# CREATE / READ
# ═══════════════════════════════════════════════════════════════════════


class TestCreateAndRead:
    def test_root_version_is_candidate_v1(self, store):
        version = store.create(DOC, MODEL, "system", "Eres un experto.")
        assert version.version_number == 1
        assert version.status == PromptStatus.CANDIDATE
        assert version.parent_version_id is None
        assert version.role == PromptRole.SYSTEM

    def test_child_increments_parent_number(self, store, active):
        system_v, _ = _children(store, active)
        assert system_v.version_number == 2
        assert system_v.parent_version_id == active.system_version_id

    def test_get_unknown_raises(self, store):
        with pytest.raises(PromptVersionNotFoundError) as exc_info:
            store.get("missing")
        assert exc_info.value.code == "PROMPT_VERSION_NOT_FOUND"

    def test_create_with_unknown_parent_raises(self, store):
        with pytest.raises(PromptVersionNotFoundError):
            store.create(DOC, MODEL, "user", "x", parent_version_id="missing")

    def test_no_active_pair_initially(self, store):
        assert store.get_active(DOC, MODEL) is None

    def test_list_versions_filters_role(self, store, active):
        _children(store, active)
        systems = store.list_versions(DOC, MODEL, role="system")
        assert [v.version_number for v in systems] == [1, 2]
        assert all(v.role == PromptRole.SYSTEM for v in systems)
        assert len(store.list_versions(DOC, MODEL)) == 4


class TestInitialize:
    def test_seeds_active_pair(self, store, active):
        assert active.system == "SYSTEM v1"
        assert active.user == "USER v1"
        assert store.get_active(DOC, MODEL) == active
        assert store.get(active.system_version_id).created_by == "seed"

    def test_idempotent(self, store, active):
        again = store.initialize(DOC, MODEL, "OTHER", "OTHER")
        assert again == active
        assert len(store.list_versions(DOC, MODEL)) == 2

    def test_pairs_are_scoped_by_model(self, store, active):
        assert store.get_active(DOC, "gpt-4o-mini") is None


# ═══════════════════════════════════════════════════════════════════════
# ACTIVATION
# ═══════════════════════════════════════════════════════════════════════


class TestActivate:
    def test_swap_deprecates_previous_pair(self, store, active):
        system_v, user_v = _children(store, active)
        store.activate(system_v.id, user_v.id)

        pair = store.get_active(DOC, MODEL)
        assert pair.system_version_id == system_v.id
        assert pair.user_version_id == user_v.id
        assert store.get(active.system_version_id).status == PromptStatus.DEPRECATED
        assert store.get(active.user_version_id).status == PromptStatus.DEPRECATED

    def test_exactly_one_active_per_role(self, store, active):
        for i in range(3):
            system_v, user_v = _children(store, active, f"S{i}", f"U{i}")
            store.activate(system_v.id, user_v.id)
        statuses = [v for v in store.list_versions(DOC, MODEL) if v.status == PromptStatus.ACTIVE]
        assert sorted(v.role.value for v in statuses) == ["system", "user"]

    def test_other_candidates_deprecated_rejected_kept(self, store, active):
        winner = _children(store, active, "S-win", "U-win")
        loser = _children(store, active, "S-lose", "U-lose")
        rejected = _children(store, active, "S-bad", "U-bad")
        store.reject([v.id for v in rejected], "Golden set regression")

        store.activate(winner[0].id, winner[1].id)

        statuses = _statuses(store)
        assert statuses[loser[0].id] == "deprecated"
        assert statuses[rejected[0].id] == "rejected"
        assert store.get(rejected[0].id).rejection_reason == "Golden set regression"

    def test_swapped_roles_rejected_without_change(self, store, active):
        system_v, user_v = _children(store, active)
        before = _statuses(store)
        with pytest.raises(ActivationError):
            store.activate(user_v.id, system_v.id)
        assert _statuses(store) == before
        assert store.get_active(DOC, MODEL) == active

    def test_cross_pair_activation_rejected(self, store, active):
        other = store.initialize("patente_sociedad", MODEL, "S", "U")
        with pytest.raises(ActivationError):
            store.activate(active.system_version_id, other.user_version_id)

    def test_rejected_version_cannot_be_activated(self, store, active):
        system_v, user_v = _children(store, active)
        store.reject([system_v.id, user_v.id], "worse")
        with pytest.raises(ActivationError):
            store.activate(system_v.id, user_v.id)
        assert store.get_active(DOC, MODEL) == active

    def test_unknown_id_raises(self, store, active):
        with pytest.raises(PromptVersionNotFoundError):
            store.activate("missing", active.user_version_id)

    def test_versions_are_never_deleted(self, store, active):
        for i in range(2):
            store.activate(*[v.id for v in _children(store, active, f"S{i}", f"U{i}")])
        assert len(store.list_versions(DOC, MODEL)) == 6


# ═══════════════════════════════════════════════════════════════════════
# LINEAGE, DIFF, LEADERBOARD, EVALUATION
# ═══════════════════════════════════════════════════════════════════════


class TestHistory:
    def test_lineage_walks_to_root(self, store, active):
        v2 = store.create(DOC, MODEL, "system", "S2", parent_version_id=active.system_version_id)
        v3 = store.create(DOC, MODEL, "system", "S3", parent_version_id=v2.id)
        chain = store.lineage(v3.id)
        assert [v.version_number for v in chain] == [3, 2, 1]
        assert chain[-1].id == active.system_version_id

    def test_diff_against_parent(self, store):
        root = store.create(DOC, MODEL, "user", "linea uno\nlinea vieja\n")
        child = store.create(DOC, MODEL, "user", "linea uno\nlinea nueva\n", parent_version_id=root.id)
        diff = store.diff(child.id)
        assert "--- v1" in diff
        assert "+++ v2" in diff
        assert "-linea vieja" in diff
        assert "+linea nueva" in diff

    def test_diff_of_root(self, store):
        root = store.create(DOC, MODEL, "user", "hola\n")
        diff = store.diff(root.id)
        assert "--- (none)" in diff
        assert "+hola" in diff

    def test_leaderboard_order(self, store, active):
        a, _ = _children(store, active, "A", "A")
        b, _ = _children(store, active, "B", "B")
        c, _ = _children(store, active, "C", "C")
        store.record_evaluation([a.id], golden_set_accuracy=0.8)
        store.record_evaluation([b.id], golden_set_accuracy=0.9)

        board = store.leaderboard(DOC, MODEL)
        ids = [v.id for v in board]
        assert ids[:2] == [b.id, a.id]
        assert ids[-1] == active.system_version_id
        assert c.id in ids
        assert len(store.leaderboard(DOC, MODEL, limit=2)) == 2

    def test_record_evaluation_only_touches_given_metrics(self, store, active):
        system_v, user_v = _children(store, active)
        store.record_evaluation(
            [system_v.id, user_v.id],
            golden_set_accuracy=0.75,
            regression_count=2,
            evaluation={"outcome": "held"},
        )
        store.record_evaluation([system_v.id], backtest_accuracy=0.6)

        system_view = store.get(system_v.id)
        assert system_view.golden_set_accuracy == 0.75
        assert system_view.backtest_accuracy == 0.6
        assert system_view.regression_count == 2
        assert system_view.evaluation == {"outcome": "held"}
        assert store.get(user_v.id).backtest_accuracy is None

    def test_reject_active_raises(self, store, active):
        with pytest.raises(ActivationError):
            store.reject([active.system_version_id], "nope")
        assert store.get(active.system_version_id).status == PromptStatus.ACTIVE


# ═══════════════════════════════════════════════════════════════════════
# DEFAULT PROMPTS
# ═══════════════════════════════════════════════════════════════════════


class TestDefaultPrompts:
    def test_known_type_uses_its_defaults(self):
        pair = default_prompt_pair("patente_empresa")
        assert pair.system_version_id is None
        assert pair.system == DEFAULT_PROMPTS["patente"].system

    def test_unknown_type_uses_generic(self):
        pair = default_prompt_pair("constancia_rtu")
        assert pair.user == DEFAULT_PROMPTS["generic"].user
