"""
FastAPI endpoint tests for the Extraction Guard API.

Uses httpx + FastAPI TestClient with an in-memory database and fake
collaborators — no real server, no LLM calls.
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from api import create_app
from extraction_guard.config import Settings
from extraction_guard.consensus import reconcile
from extraction_guard.schemas import schema_for
from extraction_guard.services import build_services
from fakes import FakeExtractor, FakeLayout, FakeRewriter, evolved_json, patente_fields

DOC = "patente_empresa"
MODEL = "gpt-4o"

OCR_LINES = [
    {"text": "PATENTE DE COMERCIO No. 76869", "page": 1, "bbox": {"left": 0.6, "top": 0.08}},
    {"text": "Registro: 512345  Folio: 345", "page": 1},
]


@pytest.fixture
def services(engine):
    extractors = [FakeExtractor(MODEL, patente_fields()), FakeExtractor("gpt-4o-mini", patente_fields())]
    return build_services(
        Settings(database_url="sqlite:///:memory:"),
        extractors=extractors,
        rewriter=FakeRewriter(evolved_json()),
        layout=FakeLayout([]),
        engine=engine,
    )


@pytest.fixture
def client(services):
    app = create_app(lambda: services)
    with TestClient(app) as client:
        yield client


def _wait_for_gates(services, timeout: float = 5.0) -> None:
    """Block until the background gate runs on the client's event loop finish."""
    deadline = time.monotonic() + timeout
    while services.evolver.pending_gates and time.monotonic() < deadline:
        time.sleep(0.01)
    assert not services.evolver.pending_gates


def _outputs(**overrides):
    return [
        {"name": MODEL, "fields": patente_fields()},
        {"name": "gpt-4o-mini", "fields": patente_fields(**overrides)},
    ]


class TestHealthEndpoint:
    def test_health_returns_200(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200

    def test_health_response_shape(self, client) -> None:
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert data["database"] == "sqlite"


class TestConsensusEndpoint:
    def test_full_agreement(self, client) -> None:
        resp = client.post("/consensus", json={"document_type": DOC, "outputs": _outputs()})
        assert resp.status_code == 200
        data = resp.json()
        assert data["tier"] == "full"
        assert data["discrepancies"] == []
        assert len(data["fields"]) == 19

    def test_partial_on_non_critical_disagreement(self, client) -> None:
        resp = client.post(
            "/consensus",
            json={"document_type": DOC, "outputs": _outputs(objeto="Servicios de transporte")},
        )
        data = resp.json()
        assert data["tier"] == "partial"
        assert data["discrepancies"] == ["objeto"]

    def test_accent_loss_flags_field(self, client) -> None:
        resp = client.post(
            "/consensus",
            json={"document_type": DOC, "outputs": _outputs(titular="Jose Ramirez Munoz")},
        )
        assert "titular" in resp.json()["discrepancies"]

    def test_single_output_rejected(self, client) -> None:
        resp = client.post("/consensus", json={"document_type": DOC, "outputs": _outputs()[:1]})
        assert resp.status_code == 422

    def test_duplicate_names_rejected(self, client) -> None:
        outputs = [{"name": "a", "fields": {}}, {"name": "a", "fields": {}}]
        resp = client.post("/consensus", json={"document_type": "otros", "outputs": outputs})
        assert resp.status_code == 422


class TestVerifyEndpoint:
    def _consensus(self):
        fields = patente_fields()
        return reconcile({"a": fields, "b": fields}, schema_for(DOC)).model_dump(mode="json")

    def test_verified(self, client) -> None:
        resp = client.post("/verify", json={"consensus": self._consensus(), "lines": OCR_LINES})
        assert resp.status_code == 200
        data = resp.json()
        assert {r["status"] for r in data["results"]} == {"VERIFIED"}
        assert data["consensus"]["tier"] == "full"

    def test_near_miss_vetoes(self, client) -> None:
        lines = [{"text": "PATENTE DE COMERCIO No. 76868"}, {"text": "Registro: 512345"}]
        data = client.post("/verify", json={"consensus": self._consensus(), "lines": lines}).json()
        statuses = {r["field"]: r["status"] for r in data["results"]}
        assert statuses["numero_patente"] == "SUSPICIOUS"
        assert data["consensus"]["tier"] == "review_required"

    def test_explicit_checks(self, client) -> None:
        checks = [{"field": "nombre_entidad", "value": "FERRETERÍA EL SOL", "kind": "TEXT"}]
        data = client.post(
            "/verify", json={"consensus": self._consensus(), "lines": OCR_LINES, "checks": checks}
        ).json()
        assert data["results"][0]["status"] == "NOT_FOUND"
        assert data["consensus"]["tier"] == "full"


class TestExtractEndpoint:
    def test_extract(self, client) -> None:
        resp = client.post(
            "/extract",
            json={"document_id": "doc-1", "document_type": DOC, "content_ref": "docs/doc-1.txt"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["consensus"]["tier"] == "review_required"  # empty text layer → veto
        assert data["verification_available"] is True
        assert data["audit_id"]

    def test_extractor_failure_is_502(self, engine) -> None:
        services = build_services(
            Settings(database_url="sqlite:///:memory:"),
            extractors=[FakeExtractor("a", patente_fields()), FakeExtractor("b", error=RuntimeError("boom"))],
            rewriter=FakeRewriter(evolved_json()),
            engine=engine,
        )
        with TestClient(create_app(lambda: services)) as client:
            resp = client.post(
                "/extract",
                json={"document_id": "doc-1", "document_type": DOC, "content_ref": "docs/doc-1.txt"},
            )
        assert resp.status_code == 502
        assert resp.json()["detail"]["code"] == "EXTRACTOR_FAILED"
        assert "b" in resp.json()["detail"]["details"]["failed_extractors"]


class TestFeedbackEndpoint:
    def test_incorrect_with_reason(self, client) -> None:
        resp = client.post("/feedback", json={
            "document_type": DOC,
            "field_name": "numero_patente",
            "model": MODEL,
            "is_correct": False,
            "reason": "Wrong digit",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["error_category"] == "numeric_error"
        assert data["queue"]["should_evolve"] is True

    def test_missing_reason_is_400(self, client) -> None:
        resp = client.post("/feedback", json={
            "document_type": DOC, "field_name": "numero_patente", "model": MODEL, "is_correct": False,
        })
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "FEEDBACK_INVALID"


class TestEvolutionEndpoints:
    def test_trigger_without_active_prompts_is_409(self, client) -> None:
        resp = client.post("/evolution/trigger", json={"document_type": DOC, "model": MODEL})
        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "NO_ACTIVE_PROMPTS"

    def test_trigger_creates_candidates(self, client, services) -> None:
        active = services.store.initialize(DOC, MODEL, "SISTEMA v1", "USUARIO v1")
        resp = client.post("/evolution/trigger", json={"document_type": DOC, "model": MODEL})
        assert resp.status_code == 200
        outcome = resp.json()
        _wait_for_gates(services)

        version = client.get(f"/prompts/versions/{outcome['system_version_id']}").json()
        assert version["content"] == "SISTEMA MEJORADO"
        assert version["parent_version_id"] == active.system_version_id
        assert version["version_number"] == 2

        diff = client.get(f"/prompts/versions/{outcome['system_version_id']}/diff").json()
        assert "+SISTEMA MEJORADO" in diff["diff"]
        assert diff["parent_version_id"] == active.system_version_id

    def test_leaderboard(self, client, services) -> None:
        services.store.initialize(DOC, MODEL, "SISTEMA v1", "USUARIO v1")
        resp = client.get("/prompts/leaderboard", params={"document_type": DOC, "model": MODEL})
        assert resp.status_code == 200
        assert [v["role"] for v in resp.json()] == ["system"]

    def test_unknown_version_is_404(self, client) -> None:
        resp = client.get("/prompts/versions/missing")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "PROMPT_VERSION_NOT_FOUND"


class TestGoldenSetEndpoints:
    def test_promote_and_snapshot(self, client) -> None:
        body = {
            "document_type": DOC,
            "content_ref": "docs/doc-1.txt",
            "verified_result": {"numero_patente": "76869"},
            "verified_by": "ana",
        }
        resp = client.post("/golden-set/doc-1", json=body)
        assert resp.status_code == 201

        snapshot = client.get("/golden-set/doc-1/snapshot").json()
        assert snapshot["verified_result"] == {"numero_patente": "76869"}
        assert snapshot["verified_by"] == "ana"

        again = client.post("/golden-set/doc-1", json=body)
        assert again.status_code == 409

    def test_promote_from_consensus(self, client) -> None:
        fields = patente_fields()
        consensus = reconcile({"a": fields, "b": fields}, schema_for(DOC)).model_dump(mode="json")
        resp = client.post("/golden-set/doc-2", json={
            "document_type": DOC, "content_ref": "docs/doc-2.txt", "consensus": consensus,
        })
        assert resp.status_code == 201
        assert resp.json()["verified_result"]["numero_patente"] == "76869"

    def test_exactly_one_source_required(self, client) -> None:
        fields = patente_fields()
        consensus = reconcile({"a": fields, "b": fields}, schema_for(DOC)).model_dump(mode="json")
        both = client.post("/golden-set/doc-3", json={
            "document_type": DOC, "content_ref": "x", "verified_result": {}, "consensus": consensus,
        })
        neither = client.post("/golden-set/doc-4", json={"document_type": DOC, "content_ref": "x"})
        assert both.status_code == 422
        assert neither.status_code == 422

    def test_missing_snapshot_is_404(self, client) -> None:
        resp = client.get("/golden-set/nope/snapshot")
        assert resp.status_code == 404
        assert resp.json()["detail"]["code"] == "GOLDEN_TRUTH_NOT_FOUND"
