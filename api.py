"""
Extraction Guard — FastAPI Server
=================================

HTTP surface for consensus, verification, feedback and prompt evolution.

Endpoints:
    GET  /health                              Health check / readiness probe
    POST /consensus                           Reconcile extractor outputs
    POST /verify                              Verify a consensus result against OCR lines
    POST /extract                             Run the full extraction pipeline
    POST /feedback                            Record a field-level human judgement
    POST /evolution/trigger                   Evolve prompts (gate runs in background)
    GET  /prompts/versions/{id}               Poll a prompt version
    GET  /prompts/versions/{id}/diff          Diff a version against its parent
    GET  /prompts/leaderboard                 Versions ranked by golden-set accuracy
    POST /golden-set/{document_id}            Freeze a verified result as benchmark truth
    GET  /golden-set/{document_id}/snapshot   Read a frozen truth

Run:
    uvicorn api:app --reload              # Dev (http://localhost:8000)
    uvicorn api:app --host 0.0.0.0        # Production
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from extraction_guard import __version__
from extraction_guard.config import Settings
from extraction_guard.consensus import reconcile
from extraction_guard.exceptions import ExtractionGuardError
from extraction_guard.models import (
    ConsensusResult,
    EvolutionOutcome,
    ExtractionReport,
    FeedbackReceipt,
    FeedbackSubmission,
    FieldCheck,
    GoldenSetTruthView,
    PromptRole,
    PromptVersionView,
    TextLine,
    VerificationResult,
    Zone,
)
from extraction_guard.pipeline import VERIFIED_NUMERIC_FIELDS
from extraction_guard.schemas import schema_for
from extraction_guard.services import Services, build_services
from extraction_guard.verifier import TextLayerVerifier, apply_verification, build_checks

load_dotenv()
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

logger = logging.getLogger(__name__)

# Error code → HTTP status
STATUS_BY_CODE: dict[str, int] = {
    "FEEDBACK_INVALID": 400,
    "UNKNOWN_EXTRACTOR": 400,
    "PROMPT_VERSION_NOT_FOUND": 404,
    "GOLDEN_TRUTH_NOT_FOUND": 404,
    "NO_ACTIVE_PROMPTS": 409,
    "ACTIVATION_INVALID": 409,
    "GOLDEN_TRUTH_EXISTS": 409,
    "EXTRACTOR_FAILED": 502,
    "EVOLUTION_PARSE_FAILED": 502,
    "LLM_UNAVAILABLE": 502,
}


# ─── Request / Response Schemas ─────────────────────────────────────


class ExtractorOutput(BaseModel):
    name: str = Field(..., min_length=1, description="Extractor / model name")
    fields: dict[str, Any] = Field(default_factory=dict)


class ConsensusRequest(BaseModel):
    """Extractor outputs in priority order (the first is the primary)."""

    document_type: str = Field(..., min_length=1)
    outputs: list[ExtractorOutput] = Field(..., min_length=2)

    model_config = {"json_schema_extra": {"example": {
        "document_type": "patente_empresa",
        "outputs": [
            {"name": "gpt-4o", "fields": {"numero_patente": "76869", "nombre_entidad": "FERRETERÍA EL SOL"}},
            {"name": "gpt-4o-mini", "fields": {"numero_patente": "76869", "nombre_entidad": "Ferretería El Sol"}},
        ],
    }}}


class VerifyRequest(BaseModel):
    consensus: ConsensusResult
    lines: list[TextLine]
    checks: Optional[list[FieldCheck]] = None  # Default: critical numeric fields


class VerifyResponse(BaseModel):
    results: list[VerificationResult]
    consensus: ConsensusResult


class ExtractRequest(BaseModel):
    document_id: str = Field(..., min_length=1)
    document_type: str = Field(..., min_length=1)
    content_ref: str = Field(..., min_length=1)
    expected_zones: dict[str, Zone] = Field(default_factory=dict)


class EvolutionTriggerRequest(BaseModel):
    document_type: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    created_by: Optional[str] = None


class DiffResponse(BaseModel):
    version_id: str
    parent_version_id: Optional[str] = None
    diff: str


class GoldenSetPromotionRequest(BaseModel):
    """A human-verified result: either explicit values or a consensus result."""

    document_type: str = Field(..., min_length=1)
    content_ref: str = Field(..., min_length=1)
    verified_result: Optional[dict[str, Optional[str]]] = None
    consensus: Optional[ConsensusResult] = None
    verified_by: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _one_source(self) -> "GoldenSetPromotionRequest":
        if (self.verified_result is None) == (self.consensus is None):
            raise ValueError("Provide exactly one of verified_result or consensus")
        return self


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str


# ─── Application ────────────────────────────────────────────────────


def create_app(services_factory: Optional[Callable[[], Services]] = None) -> FastAPI:
    """Build the app; services are created on startup (from env by default)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        factory = services_factory or (lambda: build_services(Settings.from_env()))
        app.state.services = factory()
        logger.info("Extraction guard API ready (%s)", app.state.services.engine.dialect.name)
        yield
        app.state.services = None

    app = FastAPI(
        title="Extraction Guard API",
        description=(
            "Multi-extractor consensus, OCR text-layer verification, and "
            "feedback-driven prompt evolution behind a golden-set regression gate."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(ExtractionGuardError)
    async def _guard_error(request: Request, exc: ExtractionGuardError) -> JSONResponse:
        status = STATUS_BY_CODE.get(exc.code, 500)
        return JSONResponse(
            status_code=status,
            content={"detail": {"code": exc.code, "message": str(exc), "details": exc.details}},
        )

    def services(request: Request) -> Services:
        svc = getattr(request.app.state, "services", None)
        if svc is None:
            raise HTTPException(status_code=503, detail="Services not initialised")
        return svc

    # ─── Endpoints ───────────────────────────────────────────────────

    @app.get("/health", summary="Health check", tags=["System"])
    def health_check(request: Request) -> HealthResponse:
        svc = services(request)
        return HealthResponse(status="healthy", version=__version__, database=svc.engine.dialect.name)

    @app.post("/consensus", summary="Reconcile extractor outputs", tags=["Extraction"])
    def run_consensus(body: ConsensusRequest) -> ConsensusResult:
        """Reconcile ≥2 extractor outputs into one result with a confidence tier."""
        names = [o.name for o in body.outputs]
        if len(set(names)) != len(names):
            raise HTTPException(status_code=422, detail="Extractor names must be unique")
        outputs = {o.name: o.fields for o in body.outputs}
        return reconcile(outputs, schema_for(body.document_type))

    @app.post("/verify", summary="Verify a consensus result against OCR lines", tags=["Extraction"])
    def run_verification(body: VerifyRequest, request: Request) -> VerifyResponse:
        """Classify trust per field; SUSPICIOUS/NOT_FOUND on a critical numeric
        field forces review_required."""
        settings = services(request).settings
        checks = body.checks
        if checks is None:
            numeric = set(VERIFIED_NUMERIC_FIELDS) | set(settings.critical_numeric_fields)
            checks = build_checks(body.consensus, numeric, fields=numeric)
        results = TextLayerVerifier(body.lines).verify_fields(checks)
        consensus = apply_verification(body.consensus, results, settings.critical_numeric_fields)
        return VerifyResponse(results=results, consensus=consensus)

    @app.post(
        "/extract",
        summary="Run the full extraction pipeline",
        tags=["Extraction"],
        responses={502: {"description": "An extractor failed"}},
    )
    async def run_extraction(body: ExtractRequest, request: Request) -> ExtractionReport:
        pipeline = services(request).pipeline
        if pipeline is None:
            raise HTTPException(status_code=503, detail="At least two extractors are required")
        return await pipeline.run(body.document_id, body.document_type, body.content_ref, body.expected_zones)

    @app.post(
        "/feedback",
        summary="Record a field-level human judgement",
        tags=["Feedback"],
        responses={400: {"description": "Missing or overlong reason"}},
    )
    def record_feedback(body: FeedbackSubmission, request: Request) -> FeedbackReceipt:
        return services(request).feedback.record_feedback(body)

    @app.post(
        "/evolution/trigger",
        summary="Evolve the active prompts of a document type and model",
        tags=["Evolution"],
        responses={
            409: {"description": "No active prompts to evolve"},
            502: {"description": "Rewrite response could not be parsed"},
        },
    )
    async def trigger_evolution(body: EvolutionTriggerRequest, request: Request) -> EvolutionOutcome:
        """Creates two candidate versions; the promotion gate runs detached.
        Poll /prompts/versions/{id} for the outcome."""
        return await services(request).evolver.evolve(body.document_type, body.model, body.created_by)

    @app.get("/prompts/versions/{version_id}", tags=["Prompts"])
    def get_prompt_version(version_id: str, request: Request) -> PromptVersionView:
        return services(request).store.get(version_id)

    @app.get("/prompts/versions/{version_id}/diff", tags=["Prompts"])
    def diff_prompt_version(version_id: str, request: Request) -> DiffResponse:
        store = services(request).store
        version = store.get(version_id)
        return DiffResponse(
            version_id=version.id,
            parent_version_id=version.parent_version_id,
            diff=store.diff(version_id),
        )

    @app.get("/prompts/leaderboard", tags=["Prompts"])
    def prompt_leaderboard(
        request: Request,
        document_type: str = Query(..., min_length=1),
        model: str = Query(..., min_length=1),
        role: PromptRole = PromptRole.SYSTEM,
        limit: int = Query(20, ge=1, le=100),
    ) -> list[PromptVersionView]:
        return services(request).store.leaderboard(document_type, model, role, limit)

    @app.post(
        "/golden-set/{document_id}",
        status_code=201,
        tags=["Golden Set"],
        responses={409: {"description": "Document already in the golden set"}},
    )
    def promote_to_golden_set(
        document_id: str, body: GoldenSetPromotionRequest, request: Request
    ) -> GoldenSetTruthView:
        verified = body.verified_result if body.verified_result is not None else body.consensus.values
        return services(request).gate.promote_to_golden_set(
            document_id,
            body.document_type,
            body.content_ref,
            verified,
            verified_by=body.verified_by,
            notes=body.notes,
        )

    @app.get("/golden-set/{document_id}/snapshot", tags=["Golden Set"])
    def golden_set_snapshot(document_id: str, request: Request) -> GoldenSetTruthView:
        return services(request).gate.get_truth(document_id)

    return app


app = create_app()
