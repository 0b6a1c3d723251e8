"""
Extraction pipeline — orchestrates one extraction request.

Flow:
  ┌──────────────┐
  │ content_ref  │
  └──────┬───────┘
         │
  ┌──────▼───────┐ ┌─────────────┐
  │ Extractor A  │ │ Extractor B │ ...   ← concurrent, active prompts per model
  └──────┬───────┘ └──────┬──────┘
         └───────┬────────┘
          ┌──────▼──────┐
          │  Consensus  │   ← pure reconciliation + tier
          └──────┬──────┘
          ┌──────▼──────┐
          │  Verifier   │   ← OCR text layer, best-effort, veto on critical numerics
          └──────┬──────┘
          ┌──────▼──────┐
          │   Audit     │   ← raw outputs + consensus + verification persisted
          └─────────────┘

Design principles:
  - All extractors must succeed; one failure fails the request and nothing
    is persisted (no degraded quorum).
  - Verification never blocks a result; without it the veto is forfeited.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Mapping, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from .collaborators import FieldExtractor, TextLayoutProvider
from .config import Settings
from .consensus import reconcile
from .database import session_scope
from .exceptions import ExtractorFailureError
from .models import ExtractionReport, PromptPair, VerificationResult, Zone
from .prompt_store import PromptVersionStore
from .prompts import default_prompt_pair
from .records import ExtractionAuditRecord
from .schemas import schema_for
from .verifier import TextLayerVerifier, apply_verification, build_checks

logger = logging.getLogger(__name__)

# Numeric fields checked against the text layer on every extraction.
VERIFIED_NUMERIC_FIELDS: tuple[str, ...] = ("numero_patente", "numero_registro")


class ExtractionPipeline:
    """Runs extractors, reconciles, verifies and records one document.

    Usage:
        pipeline = ExtractionPipeline([gpt, claude], store, session_factory, layout=ocr)
        report = await pipeline.run("doc-42", "patente_empresa", "s3://bucket/doc-42.pdf")
        if report.consensus.tier != ConfidenceTier.FULL:
            ...  # route to human review
    """

    def __init__(
        self,
        extractors: Sequence[FieldExtractor],
        store: PromptVersionStore,
        session_factory: sessionmaker,
        layout: Optional[TextLayoutProvider] = None,
        settings: Optional[Settings] = None,
    ):
        if len(extractors) < 2:
            raise ValueError("ExtractionPipeline needs at least two extractors")
        self.extractors = list(extractors)
        self.store = store
        self.session_factory = session_factory
        self.layout = layout
        self.settings = settings or Settings()

    async def run(
        self,
        document_id: str,
        document_type: str,
        content_ref: str,
        expected_zones: Optional[Mapping[str, Zone]] = None,
    ) -> ExtractionReport:
        """Execute the full pipeline for one document.

        Raises:
            ExtractorFailureError: any extractor failed; names every failure.
        """
        # ── Step 1: Prompts per extractor ───────────────────────────
        prompts = {e.name: self._prompts_for(document_type, e.name) for e in self.extractors}

        # ── Step 2: Concurrent extraction ───────────────────────────
        logger.info("Extracting %s (%s) with %s", document_id, document_type, list(prompts))
        results = await asyncio.gather(
            *(e.extract(content_ref, prompts[e.name]) for e in self.extractors),
            return_exceptions=True,
        )
        outputs: dict[str, dict] = {}
        failed: dict[str, str] = {}
        for extractor, result in zip(self.extractors, results):
            if isinstance(result, BaseException):
                failed[extractor.name] = f"{type(result).__name__}: {result}"
            else:
                outputs[extractor.name] = dict(result)
        if failed:
            logger.error("Extraction of %s failed: %s", document_id, failed)
            raise ExtractorFailureError(failed)

        # ── Step 3: Consensus ───────────────────────────────────────
        consensus = reconcile(outputs, schema_for(document_type))

        # ── Step 4: Verification (best-effort) ──────────────────────
        verification: list[VerificationResult] = []
        available = False
        if self.layout is None:
            logger.warning("No text layout provider; %s not verified", document_id)
        else:
            try:
                lines = await self.layout.detect(content_ref)
            except Exception as e:
                logger.warning("Text layer unavailable for %s, skipping verification: %s", document_id, e)
            else:
                available = True
                numeric = set(VERIFIED_NUMERIC_FIELDS) | set(self.settings.critical_numeric_fields)
                checks = build_checks(consensus, numeric, dict(expected_zones or {}), fields=numeric)
                verification = TextLayerVerifier(lines).verify_fields(checks)
                consensus = apply_verification(
                    consensus, verification, self.settings.critical_numeric_fields
                )

        # ── Step 5: Audit ───────────────────────────────────────────
        audit_id = self._record_audit(document_id, document_type, outputs, consensus, verification, available, prompts)

        logger.info(
            "Extraction of %s complete: tier=%s discrepancies=%s",
            document_id, consensus.tier.value, consensus.discrepancies,
        )
        return ExtractionReport(
            document_id=document_id,
            consensus=consensus,
            verification=verification,
            verification_available=available,
            prompt_versions=prompts,
            audit_id=audit_id,
        )

    def _prompts_for(self, document_type: str, model: str) -> PromptPair:
        active = self.store.get_active(document_type, model)
        if active is not None:
            return active
        return default_prompt_pair(document_type)

    def _record_audit(
        self,
        document_id: str,
        document_type: str,
        outputs: dict[str, dict],
        consensus,
        verification: list[VerificationResult],
        available: bool,
        prompts: dict[str, PromptPair],
    ) -> str:
        with session_scope(self.session_factory) as db:
            record = ExtractionAuditRecord(
                document_id=document_id,
                document_type=document_type,
                tier=consensus.tier.value,
                raw_outputs=outputs,
                consensus=consensus.model_dump(mode="json"),
                verification=[v.model_dump(mode="json") for v in verification] if available else None,
                prompt_versions={
                    name: {"system": p.system_version_id, "user": p.user_version_id}
                    for name, p in prompts.items()
                },
            )
            db.add(record)
            db.flush()
            return record.id
