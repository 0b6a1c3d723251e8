"""
Extraction Guard — multi-extractor consensus, OCR verification and
regression-gated prompt evolution for legal document field extraction.

Architecture: N extractors → Consensus → Deterministic verification → Audit
Control loop: Feedback → Evolution → Golden-set gate → Prompt version store
"""

__version__ = "1.0.0"
