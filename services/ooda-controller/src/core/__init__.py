"""
ChronoHeal - OODA Controller Core Package
"""

from src.core.detection_service import DetectionService
from src.core.evidence_buffer import EvidenceBuffer, EvidenceBufferRegistry
from src.core.knowledge_base import KnowledgeBase, match_patterns
from src.core.ooda_controller import OODAController

__all__ = [
    "DetectionService",
    "EvidenceBuffer",
    "EvidenceBufferRegistry",
    "KnowledgeBase",
    "match_patterns",
    "OODAController",
]
