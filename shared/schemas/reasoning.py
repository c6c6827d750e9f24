"""
ChronoHeal - Reasoning Backend Schemas
======================================

Response shapes returned by the reasoning backend. Anything that fails
validation against these models is a malformed response.
"""

from typing import Optional
from pydantic import BaseModel, Field

from shared.constants import Severity
from shared.schemas.incidents import Hypothesis


class Anomaly(BaseModel):
    """An anomaly reported by the backend's analysis."""
    type: str = Field(..., description="Anomaly type, e.g. 'error_spike'")
    severity: Severity = Field(default=Severity.MEDIUM)
    description: str = Field(..., description="What was seen")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    metric: Optional[str] = None


class MetricReading(BaseModel):
    """A metric value read off the evidence."""
    name: str
    value: float
    unit: Optional[str] = None
    baseline: Optional[float] = None


class AnalysisResult(BaseModel):
    """Result of ``analyze``. ``healthy`` must be stated explicitly."""
    anomalies: list[Anomaly] = Field(default_factory=list)
    metrics: list[MetricReading] = Field(default_factory=list)
    healthy: bool
    summary: str = ""


class HypothesisBatch(BaseModel):
    """Result of ``generate_hypotheses``."""
    hypotheses: list[Hypothesis] = Field(default_factory=list)
    reasoning: str = ""
