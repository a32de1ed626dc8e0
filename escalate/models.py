from pydantic import BaseModel, Field, field_validator
from typing import Annotated, Any, Dict, List, Optional, Literal, Union
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Severity = Literal["P1", "P2", "P3", "P4", "Unknown"]
IncidentStatus = Literal["open", "investigating", "resolved", "closed"]
AnalysisStatus = Literal["pending", "processing", "completed", "failed"]
PatternType = Literal["time", "service", "error", "deployment", "dependency"]

SEVERITIES = ("P1", "P2", "P3", "P4", "Unknown")
INCIDENT_STATUSES = ("open", "investigating", "resolved", "closed")


def normalize_severity(value: Optional[str]) -> str:
    """Map tracker priority names ("P1 - Critical", "high", "1") onto P1-P4/Unknown."""
    if not value:
        return "Unknown"
    text = str(value).strip().lower()
    if text[:2] in {"p1", "p2", "p3", "p4"}:
        return text[:2].upper()
    mapping = {
        "1": "P1", "critical": "P1", "highest": "P1",
        "2": "P2", "high": "P2",
        "3": "P3", "medium": "P3", "moderate": "P3",
        "4": "P4", "low": "P4", "lowest": "P4", "planning": "P4",
    }
    return mapping.get(text.split(" ")[0], "Unknown")


def normalize_status(value: Optional[str]) -> str:
    if not value:
        return "open"
    text = str(value).strip().lower()
    if text in INCIDENT_STATUSES:
        return text
    mapping = {
        "new": "open", "1": "open", "to do": "open",
        "in progress": "investigating", "2": "investigating", "on hold": "investigating", "3": "investigating",
        "done": "resolved", "6": "resolved",
        "7": "closed", "canceled": "closed", "8": "closed",
    }
    return mapping.get(text, "open")


# ---------- Records ----------

class Incident(BaseModel):
    id: str
    title: str = "Unknown Incident"
    description: Optional[str] = None
    severity: Severity = "Unknown"
    status: IncidentStatus = "open"
    source: str = "jira"
    affected_services: List[str] = Field(default_factory=list)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    similar_incidents: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    analysis_count: int = 0
    last_analyzed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("affected_services")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        # first-seen order; the first service names the incident's primary service
        return list(dict.fromkeys(s for s in value if s))


class Analysis(BaseModel):
    id: str
    incident_id: str
    status: AnalysisStatus = "pending"
    summary: Optional[str] = None
    duration_ms: Optional[int] = None
    errors: Optional[Dict[str, Any]] = None
    data_sources: Dict[str, bool] = Field(default_factory=dict)
    model: Optional[str] = None
    triggered_by: str = "webhook"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# Allowed Analysis status moves; anything else is rejected by the repositories.
ANALYSIS_TRANSITIONS = {
    "pending": {"processing"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


class TimeSignature(BaseModel):
    type: Literal["time"] = "time"
    hour: int = Field(ge=0, le=23)


class ServiceSignature(BaseModel):
    type: Literal["service"] = "service"
    service: str


class ErrorSignature(BaseModel):
    type: Literal["error"] = "error"
    code: str


class DeploymentSignature(BaseModel):
    type: Literal["deployment"] = "deployment"
    workflow: str


class DependencySignature(BaseModel):
    type: Literal["dependency"] = "dependency"
    dependency: str


PatternSignature = Annotated[
    Union[TimeSignature, ServiceSignature, ErrorSignature, DeploymentSignature, DependencySignature],
    Field(discriminator="type"),
]


def signature_key(signature: BaseModel) -> Dict[str, Any]:
    """The stored matcher, e.g. {"hour": 14} or {"service": "checkout"}."""
    return signature.model_dump(exclude={"type"})


class PatternCandidate(BaseModel):
    type: PatternType
    signature: PatternSignature
    name: str
    description: str = ""
    incidents: List[str] = Field(default_factory=list)
    occurrences: int = 0
    confidence: float = Field(0.0, ge=0.0, le=1.0)


class Pattern(BaseModel):
    id: str
    type: PatternType
    signature: PatternSignature
    name: str
    description: Optional[str] = None
    incidents: List[str] = Field(default_factory=list)
    occurrences: int = 0
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    last_occurred: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------- Pipeline ----------

class TimeRange(BaseModel):
    start: datetime
    end: datetime


class SimilarIncident(BaseModel):
    id: str
    summary: str = ""
    created: Optional[datetime] = None


class IncidentContext(BaseModel):
    """Everything gathered for one pipeline run; handed to the summarizer."""
    id: str
    source: str
    title: Optional[str] = None
    description: Optional[str] = None
    severity: Severity = "Unknown"
    status: IncidentStatus = "open"
    created: Optional[datetime] = None
    affected_services: List[str] = Field(default_factory=list)
    time_range: Optional[TimeRange] = None
    collaborator_data: Dict[str, Any] = Field(default_factory=dict)
    data_sources: Dict[str, bool] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)
    similar_incidents: List[SimilarIncident] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


class AnalysisResult(BaseModel):
    incident_id: str
    analysis_id: str
    summary: str
    duration_ms: int = 0
    data_sources: Dict[str, bool] = Field(default_factory=dict)
    similar_incidents: List[SimilarIncident] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)
    cached: bool = False


class IncidentEvent(BaseModel):
    incident_id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


# ---------- Job payloads ----------

class AnalysisJobPayload(BaseModel):
    kind: Literal["analysis"] = "analysis"
    incident_id: str = Field(min_length=1)
    source: str = "jira"
    force: bool = False


class NotificationJobPayload(BaseModel):
    kind: Literal["notification"] = "notification"
    channel: str
    target: Optional[str] = None
    content: str
    incident_id: Optional[str] = None


class PatternJobPayload(BaseModel):
    kind: Literal["pattern"] = "pattern"
    incident_id: str = Field(min_length=1)


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False


# ---------- API ----------

class AnalyzeRequest(BaseModel):
    source: str = "jira"
    force: bool = False
    severity: Optional[str] = None
    priority: Optional[int] = None
    delay_ms: int = Field(0, ge=0)


class JobAccepted(BaseModel):
    job_id: str
    queue: str
    incident_id: str
    priority: int
    state: str


class IncidentPage(BaseModel):
    total: int
    incidents: List[Incident]


class IncidentDetail(Incident):
    analyses: List[Analysis] = Field(default_factory=list)


class DailyCount(BaseModel):
    day: datetime
    incidents: int


class ServiceCount(BaseModel):
    service: str
    incidents: int


class IncidentStats(BaseModel):
    total_incidents: int = 0
    open_incidents: int = 0
    today_incidents: int = 0
    weekly_trend: List[DailyCount] = Field(default_factory=list)
    top_services: List[ServiceCount] = Field(default_factory=list)
