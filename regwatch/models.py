"""
Core data models for the regwatch platform.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


DEFAULT_MODULE_TYPE = "DEVICE_DATA"
DEFAULT_PREVIEW_LIMIT = 50
PENDING_TTL_DAYS = 30


# ---------------------------------------------- #
# Enums

class FieldType(str, Enum):
    STRING = "string"
    INT = "int"
    BOOL = "bool"
    DATE = "date"
    STRING_LIST = "stringList"


class TaskState(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    NO_NEW_DATA = "NO_NEW_DATA"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JudgeTaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def finished(self) -> bool:
        return self in (JudgeTaskStatus.COMPLETED, JudgeTaskStatus.FAILED)


class RiskLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# ---------------------------------------------- #
# Crawler catalogue

class ParamField(BaseModel):
    """One typed parameter accepted by a crawler."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: FieldType = FieldType.STRING
    required: bool = False
    min_value: Optional[int] = None  # int: value bound; string/stringList: length bound
    max_value: Optional[int] = None
    choices: Optional[List[Any]] = None
    default: Any = None
    description: str = ""


def common_fields() -> List[ParamField]:
    """Crawl parameters shared by every crawler."""
    return [
        ParamField(name="maxRecords", type=FieldType.INT, min_value=-1, default=-1,
                   description="Maximum records to fetch, -1 for everything"),
        ParamField(name="batchSize", type=FieldType.INT, min_value=1, default=100,
                   description="Records saved per batch"),
        ParamField(name="recentDays", type=FieldType.INT, min_value=1,
                   description="Only fetch records from the last N days"),
        ParamField(name="dateFrom", type=FieldType.DATE, description="Start date"),
        ParamField(name="dateTo", type=FieldType.DATE, description="End date"),
    ]


class ParamSchema(BaseModel):
    """Parameter schema of a crawler. Immutable once registered."""
    model_config = ConfigDict(frozen=True)

    crawler_name: str
    fields: List[ParamField] = Field(default_factory=list)
    country_code: Optional[str] = None
    crawler_type: Optional[str] = None
    description: str = ""

    def field(self, name: str) -> Optional[ParamField]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def with_common_fields(self) -> "ParamSchema":
        """Return a copy extended with the shared crawl parameters."""
        existing = set(self.field_names)
        extra = [f for f in common_fields() if f.name not in existing]
        return self.model_copy(update={"fields": list(self.fields) + extra})


class CrawlerDefinition(BaseModel):
    """A registered crawler. Replaced wholesale on enable/disable."""
    model_config = ConfigDict(frozen=True)

    name: str
    enabled: bool = True
    param_schema: ParamSchema
    country_code: Optional[str] = None
    crawler_type: Optional[str] = None
    description: str = ""


class Preset(BaseModel):
    """Named, reusable parameter set for a crawler."""
    id: int
    crawler_name: str
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PresetRequest(BaseModel):
    crawler_name: str
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    description: str = ""


class PresetUpdate(BaseModel):
    name: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    enabled: Optional[bool] = None
    description: Optional[str] = None


class ScheduledTask(BaseModel):
    """A preset (or inline parameters) bound to a cron expression."""
    id: int
    name: str = ""
    preset_id: Optional[int] = None
    crawler_name: str
    parameters: Optional[Dict[str, Any]] = None
    cron_expression: str
    state: TaskState = TaskState.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------- #
# Execution

class ExecutionRecord(BaseModel):
    """One attempt to run a task. Append-only once finished."""
    id: int
    task_id: int
    crawler_name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING
    saved_count: int = 0
    skipped_count: int = 0
    error_message: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "SCHEDULER"
    manual: bool = False

    @property
    def success(self) -> bool:
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.NO_NEW_DATA)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)


class CrawlSaved(BaseModel):
    kind: Literal["saved"] = "saved"
    saved_count: int = 0
    skipped_count: int = 0


class CrawlNoNewData(BaseModel):
    """Every fetched record was already stored."""
    kind: Literal["no_new_data"] = "no_new_data"
    skipped_count: int = 0
    message: str = ""


class CrawlFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    error: str


CrawlOutcome = Union[CrawlSaved, CrawlNoNewData, CrawlFailed]


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total / self.page_size)


class TaskStatistics(BaseModel):
    task_id: int
    total_runs: int = 0
    success_count: int = 0
    no_new_data_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    avg_duration_ms: Optional[float] = None
    total_saved: int = 0
    total_skipped: int = 0
    last_run: Optional[ExecutionRecord] = None


class CrawlerStatistics(BaseModel):
    crawler_name: str
    total_runs: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    total_saved: int = 0
    last_run_time: Optional[datetime] = None


class SystemOverview(BaseModel):
    total_tasks: int = 0
    active_tasks: int = 0
    paused_tasks: int = 0
    total_runs: int = 0
    running_count: int = 0
    runs_last_24h: int = 0
    failure_rate_last_24h: float = 0.0
    runs_by_status: Dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------- #
# Classification

class CandidateRecord(BaseModel):
    """Regulatory record handed to the classification pipeline."""
    entity_type: str
    entity_id: str
    title: str = ""
    manufacturer: str = ""
    description: str = ""
    country: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    remark: Optional[str] = None

    @property
    def searchable_text(self) -> List[str]:
        return [t for t in (self.title, self.manufacturer, self.description) if t]


class FilterCriteria(BaseModel):
    module_type: str = DEFAULT_MODULE_TYPE
    entity_types: List[str] = Field(default_factory=list)
    country: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    entity_ids: List[str] = Field(default_factory=list)
    limit: Optional[int] = None
    judge_all: bool = False

    @property
    def effective_limit(self) -> Optional[int]:
        if self.judge_all:
            return None
        return self.limit if self.limit and self.limit > 0 else DEFAULT_PREVIEW_LIMIT


class Classification(BaseModel):
    is_related: bool
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    category: str = ""
    reason: str = ""


class AuditItem(BaseModel):
    """Per-record outcome of a preview. Never persisted directly."""
    entity_type: str
    entity_id: str
    title: str = ""
    manufacturer: str = ""
    current_risk_level: Optional[RiskLevel] = None
    blacklist_matched: bool = False
    matched_blacklist_keyword: Optional[str] = None
    ai_label: Optional[bool] = None
    confidence: float = 0.0
    category: str = ""
    reason: str = ""
    suggested_risk_level: RiskLevel = RiskLevel.LOW
    suggested_blacklist: List[str] = Field(default_factory=list)
    remark: str = ""


class PreviewResult(BaseModel):
    total: int = 0
    blacklist_filtered: int = 0
    ai_judged: int = 0
    ai_kept: int = 0
    ai_downgraded: int = 0
    failed_count: int = 0
    audit_items: List[AuditItem] = Field(default_factory=list)
    suggested_blacklist: List[str] = Field(default_factory=list)


class ExecuteResult(BaseModel):
    kept_count: int = 0
    downgraded_count: int = 0
    failed_count: int = 0


class StageResult(BaseModel):
    saved_count: int = 0
    failed_count: int = 0


class ApplyResult(BaseModel):
    total: int = 0
    applied: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


class PendingJudgment(BaseModel):
    """Staged classifier suggestion awaiting operator confirmation."""
    id: Optional[int] = None
    module_type: str = DEFAULT_MODULE_TYPE
    entity_type: str
    entity_id: str
    judge_result: Dict[str, Any] = Field(default_factory=dict)
    suggested_risk_level: RiskLevel = RiskLevel.LOW
    suggested_remark: str = ""
    blacklist_keywords: Optional[List[str]] = None
    filtered_by_blacklist: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    expire_at: datetime = Field(default_factory=lambda: utcnow() + timedelta(days=PENDING_TTL_DAYS))


class AIJudgeTask(BaseModel):
    """Progress record of an asynchronous classification run."""
    task_id: str
    task_type: str = DEFAULT_MODULE_TYPE
    status: JudgeTaskStatus = JudgeTaskStatus.PENDING
    filter_params: Dict[str, Any] = Field(default_factory=dict)
    progress: int = 0
    total_count: int = 0
    related_count: int = 0
    unrelated_count: int = 0
    blacklist_filtered_count: int = 0
    failed_count: int = 0
    staged_count: int = 0
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def progress_percent(self) -> int:
        if self.total_count <= 0:
            return 100 if self.status == JudgeTaskStatus.COMPLETED else 0
        return self.progress * 100 // self.total_count
