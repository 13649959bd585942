from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ConfirmationLevel = Literal["always", "destructive", "never"]
RiskLevel = Literal["low", "medium", "high", "critical"]


class OperationRiskDescriptor(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    tool: str = ""
    action: str = ""
    affected_cell_count: int | None = Field(default=None, ge=0)
    affected_row_count: int | None = Field(default=None, ge=0)
    affected_column_count: int | None = Field(default=None, ge=0)
    values: list[list[Any]] | None = None
    is_destructive: bool | None = None

    @property
    def operation_key(self) -> str:
        return f"{self.tool}:{self.action}"


class PlanStep(OperationRiskDescriptor):
    description: str = ""


class RiskAssessment(BaseModel):
    level: RiskLevel
    reason: str
    requires_confirmation: bool
    warning: str | None = None


class OperationAnalysis(BaseModel):
    tool: str
    action: str
    cells_affected: int
    is_destructive: bool
    can_undo: bool
    risk: RiskAssessment
    suggest_dry_run: bool = False
    suggest_snapshot: bool = False


class ConfirmationDecision(BaseModel):
    confirm: bool
    reason: str
    suggest_snapshot: bool = False
    suggest_dry_run: bool = False
    risk_level: RiskLevel = "low"
    warning: str | None = None


class PlanAnalysis(BaseModel):
    total_risk: RiskLevel
    requires_confirmation: bool
    highest_risk_step: int
    step_count: int
    total_cells: int
    has_destructive: bool
    summary: str


class SessionPreference(BaseModel):
    model_config = ConfigDict(extra="forbid")

    confirmation_level: ConfirmationLevel = "destructive"
    create_snapshot_by_default: bool = True
    date_format: str = "YYYY-MM-DD"
    currency_format: str = "$#,##0.00"


class SpreadsheetContext(BaseModel):
    spreadsheet_id: str = Field(min_length=1)
    title: str = ""
    sheet_names: list[str] = Field(default_factory=list)
    url: str | None = None
    last_range: str | None = None
    activated_at: float | None = None


class OperationRecord(BaseModel):
    id: str
    tool: str
    action: str
    description: str
    spreadsheet_id: str | None = None
    cells_affected: int = 0
    undoable: bool = False
    snapshot_id: str | None = None
    timestamp: float


class PendingPlan(BaseModel):
    plan_id: str
    title: str
    description: str = ""
    steps: list[PlanStep]
    analysis: PlanAnalysis
    created_at: float


class ConfirmationStats(BaseModel):
    total: int = 0
    approved: int = 0
    declined: int = 0
    approval_rate: float = 0.0


class ErrorDetail(BaseModel):
    status: int | None = None
    code: str
    message: str
    reason: str = ""
    retryable: bool = False
    retry_after_seconds: float | None = None
    hint: str = ""


class RuntimeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    log_file: str = Field(default="sheets_mcp.log", min_length=1)
    log_level: str = "DEBUG"
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)
    retry_max_wait_seconds: float = Field(default=10.0, ge=0)
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_reset_seconds: float = Field(default=30.0, ge=0)
    session_idle_seconds: float = Field(default=1800.0, gt=0)
    default_confirmation_level: ConfirmationLevel = "destructive"
