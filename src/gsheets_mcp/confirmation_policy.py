"""Decides when a spreadsheet operation needs explicit user confirmation.

Every decision is a pure function of the operation descriptor and the
session's confirmation level. Operations are keyed as ``"tool:action"``.

Cell-count risk bands:

    < 50         low
    50 .. 500    medium
    501 .. 1000  high
    > 1000       critical

Deleting more than 10 rows or more than 3 columns always needs confirmation,
as does deleting a sheet. Clearing needs confirmation above 100 cells and
other modifications above 500 cells. Plans of 3 or more steps need
confirmation.
"""

from gsheets_mcp.models import (
    ConfirmationDecision,
    OperationAnalysis,
    OperationRiskDescriptor,
    PlanAnalysis,
    RiskAssessment,
)

CELL_THRESHOLDS = {"low": 50, "medium": 100, "high": 500, "critical": 1000}
DELETE_THRESHOLDS = {"rows": 10, "columns": 3, "sheets": 1}
OPERATION_THRESHOLDS = {"steps": 3, "api_calls": 5}

RISK_ORDER = ["low", "medium", "high", "critical"]

DESTRUCTIVE_OPERATIONS = frozenset(
    {
        "sheets_data:clear",
        "sheets_data:batch_clear",
        "sheets_data:cut_paste",
        "sheets_core:delete_sheet",
        "sheets_dimensions:delete_rows",
        "sheets_dimensions:delete_columns",
        "sheets_format:rule_delete_conditional_format",
        "sheets_visualize:chart_delete",
        "sheets_visualize:pivot_delete",
        "sheets_advanced:delete_protected_range",
        "sheets_collaborate:share_remove",
        "sheets_collaborate:comment_delete",
    }
)

MODIFYING_OPERATIONS = frozenset(
    {
        "sheets_core:create",
        "sheets_core:add_sheet",
        "sheets_data:write",
        "sheets_data:append",
        "sheets_data:batch_write",
        "sheets_data:find_replace",
        "sheets_data:merge_cells",
        "sheets_data:unmerge_cells",
        "sheets_data:set_validation",
        "sheets_format:set_background",
        "sheets_format:set_text_format",
        "sheets_format:set_borders",
        "sheets_format:set_number_format",
        "sheets_format:rule_add_conditional_format",
        "sheets_dimensions:insert_rows",
        "sheets_dimensions:insert_columns",
        "sheets_dimensions:resize_rows",
        "sheets_dimensions:resize_columns",
        "sheets_dimensions:auto_resize",
        "sheets_dimensions:freeze_rows",
        "sheets_dimensions:freeze_columns",
        "sheets_dimensions:set_basic_filter",
        "sheets_dimensions:sort_range",
        "sheets_history:snapshot",
    }
)

READONLY_OPERATIONS = frozenset(
    {
        "sheets_auth:status",
        "sheets_core:get",
        "sheets_core:get_url",
        "sheets_core:batch_get",
        "sheets_core:list",
        "sheets_core:list_sheets",
        "sheets_data:read",
        "sheets_data:batch_read",
        "sheets_analyze:analyze_quality",
        "sheets_analyze:analyze_formulas",
        "sheets_analyze:analyze_data",
        "sheets_history:list",
        "sheets_history:get",
        "sheets_confirm:check",
        "sheets_session:get_context",
        "sheets_session:get_active",
    }
)

_DELETE_ROWS_KEY = "sheets_dimensions:delete_rows"
_DELETE_COLUMNS_KEY = "sheets_dimensions:delete_columns"
_DELETE_SHEET_KEY = "sheets_core:delete_sheet"
_CLEAR_ACTIONS = {"clear", "batch_clear"}


def is_read_only(tool: str, action: str) -> bool:
    return f"{tool}:{action}" in READONLY_OPERATIONS


def estimate_cells(descriptor: OperationRiskDescriptor) -> int:
    if descriptor.affected_cell_count:
        return descriptor.affected_cell_count
    if descriptor.values:
        return len(descriptor.values) * len(descriptor.values[0])
    if descriptor.affected_row_count and descriptor.affected_column_count:
        return descriptor.affected_row_count * descriptor.affected_column_count
    return 0


def risk_level_for_cells(cells: int) -> str:
    if cells > CELL_THRESHOLDS["critical"]:
        return "critical"
    if cells > CELL_THRESHOLDS["high"]:
        return "high"
    if cells >= CELL_THRESHOLDS["low"]:
        return "medium"
    return "low"


def _max_level(*levels: str) -> str:
    return max(levels, key=RISK_ORDER.index)


def _assess_destructive(descriptor: OperationRiskDescriptor, cells: int) -> RiskAssessment:
    key = descriptor.operation_key
    rows = descriptor.affected_row_count or 0
    columns = descriptor.affected_column_count or 0
    cell_level = risk_level_for_cells(cells)

    if key == _DELETE_SHEET_KEY:
        return RiskAssessment(
            level="critical",
            reason="Deleting entire sheet - all data will be lost",
            requires_confirmation=True,
            warning="This will permanently delete the entire sheet and all its data.",
        )
    if rows > DELETE_THRESHOLDS["rows"]:
        return RiskAssessment(
            level=_max_level("high", cell_level),
            reason=f"Deleting {rows} rows",
            requires_confirmation=True,
            warning=f"This will delete {rows} rows of data.",
        )
    if columns > DELETE_THRESHOLDS["columns"]:
        return RiskAssessment(
            level=_max_level("high", cell_level),
            reason=f"Deleting {columns} columns",
            requires_confirmation=True,
            warning=f"This will delete {columns} columns of data.",
        )
    if key == _DELETE_ROWS_KEY:
        return RiskAssessment(
            level=cell_level,
            reason=f"Deleting {rows} rows (at or below {DELETE_THRESHOLDS['rows']})",
            requires_confirmation=False,
        )
    if key == _DELETE_COLUMNS_KEY:
        return RiskAssessment(
            level=cell_level,
            reason=f"Deleting {columns} columns (at or below {DELETE_THRESHOLDS['columns']})",
            requires_confirmation=False,
        )
    if descriptor.action in _CLEAR_ACTIONS:
        requires = cells > CELL_THRESHOLDS["medium"]
        return RiskAssessment(
            level=_max_level("medium", cell_level),
            reason=f"Clearing {cells} cells",
            requires_confirmation=requires,
            warning=f"This will clear {cells} cells." if requires else None,
        )
    return RiskAssessment(
        level=_max_level("medium", cell_level),
        reason="Destructive operation",
        requires_confirmation=True,
    )


def _assess_modifying(cells: int) -> RiskAssessment:
    level = risk_level_for_cells(cells)
    if cells > CELL_THRESHOLDS["critical"]:
        return RiskAssessment(
            level=level,
            reason=f"Modifying {cells} cells (large operation)",
            requires_confirmation=True,
            warning=f"This will modify {cells} cells. Consider a dry run first.",
        )
    if cells > CELL_THRESHOLDS["high"]:
        return RiskAssessment(level=level, reason=f"Modifying {cells} cells", requires_confirmation=True)
    if cells >= CELL_THRESHOLDS["low"]:
        return RiskAssessment(level=level, reason=f"Modifying {cells} cells", requires_confirmation=False)
    return RiskAssessment(
        level=level,
        reason=f"Small modification ({cells} cells)",
        requires_confirmation=False,
    )


def analyze_operation(descriptor: OperationRiskDescriptor) -> OperationAnalysis:
    key = descriptor.operation_key
    if key in READONLY_OPERATIONS and not descriptor.is_destructive:
        return OperationAnalysis(
            tool=descriptor.tool,
            action=descriptor.action,
            cells_affected=0,
            is_destructive=False,
            can_undo=True,
            risk=RiskAssessment(level="low", reason="Read-only operation", requires_confirmation=False),
        )

    cells = estimate_cells(descriptor)
    if descriptor.is_destructive is not None:
        is_destructive = descriptor.is_destructive
    else:
        is_destructive = key in DESTRUCTIVE_OPERATIONS

    if is_destructive:
        risk = _assess_destructive(descriptor, cells)
    elif key in MODIFYING_OPERATIONS:
        risk = _assess_modifying(cells)
    else:
        risk = RiskAssessment(
            level=_max_level("medium", risk_level_for_cells(cells)),
            reason="Unknown operation type",
            requires_confirmation=cells > CELL_THRESHOLDS["medium"],
        )

    high_or_worse = risk.level in ("high", "critical")
    return OperationAnalysis(
        tool=descriptor.tool,
        action=descriptor.action,
        cells_affected=cells,
        is_destructive=is_destructive,
        can_undo=not is_destructive,
        risk=risk,
        suggest_dry_run=high_or_worse,
        suggest_snapshot=is_destructive or high_or_worse,
    )


def analyze_operation_plan(steps: list[OperationRiskDescriptor]) -> PlanAnalysis:
    highest_risk = "low"
    highest_risk_step = 0
    total_cells = 0
    has_destructive = False

    for index, step in enumerate(steps):
        analysis = analyze_operation(step)
        total_cells += analysis.cells_affected
        has_destructive = has_destructive or analysis.is_destructive
        if RISK_ORDER.index(analysis.risk.level) > RISK_ORDER.index(highest_risk):
            highest_risk = analysis.risk.level
            highest_risk_step = index

    step_count = len(steps)
    many_steps = step_count >= OPERATION_THRESHOLDS["steps"]
    total_risk = highest_risk
    if many_steps and total_risk == "low":
        total_risk = "medium"

    destructive_text = "includes destructive operations" if has_destructive else "no destructive operations"
    return PlanAnalysis(
        total_risk=total_risk,
        requires_confirmation=total_risk in ("high", "critical") or has_destructive or many_steps,
        highest_risk_step=highest_risk_step,
        step_count=step_count,
        total_cells=total_cells,
        has_destructive=has_destructive,
        summary=f"{step_count} steps, {total_cells} cells affected, {destructive_text}",
    )


def should_confirm(
    descriptor: OperationRiskDescriptor | None,
    preference: str = "destructive",
) -> ConfirmationDecision:
    """Returns whether the caller must get user approval before running the operation."""
    if descriptor is None or not descriptor.tool or not descriptor.action:
        return ConfirmationDecision(confirm=False, reason="No operation details provided")

    if preference == "never":
        return ConfirmationDecision(confirm=False, reason="User preference: never confirm")

    analysis = analyze_operation(descriptor)
    if preference == "always" and not is_read_only(descriptor.tool, descriptor.action):
        return ConfirmationDecision(
            confirm=True,
            reason="User preference: always confirm",
            suggest_snapshot=analysis.suggest_snapshot,
            suggest_dry_run=analysis.suggest_dry_run,
            risk_level=analysis.risk.level,
            warning=analysis.risk.warning,
        )

    return ConfirmationDecision(
        confirm=analysis.risk.requires_confirmation,
        reason=analysis.risk.reason,
        suggest_snapshot=analysis.suggest_snapshot,
        suggest_dry_run=analysis.suggest_dry_run,
        risk_level=analysis.risk.level,
        warning=analysis.risk.warning,
    )


def get_confirmation_guidance() -> str:
    rows = DELETE_THRESHOLDS["rows"]
    columns = DELETE_THRESHOLDS["columns"]
    return (
        "When to request user confirmation:\n"
        "\n"
        "ALWAYS confirm:\n"
        f"- Deleting sheets, rows (>{rows}) or columns (>{columns})\n"
        f"- Clearing more than {CELL_THRESHOLDS['medium']} cells\n"
        f"- Modifying more than {CELL_THRESHOLDS['high']} cells\n"
        f"- Plans with {OPERATION_THRESHOLDS['steps']} or more steps\n"
        "- Sharing or permission changes\n"
        "\n"
        "SUGGEST confirmation:\n"
        f"- Operations affecting {CELL_THRESHOLDS['low']}-{CELL_THRESHOLDS['medium']} cells\n"
        "- Formatting large ranges\n"
        "\n"
        "NO confirmation needed:\n"
        "- Read operations (get, read, list)\n"
        f"- Small writes (<{CELL_THRESHOLDS['low']} cells) that the user explicitly requested\n"
        "\n"
        "Respect the session preference: 'never' skips confirmation, 'always' confirms every change.\n"
        "Offer a snapshot before destructive operations."
    )
