import uuid
from datetime import datetime, timezone
from typing import Any, Literal
from urllib.parse import quote

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, ConfigDict, Field, model_validator

from gsheets_mcp import confirmation_policy, google_api, session_context
from gsheets_mcp.a1 import count_value_cells, parse_a1_range
from gsheets_mcp.constants import (
    DRIVE_API_BASE,
    DRIVE_API_NAME,
    SERVER_INSTRUCTIONS,
    SHEETS_API_BASE,
    SHEETS_API_NAME,
    SPREADSHEET_MIME,
)
from gsheets_mcp.logging_utils import build_logger
from gsheets_mcp.models import (
    ConfirmationDecision,
    OperationRiskDescriptor,
    PendingPlan,
    PlanStep,
    SpreadsheetContext,
)

load_dotenv()
mcp = FastMCP(
    "GoogleSheets",
    instructions=SERVER_INSTRUCTIONS + "\n\n" + confirmation_policy.get_confirmation_guidance(),
)
logger = build_logger("SheetsMCP.SheetsServer")

CellValue = str | int | float | bool | None


class _ListSpreadsheetsInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    limit: int = Field(default=10, ge=1, le=100, strict=True)
    query: str | None = Field(default=None, min_length=1)


class _SpreadsheetIdInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    spreadsheet_id: str = Field(min_length=1)


class _ReadRangeInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    spreadsheet_id: str = Field(min_length=1)
    range_a1: str = Field(min_length=1)
    max_rows: int = Field(default=200, ge=1, le=5000, strict=True)


class _WriteValuesInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    spreadsheet_id: str = Field(min_length=1)
    range_a1: str = Field(min_length=1)
    values: list[list[CellValue]] = Field(min_length=1)
    value_input_option: Literal["RAW", "USER_ENTERED"] = "USER_ENTERED"


class _ClearRangeInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    spreadsheet_id: str = Field(min_length=1)
    range_a1: str = Field(min_length=1)


class _DeleteDimensionInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    spreadsheet_id: str = Field(min_length=1)
    sheet_id: int = Field(ge=0, strict=True)
    start_index: int = Field(ge=0, strict=True)
    end_index: int = Field(ge=1, strict=True)

    @model_validator(mode="after")
    def validate_index_order(self):
        if self.end_index <= self.start_index:
            raise ValueError("end_index must be greater than start_index (0-based, end exclusive).")
        return self


class _AddSheetInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    spreadsheet_id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=100)


class _DeleteSheetInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    spreadsheet_id: str = Field(min_length=1)
    sheet_id: int = Field(ge=0, strict=True)


class _CreateSpreadsheetInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=255)
    sheet_titles: list[str] = Field(default_factory=list, max_length=50)


class _CreateSnapshotInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    spreadsheet_id: str = Field(min_length=1)
    name: str | None = Field(default=None, min_length=1)


class _PlanConfirmationInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1)
    description: str = Field(default="")
    steps: list[PlanStep] = Field(min_length=1, max_length=50)


class _RespondToPlanInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    plan_id: str = Field(min_length=1)
    approved: bool


class _ConfirmationPreferenceInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    level: Literal["always", "destructive", "never"]
    create_snapshot_by_default: bool | None = None


class _UserSignalInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    message: str = Field(min_length=1)


class _SheetsActionEnvelope(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    tool: str = Field(min_length=1)
    action: str = Field(min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)

    @property
    def operation_key(self) -> str:
        return f"{self.tool}:{self.action}"


async def _sheets_get(path: str, params: dict | None = None) -> tuple[dict | None, str | None]:
    return await google_api.request_json(
        "GET", f"{SHEETS_API_BASE}{path}", api_name=SHEETS_API_NAME, params=params
    )


async def _sheets_post(
    path: str,
    json_body: dict | None = None,
    params: dict | None = None,
) -> tuple[dict | None, str | None]:
    return await google_api.request_json(
        "POST", f"{SHEETS_API_BASE}{path}", api_name=SHEETS_API_NAME, params=params, json_body=json_body
    )


async def _sheets_put(
    path: str,
    json_body: dict | None = None,
    params: dict | None = None,
) -> tuple[dict | None, str | None]:
    return await google_api.request_json(
        "PUT", f"{SHEETS_API_BASE}{path}", api_name=SHEETS_API_NAME, params=params, json_body=json_body
    )


async def _drive_get(path: str, params: dict | None = None) -> tuple[dict | None, str | None]:
    return await google_api.request_json(
        "GET", f"{DRIVE_API_BASE}{path}", api_name=DRIVE_API_NAME, params=params
    )


async def _drive_post_json(
    path: str,
    params: dict | None = None,
    json_body: dict | None = None,
) -> tuple[dict | None, str | None]:
    return await google_api.request_json(
        "POST", f"{DRIVE_API_BASE}{path}", api_name=DRIVE_API_NAME, params=params, json_body=json_body
    )


def _session(session_id: str) -> session_context.SessionContextManager:
    session_context.get_session_store().prune_idle()
    return session_context.get_session_context(session_id)


def _values_path(spreadsheet_id: str, range_a1: str, suffix: str = "") -> str:
    return f"/spreadsheets/{spreadsheet_id}/values/{quote(range_a1, safe='')}{suffix}"


def _escape_drive_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _spreadsheet_link(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


def _format_row(row: list) -> str:
    return " | ".join("" if cell is None else str(cell) for cell in row)


def _evaluate(
    session: session_context.SessionContextManager,
    tool: str,
    action: str,
    **counts,
) -> ConfirmationDecision:
    descriptor = OperationRiskDescriptor(tool=tool, action=action, **counts)
    decision = confirmation_policy.should_confirm(descriptor, session.confirmation_level)
    logger.debug(
        "Policy %s:%s level=%s -> confirm=%s risk=%s (%s)",
        tool,
        action,
        session.confirmation_level,
        decision.confirm,
        decision.risk_level,
        decision.reason,
    )
    return decision


def _confirmation_required_message(tool: str, action: str, decision: ConfirmationDecision) -> str:
    lines = [
        f"Confirmation required for {tool}:{action}. No changes applied.",
        f"Reason: {decision.reason}",
        f"Risk Level: {decision.risk_level}",
    ]
    if decision.warning:
        lines.append(f"Warning: {decision.warning}")
    if decision.suggest_snapshot:
        lines.append("Suggestion: keep create_snapshot enabled so the change can be undone.")
    if decision.suggest_dry_run:
        lines.append("Suggestion: read the range first to preview what will change.")
    lines.append("Ask the user to approve, then call this tool again with confirmed=true.")
    return "\n".join(lines)


def _snapshot_name(session: session_context.SessionContextManager, spreadsheet_id: str) -> str:
    active = session.get_active_spreadsheet()
    title = active.title if active and active.spreadsheet_id == spreadsheet_id and active.title else spreadsheet_id
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    return f"{title} (snapshot {stamp})"


async def _copy_spreadsheet(spreadsheet_id: str, name: str) -> tuple[dict | None, str | None]:
    return await _drive_post_json(
        f"/files/{spreadsheet_id}/copy",
        params={"supportsAllDrives": "true", "fields": "id,name,webViewLink"},
        json_body={"name": name},
    )


async def _guard_mutation(
    session: session_context.SessionContextManager,
    tool: str,
    action: str,
    spreadsheet_id: str,
    confirmed: bool,
    create_snapshot: bool | None,
    **counts,
) -> tuple[str | None, str | None]:
    """Applies the confirmation policy and takes a snapshot when wanted.

    Returns (blocking_message, snapshot_id); a blocking message means the
    mutation must not run.
    """
    decision = _evaluate(session, tool, action, **counts)
    if decision.confirm and not confirmed:
        logger.info("Confirmation required for %s:%s on %s: %s", tool, action, spreadsheet_id, decision.reason)
        return _confirmation_required_message(tool, action, decision), None

    if create_snapshot is None:
        create_snapshot = decision.suggest_snapshot and session.get_preferences().create_snapshot_by_default
    if not create_snapshot:
        return None, None

    snapshot, err = await _copy_spreadsheet(spreadsheet_id, _snapshot_name(session, spreadsheet_id))
    if err:
        return f"Snapshot failed. No changes applied.\n{err}", None
    snapshot_id = (snapshot or {}).get("id")
    logger.info("Snapshot %s created before %s:%s on %s", snapshot_id, tool, action, spreadsheet_id)
    return None, snapshot_id


def _snapshot_line(snapshot_id: str | None) -> str:
    return f"\nSnapshot ID: {snapshot_id}" if snapshot_id else ""


async def _get_sheet_properties(spreadsheet_id: str) -> tuple[list[dict] | None, str | None]:
    data, err = await _sheets_get(
        f"/spreadsheets/{spreadsheet_id}",
        {"fields": "sheets.properties(sheetId,title,index,gridProperties)"},
    )
    if err:
        return None, err
    sheets = (data or {}).get("sheets", [])
    return [sheet.get("properties", {}) for sheet in sheets if isinstance(sheet, dict)], None


def _find_sheet(properties: list[dict], sheet_name: str | None) -> dict | None:
    if not properties:
        return None
    if sheet_name is None:
        return properties[0]
    for item in properties:
        if item.get("title") == sheet_name:
            return item
    return None


@mcp.tool()
async def list_spreadsheets(limit: int = 10, query: str | None = None) -> str:
    """Lists Google Sheets spreadsheets from Drive, optionally filtered by name."""
    try:
        params = _ListSpreadsheetsInput.model_validate({"limit": limit, "query": query})
        query_parts = [f"mimeType='{SPREADSHEET_MIME}'", "trashed=false"]
        if params.query:
            query_parts.append(f"name contains '{_escape_drive_query(params.query)}'")

        data, err = await _drive_get(
            "/files",
            {
                "q": " and ".join(query_parts),
                "orderBy": "modifiedTime desc",
                "pageSize": params.limit,
                "fields": "files(id,name,modifiedTime,webViewLink)",
                "supportsAllDrives": "true",
                "includeItemsFromAllDrives": "true",
            },
        )
        if err:
            return err

        files = data.get("files", []) if data else []
        if not files:
            if params.query:
                return f"No spreadsheets found matching '{params.query}'"
            return "No spreadsheets found."
        lines = [
            f"- {item.get('name', 'Untitled')} | ID: {item.get('id', '-')} | "
            f"Modified: {item.get('modifiedTime', '-')} | Link: {item.get('webViewLink', '-')}"
            for item in files
        ]
        return f"Spreadsheets (showing {len(lines)}):\n" + "\n".join(lines)
    except Exception as exc:
        return f"Error listing spreadsheets: {str(exc)}"


@mcp.tool()
async def get_spreadsheet(spreadsheet_id: str, session_id: str = "default") -> str:
    """Gets spreadsheet metadata and its sheets, and makes it the session's active spreadsheet."""
    try:
        params = _SpreadsheetIdInput.model_validate({"spreadsheet_id": spreadsheet_id})
        data, err = await _sheets_get(
            f"/spreadsheets/{params.spreadsheet_id}",
            {
                "fields": (
                    "spreadsheetId,spreadsheetUrl,properties(title,locale,timeZone),"
                    "sheets.properties(sheetId,title,index,gridProperties)"
                )
            },
        )
        if err:
            return err
        if not data:
            return "No spreadsheet metadata found."

        properties = data.get("properties", {})
        title = properties.get("title", "")
        sheets = [sheet.get("properties", {}) for sheet in data.get("sheets", [])]
        url = data.get("spreadsheetUrl") or _spreadsheet_link(params.spreadsheet_id)

        session = _session(session_id)
        session.set_active_spreadsheet(
            SpreadsheetContext(
                spreadsheet_id=params.spreadsheet_id,
                title=title,
                sheet_names=[sheet.get("title", "") for sheet in sheets],
                url=url,
            )
        )

        sheet_lines = []
        for sheet in sheets:
            grid = sheet.get("gridProperties", {})
            sheet_lines.append(
                f"- {sheet.get('title', '-')} | Sheet ID: {sheet.get('sheetId', '-')} | "
                f"Rows: {grid.get('rowCount', '-')} | Columns: {grid.get('columnCount', '-')}"
            )
        return (
            "Spreadsheet:\n"
            f"Title: {title or '-'}\n"
            f"ID: {params.spreadsheet_id}\n"
            f"Locale: {properties.get('locale', '-')}\n"
            f"Time Zone: {properties.get('timeZone', '-')}\n"
            f"Link: {url}\n"
            f"Sheets ({len(sheets)}):\n" + ("\n".join(sheet_lines) or "-")
        )
    except Exception as exc:
        return f"Error getting spreadsheet: {str(exc)}"


@mcp.tool()
async def create_spreadsheet(
    title: str,
    sheet_titles: list[str] | None = None,
    confirmed: bool = False,
    session_id: str = "default",
) -> str:
    """Creates a new spreadsheet, optionally with named sheets."""
    try:
        params = _CreateSpreadsheetInput.model_validate(
            {"title": title, "sheet_titles": sheet_titles or []}
        )
        session = _session(session_id)
        decision = _evaluate(session, "sheets_core", "create")
        if decision.confirm and not confirmed:
            return _confirmation_required_message("sheets_core", "create", decision)

        payload: dict = {"properties": {"title": params.title}}
        sheet_names = [name.strip() for name in params.sheet_titles if name.strip()]
        if sheet_names:
            payload["sheets"] = [{"properties": {"title": name}} for name in sheet_names]

        data, err = await _sheets_post("/spreadsheets", json_body=payload)
        if err:
            return err
        if not data or not data.get("spreadsheetId"):
            return "Failed to create spreadsheet."

        spreadsheet_id = data["spreadsheetId"]
        created_sheets = [sheet.get("properties", {}).get("title", "") for sheet in data.get("sheets", [])]
        url = data.get("spreadsheetUrl") or _spreadsheet_link(spreadsheet_id)
        session.set_active_spreadsheet(
            SpreadsheetContext(
                spreadsheet_id=spreadsheet_id,
                title=params.title,
                sheet_names=created_sheets,
                url=url,
            )
        )
        session.record_operation(
            "sheets_core",
            "create",
            f"Created spreadsheet '{params.title}'",
            spreadsheet_id=spreadsheet_id,
        )
        return (
            "Spreadsheet created:\n"
            f"Title: {params.title}\n"
            f"ID: {spreadsheet_id}\n"
            f"Sheets: {', '.join(created_sheets) or '-'}\n"
            f"Link: {url}"
        )
    except Exception as exc:
        return f"Error creating spreadsheet: {str(exc)}"


@mcp.tool()
async def add_sheet(
    spreadsheet_id: str,
    title: str,
    confirmed: bool = False,
    create_snapshot: bool | None = None,
    session_id: str = "default",
) -> str:
    """Adds a new sheet (tab) to a spreadsheet."""
    try:
        params = _AddSheetInput.model_validate({"spreadsheet_id": spreadsheet_id, "title": title})
        session = _session(session_id)
        blocked, snapshot_id = await _guard_mutation(
            session, "sheets_core", "add_sheet", params.spreadsheet_id, confirmed, create_snapshot
        )
        if blocked:
            return blocked

        data, err = await _sheets_post(
            f"/spreadsheets/{params.spreadsheet_id}:batchUpdate",
            json_body={"requests": [{"addSheet": {"properties": {"title": params.title}}}]},
        )
        if err:
            return err
        replies = data.get("replies", []) if data else []
        properties = {}
        if replies and isinstance(replies[0], dict):
            properties = replies[0].get("addSheet", {}).get("properties", {})

        session.record_operation(
            "sheets_core",
            "add_sheet",
            f"Added sheet '{params.title}'",
            spreadsheet_id=params.spreadsheet_id,
            undoable=bool(snapshot_id),
            snapshot_id=snapshot_id,
        )
        return (
            "Sheet added:\n"
            f"Spreadsheet ID: {params.spreadsheet_id}\n"
            f"Title: {properties.get('title', params.title)}\n"
            f"Sheet ID: {properties.get('sheetId', '-')}"
            + _snapshot_line(snapshot_id)
        )
    except Exception as exc:
        return f"Error adding sheet: {str(exc)}"


@mcp.tool()
async def delete_sheet(
    spreadsheet_id: str,
    sheet_id: int,
    confirmed: bool = False,
    create_snapshot: bool | None = None,
    session_id: str = "default",
) -> str:
    """Deletes a sheet (tab) and all of its data. Always requires confirmation."""
    try:
        params = _DeleteSheetInput.model_validate({"spreadsheet_id": spreadsheet_id, "sheet_id": sheet_id})
        session = _session(session_id)
        blocked, snapshot_id = await _guard_mutation(
            session, "sheets_core", "delete_sheet", params.spreadsheet_id, confirmed, create_snapshot
        )
        if blocked:
            return blocked

        _, err = await _sheets_post(
            f"/spreadsheets/{params.spreadsheet_id}:batchUpdate",
            json_body={"requests": [{"deleteSheet": {"sheetId": params.sheet_id}}]},
        )
        if err:
            return err

        session.record_operation(
            "sheets_core",
            "delete_sheet",
            f"Deleted sheet {params.sheet_id}",
            spreadsheet_id=params.spreadsheet_id,
            undoable=bool(snapshot_id),
            snapshot_id=snapshot_id,
        )
        return (
            "Sheet deleted:\n"
            f"Spreadsheet ID: {params.spreadsheet_id}\n"
            f"Sheet ID: {params.sheet_id}"
            + _snapshot_line(snapshot_id)
        )
    except Exception as exc:
        return f"Error deleting sheet: {str(exc)}"


@mcp.tool()
async def read_range(
    spreadsheet_id: str,
    range_a1: str,
    max_rows: int = 200,
    session_id: str = "default",
) -> str:
    """Reads cell values from a range in A1 notation, e.g. Sheet1!A1:D20."""
    try:
        params = _ReadRangeInput.model_validate(
            {"spreadsheet_id": spreadsheet_id, "range_a1": range_a1, "max_rows": max_rows}
        )
        data, err = await _sheets_get(
            _values_path(params.spreadsheet_id, params.range_a1),
            {"majorDimension": "ROWS", "valueRenderOption": "FORMATTED_VALUE"},
        )
        if err:
            return err

        rows = data.get("values", []) if data else []
        resolved_range = (data or {}).get("range", params.range_a1)
        session = _session(session_id)
        session.set_last_range(resolved_range)
        session.record_operation(
            "sheets_data",
            "read",
            f"Read {resolved_range}",
            spreadsheet_id=params.spreadsheet_id,
        )
        if not rows:
            return f"Range {resolved_range} is empty."

        shown = rows[: params.max_rows]
        lines = [f"{index}. {_format_row(row)}" for index, row in enumerate(shown, start=1)]
        result = f"Range: {resolved_range}\nRows (showing {len(shown)} of {len(rows)}):\n" + "\n".join(lines)
        if len(rows) > len(shown):
            result += "\n\n[Truncated]"
        return result
    except Exception as exc:
        return f"Error reading range: {str(exc)}"


@mcp.tool()
async def write_range(
    spreadsheet_id: str,
    range_a1: str,
    values: list[list[CellValue]],
    value_input_option: str = "USER_ENTERED",
    confirmed: bool = False,
    create_snapshot: bool | None = None,
    session_id: str = "default",
) -> str:
    """Writes rows of values starting at a range, overwriting existing cells."""
    try:
        params = _WriteValuesInput.model_validate(
            {
                "spreadsheet_id": spreadsheet_id,
                "range_a1": range_a1,
                "values": values,
                "value_input_option": value_input_option,
            }
        )
        cells = count_value_cells(params.values)
        session = _session(session_id)
        blocked, snapshot_id = await _guard_mutation(
            session,
            "sheets_data",
            "write",
            params.spreadsheet_id,
            confirmed,
            create_snapshot,
            affected_cell_count=cells,
            affected_row_count=len(params.values),
        )
        if blocked:
            return blocked

        data, err = await _sheets_put(
            _values_path(params.spreadsheet_id, params.range_a1),
            json_body={"range": params.range_a1, "majorDimension": "ROWS", "values": params.values},
            params={"valueInputOption": params.value_input_option},
        )
        if err:
            return err

        data = data or {}
        updated_range = data.get("updatedRange", params.range_a1)
        session.set_last_range(updated_range)
        session.record_operation(
            "sheets_data",
            "write",
            f"Wrote {cells} cells to {updated_range}",
            spreadsheet_id=params.spreadsheet_id,
            cells_affected=data.get("updatedCells", cells),
            undoable=bool(snapshot_id),
            snapshot_id=snapshot_id,
        )
        return (
            "Range updated:\n"
            f"Range: {updated_range}\n"
            f"Updated Rows: {data.get('updatedRows', len(params.values))}\n"
            f"Updated Columns: {data.get('updatedColumns', '-')}\n"
            f"Updated Cells: {data.get('updatedCells', cells)}"
            + _snapshot_line(snapshot_id)
        )
    except Exception as exc:
        return f"Error writing range: {str(exc)}"


@mcp.tool()
async def append_rows(
    spreadsheet_id: str,
    range_a1: str,
    values: list[list[CellValue]],
    value_input_option: str = "USER_ENTERED",
    confirmed: bool = False,
    create_snapshot: bool | None = None,
    session_id: str = "default",
) -> str:
    """Appends rows after the last row of the table found in range_a1."""
    try:
        params = _WriteValuesInput.model_validate(
            {
                "spreadsheet_id": spreadsheet_id,
                "range_a1": range_a1,
                "values": values,
                "value_input_option": value_input_option,
            }
        )
        cells = count_value_cells(params.values)
        session = _session(session_id)
        blocked, snapshot_id = await _guard_mutation(
            session,
            "sheets_data",
            "append",
            params.spreadsheet_id,
            confirmed,
            create_snapshot,
            affected_cell_count=cells,
            affected_row_count=len(params.values),
        )
        if blocked:
            return blocked

        data, err = await _sheets_post(
            _values_path(params.spreadsheet_id, params.range_a1, ":append"),
            json_body={"majorDimension": "ROWS", "values": params.values},
            params={"valueInputOption": params.value_input_option, "insertDataOption": "INSERT_ROWS"},
        )
        if err:
            return err

        updates = (data or {}).get("updates", {})
        updated_range = updates.get("updatedRange", params.range_a1)
        session.set_last_range(updated_range)
        session.record_operation(
            "sheets_data",
            "append",
            f"Appended {len(params.values)} rows to {updated_range}",
            spreadsheet_id=params.spreadsheet_id,
            cells_affected=updates.get("updatedCells", cells),
            undoable=bool(snapshot_id),
            snapshot_id=snapshot_id,
        )
        return (
            "Rows appended:\n"
            f"Range: {updated_range}\n"
            f"Appended Rows: {updates.get('updatedRows', len(params.values))}\n"
            f"Updated Cells: {updates.get('updatedCells', cells)}"
            + _snapshot_line(snapshot_id)
        )
    except Exception as exc:
        return f"Error appending rows: {str(exc)}"


@mcp.tool()
async def clear_range(
    spreadsheet_id: str,
    range_a1: str,
    confirmed: bool = False,
    create_snapshot: bool | None = None,
    session_id: str = "default",
) -> str:
    """Clears values (not formatting) from a range. Large clears require confirmation."""
    try:
        params = _ClearRangeInput.model_validate({"spreadsheet_id": spreadsheet_id, "range_a1": range_a1})
        parsed = parse_a1_range(params.range_a1)
        cells = parsed.cell_count()
        if cells is None:
            properties, err = await _get_sheet_properties(params.spreadsheet_id)
            if err:
                return err
            sheet = _find_sheet(properties or [], parsed.sheet_name)
            if not sheet:
                return f"Sheet '{parsed.sheet_name}' not found in spreadsheet {params.spreadsheet_id}."
            grid = sheet.get("gridProperties", {})
            cells = parsed.cell_count(
                grid_rows=int(grid.get("rowCount", 0)),
                grid_columns=int(grid.get("columnCount", 0)),
            ) or 0

        session = _session(session_id)
        blocked, snapshot_id = await _guard_mutation(
            session,
            "sheets_data",
            "clear",
            params.spreadsheet_id,
            confirmed,
            create_snapshot,
            affected_cell_count=cells,
        )
        if blocked:
            return blocked

        data, err = await _sheets_post(
            _values_path(params.spreadsheet_id, params.range_a1, ":clear"),
            json_body={},
        )
        if err:
            return err

        cleared_range = (data or {}).get("clearedRange", params.range_a1)
        session.set_last_range(cleared_range)
        session.record_operation(
            "sheets_data",
            "clear",
            f"Cleared {cells} cells in {cleared_range}",
            spreadsheet_id=params.spreadsheet_id,
            cells_affected=cells,
            undoable=bool(snapshot_id),
            snapshot_id=snapshot_id,
        )
        return (
            "Range cleared:\n"
            f"Range: {cleared_range}\n"
            f"Cells Cleared: {cells}"
            + _snapshot_line(snapshot_id)
        )
    except Exception as exc:
        return f"Error clearing range: {str(exc)}"


async def _delete_dimension(
    dimension: str,
    spreadsheet_id: str,
    sheet_id: int,
    start_index: int,
    end_index: int,
    confirmed: bool,
    create_snapshot: bool | None,
    session_id: str,
) -> str:
    params = _DeleteDimensionInput.model_validate(
        {
            "spreadsheet_id": spreadsheet_id,
            "sheet_id": sheet_id,
            "start_index": start_index,
            "end_index": end_index,
        }
    )
    count = params.end_index - params.start_index
    is_rows = dimension == "ROWS"
    action = "delete_rows" if is_rows else "delete_columns"
    counts = {"affected_row_count": count} if is_rows else {"affected_column_count": count}

    session = _session(session_id)
    blocked, snapshot_id = await _guard_mutation(
        session, "sheets_dimensions", action, params.spreadsheet_id, confirmed, create_snapshot, **counts
    )
    if blocked:
        return blocked

    _, err = await _sheets_post(
        f"/spreadsheets/{params.spreadsheet_id}:batchUpdate",
        json_body={
            "requests": [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": params.sheet_id,
                            "dimension": dimension,
                            "startIndex": params.start_index,
                            "endIndex": params.end_index,
                        }
                    }
                }
            ]
        },
    )
    if err:
        return err

    label = "rows" if is_rows else "columns"
    session.record_operation(
        "sheets_dimensions",
        action,
        f"Deleted {count} {label} ({params.start_index}-{params.end_index - 1}) from sheet {params.sheet_id}",
        spreadsheet_id=params.spreadsheet_id,
        undoable=bool(snapshot_id),
        snapshot_id=snapshot_id,
    )
    return (
        f"{label.capitalize()} deleted:\n"
        f"Spreadsheet ID: {params.spreadsheet_id}\n"
        f"Sheet ID: {params.sheet_id}\n"
        f"Indexes: {params.start_index}-{params.end_index - 1} ({count} {label})"
        + _snapshot_line(snapshot_id)
    )


@mcp.tool()
async def delete_rows(
    spreadsheet_id: str,
    sheet_id: int,
    start_index: int,
    end_index: int,
    confirmed: bool = False,
    create_snapshot: bool | None = None,
    session_id: str = "default",
) -> str:
    """
    Deletes rows [start_index, end_index) from a sheet (0-based, end exclusive).
    Deleting more than 10 rows requires confirmation.
    """
    try:
        return await _delete_dimension(
            "ROWS", spreadsheet_id, sheet_id, start_index, end_index, confirmed, create_snapshot, session_id
        )
    except Exception as exc:
        return f"Error deleting rows: {str(exc)}"


@mcp.tool()
async def delete_columns(
    spreadsheet_id: str,
    sheet_id: int,
    start_index: int,
    end_index: int,
    confirmed: bool = False,
    create_snapshot: bool | None = None,
    session_id: str = "default",
) -> str:
    """
    Deletes columns [start_index, end_index) from a sheet (0-based, end exclusive).
    Deleting more than 3 columns requires confirmation.
    """
    try:
        return await _delete_dimension(
            "COLUMNS", spreadsheet_id, sheet_id, start_index, end_index, confirmed, create_snapshot, session_id
        )
    except Exception as exc:
        return f"Error deleting columns: {str(exc)}"


@mcp.tool()
async def create_snapshot(spreadsheet_id: str, name: str | None = None, session_id: str = "default") -> str:
    """Creates a backup copy of a spreadsheet in Drive so later changes can be undone."""
    try:
        params = _CreateSnapshotInput.model_validate({"spreadsheet_id": spreadsheet_id, "name": name})
        session = _session(session_id)
        snapshot, err = await _copy_spreadsheet(
            params.spreadsheet_id, params.name or _snapshot_name(session, params.spreadsheet_id)
        )
        if err:
            return err
        if not snapshot or not snapshot.get("id"):
            return "Failed to create snapshot."

        session.record_operation(
            "sheets_history",
            "snapshot",
            f"Snapshot '{snapshot.get('name', '-')}' of {params.spreadsheet_id}",
            spreadsheet_id=params.spreadsheet_id,
            snapshot_id=snapshot["id"],
        )
        return (
            "Snapshot created:\n"
            f"Name: {snapshot.get('name', '-')}\n"
            f"Snapshot ID: {snapshot['id']}\n"
            f"Source Spreadsheet ID: {params.spreadsheet_id}\n"
            f"Link: {snapshot.get('webViewLink') or _spreadsheet_link(snapshot['id'])}"
        )
    except Exception as exc:
        return f"Error creating snapshot: {str(exc)}"


@mcp.tool()
async def list_snapshots(session_id: str = "default") -> str:
    """Lists snapshots taken during this session."""
    try:
        snapshots = _session(session_id).list_snapshots()
        if not snapshots:
            return "No snapshots taken in this session."
        lines = [
            f"- {record.snapshot_id} | Source: {record.spreadsheet_id or '-'} | "
            f"Before: {record.tool}:{record.action} | {record.description}"
            for record in snapshots
        ]
        return f"Snapshots (showing {len(lines)}):\n" + "\n".join(lines)
    except Exception as exc:
        return f"Error listing snapshots: {str(exc)}"


@mcp.tool()
async def check_operation_risk(
    tool: str,
    action: str,
    affected_cell_count: int | None = None,
    affected_row_count: int | None = None,
    affected_column_count: int | None = None,
    is_destructive: bool | None = None,
    session_id: str = "default",
) -> str:
    """
    Evaluates whether an operation (tool + action + affected counts) needs user
    confirmation under the session's confirmation preference.
    """
    try:
        descriptor = OperationRiskDescriptor.model_validate(
            {
                "tool": tool,
                "action": action,
                "affected_cell_count": affected_cell_count,
                "affected_row_count": affected_row_count,
                "affected_column_count": affected_column_count,
                "is_destructive": is_destructive,
            }
        )
        session = _session(session_id)
        decision = confirmation_policy.should_confirm(descriptor, session.confirmation_level)
        result = (
            "Confirmation Decision:\n"
            f"Operation: {descriptor.operation_key}\n"
            f"Confirm: {'yes' if decision.confirm else 'no'}\n"
            f"Reason: {decision.reason}\n"
            f"Risk Level: {decision.risk_level}\n"
            f"Suggest Snapshot: {'yes' if decision.suggest_snapshot else 'no'}\n"
            f"Suggest Dry Run: {'yes' if decision.suggest_dry_run else 'no'}\n"
            f"Confirmation Level: {session.confirmation_level}"
        )
        if decision.warning:
            result += f"\nWarning: {decision.warning}"
        return result
    except Exception as exc:
        return f"Error checking operation risk: {str(exc)}"


@mcp.tool()
async def get_confirmation_guidance() -> str:
    """Explains when spreadsheet operations need user confirmation."""
    return confirmation_policy.get_confirmation_guidance()


@mcp.tool()
async def request_plan_confirmation(
    title: str,
    steps: list[dict],
    description: str = "",
    session_id: str = "default",
) -> str:
    """
    Analyzes a multi-step plan. Each step has tool, action, description and optional
    affected_cell_count / affected_row_count / affected_column_count.
    When confirmation is needed, the plan is stored as pending until respond_to_plan is called.
    """
    try:
        params = _PlanConfirmationInput.model_validate(
            {"title": title, "description": description, "steps": steps}
        )
        session = _session(session_id)
        analysis = confirmation_policy.analyze_operation_plan(list(params.steps))
        level = session.confirmation_level
        if level == "never":
            requires_confirmation = False
        elif level == "always":
            requires_confirmation = True
        else:
            requires_confirmation = analysis.requires_confirmation

        step_lines = []
        for index, step in enumerate(params.steps, start=1):
            step_analysis = confirmation_policy.analyze_operation(step)
            step_lines.append(
                f"{index}. [{step.operation_key}] {step.description or '-'} "
                f"(risk: {step_analysis.risk.level}, cells: {step_analysis.cells_affected})"
            )

        header = (
            f"Plan: {params.title}\n"
            + (f"Description: {params.description}\n" if params.description else "")
            + f"Summary: {analysis.summary}\n"
            f"Total Risk: {analysis.total_risk}\n"
            "Steps:\n" + "\n".join(step_lines)
        )
        if not requires_confirmation:
            return header + "\nRequires Confirmation: no\nProceed with the plan."

        plan = PendingPlan(
            plan_id=f"plan_{uuid.uuid4().hex[:12]}",
            title=params.title,
            description=params.description,
            steps=list(params.steps),
            analysis=analysis,
            created_at=datetime.now(timezone.utc).timestamp(),
        )
        session.set_pending_plan(plan)
        logger.info("Plan %s pending confirmation: %s", plan.plan_id, analysis.summary)
        return (
            header
            + "\nRequires Confirmation: yes"
            + f"\nPlan ID: {plan.plan_id}"
            + "\nShow this plan to the user and call respond_to_plan with their answer."
        )
    except Exception as exc:
        return f"Error requesting plan confirmation: {str(exc)}"


@mcp.tool()
async def respond_to_plan(plan_id: str, approved: bool, session_id: str = "default") -> str:
    """Records the user's approval or rejection of a pending plan."""
    try:
        params = _RespondToPlanInput.model_validate({"plan_id": plan_id, "approved": approved})
        session = _session(session_id)
        pending = session.get_pending_plan()
        if not pending or pending.plan_id != params.plan_id:
            return f"No pending plan with ID {params.plan_id}."

        stats = session.record_confirmation_response(params.approved)
        session.clear_pending_plan()
        logger.info("Plan %s %s", params.plan_id, "approved" if params.approved else "declined")
        if params.approved:
            return (
                f'Plan "{pending.title}" approved by user. Ready for execution.\n'
                "Call each step's tool with confirmed=true.\n"
                f"Approval Rate: {stats.approval_rate}%"
            )
        return f'Plan "{pending.title}" declined by user. No changes applied.\nApproval Rate: {stats.approval_rate}%'
    except Exception as exc:
        return f"Error responding to plan: {str(exc)}"


@mcp.tool()
async def get_confirmation_stats(session_id: str = "default") -> str:
    """Shows how often the user approved confirmation requests in this session."""
    try:
        stats = _session(session_id).get_confirmation_stats()
        return (
            "Confirmation Stats:\n"
            f"Total: {stats.total}\n"
            f"Approved: {stats.approved}\n"
            f"Declined: {stats.declined}\n"
            f"Approval Rate: {stats.approval_rate}%"
        )
    except Exception as exc:
        return f"Error getting confirmation stats: {str(exc)}"


@mcp.tool()
async def set_confirmation_preference(
    level: str,
    create_snapshot_by_default: bool | None = None,
    session_id: str = "default",
) -> str:
    """Sets the session confirmation level: always, destructive (default) or never."""
    try:
        params = _ConfirmationPreferenceInput.model_validate(
            {"level": level, "create_snapshot_by_default": create_snapshot_by_default}
        )
        updates: dict = {"confirmation_level": params.level}
        if params.create_snapshot_by_default is not None:
            updates["create_snapshot_by_default"] = params.create_snapshot_by_default
        preferences = _session(session_id).update_preferences(**updates)
        return (
            "Preferences updated:\n"
            f"Confirmation Level: {preferences.confirmation_level}\n"
            f"Snapshot By Default: {preferences.create_snapshot_by_default}"
        )
    except Exception as exc:
        return f"Error setting confirmation preference: {str(exc)}"


@mcp.tool()
async def record_user_signal(message: str, session_id: str = "default") -> str:
    """Learns the confirmation preference from what the user said, e.g. "just do it"."""
    try:
        params = _UserSignalInput.model_validate({"message": message})
        session = _session(session_id)
        learned = session.apply_user_signal(params.message)
        if learned is None:
            return f"No confirmation preference detected. Confirmation Level: {session.confirmation_level}"
        return f"Preference learned. Confirmation Level: {learned}"
    except Exception as exc:
        return f"Error recording user signal: {str(exc)}"


@mcp.tool()
async def get_session_context(session_id: str = "default") -> str:
    """Summarizes the session: active spreadsheet, recent operations, preferences and suggestions."""
    try:
        session = _session(session_id)
        preferences = session.get_preferences()
        history = session.get_operation_history(limit=5)
        history_lines = [f"- {op.tool}:{op.action} | {op.description}" for op in history]
        suggestions = session.suggest_next_actions()
        return (
            "Session Context:\n"
            f"{session.get_context_summary()}\n"
            f"Snapshot By Default: {preferences.create_snapshot_by_default}\n"
            "Recent Operations:\n" + ("\n".join(history_lines) or "-") + "\n"
            "Suggestions:\n" + ("\n".join(f"- {item}" for item in suggestions) or "-")
        )
    except Exception as exc:
        return f"Error getting session context: {str(exc)}"


HANDLERS = {
    "sheets_core:list": list_spreadsheets,
    "sheets_core:get": get_spreadsheet,
    "sheets_core:create": create_spreadsheet,
    "sheets_core:add_sheet": add_sheet,
    "sheets_core:delete_sheet": delete_sheet,
    "sheets_data:read": read_range,
    "sheets_data:write": write_range,
    "sheets_data:append": append_rows,
    "sheets_data:clear": clear_range,
    "sheets_dimensions:delete_rows": delete_rows,
    "sheets_dimensions:delete_columns": delete_columns,
    "sheets_history:snapshot": create_snapshot,
    "sheets_history:list": list_snapshots,
    "sheets_confirm:check": check_operation_risk,
    "sheets_confirm:guidance": get_confirmation_guidance,
    "sheets_confirm:request": request_plan_confirmation,
    "sheets_confirm:respond": respond_to_plan,
    "sheets_confirm:stats": get_confirmation_stats,
    "sheets_session:get_context": get_session_context,
    "sheets_session:set_preference": set_confirmation_preference,
    "sheets_session:record_signal": record_user_signal,
}


@mcp.tool()
async def run_sheets_action(tool: str, action: str, arguments: dict[str, Any] | None = None) -> str:
    """
    Routes a request envelope to a handler by tool and action, e.g.
    tool="sheets_data", action="read", arguments={"spreadsheet_id": "...", "range_a1": "A1:C10"}.
    """
    try:
        envelope = _SheetsActionEnvelope.model_validate(
            {"tool": tool, "action": action, "arguments": arguments or {}}
        )
    except Exception as exc:
        return f"Error: invalid request envelope: {str(exc)}"

    handler = HANDLERS.get(envelope.operation_key)
    if handler is None:
        return (
            f"Unknown action '{envelope.operation_key}'. "
            f"Available: {', '.join(sorted(HANDLERS))}"
        )
    logger.debug("Dispatching %s", envelope.operation_key)
    try:
        return await handler(**envelope.arguments)
    except TypeError as exc:
        return f"Error: invalid arguments for {envelope.operation_key}: {str(exc)}"


def run() -> None:
    mcp.run()


if __name__ == "__main__":
    run()
