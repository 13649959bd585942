import pytest

from gsheets_mcp.mcp_servers import sheets_server
from gsheets_mcp.session_context import get_session_context


class FakeApi:
    """Records calls to the API helpers and answers from a route table."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    def _answer(self, method, path, params, json_body):
        self.calls.append((method, path, params, json_body))
        return self.routes.get((method, path), ({}, None))

    def install(self, monkeypatch):
        async def fake_sheets_get(path, params=None):
            return self._answer("GET", path, params, None)

        async def fake_sheets_post(path, json_body=None, params=None):
            return self._answer("POST", path, params, json_body)

        async def fake_sheets_put(path, json_body=None, params=None):
            return self._answer("PUT", path, params, json_body)

        async def fake_drive_get(path, params=None):
            return self._answer("DRIVE_GET", path, params, None)

        async def fake_drive_post_json(path, params=None, json_body=None):
            return self._answer("DRIVE_POST", path, params, json_body)

        monkeypatch.setattr(sheets_server, "_sheets_get", fake_sheets_get)
        monkeypatch.setattr(sheets_server, "_sheets_post", fake_sheets_post)
        monkeypatch.setattr(sheets_server, "_sheets_put", fake_sheets_put)
        monkeypatch.setattr(sheets_server, "_drive_get", fake_drive_get)
        monkeypatch.setattr(sheets_server, "_drive_post_json", fake_drive_post_json)
        return self

    def methods(self):
        return [(method, path) for method, path, _, _ in self.calls]


SNAPSHOT_ROUTE = {("DRIVE_POST", "/files/sheet1/copy"): ({"id": "snap1", "name": "Budget (snapshot)"}, None)}


@pytest.mark.asyncio
async def test_list_spreadsheets(monkeypatch):
    api = FakeApi(
        {
            ("DRIVE_GET", "/files"): (
                {
                    "files": [
                        {
                            "id": "sheet1",
                            "name": "Budget",
                            "modifiedTime": "2026-02-14T09:00:00Z",
                            "webViewLink": "https://docs.google.com/spreadsheets/d/sheet1/edit",
                        }
                    ]
                },
                None,
            )
        }
    ).install(monkeypatch)
    result = await sheets_server.list_spreadsheets(limit=5, query="Bob's")
    assert "Spreadsheets (showing 1):" in result
    assert "Budget | ID: sheet1" in result
    query = api.calls[0][2]["q"]
    assert "mimeType='application/vnd.google-apps.spreadsheet'" in query
    assert "name contains 'Bob\\'s'" in query


@pytest.mark.asyncio
async def test_list_spreadsheets_no_results(monkeypatch):
    FakeApi({("DRIVE_GET", "/files"): ({"files": []}, None)}).install(monkeypatch)
    result = await sheets_server.list_spreadsheets(query="Inventory")
    assert result == "No spreadsheets found matching 'Inventory'"


@pytest.mark.asyncio
async def test_get_spreadsheet_sets_active(monkeypatch):
    FakeApi(
        {
            ("GET", "/spreadsheets/sheet1"): (
                {
                    "spreadsheetId": "sheet1",
                    "spreadsheetUrl": "https://docs.google.com/spreadsheets/d/sheet1/edit",
                    "properties": {"title": "Budget", "locale": "en_US", "timeZone": "UTC"},
                    "sheets": [
                        {
                            "properties": {
                                "sheetId": 0,
                                "title": "Jan",
                                "gridProperties": {"rowCount": 1000, "columnCount": 26},
                            }
                        }
                    ],
                },
                None,
            )
        }
    ).install(monkeypatch)
    result = await sheets_server.get_spreadsheet("sheet1")
    assert "Title: Budget" in result
    assert "- Jan | Sheet ID: 0 | Rows: 1000 | Columns: 26" in result
    active = get_session_context().get_active_spreadsheet()
    assert active.spreadsheet_id == "sheet1"
    assert active.sheet_names == ["Jan"]


@pytest.mark.asyncio
async def test_read_range_truncates_and_records(monkeypatch):
    api = FakeApi(
        {
            ("GET", "/spreadsheets/sheet1/values/Sheet1%21A1%3AB3"): (
                {"range": "Sheet1!A1:B3", "values": [["Name", "Total"], ["Ana", 3], ["Ben"]]},
                None,
            )
        }
    ).install(monkeypatch)
    result = await sheets_server.read_range("sheet1", "Sheet1!A1:B3", max_rows=2)
    assert "Range: Sheet1!A1:B3" in result
    assert "Rows (showing 2 of 3):" in result
    assert "1. Name | Total" in result
    assert "[Truncated]" in result
    assert api.calls[0][2]["valueRenderOption"] == "FORMATTED_VALUE"
    assert get_session_context().get_last_operation().action == "read"


@pytest.mark.asyncio
async def test_read_range_passes_api_error(monkeypatch):
    error = "Error: Google Sheets API request failed: 404 NOT_FOUND. Hint: Verify the spreadsheet ID."
    FakeApi({("GET", "/spreadsheets/missing/values/A1"): (None, error)}).install(monkeypatch)
    assert await sheets_server.read_range("missing", "A1") == error


@pytest.mark.asyncio
async def test_small_write_runs_without_confirmation_or_snapshot(monkeypatch):
    api = FakeApi(
        {
            ("PUT", "/spreadsheets/sheet1/values/Sheet1%21A1%3AB2"): (
                {"updatedRange": "Sheet1!A1:B2", "updatedRows": 2, "updatedColumns": 2, "updatedCells": 4},
                None,
            )
        }
    ).install(monkeypatch)
    result = await sheets_server.write_range("sheet1", "Sheet1!A1:B2", [["a", 1], ["b", 2]])
    assert "Range updated:" in result
    assert "Updated Cells: 4" in result
    assert "Snapshot ID" not in result
    assert api.methods() == [("PUT", "/spreadsheets/sheet1/values/Sheet1%21A1%3AB2")]
    _, _, params, body = api.calls[0]
    assert params == {"valueInputOption": "USER_ENTERED"}
    assert body["values"] == [["a", 1], ["b", 2]]


@pytest.mark.asyncio
async def test_large_write_requires_confirmation_then_snapshots(monkeypatch):
    values = [[index] * 6 for index in range(100)]
    api = FakeApi(
        {
            **SNAPSHOT_ROUTE,
            ("PUT", "/spreadsheets/sheet1/values/A1%3AF100"): ({"updatedCells": 600}, None),
        }
    ).install(monkeypatch)

    blocked = await sheets_server.write_range("sheet1", "A1:F100", values)
    assert blocked.startswith("Confirmation required for sheets_data:write")
    assert "Reason: Modifying 600 cells" in blocked
    assert "confirmed=true" in blocked
    assert api.calls == []

    result = await sheets_server.write_range("sheet1", "A1:F100", values, confirmed=True)
    assert "Updated Cells: 600" in result
    assert "Snapshot ID: snap1" in result
    assert api.methods() == [
        ("DRIVE_POST", "/files/sheet1/copy"),
        ("PUT", "/spreadsheets/sheet1/values/A1%3AF100"),
    ]
    last = get_session_context().get_last_operation()
    assert last.undoable is True
    assert last.snapshot_id == "snap1"


@pytest.mark.asyncio
async def test_snapshot_failure_blocks_change(monkeypatch):
    api = FakeApi(
        {("DRIVE_POST", "/files/sheet1/copy"): (None, "Error: Drive API request failed: 403 PERMISSION_DENIED.")}
    ).install(monkeypatch)
    result = await sheets_server.clear_range("sheet1", "A1:B2")
    assert result.startswith("Snapshot failed. No changes applied.")
    assert api.methods() == [("DRIVE_POST", "/files/sheet1/copy")]


@pytest.mark.asyncio
async def test_append_rows(monkeypatch):
    api = FakeApi(
        {
            ("POST", "/spreadsheets/sheet1/values/Sheet1%21A1:append"): (
                {"updates": {"updatedRange": "Sheet1!A5:B5", "updatedRows": 1, "updatedCells": 2}},
                None,
            )
        }
    ).install(monkeypatch)
    result = await sheets_server.append_rows("sheet1", "Sheet1!A1", [["Cara", 7]], value_input_option="RAW")
    assert "Rows appended:" in result
    assert "Range: Sheet1!A5:B5" in result
    assert api.calls[0][2] == {"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"}


@pytest.mark.asyncio
async def test_write_rejects_unknown_value_input_option(monkeypatch):
    api = FakeApi().install(monkeypatch)
    result = await sheets_server.write_range("sheet1", "A1", [["x"]], value_input_option="FORMULA")
    assert result.startswith("Error writing range:")
    assert api.calls == []


@pytest.mark.asyncio
async def test_clear_small_range_takes_snapshot_by_default(monkeypatch):
    api = FakeApi(
        {
            **SNAPSHOT_ROUTE,
            ("POST", "/spreadsheets/sheet1/values/A1%3AB2:clear"): ({"clearedRange": "Sheet1!A1:B2"}, None),
        }
    ).install(monkeypatch)
    result = await sheets_server.clear_range("sheet1", "A1:B2")
    assert "Cells Cleared: 4" in result
    assert "Snapshot ID: snap1" in result

    api.calls.clear()
    await sheets_server.clear_range("sheet1", "A1:B2", create_snapshot=False)
    assert api.methods() == [("POST", "/spreadsheets/sheet1/values/A1%3AB2:clear")]


@pytest.mark.asyncio
async def test_clear_whole_sheet_is_sized_from_grid(monkeypatch):
    api = FakeApi(
        {
            ("GET", "/spreadsheets/sheet1"): (
                {
                    "sheets": [
                        {"properties": {"sheetId": 0, "title": "Expenses", "gridProperties": {"rowCount": 100, "columnCount": 5}}},
                        {"properties": {"sheetId": 1, "title": "Archive", "gridProperties": {"rowCount": 10, "columnCount": 2}}},
                    ]
                },
                None,
            )
        }
    ).install(monkeypatch)
    blocked = await sheets_server.clear_range("sheet1", "Expenses")
    assert "Confirmation required for sheets_data:clear" in blocked
    assert "Clearing 500 cells" in blocked

    missing = await sheets_server.clear_range("sheet1", "Budget 2025")
    assert missing == "Sheet 'Budget 2025' not found in spreadsheet sheet1."
    assert all(method == "GET" for method, _ in api.methods())


@pytest.mark.asyncio
async def test_clear_reversed_range_still_needs_confirmation(monkeypatch):
    api = FakeApi().install(monkeypatch)
    blocked = await sheets_server.clear_range("sheet1", "Sheet1!Z1000:A1")
    assert "Confirmation required for sheets_data:clear" in blocked
    assert "Clearing 26000 cells" in blocked
    assert api.calls == []


@pytest.mark.asyncio
async def test_delete_rows_threshold(monkeypatch):
    api = FakeApi(
        {**SNAPSHOT_ROUTE, ("POST", "/spreadsheets/sheet1:batchUpdate"): ({"replies": [{}]}, None)}
    ).install(monkeypatch)

    result = await sheets_server.delete_rows("sheet1", 0, 10, 20)
    assert "Rows deleted:" in result
    assert "Indexes: 10-19 (10 rows)" in result
    request = api.calls[-1][3]["requests"][0]["deleteDimension"]["range"]
    assert request == {"sheetId": 0, "dimension": "ROWS", "startIndex": 10, "endIndex": 20}

    api.calls.clear()
    blocked = await sheets_server.delete_rows("sheet1", 0, 0, 11)
    assert "Confirmation required for sheets_dimensions:delete_rows" in blocked
    assert "Deleting 11 rows" in blocked
    assert api.calls == []


@pytest.mark.asyncio
async def test_delete_columns_threshold(monkeypatch):
    FakeApi(
        {**SNAPSHOT_ROUTE, ("POST", "/spreadsheets/sheet1:batchUpdate"): ({"replies": [{}]}, None)}
    ).install(monkeypatch)
    assert "Columns deleted:" in await sheets_server.delete_columns("sheet1", 0, 0, 3)
    assert "Confirmation required" in await sheets_server.delete_columns("sheet1", 0, 0, 4)


@pytest.mark.asyncio
async def test_delete_rows_validates_indexes(monkeypatch):
    api = FakeApi().install(monkeypatch)
    result = await sheets_server.delete_rows("sheet1", 0, 5, 5)
    assert result.startswith("Error deleting rows:")
    assert "end_index must be greater than start_index" in result
    assert api.calls == []


@pytest.mark.asyncio
async def test_delete_sheet_respects_never_preference(monkeypatch):
    api = FakeApi({("POST", "/spreadsheets/sheet1:batchUpdate"): ({"replies": [{}]}, None)}).install(monkeypatch)
    blocked = await sheets_server.delete_sheet("sheet1", 3)
    assert "Risk Level: critical" in blocked
    assert "Warning: This will permanently delete the entire sheet" in blocked

    learned = await sheets_server.record_user_signal("Just do it, stop asking")
    assert learned == "Preference learned. Confirmation Level: never"
    result = await sheets_server.delete_sheet("sheet1", 3)
    assert "Sheet deleted:" in result
    assert api.calls[-1][3] == {"requests": [{"deleteSheet": {"sheetId": 3}}]}


@pytest.mark.asyncio
async def test_always_preference_confirms_small_changes(monkeypatch):
    api = FakeApi().install(monkeypatch)
    updated = await sheets_server.set_confirmation_preference("always")
    assert "Confirmation Level: always" in updated
    blocked = await sheets_server.write_range("sheet1", "A1", [["x"]])
    assert "Reason: User preference: always confirm" in blocked
    assert api.calls == []

    readonly = await sheets_server.check_operation_risk("sheets_data", "read", affected_cell_count=5000)
    assert "Confirm: no" in readonly


@pytest.mark.asyncio
async def test_sessions_are_isolated(monkeypatch):
    FakeApi().install(monkeypatch)
    await sheets_server.set_confirmation_preference("never", session_id="alice")
    alice = await sheets_server.check_operation_risk("sheets_core", "delete_sheet", session_id="alice")
    bob = await sheets_server.check_operation_risk("sheets_core", "delete_sheet", session_id="bob")
    assert "Confirm: no" in alice
    assert "Confirm: yes" in bob


@pytest.mark.asyncio
async def test_check_operation_risk_without_details():
    result = await sheets_server.check_operation_risk("", "")
    assert "Confirm: no" in result
    assert "Reason: No operation details provided" in result


@pytest.mark.asyncio
async def test_add_sheet_and_create_spreadsheet(monkeypatch):
    FakeApi(
        {
            ("POST", "/spreadsheets/sheet1:batchUpdate"): (
                {"replies": [{"addSheet": {"properties": {"sheetId": 42, "title": "Summary"}}}]},
                None,
            ),
            ("POST", "/spreadsheets"): (
                {
                    "spreadsheetId": "new1",
                    "spreadsheetUrl": "https://docs.google.com/spreadsheets/d/new1/edit",
                    "sheets": [{"properties": {"title": "Data"}}, {"properties": {"title": "Charts"}}],
                },
                None,
            ),
        }
    ).install(monkeypatch)
    added = await sheets_server.add_sheet("sheet1", "Summary")
    assert "Sheet ID: 42" in added
    assert "Snapshot ID" not in added

    created = await sheets_server.create_spreadsheet("Q3 Report", ["Data", "Charts"])
    assert "ID: new1" in created
    assert "Sheets: Data, Charts" in created
    assert get_session_context().get_active_spreadsheet().spreadsheet_id == "new1"


@pytest.mark.asyncio
async def test_create_and_list_snapshots(monkeypatch):
    api = FakeApi(SNAPSHOT_ROUTE).install(monkeypatch)
    assert await sheets_server.list_snapshots() == "No snapshots taken in this session."
    result = await sheets_server.create_snapshot("sheet1", name="Before cleanup")
    assert "Snapshot ID: snap1" in result
    assert api.calls[0][3] == {"name": "Before cleanup"}
    listed = await sheets_server.list_snapshots()
    assert "Snapshots (showing 1):" in listed
    assert "snap1 | Source: sheet1" in listed


@pytest.mark.asyncio
async def test_plan_confirmation_flow():
    steps = [
        {"tool": "sheets_data", "action": "read", "description": "Read raw data"},
        {"tool": "sheets_data", "action": "write", "affected_cell_count": 40, "description": "Write totals"},
        {"tool": "sheets_data", "action": "clear", "affected_cell_count": 200, "description": "Clear scratch"},
    ]
    result = await sheets_server.request_plan_confirmation("Monthly close", steps)
    assert "Requires Confirmation: yes" in result
    assert "3. [sheets_data:clear] Clear scratch (risk: medium, cells: 200)" in result
    plan_id = result.split("Plan ID: ")[1].splitlines()[0]

    assert await sheets_server.respond_to_plan("plan_wrong", True) == "No pending plan with ID plan_wrong."
    approved = await sheets_server.respond_to_plan(plan_id, True)
    assert 'Plan "Monthly close" approved by user.' in approved
    assert "Approval Rate: 100.0%" in approved
    assert get_session_context().get_pending_plan() is None

    stats = await sheets_server.get_confirmation_stats()
    assert "Total: 1" in stats
    assert "Approved: 1" in stats


@pytest.mark.asyncio
async def test_short_plan_needs_no_confirmation():
    result = await sheets_server.request_plan_confirmation(
        "Quick fix", [{"tool": "sheets_data", "action": "write", "affected_cell_count": 2}]
    )
    assert "Requires Confirmation: no" in result
    assert get_session_context().get_pending_plan() is None


@pytest.mark.asyncio
async def test_plan_rejects_unknown_step_fields():
    result = await sheets_server.request_plan_confirmation(
        "Bad", [{"tool": "sheets_data", "action": "write", "cells": 2}]
    )
    assert result.startswith("Error requesting plan confirmation:")


@pytest.mark.asyncio
async def test_record_user_signal_without_preference():
    result = await sheets_server.record_user_signal("Add a chart please")
    assert result == "No confirmation preference detected. Confirmation Level: destructive"


@pytest.mark.asyncio
async def test_get_session_context(monkeypatch):
    FakeApi(
        {("GET", "/spreadsheets/sheet1/values/A1%3AB2"): ({"range": "Sheet1!A1:B2", "values": [["x"]]}, None)}
    ).install(monkeypatch)
    await sheets_server.read_range("sheet1", "A1:B2")
    result = await sheets_server.get_session_context()
    assert "Session Context:" in result
    assert "No spreadsheet currently active." in result
    assert "- sheets_data:read | Read Sheet1!A1:B2" in result
    assert "Confirmation level: destructive" in result


@pytest.mark.asyncio
async def test_run_sheets_action_dispatches(monkeypatch):
    FakeApi(
        {("GET", "/spreadsheets/sheet1/values/A1%3AA2"): ({"range": "Sheet1!A1:A2", "values": [["1"], ["2"]]}, None)}
    ).install(monkeypatch)
    result = await sheets_server.run_sheets_action(
        "sheets_data", "read", {"spreadsheet_id": "sheet1", "range_a1": "A1:A2"}
    )
    assert "Rows (showing 2 of 2):" in result


@pytest.mark.asyncio
async def test_run_sheets_action_unknown_and_bad_arguments():
    unknown = await sheets_server.run_sheets_action("sheets_data", "explode")
    assert unknown.startswith("Unknown action 'sheets_data:explode'.")
    assert "sheets_data:read" in unknown

    bad = await sheets_server.run_sheets_action("sheets_data", "read", {"sheet": "x"})
    assert bad.startswith("Error: invalid arguments for sheets_data:read:")

    empty = await sheets_server.run_sheets_action("", "read")
    assert empty.startswith("Error: invalid request envelope:")
