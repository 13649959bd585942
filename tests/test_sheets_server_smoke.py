import pytest

from gsheets_mcp.mcp_servers import sheets_server


@pytest.mark.asyncio
async def test_sheets_actions_smoke(monkeypatch):
    async def fake_sheets_get(path, params=None):
        if path == "/spreadsheets/sheet1":
            return (
                {
                    "spreadsheetId": "sheet1",
                    "properties": {"title": "Budget"},
                    "sheets": [
                        {"properties": {"sheetId": 0, "title": "Data", "gridProperties": {"rowCount": 5, "columnCount": 2}}}
                    ],
                },
                None,
            )
        if path.startswith("/spreadsheets/sheet1/values/"):
            return {"range": "Data!A1:B2", "values": [["a", "b"], ["c", "d"]]}, None
        return {}, None

    async def fake_sheets_post(path, json_body=None, params=None):
        if path == "/spreadsheets":
            return {"spreadsheetId": "new1", "sheets": [{"properties": {"title": "Sheet1"}}]}, None
        if path == "/spreadsheets/sheet1:batchUpdate":
            return {"replies": [{"addSheet": {"properties": {"sheetId": 9, "title": "Notes"}}}]}, None
        if path.endswith(":append"):
            return {"updates": {"updatedRange": "Data!A3:B3", "updatedRows": 1, "updatedCells": 2}}, None
        if path.endswith(":clear"):
            return {"clearedRange": "Data!A1:B5"}, None
        return {}, None

    async def fake_sheets_put(path, json_body=None, params=None):
        return {"updatedRange": "Data!A1:B1", "updatedRows": 1, "updatedColumns": 2, "updatedCells": 2}, None

    async def fake_drive_get(path, params=None):
        return {"files": [{"id": "sheet1", "name": "Budget"}]}, None

    async def fake_drive_post_json(path, params=None, json_body=None):
        return {"id": "snap1", "name": json_body["name"]}, None

    monkeypatch.setattr(sheets_server, "_sheets_get", fake_sheets_get)
    monkeypatch.setattr(sheets_server, "_sheets_post", fake_sheets_post)
    monkeypatch.setattr(sheets_server, "_sheets_put", fake_sheets_put)
    monkeypatch.setattr(sheets_server, "_drive_get", fake_drive_get)
    monkeypatch.setattr(sheets_server, "_drive_post_json", fake_drive_post_json)

    calls = [
        ("sheets_core", "list", {}),
        ("sheets_core", "get", {"spreadsheet_id": "sheet1"}),
        ("sheets_core", "create", {"title": "New"}),
        ("sheets_core", "get", {"spreadsheet_id": "sheet1"}),
        ("sheets_core", "add_sheet", {"spreadsheet_id": "sheet1", "title": "Notes"}),
        ("sheets_data", "read", {"spreadsheet_id": "sheet1", "range_a1": "Data!A1:B2"}),
        ("sheets_data", "write", {"spreadsheet_id": "sheet1", "range_a1": "Data!A1:B1", "values": [["x", "y"]]}),
        ("sheets_data", "append", {"spreadsheet_id": "sheet1", "range_a1": "Data!A1", "values": [["z", 1]]}),
        ("sheets_data", "clear", {"spreadsheet_id": "sheet1", "range_a1": "Data"}),
        ("sheets_dimensions", "delete_rows", {"spreadsheet_id": "sheet1", "sheet_id": 0, "start_index": 0, "end_index": 2}),
        ("sheets_dimensions", "delete_columns", {"spreadsheet_id": "sheet1", "sheet_id": 0, "start_index": 0, "end_index": 1}),
        ("sheets_core", "delete_sheet", {"spreadsheet_id": "sheet1", "sheet_id": 9, "confirmed": True}),
        ("sheets_history", "snapshot", {"spreadsheet_id": "sheet1"}),
        ("sheets_history", "list", {}),
        ("sheets_confirm", "check", {"tool": "sheets_data", "action": "clear", "affected_cell_count": 200}),
        ("sheets_confirm", "guidance", {}),
        ("sheets_confirm", "stats", {}),
        ("sheets_session", "set_preference", {"level": "destructive"}),
        ("sheets_session", "record_signal", {"message": "always ask me first"}),
        ("sheets_session", "get_context", {}),
    ]

    for tool, action, arguments in calls:
        result = await sheets_server.run_sheets_action(tool, action, arguments)
        assert isinstance(result, str)
        assert result
        assert not result.startswith("Error"), f"{tool}:{action} -> {result}"
        assert not result.startswith("Confirmation required"), f"{tool}:{action} -> {result}"
        assert not result.startswith("Unknown action"), f"{tool}:{action} -> {result}"

    plan = await sheets_server.run_sheets_action(
        "sheets_confirm",
        "request",
        {
            "title": "Rebuild",
            "steps": [
                {"tool": "sheets_data", "action": "clear", "affected_cell_count": 10},
                {"tool": "sheets_data", "action": "write", "affected_cell_count": 10},
            ],
        },
    )
    plan_id = plan.split("Plan ID: ")[1].splitlines()[0]
    declined = await sheets_server.run_sheets_action(
        "sheets_confirm", "respond", {"plan_id": plan_id, "approved": False}
    )
    assert "declined by user" in declined

    assert {f"{tool}:{action}" for tool, action, _ in calls} | {
        "sheets_confirm:request",
        "sheets_confirm:respond",
    } == set(sheets_server.HANDLERS)
