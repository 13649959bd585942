"""Per-session conversational state: preferences, active spreadsheet, history.

A session's confirmation level starts at the configured default and is
changed by explicit user signals ("just do it" -> never, "always ask" ->
always). One SessionContextManager exists per client session; SessionStore
hands them out by session id.
"""

import re
import time
import uuid

from pydantic import BaseModel, Field, ValidationError

from gsheets_mcp.config import load_runtime_settings
from gsheets_mcp.logging_utils import build_logger
from gsheets_mcp.models import (
    ConfirmationStats,
    OperationRecord,
    PendingPlan,
    SessionPreference,
    SpreadsheetContext,
)

logger = build_logger("SheetsMCP.Session")

MAX_RECENT_SPREADSHEETS = 5
MAX_OPERATION_HISTORY = 20
MAX_SHEET_NAMES = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_SUMMARY_LENGTH = 2000

SKIP_CONFIRMATION_PATTERNS = [
    r"\bjust do it\b",
    r"\bdon'?t (?:ask|confirm)\b",
    r"\bdo not (?:ask|confirm)\b",
    r"\bstop (?:asking|confirming)\b",
    r"\bno need to (?:ask|confirm)\b",
    r"\bwithout (?:asking|confirmation)\b",
]
ALWAYS_CONFIRM_PATTERNS = [
    r"\balways (?:ask|confirm)\b",
    r"\bconfirm (?:everything|every change|all changes)\b",
    r"\bask (?:me )?(?:before|first)\b",
]
_REFERENCE_PREFIX = re.compile(r"^(the|my|our)\s+")


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class SessionState(BaseModel):
    active_spreadsheet: SpreadsheetContext | None = None
    recent_spreadsheets: list[SpreadsheetContext] = Field(default_factory=list)
    operation_history: list[OperationRecord] = Field(default_factory=list)
    preferences: SessionPreference = Field(default_factory=SessionPreference)
    pending_plan: PendingPlan | None = None
    confirmation_stats: ConfirmationStats = Field(default_factory=ConfirmationStats)
    started_at: float = Field(default_factory=time.time)
    last_activity_at: float = Field(default_factory=time.time)


def _default_state() -> SessionState:
    settings = load_runtime_settings()
    return SessionState(
        preferences=SessionPreference(confirmation_level=settings.default_confirmation_level)
    )


class SessionContextManager:
    def __init__(self, session_id: str = "default", state: SessionState | None = None):
        self.session_id = session_id
        self.state = state or _default_state()

    def _touch(self) -> None:
        self.state.last_activity_at = time.time()

    # Spreadsheet context

    def set_active_spreadsheet(self, context: SpreadsheetContext) -> None:
        current = self.state.active_spreadsheet
        if current and current.spreadsheet_id != context.spreadsheet_id:
            self._add_to_recent(current)
        self.state.active_spreadsheet = context.model_copy(
            update={
                "sheet_names": context.sheet_names[:MAX_SHEET_NAMES],
                "activated_at": time.time(),
            }
        )
        self._touch()

    def get_active_spreadsheet(self) -> SpreadsheetContext | None:
        return self.state.active_spreadsheet

    def require_active_spreadsheet(self) -> SpreadsheetContext:
        if not self.state.active_spreadsheet:
            raise ValueError(
                "No active spreadsheet. Specify which spreadsheet to work with, "
                "or open one with get_spreadsheet to make it active."
            )
        return self.state.active_spreadsheet

    def _add_to_recent(self, context: SpreadsheetContext) -> None:
        recent = [
            item for item in self.state.recent_spreadsheets if item.spreadsheet_id != context.spreadsheet_id
        ]
        recent.insert(0, context)
        self.state.recent_spreadsheets = recent[:MAX_RECENT_SPREADSHEETS]

    def get_recent_spreadsheets(self) -> list[SpreadsheetContext]:
        return list(self.state.recent_spreadsheets)

    @staticmethod
    def _matches_reference(context: SpreadsheetContext, reference: str) -> bool:
        title = context.title.lower()
        if not title:
            return False
        if reference in title:
            return True
        stripped = _REFERENCE_PREFIX.sub("", reference)
        return bool(stripped) and stripped in title

    def find_spreadsheet_by_reference(self, reference: str) -> SpreadsheetContext | None:
        """Resolves phrases like "the budget" or "my CRM" against known spreadsheets."""
        lowered = reference.strip().lower()
        if not lowered:
            return None
        candidates = []
        if self.state.active_spreadsheet:
            candidates.append(self.state.active_spreadsheet)
        candidates.extend(self.state.recent_spreadsheets)
        for context in candidates:
            if self._matches_reference(context, lowered):
                return context
        return None

    def set_last_range(self, range_a1: str) -> None:
        if self.state.active_spreadsheet:
            self.state.active_spreadsheet.last_range = range_a1
        self._touch()

    # Operation history

    def record_operation(
        self,
        tool: str,
        action: str,
        description: str,
        spreadsheet_id: str | None = None,
        cells_affected: int = 0,
        undoable: bool = False,
        snapshot_id: str | None = None,
    ) -> str:
        record = OperationRecord(
            id=f"op_{uuid.uuid4().hex[:12]}",
            tool=tool,
            action=action,
            description=_truncate(description, MAX_DESCRIPTION_LENGTH),
            spreadsheet_id=spreadsheet_id,
            cells_affected=cells_affected,
            undoable=undoable,
            snapshot_id=snapshot_id,
            timestamp=time.time(),
        )
        self.state.operation_history.insert(0, record)
        del self.state.operation_history[MAX_OPERATION_HISTORY:]
        self._touch()
        return record.id

    def get_last_operation(self) -> OperationRecord | None:
        return self.state.operation_history[0] if self.state.operation_history else None

    def get_last_undoable_operation(self) -> OperationRecord | None:
        return next((op for op in self.state.operation_history if op.undoable), None)

    def get_operation_history(self, limit: int = 10) -> list[OperationRecord]:
        return self.state.operation_history[:limit]

    def find_operation_by_reference(self, reference: str) -> OperationRecord | None:
        lowered = reference.strip().lower()
        if lowered in ("that", "it", "the last", "last"):
            return self.get_last_operation()
        words = [word for word in re.findall(r"\w+", lowered) if word not in ("the", "last")]
        if not words:
            return None
        keyword = words[0]
        for op in self.state.operation_history:
            if keyword in op.action.lower() or keyword in op.tool.lower():
                return op
        return None

    def list_snapshots(self) -> list[OperationRecord]:
        return [op for op in self.state.operation_history if op.snapshot_id]

    # Preferences

    def get_preferences(self) -> SessionPreference:
        return self.state.preferences.model_copy()

    @property
    def confirmation_level(self) -> str:
        return self.state.preferences.confirmation_level

    def update_preferences(self, **updates) -> SessionPreference:
        merged = self.state.preferences.model_dump()
        merged.update(updates)
        self.state.preferences = SessionPreference.model_validate(merged)
        self._touch()
        return self.get_preferences()

    def learn_preference(self, key: str, value: str | None = None) -> None:
        preferences = self.state.preferences
        if key == "skip_confirmation":
            preferences.confirmation_level = "never"
        elif key == "always_confirm":
            preferences.confirmation_level = "always"
        elif key == "default_confirmation":
            preferences.confirmation_level = "destructive"
        elif key == "date_format" and value:
            preferences.date_format = value
        elif key == "currency_format" and value:
            preferences.currency_format = value
        else:
            raise ValueError(f"Unknown preference key '{key}'")
        logger.info("Session %s learned preference %s", self.session_id, key)
        self._touch()

    def apply_user_signal(self, message: str) -> str | None:
        """Learns the confirmation level from a user's phrasing.

        Returns the new level, or None when the message carries no signal.
        """
        lowered = (message or "").lower().replace("’", "'")
        if any(re.search(pattern, lowered) for pattern in SKIP_CONFIRMATION_PATTERNS):
            self.learn_preference("skip_confirmation")
            return "never"
        if any(re.search(pattern, lowered) for pattern in ALWAYS_CONFIRM_PATTERNS):
            self.learn_preference("always_confirm")
            return "always"
        return None

    # Pending plans and confirmation responses

    def set_pending_plan(self, plan: PendingPlan) -> None:
        self.state.pending_plan = plan
        self._touch()

    def get_pending_plan(self) -> PendingPlan | None:
        return self.state.pending_plan

    def clear_pending_plan(self) -> None:
        self.state.pending_plan = None
        self._touch()

    def record_confirmation_response(self, approved: bool) -> ConfirmationStats:
        stats = self.state.confirmation_stats
        stats.total += 1
        if approved:
            stats.approved += 1
        else:
            stats.declined += 1
        stats.approval_rate = round(100.0 * stats.approved / stats.total, 1)
        self._touch()
        return stats.model_copy()

    def get_confirmation_stats(self) -> ConfirmationStats:
        return self.state.confirmation_stats.model_copy()

    # State management

    def reset(self) -> None:
        self.state = _default_state()

    def export_state(self) -> str:
        return self.state.model_dump_json()

    def import_state(self, raw_json: str) -> bool:
        try:
            self.state = SessionState.model_validate_json(raw_json)
        except ValidationError as exc:
            logger.error("Failed to import session state for %s: %s", self.session_id, exc)
            return False
        return True

    def get_context_summary(self) -> str:
        parts = []
        active = self.state.active_spreadsheet
        if active:
            shown = ", ".join(active.sheet_names[:3])
            more = "..." if len(active.sheet_names) > 3 else ""
            parts.append(
                f'Currently working with: "{_truncate(active.title or active.spreadsheet_id, 100)}" '
                f"({len(active.sheet_names)} sheets: {shown}{more})"
            )
            if active.last_range:
                parts.append(f"Last accessed: {_truncate(active.last_range, 100)}")
        else:
            parts.append("No spreadsheet currently active.")

        last_op = self.get_last_operation()
        if last_op:
            parts.append(f"Last operation: {_truncate(last_op.description, 200)}")

        pending = self.state.pending_plan
        if pending:
            parts.append(
                f"Pending plan: {_truncate(pending.title, 100)} "
                f"({pending.analysis.step_count} steps, id {pending.plan_id})"
            )

        parts.append(f"Confirmation level: {self.confirmation_level}")
        return _truncate("\n".join(parts), MAX_SUMMARY_LENGTH)

    def suggest_next_actions(self) -> list[str]:
        suggestions = []
        if not self.state.active_spreadsheet:
            suggestions.append("Open or create a spreadsheet to get started")
            if self.state.recent_spreadsheets:
                suggestions.append(f"Switch to recent: {self.state.recent_spreadsheets[0].title}")
            return suggestions

        last_op = self.get_last_operation()
        if last_op and last_op.action == "read":
            suggestions.append("Analyze the data for quality issues")
            suggestions.append("Create a chart from this data")
        elif last_op and last_op.action in ("write", "append"):
            suggestions.append("Format the cells you just updated")
            suggestions.append("Verify the changes look correct")
        elif last_op and last_op.snapshot_id:
            suggestions.append(f"Snapshot {last_op.snapshot_id} is available if the change must be undone")
        return suggestions


class SessionStore:
    def __init__(self):
        self._sessions: dict[str, SessionContextManager] = {}

    @staticmethod
    def _key(session_id: str | None) -> str:
        return (session_id or "default").strip() or "default"

    def get(self, session_id: str = "default") -> SessionContextManager:
        key = self._key(session_id)
        session = self._sessions.get(key)
        if session is None:
            session = SessionContextManager(session_id=key)
            self._sessions[key] = session
            logger.debug("Created session %s", key)
        return session

    def reset(self, session_id: str | None = None) -> None:
        if session_id is None:
            self._sessions.clear()
        else:
            self._sessions.pop(self._key(session_id), None)

    def prune_idle(self, max_idle_seconds: float | None = None, now: float | None = None) -> int:
        if max_idle_seconds is None:
            max_idle_seconds = load_runtime_settings().session_idle_seconds
        current = time.time() if now is None else now
        expired = [
            key
            for key, session in self._sessions.items()
            if current - session.state.last_activity_at > max_idle_seconds
        ]
        for key in expired:
            del self._sessions[key]
        if expired:
            logger.info("Pruned %d idle sessions", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


_STORE = SessionStore()


def get_session_context(session_id: str = "default") -> SessionContextManager:
    return _STORE.get(session_id)


def get_session_store() -> SessionStore:
    return _STORE


def reset_sessions() -> None:
    _STORE.reset()
