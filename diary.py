#!/usr/bin/env python3
"""Diary — a one-entry-per-day journal editor for the terminal."""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import date, timedelta
from difflib import SequenceMatcher
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, NamedTuple, Optional

from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.buffer import Buffer
from prompt_toolkit.document import Document
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout.containers import (
    DynamicContainer, Float, FloatContainer, HSplit, VSplit, Window,
    WindowAlign,
)
from prompt_toolkit.layout.controls import BufferControl, FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension as D
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.selection import SelectionState
from prompt_toolkit.styles import Style as PtStyle
from prompt_toolkit.widgets import Button, Dialog, Label, TextArea

logger = logging.getLogger(__name__)

DEFAULT_DIARY_DIR = Path("diary")
ENTRY_SUFFIX = ".txt"
DISPLAY_DATE_FORMAT = "%a, %d %b %Y"
EDITOR_BUFFER = "editor"

# ════════════════════════════════════════════════════════════════════════
#  Data Models
# ════════════════════════════════════════════════════════════════════════


@dataclass
class Entry:
    """The text written for one calendar date."""
    date: date
    text: str = ""


class Match(NamedTuple):
    """Character offsets of a search hit, end exclusive."""
    start: int
    end: int


class Choice(Enum):
    """Answer to the unsaved-changes prompt."""
    SAVE = "save"
    DISCARD = "discard"
    CANCEL = "cancel"


class Decision(Enum):
    PROCEED = "proceed"
    CANCELLED = "cancelled"


class DirtyTracker:
    """Remembers the last saved text and whether the editor drifted from it."""

    def __init__(self, saved_text: str = ""):
        self.saved_text = saved_text
        self.dirty = False

    def mark_dirty(self) -> None:
        self.dirty = True

    def mark_clean(self, snapshot: str) -> None:
        self.dirty = False
        self.saved_text = snapshot

    def is_dirty(self) -> bool:
        return self.dirty

    def update(self, text: str) -> None:
        """Re-evaluate after an edit; typing back to the saved text clears it."""
        if text != self.saved_text:
            self.mark_dirty()
        else:
            self.dirty = False


@dataclass
class EditorSession:
    """The entry currently open in the editor."""
    date: date
    text: str = ""
    tracker: DirtyTracker = field(default_factory=DirtyTracker)

    @property
    def dirty(self) -> bool:
        return self.tracker.is_dirty()

    def edit(self, text: str) -> None:
        self.text = text
        self.tracker.update(text)

    def replace(self, day: date, text: str) -> None:
        """Switch to ``day`` showing ``text`` as its clean baseline."""
        self.date = day
        self.text = text
        self.tracker.mark_clean(text)


# ════════════════════════════════════════════════════════════════════════
#  Storage
# ════════════════════════════════════════════════════════════════════════


class StorageError(OSError):
    """A diary file could not be read or written."""

    def __init__(self, action: str, path: Path, reason: str):
        super().__init__(f"Failed to {action} {path.name}: {reason}")
        self.action = action
        self.path = path
        self.reason = reason


class DiaryStorage:
    """One plain-text UTF-8 file per date, named ``YYYY-MM-DD.txt``."""

    def __init__(self, diary_dir: Path):
        self.diary_dir = Path(diary_dir)

    def path_for(self, day: date) -> Path:
        return self.diary_dir / f"{day.isoformat()}{ENTRY_SUFFIX}"

    def exists(self, day: date) -> bool:
        return self.path_for(day).is_file()

    def load(self, day: date) -> str:
        """Return the entry text, or "" when nothing was written that day."""
        path = self.path_for(day)
        try:
            # newline="" keeps \r\n intact so the text round-trips exactly
            with open(path, encoding="utf-8", newline="") as f:
                return f.read()
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("could not load %s: %s", path, exc)
            raise StorageError("load", path, str(exc)) from exc

    def read_entry(self, day: date) -> Entry:
        return Entry(date=day, text=self.load(day))

    def save(self, day: date, text: str) -> Path:
        """Replace the entry for ``day`` with ``text`` via temp file + rename."""
        path = self.path_for(day)
        try:
            self.diary_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{path.stem}.", suffix=".tmp", dir=self.diary_dir,
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                    f.write(text)
                os.replace(tmp_name, path)
            except Exception:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise
        except (OSError, UnicodeEncodeError) as exc:
            logger.warning("could not save %s: %s", path, exc)
            raise StorageError("save", path, str(exc)) from exc
        logger.debug("saved %s (%d chars)", path, len(text))
        return path

    def list_dates(self) -> list[date]:
        """Dates that have an entry file, newest first."""
        if not self.diary_dir.is_dir():
            return []
        dates = []
        for p in self.diary_dir.glob(f"*{ENTRY_SUFFIX}"):
            try:
                day = date.fromisoformat(p.stem)
            except ValueError:
                continue
            # fromisoformat also takes compact forms like 20240101
            if self.path_for(day).name == p.name:
                dates.append(day)
        return sorted(dates, reverse=True)


# ════════════════════════════════════════════════════════════════════════
#  Unsaved-changes gate and navigation
# ════════════════════════════════════════════════════════════════════════


AskSaveChanges = Callable[[], Awaitable[Optional[Choice]]]
ShowError = Callable[[str, str], Awaitable[None]]


async def confirm_discard(
    tracker: DirtyTracker,
    ask: AskSaveChanges,
    save: Callable[[], Awaitable[bool]],
) -> Decision:
    """Decide whether an action may throw away the editor's current text.

    Clean editors proceed without asking. Dirty ones wait on ``ask``:
    Save proceeds only if ``save`` succeeds, Discard proceeds, Cancel
    (or a dismissed prompt) stops the caller.
    """
    if not tracker.is_dirty():
        return Decision.PROCEED
    choice = await ask()
    if choice is None or choice is Choice.CANCEL:
        return Decision.CANCELLED
    if choice is Choice.SAVE and not await save():
        return Decision.CANCELLED
    return Decision.PROCEED


class Navigator:
    """Moves the session between dates, guarding unsaved text."""

    def __init__(
        self,
        storage: DiaryStorage,
        session: EditorSession,
        ask: AskSaveChanges,
        show_error: ShowError,
        notify: Optional[Callable[[str], None]] = None,
    ):
        self.storage = storage
        self.session = session
        self.ask = ask
        self.show_error = show_error
        self.notify = notify or (lambda message: None)

    async def _may_leave(self) -> bool:
        decision = await confirm_discard(self.session.tracker, self.ask, self.save)
        return decision is Decision.PROCEED

    def load_date(self, day: date) -> Optional[StorageError]:
        """Open ``day``; on a read failure open it empty and return the error."""
        logger.debug("opening %s", day)
        try:
            entry = self.storage.read_entry(day)
        except StorageError as exc:
            self.session.replace(day, "")
            return exc
        self.session.replace(entry.date, entry.text)
        return None

    async def new_entry(self) -> bool:
        if not await self._may_leave():
            return False
        self.session.replace(self.session.date, "")
        return True

    async def shift_day(self, delta: int) -> bool:
        try:
            target = self.session.date + timedelta(days=delta)
        except OverflowError as exc:
            await self.show_error("Cannot change date", str(exc))
            return False
        return await self.go_to_date(target)

    async def go_to_date(self, day: date) -> bool:
        if not await self._may_leave():
            return False
        error = self.load_date(day)
        if error is not None:
            await self.show_error("Failed to load", error.reason)
        return True

    async def today(self) -> bool:
        return await self.go_to_date(date.today())

    async def save(self) -> bool:
        text = self.session.text
        try:
            path = self.storage.save(self.session.date, text)
        except StorageError as exc:
            await self.show_error("Failed to save", exc.reason)
            return False
        self.session.tracker.mark_clean(text)
        self.notify(f"Saved: {path.name}")
        return True

    async def close(self) -> bool:
        """True when the application may exit."""
        return await self._may_leave()


# ════════════════════════════════════════════════════════════════════════
#  Search
# ════════════════════════════════════════════════════════════════════════

_ASCII_FOLD = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz",
)


def _fold(s: str) -> str:
    # ASCII only: folded text keeps the same length, so offsets line up.
    return s.translate(_ASCII_FOLD)


def find_next(text: str, query: str, from_offset: int) -> Optional[Match]:
    """First match at or after ``from_offset``, wrapping to the start once."""
    if not query or not text:
        return None
    lt, lq = _fold(text), _fold(query)
    start = min(max(from_offset, 0), len(text))
    idx = lt.find(lq, start)
    if idx == -1 and start != 0:
        idx = lt.find(lq)
    if idx == -1:
        return None
    return Match(idx, idx + len(query))


def find_previous(text: str, query: str, from_offset: int) -> Optional[Match]:
    """Last match starting at or before ``from_offset - 1``, wrapping to the end once."""
    if not query or not text:
        return None
    lt, lq = _fold(text), _fold(query)
    start = min(max(0, from_offset - 1), len(text))
    idx = lt.rfind(lq, 0, start + len(lq))
    if idx == -1 and start != len(text):
        idx = lt.rfind(lq)
    if idx == -1:
        return None
    return Match(idx, idx + len(query))


def count_matches(text: str, query: str) -> int:
    if not query:
        return 0
    lt, lq = _fold(text), _fold(query)
    count = 0
    pos = lt.find(lq)
    while pos != -1:
        count += 1
        pos = lt.find(lq, pos + 1)
    return count


@dataclass
class SearchCursor:
    """Last query and where the next search starts."""
    query: str = ""
    offset: int = 0

    def next(self, text: str) -> Optional[Match]:
        match = find_next(text, self.query, self.offset)
        if match:
            self.offset = match.end
        return match

    def previous(self, text: str) -> Optional[Match]:
        match = find_previous(text, self.query, self.offset)
        if match:
            self.offset = match.start
        return match


# ════════════════════════════════════════════════════════════════════════
#  Helpers
# ════════════════════════════════════════════════════════════════════════


def word_count(text: str) -> int:
    return len(text.split())


def char_count(text: str) -> int:
    return len(text)


def format_date(day: date) -> str:
    return day.strftime(DISPLAY_DATE_FORMAT)


def status_line(session: EditorSession, notification: str = "") -> str:
    """Status bar text: saved marker, date, and word/char counts."""
    marker = "● Unsaved" if session.dirty else "✔ Saved"
    text = session.text
    line = "  |  ".join([
        marker,
        format_date(session.date),
        f"{word_count(text)} words, {char_count(text)} chars",
    ])
    if notification:
        line += f"   |   {notification}"
    return line


def parse_date_input(raw: str) -> date:
    """Parse a typed ``YYYY-MM-DD`` date; raises ValueError otherwise."""
    return date.fromisoformat(raw.strip())


def fuzzy_rank(items, query, key, cutoff=30.0):
    """Substring hits first, then close SequenceMatcher hits above ``cutoff``."""
    if not query:
        return list(items)
    q = query.lower()
    scored = []
    for item in items:
        hay = key(item).lower()
        if q in hay:
            scored.append((100.0, item))
        else:
            ratio = SequenceMatcher(None, q, hay).ratio() * 100
            if ratio > cutoff:
                scored.append((ratio, item))
    scored.sort(key=lambda x: x[0], reverse=True)
    return [item for _, item in scored]


def fuzzy_filter_dates(dates: list[date], query: str) -> list[date]:
    return fuzzy_rank(
        dates, query, lambda d: f"{d.isoformat()} {format_date(d)}", cutoff=70.0,
    )


_folder_openers: list[subprocess.Popen] = []


def open_diary_folder(path: Path) -> None:
    """Show the diary directory in the platform's file manager."""
    path.mkdir(parents=True, exist_ok=True)
    if sys.platform == "win32":
        os.startfile(str(path))
        return
    # poll() reaps openers that have already exited.
    _folder_openers[:] = [p for p in _folder_openers if p.poll() is None]
    opener = "open" if sys.platform == "darwin" else "xdg-open"
    _folder_openers.append(subprocess.Popen(
        [opener, str(path)],
        stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
    ))


# ════════════════════════════════════════════════════════════════════════
#  SelectableList Widget
# ════════════════════════════════════════════════════════════════════════


class SelectableList:
    """Navigable list widget. Items are (id, label) pairs."""

    def __init__(self, on_select=None, height=None):
        self.items = []
        self.selected_index = 0
        self.on_select = on_select
        self._kb = KeyBindings()
        sl = self

        @self._kb.add("up")
        def _up(event):
            if sl.selected_index > 0:
                sl.selected_index -= 1

        @self._kb.add("down")
        def _down(event):
            if sl.selected_index < len(sl.items) - 1:
                sl.selected_index += 1

        @self._kb.add("enter")
        def _enter(event):
            if sl.items and sl.on_select:
                sl.on_select(sl.items[sl.selected_index][0])

        self.control = FormattedTextControl(
            self._get_text, focusable=True, key_bindings=self._kb,
        )
        self.window = Window(
            content=self.control, style="class:select-list", wrap_lines=False,
            height=height,
        )

    def _get_text(self):
        if not self.items:
            return [("class:select-list.empty", "  (none)\n")]
        result = []
        for i, (_, label) in enumerate(self.items):
            if i == self.selected_index:
                result.append(("[SetCursorPosition]", ""))
                result.append(("class:select-list.selected", f"  {label}\n"))
            else:
                result.append(("", f"  {label}\n"))
        return result

    def set_items(self, items):
        self.items = items
        if self.selected_index >= len(items):
            self.selected_index = max(0, len(items) - 1)

    def __pt_container__(self):
        return self.window


# ════════════════════════════════════════════════════════════════════════
#  Application State
# ════════════════════════════════════════════════════════════════════════


class AppState:
    """Mutable UI state around the editor session."""

    def __init__(self, storage, session):
        self.storage = storage
        self.session = session
        self.notification = ""
        self.notification_task = None
        self.root_container = None
        # Open dialog objects, innermost last; the floats only hold their containers.
        self.dialogs = []
        self.show_keybindings = False
        self.show_find_panel = False
        self.find_panel = None
        self.search = SearchCursor()


def show_notification(state, message, duration=3.0):
    """Show a notification in the status bar, auto-clearing after duration."""
    state.notification = message
    get_app().invalidate()
    if state.notification_task:
        state.notification_task.cancel()

    async def _clear():
        await asyncio.sleep(duration)
        if state.notification == message:
            state.notification = ""
            get_app().invalidate()

    state.notification_task = asyncio.ensure_future(_clear())


async def show_dialog_as_float(state, dialog):
    """Show a modal dialog as a float and await its result."""
    float_ = Float(content=dialog, transparent=False)
    state.root_container.floats.append(float_)
    state.dialogs.append(dialog)
    app = get_app()
    focused_before = app.layout.current_window
    app.layout.focus(dialog)
    try:
        result = await dialog.future
    finally:
        state.dialogs.remove(dialog)
    if float_ in state.root_container.floats:
        state.root_container.floats.remove(float_)
    try:
        app.layout.focus(focused_before)
    except ValueError:
        pass
    app.invalidate()
    return result


# ════════════════════════════════════════════════════════════════════════
#  Dialogs
# ════════════════════════════════════════════════════════════════════════


class SaveChangesDialog:
    """Save / Discard / Cancel prompt with y/n/c key bindings."""

    def __init__(self, question="You have unsaved changes.\n  Save before continuing?"):
        self.future = asyncio.Future()
        kb = KeyBindings()

        @kb.add("y")
        def _save(event):
            self._answer(Choice.SAVE)

        @kb.add("n")
        def _discard(event):
            self._answer(Choice.DISCARD)

        @kb.add("c")
        def _cancel(event):
            self.cancel()

        self._control = FormattedTextControl(
            [("", f"\n  {question}\n")],
            focusable=True,
            key_bindings=kb,
        )
        self.dialog = Dialog(
            title="Unsaved Changes",
            body=Window(content=self._control, height=4),
            buttons=[
                Button(text="(y) Save", handler=lambda: self._answer(Choice.SAVE)),
                Button(text="(n) Discard", handler=lambda: self._answer(Choice.DISCARD)),
                Button(text="(c) Cancel", handler=self.cancel),
            ],
            modal=True,
            width=D(preferred=56),
        )

    def _answer(self, choice):
        if not self.future.done():
            self.future.set_result(choice)

    def cancel(self):
        self._answer(Choice.CANCEL)

    def __pt_container__(self):
        return self.dialog


class MessageDialog:
    """Blocking message with a single OK button."""

    def __init__(self, title, text):
        self.future = asyncio.Future()
        self.dialog = Dialog(
            title=title,
            body=Label(text=text),
            buttons=[Button(text="OK", handler=self.cancel)],
            modal=True,
            width=D(preferred=50, max=80),
        )

    def cancel(self):
        if not self.future.done():
            self.future.set_result(None)

    def __pt_container__(self):
        return self.dialog


class DatePickerDialog:
    """Type a YYYY-MM-DD date, or pick one of the days that have entries."""

    def __init__(self, initial, dates):
        self.future = asyncio.Future()
        self.dates = dates
        self.text_area = TextArea(
            text=initial.isoformat(), multiline=False, width=D(preferred=40),
        )
        self.text_area.buffer.cursor_position = len(self.text_area.text)

        def accept(_buf=None):
            self._finish(self.text_area.text)
            return True

        self.text_area.buffer.accept_handler = accept
        self.text_area.buffer.on_text_changed += self._on_text_changed

        input_kb = KeyBindings()

        @input_kb.add("down")
        def _down(event):
            if self.list.items:
                event.app.layout.focus(self.list.window)

        self.text_area.control.key_bindings = input_kb

        self.list = SelectableList(on_select=self._finish, height=D(max=8))
        self._update_list("")

        self.dialog = Dialog(
            title="Go to date",
            body=HSplit([
                Label(text="Date (YYYY-MM-DD):"),
                self.text_area,
                Window(height=1),
                Label(text="Entries:"),
                self.list,
            ]),
            buttons=[
                Button(text="Go", handler=accept),
                Button(text="(esc) Cancel", handler=self.cancel),
            ],
            modal=True,
            width=D(preferred=50),
        )

    def _on_text_changed(self, buf):
        self._update_list(buf.text)

    def _update_list(self, query):
        # A complete date is not a filter; list every entry.
        try:
            parse_date_input(query)
            query = ""
        except ValueError:
            pass
        self.list.set_items([
            (d.isoformat(), f"{d.isoformat()}  {format_date(d)}")
            for d in fuzzy_filter_dates(self.dates, query)
        ])

    def _finish(self, raw):
        if not self.future.done():
            self.future.set_result(raw)

    def cancel(self):
        if not self.future.done():
            self.future.set_result(None)

    def __pt_container__(self):
        return self.dialog


class CommandPaletteDialog:
    """Command palette with fuzzy search. Commands are (name, hint, action)."""

    def __init__(self, commands):
        self.future = asyncio.Future()
        self.all_commands = commands
        self.filtered = list(commands)
        self.search_buf = Buffer(multiline=False)
        self.search_buf.on_text_changed += lambda buf: self._update_results(buf.text)
        search_kb = KeyBindings()

        @search_kb.add("down")
        def _down(event):
            event.app.layout.focus(self.results.window)

        @search_kb.add("enter")
        def _enter(event):
            if self.filtered:
                idx = min(self.results.selected_index, len(self.filtered) - 1)
                self._choose(idx)

        self.search_window = Window(
            content=BufferControl(buffer=self.search_buf, key_bindings=search_kb),
            height=1, style="class:input",
        )
        self.results = SelectableList(on_select=lambda item_id: self._choose(int(item_id)))

        self._update_results("")
        self.dialog = Dialog(
            title="Commands",
            body=HSplit([self.search_window, self.results], padding=0),
            buttons=[Button(text="Cancel", handler=self.cancel)],
            modal=True,
            width=D(preferred=60, max=80),
        )

    def _update_results(self, query):
        self.filtered = fuzzy_rank(self.all_commands, query, lambda cmd: cmd[0])
        self.results.set_items([
            (str(i), f"{name:<24}{hint}")
            for i, (name, hint, _) in enumerate(self.filtered)
        ])
        self.results.selected_index = 0

    def _choose(self, idx):
        if idx < len(self.filtered) and not self.future.done():
            self.future.set_result(self.filtered[idx][2])

    def cancel(self):
        if not self.future.done():
            self.future.set_result(None)

    def __pt_container__(self):
        return self.dialog


class FindPanel:
    """Side panel that steps through case-insensitive matches in the editor."""

    def __init__(self, editor_buf, cursor, editor_area=None):
        self.editor_buf = editor_buf
        self.cursor = cursor
        self.editor_area = editor_area
        self.status_text = ""

        self.search_buf = Buffer(multiline=False, name="find-search")
        if cursor.query:
            self.search_buf.set_document(
                Document(cursor.query, len(cursor.query)), bypass_readonly=True,
            )
        self.search_buf.on_text_changed += self._on_changed

        search_kb = KeyBindings()

        @search_kb.add("enter")
        def _search_enter(event):
            self.find(1)
            if self.editor_area is not None:
                get_app().layout.focus(self.editor_area)

        self.search_window = Window(
            content=BufferControl(buffer=self.search_buf, key_bindings=search_kb),
            height=1, style="class:input",
        )

        def get_hints():
            return [
                ("class:accent bold", " ret"), ("", "  Find next\n"),
                ("class:accent bold", "  ^k"), ("", "  Next match\n"),
                ("class:accent bold", "  ^j"), ("", "  Previous match\n"),
                ("class:accent bold", "  ^f"), ("", "  Shift panel focus\n"),
                ("class:accent bold", " esc"), ("", "  Close\n"),
            ]

        self.container = HSplit([
            Window(FormattedTextControl(
                [("class:accent bold", " Find\n")],
            ), height=1),
            Window(height=1, char="─", style="class:hint"),
            Label(text=" Find:"),
            self.search_window,
            Window(
                FormattedTextControl(lambda: [("class:hint", self.status_text)]),
                height=1,
            ),
            Window(height=1),
            Window(FormattedTextControl(get_hints), height=5),
        ], width=28, style="class:find-panel")

    def _refresh_status(self):
        query = self.search_buf.text
        n = count_matches(self.editor_buf.text, query)
        if not query:
            self.status_text = ""
        elif n:
            self.status_text = f" {n} match{'es' if n != 1 else ''}"
        else:
            self.status_text = " No matches"

    def _on_changed(self, buf):
        self.cursor.query = buf.text
        self._refresh_status()
        get_app().invalidate()

    def _selection_bounds(self):
        buf = self.editor_buf
        pos = buf.cursor_position
        if buf.selection_state:
            other = buf.selection_state.original_cursor_position
            return min(pos, other), max(pos, other)
        return pos, pos

    def find(self, direction):
        """Select the next (1) or previous (-1) match; False when there is none."""
        self.cursor.query = self.search_buf.text
        text = self.editor_buf.text
        low, high = self._selection_bounds()
        if direction > 0:
            self.cursor.offset = high
            match = self.cursor.next(text)
        else:
            self.cursor.offset = low
            match = self.cursor.previous(text)
        self._refresh_status()
        if match is None:
            get_app().invalidate()
            return False
        # Anchor on the far side so the caret lands where the search continues.
        anchor, caret = (match.start, match.end) if direction > 0 else (match.end, match.start)
        self.editor_buf.exit_selection()
        self.editor_buf.cursor_position = caret
        self.editor_buf.selection_state = SelectionState(anchor)
        get_app().invalidate()
        return True

    def is_focused(self):
        return get_app().layout.current_window is self.search_window

    def __pt_container__(self):
        return self.container


# ════════════════════════════════════════════════════════════════════════
#  Application
# ════════════════════════════════════════════════════════════════════════


_KB_SECTIONS = [
    [("^s", "Save"), ("^n", "New entry"), ("^q", "Quit")],
    [("^b", "Previous day"), ("^d", "Next day"),
     ("^t", "Today"), ("^g", "Go to date")],
    [("^f", "Find"), ("^w", "Word count"), ("^o", "Open folder"),
     ("^p", "Commands")],
    [("^z", "Undo"), ("^y", "Redo"), ("f1", "Keybindings")],
]


def create_app(storage, start_date=None):
    """Build and return the prompt_toolkit Application."""
    start_date = start_date or date.today()
    session = EditorSession(start_date)
    state = AppState(storage, session)

    # ── Editor widgets ───────────────────────────────────────────────

    editor_area = TextArea(
        text="",
        multiline=True,
        wrap_lines=True,
        scrollbar=False,
        style="class:editor",
        focus_on_click=True,
    )
    editor_area.buffer.name = EDITOR_BUFFER
    editor_area.buffer.on_text_changed += lambda buf: session.edit(buf.text)

    def sync_editor():
        """Show the session's text; a fresh day starts with empty undo history."""
        editor_area.buffer.reset(Document(session.text, 0))
        if state.find_panel is not None:
            state.find_panel._refresh_status()
        get_app().invalidate()

    # ── Ports handed to the navigator ────────────────────────────────

    async def ask_save_changes():
        return await show_dialog_as_float(state, SaveChangesDialog())

    async def show_error(title, message):
        await show_dialog_as_float(state, MessageDialog(title, message))

    navigator = Navigator(
        storage, session, ask_save_changes, show_error,
        notify=lambda message: show_notification(state, message),
    )

    startup_error = navigator.load_date(start_date)
    editor_area.buffer.reset(Document(session.text, 0))

    # ── Actions ──────────────────────────────────────────────────────

    def navigate(operation, *args):
        async def _do():
            if await operation(*args):
                sync_editor()

        asyncio.ensure_future(_do())

    def do_save():
        asyncio.ensure_future(navigator.save())

    def do_quit():
        async def _do():
            if await navigator.close():
                get_app().exit()

        asyncio.ensure_future(_do())

    def do_go_to_date():
        async def _do():
            try:
                dates = state.storage.list_dates()
            except OSError as exc:
                await show_error("Cannot list entries", str(exc))
                dates = []
            dlg = DatePickerDialog(session.date, dates)
            raw = await show_dialog_as_float(state, dlg)
            if raw is None:
                return
            try:
                target = parse_date_input(raw)
            except ValueError:
                show_notification(state, f"Invalid date: {raw.strip()}")
                return
            if await navigator.go_to_date(target):
                sync_editor()

        asyncio.ensure_future(_do())

    def do_word_count():
        text = editor_area.text
        asyncio.ensure_future(show_dialog_as_float(state, MessageDialog(
            "Word Count",
            f"Words: {word_count(text)}\nCharacters: {char_count(text)}",
        )))

    def do_open_folder():
        try:
            open_diary_folder(state.storage.diary_dir)
        except OSError as exc:
            logger.warning("could not open %s: %s", state.storage.diary_dir, exc)
            asyncio.ensure_future(show_error("Cannot open folder", str(exc)))

    def toggle_keybindings():
        state.show_keybindings = not state.show_keybindings
        get_app().invalidate()

    def open_find_panel():
        if not state.show_find_panel or state.find_panel is None:
            state.find_panel = FindPanel(
                editor_area.buffer, state.search, editor_area=editor_area)
            state.show_find_panel = True
        get_app().invalidate()
        try:
            get_app().layout.focus(state.find_panel.search_window)
        except ValueError:
            pass

    def close_find_panel():
        state.show_find_panel = False
        get_app().layout.focus(editor_area)
        get_app().invalidate()

    # ── Layout ───────────────────────────────────────────────────────

    header = VSplit([
        Window(FormattedTextControl([("class:title", " Personal Diary")]),
               height=1),
        Window(FormattedTextControl(
            lambda: [("class:accent", format_date(session.date)),
                     ("class:hint", "   ^p Commands ")]),
            height=1, align=WindowAlign.RIGHT),
    ], style="class:header")

    status_bar = Window(
        FormattedTextControl(
            lambda: [("class:status", " " + status_line(session, state.notification))]),
        height=1, style="class:status",
    )

    def get_keybindings_text():
        result = []
        for i, section in enumerate(_KB_SECTIONS):
            if i > 0:
                result.append(("", "\n"))
            for key, desc in section:
                result.append(("class:accent bold", f" {key:>4}"))
                result.append(("", f"  {desc}\n"))
        return result

    def get_editor_body():
        parts = []
        if state.show_find_panel and state.find_panel:
            parts.append(state.find_panel)
            parts.append(Window(width=1, char="│", style="class:hint"))
        parts.append(editor_area)
        if state.show_keybindings:
            parts.append(Window(width=1, char="│", style="class:hint"))
            parts.append(Window(
                FormattedTextControl(get_keybindings_text),
                width=22, style="class:keybindings-panel",
            ))
        return VSplit(parts)

    root = FloatContainer(
        content=HSplit([
            header,
            Window(height=1, char="─", style="class:hint"),
            DynamicContainer(get_editor_body),
            status_bar,
        ]),
        floats=[],
    )
    state.root_container = root

    # ── Key bindings ─────────────────────────────────────────────────

    kb = KeyBindings()

    no_float = Condition(lambda: len(state.root_container.floats) == 0)
    find_panel_open = Condition(
        lambda: state.show_find_panel and state.find_panel is not None)

    @kb.add("escape", eager=True)
    def _(event):
        if state.dialogs:
            state.dialogs[-1].cancel()
        elif state.show_find_panel:
            close_find_panel()

    @kb.add("c-q", filter=no_float)
    def _(event):
        do_quit()

    @kb.add("c-s", filter=no_float)
    def _(event):
        do_save()

    @kb.add("c-n", filter=no_float)
    def _(event):
        navigate(navigator.new_entry)

    @kb.add("c-b", filter=no_float)
    @kb.add("c-pageup", filter=no_float)
    def _(event):
        navigate(navigator.shift_day, -1)

    @kb.add("c-d", filter=no_float)
    @kb.add("c-pagedown", filter=no_float)
    def _(event):
        navigate(navigator.shift_day, 1)

    @kb.add("c-t", filter=no_float)
    def _(event):
        navigate(navigator.today)

    @kb.add("c-g", filter=no_float)
    def _(event):
        do_go_to_date()

    @kb.add("c-w", filter=no_float)
    def _(event):
        do_word_count()

    @kb.add("c-o", filter=no_float)
    def _(event):
        do_open_folder()

    @kb.add("f1", filter=no_float)
    def _(event):
        toggle_keybindings()

    @kb.add("c-z", filter=no_float)
    def _(event):
        editor_area.buffer.undo()

    @kb.add("c-y", filter=no_float)
    def _(event):
        editor_area.buffer.redo()

    @kb.add("c-f", filter=no_float)
    def _(event):
        if state.show_find_panel and state.find_panel:
            if state.find_panel.is_focused():
                event.app.layout.focus(editor_area)
            else:
                event.app.layout.focus(state.find_panel.search_window)
        else:
            open_find_panel()

    @kb.add("c-k", filter=no_float & find_panel_open)
    def _(event):
        state.find_panel.find(1)

    @kb.add("c-j", filter=no_float & find_panel_open)
    def _(event):
        state.find_panel.find(-1)

    @kb.add("c-p", filter=no_float)
    def _(event):
        cmds = [
            ("New entry", "^N", lambda: navigate(navigator.new_entry)),
            ("Save", "^S", do_save),
            ("Previous day", "^B", lambda: navigate(navigator.shift_day, -1)),
            ("Next day", "^D", lambda: navigate(navigator.shift_day, 1)),
            ("Today", "^T", lambda: navigate(navigator.today)),
            ("Go to date", "^G", do_go_to_date),
            ("Find", "^F", open_find_panel),
            ("Word count", "^W", do_word_count),
            ("Open diary folder", "^O", do_open_folder),
            ("Keybindings", "F1", toggle_keybindings),
            ("Quit", "^Q", do_quit),
        ]

        async def _do():
            action = await show_dialog_as_float(state, CommandPaletteDialog(cmds))
            if action is not None:
                action()

        asyncio.ensure_future(_do())

    # ── Style ────────────────────────────────────────────────────────

    style = PtStyle.from_dict({
        "": "#e0e0e0 bg:#2a2a2a",
        "header": "bg:#2a2a2a",
        "title": "#e0e0e0 bold",
        "status": "#8a8a8a bg:#333333",
        "hint": "#777777",
        "accent": "#e0af68",
        "input": "bg:#333333 #e0e0e0",
        "editor": "",
        "select-list": "",
        "select-list.selected": "bg:#444444",
        "select-list.empty": "#777777",
        "keybindings-panel": "bg:#2a2a2a",
        "find-panel": "bg:#2a2a2a",
        "dialog": "#e0e0e0 bg:#2a2a2a",
        "dialog.body": "#e0e0e0 bg:#2a2a2a",
        "dialog text-area": "#e0e0e0 bg:#333333",
        "dialog frame.label": "#e0e0e0 bold",
        "dialog shadow": "bg:#111111",
        "button": "#e0e0e0 bg:#555555",
        "button.focused": "#e0e0e0 bg:#777777",
        "label": "#e0e0e0",
        "selected": "reverse",
    })

    # ── Build Application ────────────────────────────────────────────

    layout = Layout(root, focused_element=editor_area)

    app = Application(
        layout=layout,
        key_bindings=kb,
        style=style,
        full_screen=True,
        mouse_support=False,
    )
    app.ttimeoutlen = 0.05

    if startup_error is not None:
        app.pre_run_callables.append(lambda: asyncio.ensure_future(
            show_error("Failed to load", startup_error.reason)))

    return app


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════


def main() -> None:
    log_file = os.environ.get("DIARY_LOG")
    if log_file:
        logging.basicConfig(
            filename=log_file, level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    diary_dir = Path(os.environ.get("DIARY_DIR") or DEFAULT_DIARY_DIR)

    app = create_app(DiaryStorage(diary_dir))
    app.run()


if __name__ == "__main__":
    main()
