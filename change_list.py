"""
The change list: grouped staged/unstaged entries with a focus that survives
rebuilds.

Entries are rebuilt from scratch on every `rebuild()` by asking the change
source again. Focus is carried across a rebuild with an `Anchor`: the file
the cursor should stay on, or failing that the ordinal position it was at.
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, NamedTuple, Optional, Tuple, Union

from change_source import (
    Changes, FileChange, NoChangesAvailable, OperationFailed, SourceUnavailable,
)
from watcher import Debouncer, RepoWatcher

log = logging.getLogger(__name__)

STAGED_LABEL = "Staged Changes"
UNSTAGED_LABEL = "Changes"
DEFAULT_DEBOUNCE = 0.05


class Action(Enum):
    STAGE_ALL = 'Stage All'
    UNSTAGE_ALL = 'Unstage All'


@dataclass(frozen=True)
class ActionEntry:
    """Synthetic row that stages or unstages a whole group"""
    action: Action

    @property
    def label(self) -> str:
        return self.action.value


@dataclass(frozen=True)
class SeparatorEntry:
    """Group header, never selectable"""
    label: str
    count: int

    @property
    def text(self) -> str:
        return f"{self.label} ({self.count})"


@dataclass(frozen=True)
class FileEntry:
    change: FileChange

    @property
    def path(self) -> str:
        return self.change.path

    @property
    def staged(self) -> bool:
        return self.change.staged

    @property
    def label(self) -> str:
        symbol = '-' if self.staged else '+'
        return f"{symbol} {os.path.basename(self.path)}"

    @property
    def description(self) -> str:
        directory = os.path.dirname(self.path)
        text = f"{self.change.status.letter}  {directory + '/' if directory else ''}"
        if self.change.orig_path:
            text += f"  (from {self.change.orig_path})"
        return text


ListEntry = Union[ActionEntry, SeparatorEntry, FileEntry]


@dataclass(frozen=True)
class Anchor:
    """Where focus should land after the next rebuild.

    `path` (narrowed by `staged` when set) is tried first; `ordinal` is the
    fallback position in the previous list.
    """
    path: Optional[str] = None
    staged: Optional[bool] = None
    ordinal: int = 0


class ListState(NamedTuple):
    entries: Tuple[ListEntry, ...]
    focus: int

    @property
    def focused(self) -> Optional[ListEntry]:
        if 0 <= self.focus < len(self.entries):
            return self.entries[self.focus]
        return None

    def files(self, staged: bool) -> List[FileEntry]:
        return [e for e in self.entries if isinstance(e, FileEntry) and e.staged == staged]


def render_entries(changes: Changes) -> Tuple[ListEntry, ...]:
    """Lay out the staged group, then the unstaged group.

    A group with no files is left out entirely, header and action included.
    """
    entries: List[ListEntry] = []
    if changes.staged:
        entries.append(SeparatorEntry(STAGED_LABEL, len(changes.staged)))
        entries.append(ActionEntry(Action.UNSTAGE_ALL))
        entries.extend(FileEntry(c) for c in changes.staged)
    if changes.unstaged:
        entries.append(SeparatorEntry(UNSTAGED_LABEL, len(changes.unstaged)))
        entries.append(ActionEntry(Action.STAGE_ALL))
        entries.extend(FileEntry(c) for c in changes.unstaged)
    return tuple(entries)


def is_selectable(entry: ListEntry) -> bool:
    return not isinstance(entry, SeparatorEntry)


def _scan(entries, start: int, step: int, accept: Callable[[ListEntry], bool]) -> Optional[int]:
    index = start
    while 0 <= index < len(entries):
        if accept(entries[index]):
            return index
        index += step
    return None


def _is_file(entry: ListEntry) -> bool:
    return isinstance(entry, FileEntry)


def _index_paths(entries: Iterable[FileEntry]) -> Tuple[str, ...]:
    """Paths to reset so each staged entry leaves the index completely.

    A staged rename is a deletion of its source plus an addition, so the
    source path has to be reset too.
    """
    paths = []
    for entry in entries:
        paths.append(entry.path)
        if entry.change.orig_path:
            paths.append(entry.change.orig_path)
    return tuple(dict.fromkeys(paths))


def find_focus(entries: Tuple[ListEntry, ...], anchor: Optional[Anchor] = None) -> int:
    """Index of the entry `anchor` resolves to in `entries`.

    Only file entries are returned, unless there are none.
    """
    if not entries:
        return 0
    if anchor is None:
        anchor = Anchor()

    if anchor.path is not None:
        for i, entry in enumerate(entries):
            if (isinstance(entry, FileEntry) and entry.path == anchor.path
                    and (anchor.staged is None or entry.staged == anchor.staged)):
                return i

    if anchor.ordinal >= len(entries):
        index = _scan(entries, len(entries) - 1, -1, _is_file)
    else:
        start = max(anchor.ordinal, 0)
        index = _scan(entries, start, 1, _is_file)
        if index is None:
            index = _scan(entries, start, -1, _is_file)
    return index if index is not None else 0


class ChangeList:
    """Open/closed list of changes with a stable focus.

    Rebuilds happen either directly after a user action or, debounced,
    after a change notification from `watcher`. Only one rebuild runs at a
    time; a request arriving during a rebuild is folded into one rerun.
    """
    def __init__(self, source, watcher: Optional[RepoWatcher] = None,
                 debounce: float = DEFAULT_DEBOUNCE,
                 clock: Callable[[], float] = time.monotonic):
        self.source = source
        self.watcher = watcher
        self.debouncer = Debouncer(debounce, self._on_notification_settled, clock)
        self._state: Optional[ListState] = None
        self._anchor: Optional[Anchor] = None
        self._rebuilding = False
        self._rebuild_pending = False

    @property
    def is_open(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> Optional[ListState]:
        return self._state

    @property
    def entries(self) -> Tuple[ListEntry, ...]:
        return self._state.entries if self._state else ()

    @property
    def focus(self) -> int:
        return self._state.focus if self._state else 0

    @property
    def focused(self) -> Optional[ListEntry]:
        return self._state.focused if self._state else None

    def open(self) -> ListState:
        """Load the changes and start listening for notifications"""
        if self._state is not None:
            return self._state

        changes = self.source.list_changes()
        if changes.is_empty():
            raise NoChangesAvailable()

        entries = render_entries(changes)
        self._state = ListState(entries, find_focus(entries))
        if self.watcher:
            self.watcher.subscribe(self.notify)
            self.watcher.start()
        log.debug("opened with %d staged, %d unstaged",
                  len(changes.staged), len(changes.unstaged))
        return self._state

    def close(self):
        """Dismiss the list. Pending timers and the subscription go first."""
        self.debouncer.cancel()
        if self.watcher:
            self.watcher.unsubscribe(self.notify)
            self.watcher.stop()
        self._state = None
        self._anchor = None
        self._rebuild_pending = False

    def rebuild(self, anchor: Optional[Anchor] = None) -> Optional[ListState]:
        """Re-query the source and replace the list.

        Uses `anchor`, else the pending focus hint, else the first file.
        Returns the new state, or None if the list closed because nothing
        is left to act on.
        """
        if self._state is None:
            return None
        if self._rebuilding:
            self._rebuild_pending = True
            if anchor is not None:
                self._anchor = anchor
            return self._state

        # Whatever the timer would have picked up is covered by this query
        self.debouncer.cancel()
        self._rebuilding = True
        try:
            while True:
                if anchor is None:
                    anchor = self._anchor
                self._anchor = None
                self._rebuild_pending = False

                try:
                    changes = self.source.list_changes()
                except SourceUnavailable:
                    self._anchor = anchor
                    raise

                if self._state is None:
                    return None
                if changes.is_empty():
                    log.debug("no changes left, closing")
                    self.close()
                    return None

                entries = render_entries(changes)
                self._state = ListState(entries, find_focus(entries, anchor))
                log.debug("rebuilt: %d entries, focus %d", len(entries), self._state.focus)

                if not self._rebuild_pending:
                    return self._state
                anchor = self._anchor or self._focus_anchor()
        finally:
            self._rebuilding = False

    def refresh(self) -> Optional[ListState]:
        """Rebuild, keeping focus on the current entry if it is still there"""
        return self.rebuild(self._anchor or self._focus_anchor())

    def _focus_anchor(self) -> Optional[Anchor]:
        """Anchor that keeps the current focus where it is"""
        entry = self.focused
        if entry is None:
            return None
        if isinstance(entry, FileEntry):
            return Anchor(entry.path, entry.staged, self.focus)
        return Anchor(ordinal=self.focus)

    def _schedule(self, anchor: Anchor, immediate: bool):
        self._anchor = anchor
        if immediate:
            self.rebuild()
        else:
            self.debouncer.arm()

    def _index_of(self, entry: ListEntry) -> int:
        try:
            return self.entries.index(entry)
        except ValueError:
            return self.focus

    def toggle_stage(self, entry: FileEntry, immediate: bool = True, follow: bool = False):
        """Stage an unstaged file or unstage a staged one.

        Staging moves focus to the file that came after `entry`; unstaging
        (or `follow`) keeps focus on the file in its new group.
        """
        index = self._index_of(entry)
        if entry.staged:
            self.source.unstage(*_index_paths([entry]))
            anchor = Anchor(entry.path, staged=False, ordinal=index)
        else:
            self.source.stage(entry.path)
            if follow:
                anchor = Anchor(entry.path, staged=True, ordinal=index)
            else:
                nxt = _scan(self.entries, index + 1, 1, _is_file)
                if nxt is not None:
                    following = self.entries[nxt]
                    anchor = Anchor(following.path, following.staged, index)
                else:
                    anchor = Anchor(ordinal=index)
        self._schedule(anchor, immediate)

    def run_action(self, entry: ActionEntry, immediate: bool = True):
        """Stage or unstage every file of the action's group"""
        state = self._state
        if state is None:
            return
        index = self._index_of(entry)
        if entry.action == Action.STAGE_ALL:
            paths = [e.path for e in state.files(staged=False)]
            self.source.stage(*dict.fromkeys(paths))
        else:
            self.source.unstage(*_index_paths(state.files(staged=True)))
        self._schedule(Anchor(ordinal=index), immediate)

    def activate(self, entry: Optional[ListEntry] = None, immediate: bool = True):
        """Confirm `entry` (default: the focused one)"""
        if entry is None:
            entry = self.focused
        if isinstance(entry, FileEntry):
            self.toggle_stage(entry, immediate)
        elif isinstance(entry, ActionEntry):
            self.run_action(entry, immediate)

    def stage_all(self, immediate: bool = True):
        self._run_named(Action.STAGE_ALL, immediate)

    def unstage_all(self, immediate: bool = True):
        self._run_named(Action.UNSTAGE_ALL, immediate)

    def _run_named(self, action: Action, immediate: bool):
        entry = ActionEntry(action)
        if entry in self.entries:
            self.run_action(entry, immediate)

    def discard(self, entry: FileEntry):
        """Throw away the working-tree changes of `entry`.

        The list is refreshed through the notification path, like any other
        change made outside the list.
        """
        if entry.staged:
            raise OperationFailed(entry.path, "cannot discard staged changes (unstage first)")
        index = self._index_of(entry)
        self.source.discard(entry.path, untracked=entry.change.untracked)
        self._anchor = Anchor(entry.path, entry.staged, index)
        self.notify()

    def notify(self):
        """Something changed outside the list; rebuild once things settle"""
        if self._state is not None:
            self.debouncer.arm()

    def poll(self) -> bool:
        """Pump notifications and the debounce timer. True if a rebuild ran."""
        if self.watcher:
            self.watcher.poll()
        return self.debouncer.poll()

    def _on_notification_settled(self):
        anchor = self._anchor or self._focus_anchor()
        self._anchor = None
        self.rebuild(anchor)

    def set_focus(self, index: int):
        if self._state is None:
            return
        if 0 <= index < len(self._state.entries) and is_selectable(self._state.entries[index]):
            self._state = ListState(self._state.entries, index)

    def move_focus(self, delta: int, files_only: bool = False):
        """Move focus by `delta` selectable rows, stopping at either end"""
        state = self._state
        if state is None or delta == 0:
            return
        accept = _is_file if files_only else is_selectable
        step = 1 if delta > 0 else -1
        index = state.focus
        for _ in range(abs(delta)):
            nxt = _scan(state.entries, index + step, step, accept)
            if nxt is None:
                break
            index = nxt
        self._state = ListState(state.entries, index)

    def focus_first(self):
        if self._state is not None:
            index = _scan(self._state.entries, 0, 1, is_selectable)
            self.set_focus(index if index is not None else 0)

    def focus_last(self):
        if self._state is not None:
            index = _scan(self._state.entries, len(self._state.entries) - 1, -1, is_selectable)
            self.set_focus(index if index is not None else 0)
