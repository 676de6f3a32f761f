#!/usr/bin/env python3
"""
Stage picker - a terminal UI for staging, unstaging and discarding files
Requires: Python 3.7+ with curses (built-in on Unix systems)
"""

import argparse
import curses
import logging
import os
import subprocess
import sys
import tempfile
import traceback
from typing import List, Optional, Tuple

from change_list import (
    DEFAULT_DEBOUNCE, STAGED_LABEL, Action, ActionEntry, ChangeList, FileEntry, SeparatorEntry,
)
from change_source import (
    GitChangeSource, NoChangesAvailable, SourceUnavailable, StagePickerError,
)
from watcher import RepoWatcher

log = logging.getLogger(__name__)

# Upper bound on how long getch() blocks, so notifications get picked up
IDLE_TIMEOUT_MS = 100

ACTION_KEYS = {
    Action.STAGE_ALL: 'a',
    Action.UNSTAGE_ALL: 'u',
}


class StagePickerTUI:
    def __init__(self, stdscr, change_list: ChangeList):
        self.stdscr = stdscr
        self.changes = change_list
        self.source = change_list.source
        self.scroll_offset = 0
        self.mode = 'list'  # 'list', 'diff'
        self.diff_content: List[str] = []
        self.diff_key: Optional[Tuple[str, bool]] = None
        self.diff_scroll = 0
        self.status_message = ""
        self.has_colors = False
        self.branch = ""

        self._init_curses()

    def _init_curses(self):
        """Initialize curses settings"""
        curses.curs_set(0)  # Hide cursor
        curses.noecho()
        curses.cbreak()
        self.stdscr.keypad(True)
        self.stdscr.timeout(IDLE_TIMEOUT_MS)

        # Initialize colors if supported
        if curses.has_colors():
            curses.start_color()
            curses.use_default_colors()
            curses.init_pair(1, curses.COLOR_GREEN, -1)
            curses.init_pair(2, curses.COLOR_RED, -1)
            curses.init_pair(3, curses.COLOR_YELLOW, -1)
            curses.init_pair(4, curses.COLOR_CYAN, -1)
            self.has_colors = True

    def _color(self, pair: int, extra=curses.A_NORMAL):
        if self.has_colors:
            return curses.color_pair(pair) | extra
        return extra

    def _safe_addstr(self, row: int, col: int, text: str, attr=curses.A_NORMAL) -> int:
        """Add a string clipped to the window; returns the column after it"""
        height, width = self.stdscr.getmaxyx()
        if row < 0 or row >= height or col >= width:
            return col

        max_len = width - col - 1
        if max_len <= 0:
            return col

        safe_text = text.replace('\t', '    ')[:max_len]
        try:
            self.stdscr.addstr(row, col, safe_text, attr)
        except curses.error:
            pass
        return col + len(safe_text)

    def _draw_keys(self, items: List[Tuple[str, str]]):
        """Draw a help bar at the bottom (nano-style: keys reversed, actions normal)"""
        height, width = self.stdscr.getmaxyx()
        col = 0
        for key, action in items:
            if col >= width - 1:
                break
            col = self._safe_addstr(height - 1, col, key, curses.A_REVERSE)
            col = self._safe_addstr(height - 1, col, " " + action + "  ")

    def _draw_status_bar(self):
        height, _ = self.stdscr.getmaxyx()
        if self.status_message:
            self._safe_addstr(height - 2, 0, self.status_message, curses.A_BOLD)

    # -- list view --

    def _section_start(self, index: int) -> int:
        """Index of the group header above `index`"""
        entries = self.changes.entries
        for i in range(min(index, len(entries) - 1), -1, -1):
            if isinstance(entries[i], SeparatorEntry):
                return i
        return 0

    def _adjust_scroll(self, visible_height: int):
        focus = self.changes.focus
        if focus < self.scroll_offset:
            # Scrolling up: bring the group header into view as well
            section_start = self._section_start(focus)
            if focus - section_start < visible_height:
                self.scroll_offset = section_start
            else:
                self.scroll_offset = focus
        elif focus >= self.scroll_offset + visible_height:
            self.scroll_offset = focus - visible_height + 1

        max_offset = max(0, len(self.changes.entries) - visible_height)
        self.scroll_offset = max(0, min(self.scroll_offset, max_offset))

    def draw_file_list(self):
        """Draw the main list view"""
        self.stdscr.erase()
        height, _ = self.stdscr.getmaxyx()

        if self.branch:
            col = self._safe_addstr(0, 0, "On branch ")
            self._safe_addstr(0, col, self.branch, curses.A_REVERSE)

        # Reserve 4 lines for branch + empty + status + help
        visible_height = max(1, height - 4)
        self._adjust_scroll(visible_height)

        entries = self.changes.entries
        visible = entries[self.scroll_offset:self.scroll_offset + visible_height]
        for i, entry in enumerate(visible):
            row = i + 2
            selected = self.scroll_offset + i == self.changes.focus
            if isinstance(entry, SeparatorEntry):
                pair = 1 if entry.label == STAGED_LABEL else 2
                self._safe_addstr(row, 0, entry.text, self._color(pair, curses.A_BOLD))
            elif isinstance(entry, ActionEntry):
                self._draw_action_line(row, entry, selected)
            elif isinstance(entry, FileEntry):
                self._draw_file_line(row, entry, selected)

        self._draw_status_bar()
        self._draw_keys([("Q", "Quit"), ("Space", "Stage"), ("A", "Stage all"),
                         ("U", "Unstage all"), ("D", "Diff"), ("P", "Patch"),
                         ("C", "Commit"), ("X", "Discard"), ("R", "Refresh")])
        self.stdscr.refresh()

    def _draw_action_line(self, row: int, entry: ActionEntry, selected: bool):
        marker = "> " if selected else "  "
        key = ACTION_KEYS[entry.action]
        attr = curses.A_REVERSE if selected else self._color(4)
        self._safe_addstr(row, 0, f"{marker}[{entry.label}] ({key})", attr)

    def _draw_file_line(self, row: int, entry: FileEntry, selected: bool):
        marker = "> " if selected else "  "
        line = f"{marker}{entry.change.status.value:10} {entry.label}"
        attr = curses.A_REVERSE if selected else curses.A_NORMAL
        col = self._safe_addstr(row, 0, line, attr)
        self._safe_addstr(row, col + 2, entry.description, curses.A_DIM)

    # -- diff view --

    def _open_diff(self) -> bool:
        entry = self.changes.focused
        if not isinstance(entry, FileEntry):
            return False
        self.diff_content = self.source.diff(entry.change)
        self.diff_key = entry.change.key()
        self.diff_scroll = 0
        self.mode = 'diff'
        self.status_message = ""
        return True

    def _sync_diff(self):
        """After a rebuild, keep the diff open only if it still shows the focused file"""
        if self.mode != 'diff':
            return
        entry = self.changes.focused
        if isinstance(entry, FileEntry) and entry.change.key() == self.diff_key:
            self.diff_content = self.source.diff(entry.change)
        elif not self._open_diff():
            self.mode = 'list'

    def draw_diff_view(self):
        """Draw the diff view"""
        self.stdscr.erase()
        height, _ = self.stdscr.getmaxyx()
        visible_height = max(1, height - 3)  # title + status + help

        entry = self.changes.focused
        if isinstance(entry, FileEntry):
            title = f"Diff: {entry.path} ({'staged' if entry.staged else 'unstaged'})"
            self._safe_addstr(0, 0, title, self._color(4, curses.A_BOLD))

        max_scroll = max(0, len(self.diff_content) - visible_height)
        self.diff_scroll = max(0, min(self.diff_scroll, max_scroll))

        for i, line in enumerate(self.diff_content[self.diff_scroll:self.diff_scroll + visible_height]):
            attr = curses.A_NORMAL
            if line.startswith('+') and not line.startswith('+++'):
                attr = self._color(1)
            elif line.startswith('-') and not line.startswith('---'):
                attr = self._color(2)
            elif line.startswith('@@'):
                attr = self._color(4)
            self._safe_addstr(i + 1, 0, line, attr)

        self._draw_status_bar()
        self._draw_keys([("Q", "Back"), ("Space", "Stage"), ("Left/Right", "File"),
                         ("PgUp/Dn", "Scroll")])
        self.stdscr.refresh()

    # -- dialogs and external programs --

    def show_confirm_dialog(self, title: str, filename: str) -> bool:
        """Show a confirmation dialog, returns True if user confirms"""
        height, width = self.stdscr.getmaxyx()

        prompt = "(y/n)"
        max_content = max(len(title), len(filename), len(prompt))
        dialog_width = min(max_content + 6, width - 4)
        dialog_height = 5
        start_y = height // 2 - 2
        start_x = max(0, (width - dialog_width) // 2)

        attr = curses.A_REVERSE
        for row in range(dialog_height):
            self._safe_addstr(start_y + row, start_x, " " * dialog_width, attr)

        display_name = filename if len(filename) < dialog_width - 4 else "..." + filename[-(dialog_width - 7):]
        for offset, text in ((1, title), (2, display_name), (3, prompt)):
            self._safe_addstr(start_y + offset, start_x + (dialog_width - len(text)) // 2, text, attr)

        self.stdscr.refresh()

        while True:
            key = self.stdscr.getch()
            if key in (ord('y'), ord('Y')):
                return True
            elif key in (ord('n'), ord('N'), 27):  # 27 = ESC
                return False

    def _run_outside_curses(self, args: List[str]) -> Optional[str]:
        """Run an interactive program with the terminal handed back. Returns an error or None."""
        curses.endwin()
        try:
            subprocess.run(args, cwd=self.source.repo_root)
        except OSError as e:
            return str(e)
        finally:
            self.stdscr = curses.initscr()
            self._init_curses()
        return None

    def show_commit_dialog(self):
        """Commit the staged files with a message from $EDITOR"""
        state = self.changes.state
        staged_files = state.files(staged=True) if state else []
        if not staged_files:
            self.status_message = "No files staged for commit"
            return

        with tempfile.NamedTemporaryFile(mode='w', suffix='.txt', delete=False) as tf:
            temp_path = tf.name
            tf.write("\n")
            tf.write("# Please enter the commit message for your changes.\n")
            tf.write("# Lines starting with '#' will be ignored.\n")
            tf.write("#\n")
            tf.write("# Changes to be committed:\n")
            for entry in staged_files:
                tf.write(f"#   {entry.change.status.value}: {entry.path}\n")

        editor = os.environ.get('EDITOR', os.environ.get('VISUAL', 'nano'))
        try:
            error = self._run_outside_curses([editor, temp_path])
            if error:
                self.status_message = f"Error opening editor: {error}"
                return
            with open(temp_path, 'r') as f:
                lines = [line.rstrip() for line in f if not line.strip().startswith('#')]
            commit_msg = '\n'.join(lines).strip()
        finally:
            os.unlink(temp_path)

        if not commit_msg:
            self.status_message = "Commit cancelled (empty message)"
            return

        if self._guard(self.source.commit, commit_msg):
            self.status_message = "Commit successful!"
            self.branch = self.source.current_branch()
            self._guard(self.changes.rebuild)

    def _patch_stage_current(self):
        """Run git add -p on the focused file"""
        entry = self.changes.focused
        if not isinstance(entry, FileEntry):
            return
        if entry.staged:
            self.status_message = "File is already staged (unstage first)"
            return
        if entry.change.untracked:
            self.status_message = "Cannot patch-stage untracked file"
            return

        error = self._run_outside_curses(['git', 'add', '-p', '--', entry.path])
        if error:
            self.status_message = f"Error running git add -p: {error}"
            return
        if self._guard(self.changes.refresh):
            self.status_message = f"Patch staging done: {entry.path}"

    # -- actions --

    def _guard(self, func, *args, **kwargs) -> bool:
        """Run an action, putting any failure in the status bar"""
        try:
            func(*args, **kwargs)
        except StagePickerError as e:
            log.info("%s", e)
            self.status_message = f"Error: {e}"
            return False
        return True

    def _activate_current(self):
        entry = self.changes.focused
        if isinstance(entry, FileEntry):
            message = f"{'Unstaged' if entry.staged else 'Staged'}: {entry.path}"
        elif isinstance(entry, ActionEntry):
            message = f"{entry.label} done"
        else:
            return
        if self._guard(self.changes.activate, entry):
            self.status_message = message

    def _discard_current(self):
        """Discard changes for the focused file with confirmation"""
        entry = self.changes.focused
        if not isinstance(entry, FileEntry):
            return
        if entry.staged:
            self.status_message = "Cannot discard staged changes (unstage first)"
            return

        title = "Delete untracked file?" if entry.change.untracked else "Discard changes?"
        if not self.show_confirm_dialog(title, entry.path):
            self.status_message = "Cancelled"
            return
        if self._guard(self.changes.discard, entry):
            self.status_message = f"Discarded changes: {entry.path}"

    def _toggle_stage_in_diff(self):
        """Toggle staging while in diff view, following the file to its new group"""
        entry = self.changes.focused
        if not isinstance(entry, FileEntry):
            self.mode = 'list'
            return
        if not self._guard(self.changes.toggle_stage, entry, follow=True):
            return

        focused = self.changes.focused
        if isinstance(focused, FileEntry) and focused.path == entry.path:
            self._open_diff()
        else:
            self.mode = 'list'

    def _refresh(self):
        self.branch = self.source.current_branch()
        if self._guard(self.changes.refresh):
            self.status_message = "Refreshed"

    # -- input --

    def handle_input(self) -> bool:
        """Handle one key press; returns False to quit"""
        try:
            key = self.stdscr.getch()
        except KeyboardInterrupt:
            return False

        # Timeout (no input) - just continue
        if key == -1:
            return True

        if self.mode == 'list':
            return self._handle_list_input(key)
        elif self.mode == 'diff':
            return self._handle_diff_input(key)
        return True

    def _handle_list_input(self, key) -> bool:
        height, _ = self.stdscr.getmaxyx()
        page_size = max(1, height - 4)

        if key in (ord('q'), ord('Q'), 27):  # 27 = ESC
            return False

        if key in (curses.KEY_UP, ord('k')):
            self.changes.move_focus(-1)
        elif key in (curses.KEY_DOWN, ord('j')):
            self.changes.move_focus(1)
        elif key == curses.KEY_PPAGE:
            self.changes.move_focus(-page_size)
        elif key == curses.KEY_NPAGE:
            self.changes.move_focus(page_size)
        elif key == curses.KEY_HOME:
            self.changes.focus_first()
        elif key == curses.KEY_END:
            self.changes.focus_last()
        elif key in (ord(' '), ord('\n'), curses.KEY_ENTER):
            self._activate_current()
            return True
        elif key in (ord('a'), ord('A')):
            if self._guard(self.changes.stage_all):
                self.status_message = "Staged all changes"
            return True
        elif key in (ord('u'), ord('U')):
            if self._guard(self.changes.unstage_all):
                self.status_message = "Unstaged all changes"
            return True
        elif key in (ord('d'), ord('D')):
            self._open_diff()
            return True
        elif key in (ord('p'), ord('P')):
            self._patch_stage_current()
            return True
        elif key in (ord('c'), ord('C')):
            self.show_commit_dialog()
            return True
        elif key in (ord('x'), ord('X')):
            self._discard_current()
            return True
        elif key in (ord('r'), ord('R')):
            self._refresh()
            return True
        else:
            return True

        self.status_message = ""
        return True

    def _handle_diff_input(self, key) -> bool:
        height, _ = self.stdscr.getmaxyx()
        viewable_lines = max(1, height - 3)
        max_scroll = max(0, len(self.diff_content) - viewable_lines)

        if key in (ord('q'), ord('Q'), 27):  # 27 = ESC
            self.mode = 'list'
            self.status_message = ""
        elif key == curses.KEY_UP:
            self.diff_scroll = max(0, self.diff_scroll - 1)
        elif key == curses.KEY_DOWN:
            self.diff_scroll = min(self.diff_scroll + 1, max_scroll)
        elif key == curses.KEY_PPAGE:
            self.diff_scroll = max(0, self.diff_scroll - viewable_lines)
        elif key == curses.KEY_NPAGE:
            self.diff_scroll = min(self.diff_scroll + viewable_lines, max_scroll)
        elif key in (curses.KEY_LEFT, curses.KEY_RIGHT):
            self.changes.move_focus(-1 if key == curses.KEY_LEFT else 1, files_only=True)
            self._open_diff()
        elif key == ord(' '):
            self._toggle_stage_in_diff()
        return True

    def _update_timeout(self):
        """Wake up in time for a pending debounced rebuild"""
        remaining = self.changes.debouncer.remaining()
        if remaining is None:
            self.stdscr.timeout(IDLE_TIMEOUT_MS)
        else:
            self.stdscr.timeout(min(IDLE_TIMEOUT_MS, int(remaining * 1000) + 1))

    def _poll(self):
        try:
            rebuilt = self.changes.poll()
        except StagePickerError as e:
            self.status_message = f"Error: {e}"
            return
        if rebuilt and self.changes.is_open:
            self._sync_diff()

    def run(self) -> bool:
        """Main loop. Returns True if it ended because no changes were left."""
        self.branch = self.source.current_branch()

        while self.changes.is_open:
            if self.mode == 'list':
                self.draw_file_list()
            elif self.mode == 'diff':
                self.draw_diff_view()

            self._update_timeout()
            if not self.handle_input():
                return False
            if self.changes.is_open:
                self._poll()

        return True


def setup_logging(log_file: Optional[str], verbose: bool):
    """curses owns the terminal, so log records only ever go to a file"""
    root = logging.getLogger()
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter('%(asctime)s %(name)s %(levelname)s %(message)s'))
        root.addHandler(handler)
        root.setLevel(logging.DEBUG if verbose else logging.INFO)
    else:
        root.addHandler(logging.NullHandler())


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(description='Interactive git stage picker')
    parser.add_argument('--repo', default=None,
                        help='Path inside the repository (default: current directory)')
    parser.add_argument('--no-watch', action='store_true',
                        help='Disable automatic refresh via inotifywait')
    parser.add_argument('--debounce-ms', type=int, default=int(DEFAULT_DEBOUNCE * 1000),
                        help='Delay before refreshing after a file system event')
    parser.add_argument('--log-file', help='Write a debug log to this file')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log git commands and rebuilds')
    args = parser.parse_args(argv)
    if args.debounce_ms < 0:
        parser.error("--debounce-ms must not be negative")

    setup_logging(args.log_file, args.verbose)

    try:
        source = GitChangeSource.discover(args.repo)
    except SourceUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    watcher = None if args.no_watch else RepoWatcher(source.repo_root)
    change_list = ChangeList(source, watcher, debounce=args.debounce_ms / 1000)
    try:
        change_list.open()
    except NoChangesAvailable:
        print("No changes. Working directory clean.")
        return 0
    except SourceUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    outcome = {}

    def run_tui(stdscr):
        outcome['emptied'] = StagePickerTUI(stdscr, change_list).run()

    try:
        curses.wrapper(run_tui)
    except KeyboardInterrupt:
        print("\nExited.")
    except Exception as e:
        log.exception("stage picker crashed")
        print(f"Error: {e}", file=sys.stderr)
        traceback.print_exc()
        return 1
    finally:
        change_list.close()

    if outcome.get('emptied'):
        print("No changes left.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
