"""
Change source - enumerates working-tree changes and stages/unstages/discards
files by shelling out to git.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import List, NamedTuple, Optional, Tuple

log = logging.getLogger(__name__)


class StagePickerError(Exception):
    """Base class for errors surfaced to the user"""


class SourceUnavailable(StagePickerError):
    """The change set could not be enumerated"""
    def __init__(self, reason: str):
        super().__init__(f"Cannot read changes: {reason}")
        self.reason = reason


class OperationFailed(StagePickerError):
    """A stage/unstage/discard/commit call failed"""
    def __init__(self, path: Optional[str], reason: str):
        if path:
            message = f"{path}: {reason}"
        else:
            message = reason
        super().__init__(message)
        self.path = path
        self.reason = reason


class NoChangesAvailable(StagePickerError):
    """Nothing to stage or unstage"""
    def __init__(self):
        super().__init__("No changes")


class StatusCode(Enum):
    MODIFIED = 'modified'
    ADDED = 'new file'
    DELETED = 'deleted'
    RENAMED = 'renamed'
    COPIED = 'copied'
    TYPE_CHANGED = 'typechange'
    UNTRACKED = 'untracked'
    IGNORED = 'ignored'
    UNMERGED = 'unmerged'

    @property
    def letter(self) -> str:
        return _STATUS_LETTERS[self]


_CHAR_TO_STATUS = {
    'M': StatusCode.MODIFIED,
    'A': StatusCode.ADDED,
    'D': StatusCode.DELETED,
    'R': StatusCode.RENAMED,
    'C': StatusCode.COPIED,
    'T': StatusCode.TYPE_CHANGED,
    '?': StatusCode.UNTRACKED,
    '!': StatusCode.IGNORED,
    'U': StatusCode.UNMERGED,
}
_STATUS_LETTERS = {status: char for char, status in _CHAR_TO_STATUS.items()}

# XY pairs git uses for unmerged paths
_CONFLICT_PAIRS = {'DD', 'AU', 'UD', 'UA', 'DU', 'AA', 'UU'}


@dataclass(frozen=True)
class FileChange:
    """One file in either the staged or the unstaged partition"""
    path: str
    status: StatusCode
    staged: bool
    orig_path: Optional[str] = None

    @property
    def untracked(self) -> bool:
        return self.status == StatusCode.UNTRACKED

    def key(self) -> Tuple[str, bool]:
        """Unique key for this file entry"""
        return (self.path, self.staged)


class Changes(NamedTuple):
    staged: Tuple[FileChange, ...]
    unstaged: Tuple[FileChange, ...]

    def is_empty(self) -> bool:
        return not self.staged and not self.unstaged


def parse_porcelain(output: str) -> Changes:
    """Parse `git status --porcelain -z` output into staged and unstaged changes.

    Order is preserved as git reports it. A path with both index and
    worktree changes shows up in both partitions.
    """
    staged: List[FileChange] = []
    unstaged: List[FileChange] = []

    fields = output.split('\0')
    i = 0
    while i < len(fields):
        record = fields[i]
        i += 1
        if len(record) < 4:
            continue

        # Format: XY PATH, followed by a separate ORIG field for renames/copies
        x, y, path = record[0], record[1], record[3:]
        orig_path = None
        if x in 'RC' or y in 'RC':
            if i < len(fields):
                orig_path = fields[i]
            i += 1

        if x + y in _CONFLICT_PAIRS:
            unstaged.append(FileChange(path, StatusCode.UNMERGED, staged=False))
            continue
        if x == '?' or x == '!':
            unstaged.append(FileChange(path, _CHAR_TO_STATUS[x], staged=False))
            continue

        if x != ' ':
            status = _CHAR_TO_STATUS.get(x, StatusCode.MODIFIED)
            staged.append(FileChange(path, status, staged=True, orig_path=orig_path))
        if y != ' ':
            status = _CHAR_TO_STATUS.get(y, StatusCode.MODIFIED)
            unstaged.append(FileChange(path, status, staged=False))

    return Changes(tuple(staged), tuple(unstaged))


class GitChangeSource:
    """Wraps the git executable for one repository.

    Nothing is cached: every call asks git again.
    """
    def __init__(self, repo_root: str):
        self.repo_root = repo_root

    @classmethod
    def discover(cls, path: Optional[str] = None) -> 'GitChangeSource':
        """Find the repository containing `path` (default: cwd)"""
        try:
            result = subprocess.run(
                ['git', 'rev-parse', '--show-toplevel'],
                capture_output=True,
                text=True,
                cwd=path
            )
        except OSError as e:
            raise SourceUnavailable(f"cannot run git: {e}") from e
        if result.returncode != 0:
            raise SourceUnavailable("not a git repository")
        return cls(result.stdout.strip())

    def run_git_command(self, args: List[str]) -> Tuple[int, str, str]:
        """Run a git command and return (returncode, stdout, stderr)"""
        log.debug("git %s", ' '.join(args))
        try:
            result = subprocess.run(
                ['git'] + args,
                capture_output=True,
                text=True,
                cwd=self.repo_root  # Run from repo root so paths match
            )
            return result.returncode, result.stdout, result.stderr
        except OSError as e:
            return 1, "", str(e)

    def list_changes(self) -> Changes:
        returncode, stdout, stderr = self.run_git_command(
            ['status', '--porcelain', '-z', '--untracked-files=all'])
        if returncode != 0:
            log.warning("git status failed: %s", stderr.strip())
            raise SourceUnavailable(stderr.strip() or f"git status exited {returncode}")
        return parse_porcelain(stdout)

    def _mutate(self, args: List[str], paths: Tuple[str, ...]):
        if not paths:
            return
        returncode, stdout, stderr = self.run_git_command(args + ['--'] + list(paths))
        if returncode != 0:
            reason = stderr.strip() or f"git {args[0]} exited {returncode}"
            log.warning("git %s failed for %s: %s", args[0], ', '.join(paths), reason)
            raise OperationFailed(paths[0] if len(paths) == 1 else None, reason)

    def stage(self, *paths: str):
        self._mutate(['add'], paths)

    def unstage(self, *paths: str):
        # No HEAD needed, so this also works before the first commit
        self._mutate(['reset', '-q'], paths)

    def discard(self, path: str, untracked: bool = False):
        """Revert a file's working changes. Untracked files are deleted."""
        if untracked:
            self._mutate(['clean', '-f'], (path,))
        else:
            self._mutate(['restore'], (path,))

    def current_branch(self) -> str:
        """Get the current branch name"""
        returncode, stdout, stderr = self.run_git_command(['rev-parse', '--abbrev-ref', 'HEAD'])
        if returncode == 0:
            return stdout.strip()
        # Unborn branch: rev-parse fails but symbolic-ref still knows the name
        returncode, stdout, stderr = self.run_git_command(['symbolic-ref', '--short', 'HEAD'])
        return stdout.strip() if returncode == 0 else ""

    def diff(self, change: FileChange) -> List[str]:
        """Get diff lines for a change"""
        if change.untracked:
            # For untracked files, show the file content
            full_path = os.path.join(self.repo_root, change.path)
            try:
                with open(full_path, 'r', errors='replace') as f:
                    content = f.read()
            except OSError as e:
                return [f"Cannot read file: {change.path}", str(e)]
            return [f"New file: {change.path}", ""] + content.split('\n')

        if change.staged:
            args = ['diff', '--cached', '--', change.path]
        else:
            args = ['diff', '--', change.path]

        returncode, stdout, stderr = self.run_git_command(args)
        if returncode != 0:
            return [f"Error getting diff: {stderr.strip()}"]

        return stdout.split('\n') if stdout else [f"No changes for {change.path}"]

    def commit(self, message: str):
        returncode, stdout, stderr = self.run_git_command(['commit', '-m', message])
        if returncode != 0:
            raise OperationFailed(None, stderr.strip() or stdout.strip() or "commit failed")
