import shutil
import subprocess

import pytest

from change_source import Changes, FileChange, OperationFailed, SourceUnavailable, StatusCode


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSource:
    """In-memory stand-in for GitChangeSource, sorted by path like git"""
    def __init__(self, staged=(), unstaged=(), renames=None):
        self.staged = {p: StatusCode.MODIFIED for p in staged}
        # staged renames, new path -> source path
        self.renames = dict(renames or {})
        self.staged.update((p, StatusCode.RENAMED) for p in self.renames)
        self.unstaged = {p: StatusCode.MODIFIED for p in unstaged}
        self.list_calls = 0
        self.calls = []
        self.fail_list = False
        self.fail_ops = False
        self.on_list = None

    def list_changes(self):
        self.list_calls += 1
        if self.on_list:
            self.on_list()
        if self.fail_list:
            raise SourceUnavailable("index.lock exists")
        return Changes(
            tuple(FileChange(p, s, True, orig_path=self.renames.get(p))
                  for p, s in sorted(self.staged.items())),
            tuple(FileChange(p, s, False) for p, s in sorted(self.unstaged.items())),
        )

    def _check(self, paths):
        if self.fail_ops:
            raise OperationFailed(paths[0], "permission denied")

    def stage(self, *paths):
        self.calls.append(('stage', paths))
        self._check(paths)
        for path in paths:
            status = self.unstaged.pop(path)
            self.staged[path] = StatusCode.ADDED if status == StatusCode.UNTRACKED else status

    def unstage(self, *paths):
        self.calls.append(('unstage', paths))
        self._check(paths)
        for path in paths:
            if path in self.renames:
                # Like git reset, the source stays deleted in the index unless reset too
                source = self.renames.pop(path)
                del self.staged[path]
                self.unstaged[path] = StatusCode.UNTRACKED
                if source in paths:
                    self.unstaged[source] = StatusCode.DELETED
                else:
                    self.staged[source] = StatusCode.DELETED
            elif path in self.staged:
                self.unstaged[path] = self.staged.pop(path)

    def discard(self, path, untracked=False):
        self.calls.append(('discard', (path,)))
        self._check((path,))
        del self.unstaged[path]


class FakeWatcher:
    def __init__(self):
        self.subscribers = []
        self.started = False
        self.stopped = False

    def subscribe(self, callback):
        self.subscribers.append(callback)

    def unsubscribe(self, callback):
        self.subscribers.remove(callback)

    def start(self):
        self.started = True
        return True

    def stop(self):
        self.stopped = True

    def poll(self):
        return False

    def fire(self):
        for callback in list(self.subscribers):
            callback()


@pytest.fixture
def clock():
    return FakeClock()


def git(cwd, *args):
    return subprocess.run(['git'] + list(args), cwd=cwd, check=True,
                          capture_output=True, text=True).stdout


@pytest.fixture
def repo(tmp_path, monkeypatch):
    """An empty repository on branch main with a committer configured"""
    if shutil.which('git') is None:
        pytest.skip("git not installed")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    root = tmp_path / "repo"
    root.mkdir()
    git(root, 'init', '-q')
    git(root, 'symbolic-ref', 'HEAD', 'refs/heads/main')
    git(root, 'config', 'user.email', 'test@example.com')
    git(root, 'config', 'user.name', 'Tester')
    git(root, 'config', 'commit.gpgsign', 'false')
    return root


@pytest.fixture
def committed_repo(repo):
    """Repository with one commit containing a.txt and b.txt"""
    (repo / "a.txt").write_text("alpha\n")
    (repo / "b.txt").write_text("beta\n")
    git(repo, 'add', '.')
    git(repo, 'commit', '-q', '-m', 'init')
    return repo
