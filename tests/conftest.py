"""Shared fixtures, including an in-memory stand-in for the git client."""

import itertools
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from ob_sync.config import VaultSettings
from ob_sync.engine import ReconciliationEngine
from ob_sync.errors import CommandError


@dataclass(frozen=True)
class FakeCommit:
    sha: str
    message: str
    tree: dict[str, str]
    time: int


class FakeGit:
    """Models one working copy, the remote branch and its remote-tracking ref.

    Histories are linear lists of commits (oldest first). `calls` records the
    git subcommand behind every method invocation, so tests can assert which
    commands a cycle issued. Test helpers (`edit`, `commit_local`,
    `remote_commit`) do not count as commands.
    """

    REMOTE_REF = "origin/main"

    def __init__(self, git_dir: Path) -> None:
        self.git_dir = git_dir
        self._ids = itertools.count(1)
        root = self._make("Initial commit", {"README.md": "vault\n"})
        self.local: list[FakeCommit] = [root]
        self.server: list[FakeCommit] = [root]
        self.tracking: list[FakeCommit] = [root]
        self.index: dict[str, str] = dict(root.tree)
        self.worktree: dict[str, str] = dict(root.tree)
        self.calls: list[str] = []
        self.before_call: Callable[[str], None] | None = None
        self.fail_on: dict[str, str] = {}
        # State of a merge stopped on modify/delete conflicts.
        self.unmerged: dict[str, set[str]] = {}
        self._incoming: list[FakeCommit] = []
        self._their_tree: dict[str, str] = {}
        self._pre_merge: tuple[dict[str, str], dict[str, str]] | None = None

    def _make(self, message: str, tree: dict[str, str]) -> FakeCommit:
        n = next(self._ids)
        return FakeCommit(f"{n:07x}", message, dict(tree), 1_600_000_000 + n)

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.before_call:
            self.before_call(name)
        if name in self.fail_on:
            raise CommandError(["git", name], 1, self.fail_on[name])

    @property
    def head_tree(self) -> dict[str, str]:
        return self.local[-1].tree

    def _history(self, ref: str) -> list[FakeCommit]:
        if ref == "HEAD":
            return self.local
        if ref == self.REMOTE_REF:
            return self.tracking
        if ref.startswith("HEAD~"):
            n = int(ref[5:])
            if n >= len(self.local):
                raise CommandError(["git", ref], 128, f"fatal: bad revision '{ref}'")
            return self.local[:-n]
        raise CommandError(["git", ref], 128, f"fatal: bad revision '{ref}'")

    def _range(self, spec: str) -> list[FakeCommit]:
        if ".." in spec:
            exclude, include = spec.split("..")
            excluded = {c.sha for c in self._history(exclude)}
            return [c for c in self._history(include) if c.sha not in excluded]
        return list(self._history(spec))

    def _merge_base(self) -> FakeCommit:
        shared = {c.sha for c in self.tracking}
        return [c for c in self.local if c.sha in shared][-1]

    @staticmethod
    def _apply(tree: dict[str, str], files: dict[str, str | None]) -> dict[str, str]:
        out = dict(tree)
        for path, content in files.items():
            if content is None:
                out.pop(path, None)
            else:
                out[path] = content
        return out

    # --- Test helpers ---

    def edit(self, path: str, content: str | None) -> None:
        """Changes the working tree without staging (None deletes the file)."""
        self.worktree = self._apply(self.worktree, {path: content})

    def commit_local(self, message: str, files: dict[str, str | None]) -> FakeCommit:
        """Records a user commit on the local branch."""
        tree = self._apply(self.head_tree, files)
        commit = self._make(message, tree)
        self.local.append(commit)
        self.index = self._apply(self.index, files)
        self.worktree = self._apply(self.worktree, files)
        return commit

    def remote_commit(
        self, files: dict[str, str | None], message: str = "Edit from elsewhere"
    ) -> FakeCommit:
        """Records a commit pushed to the remote by another machine."""
        commit = self._make(message, self._apply(self.server[-1].tree, files))
        self.server.append(commit)
        return commit

    def publish(self) -> None:
        """Makes the local branch the remote state, as if pushed earlier."""
        self.server = list(self.local)
        self.tracking = list(self.local)

    @property
    def merge_head(self) -> Path:
        return self.git_dir / "MERGE_HEAD"

    @property
    def ahead(self) -> int:
        return len(self._range("origin/main..HEAD"))

    @property
    def behind(self) -> int:
        return len(self._range("HEAD..origin/main"))

    @property
    def dirty(self) -> bool:
        return self.index != self.head_tree or self.worktree != self.index

    # --- VersionControlClient ---

    def status_porcelain(self, all_untracked: bool = False) -> list[str]:
        self._record("status")
        head = self.head_tree
        lines = []
        for path in sorted(set(head) | set(self.index) | set(self.worktree)):
            h, i, w = head.get(path), self.index.get(path), self.worktree.get(path)
            if h is None and i is None:
                if w is not None:
                    lines.append(f"?? {path}")
                continue
            if i == h:
                x = " "
            elif h is None:
                x = "A"
            elif i is None:
                x = "D"
            else:
                x = "M"
            y = " " if w == i else ("D" if w is None else "M")
            if x + y != "  ":
                lines.append(f"{x}{y} {path}")
        return lines

    def rev_list_count(self, spec: str) -> list[str]:
        self._record("rev-list")
        return [str(len(self._range(spec)))]

    def log_timestamp(self, ref: str) -> list[str]:
        self._record("log")
        history = self._history(ref)
        return [str(history[-1].time)] if history else []

    def log_oneline(self, limit: int | None = None, spec: str | None = None) -> list[str]:
        self._record("log")
        commits = list(reversed(self._range(spec) if spec else self.local))
        if limit is not None:
            commits = commits[:limit]
        return [f"{c.sha} {c.message}" for c in commits]

    def changed_paths(self, spec: str) -> list[str]:
        self._record("diff")
        assert spec == f"HEAD...{self.REMOTE_REF}"
        base = self._merge_base().tree
        tip = self.tracking[-1].tree
        return sorted(p for p in set(base) | set(tip) if base.get(p) != tip.get(p))

    def staged_paths(self) -> list[str]:
        self._record("diff")
        head = self.head_tree
        return sorted(p for p in set(head) | set(self.index) if head.get(p) != self.index.get(p))

    def unmerged_entries(self) -> list[str]:
        self._record("ls-files")
        return [
            f"100644 e69de29bb2d1d6434b8b29ae775ad8c2e48c5391 {stage}\t{path}"
            for path, stages in sorted(self.unmerged.items())
            for stage in sorted(stages)
        ]

    def fetch(self, remote: str, branch: str) -> None:
        self._record("fetch")
        self.tracking = list(self.server)

    def merge_theirs(self, ref: str) -> None:
        self._record("merge")
        theirs = self._history(ref)
        local_shas = {c.sha for c in self.local}
        incoming = [c for c in theirs if c.sha not in local_shas]
        if not incoming:
            return

        base = self._merge_base().tree
        their_tree = theirs[-1].tree
        changed = {p for p in set(base) | set(their_tree) if base.get(p) != their_tree.get(p)}

        head = self.head_tree
        blocked = sorted(
            p
            for p in changed
            if self.index.get(p) != head.get(p) or self.worktree.get(p) != self.index.get(p)
        )
        if blocked:
            raise CommandError(
                ["git", "merge"],
                1,
                "error: Your local changes to the following files would be "
                "overwritten by merge:\n\t" + "\n\t".join(blocked),
            )

        # -X theirs settles content conflicts but not modify/delete ones.
        ours = {p for p in set(base) | set(head) if base.get(p) != head.get(p)}
        conflicted = sorted(
            p
            for p in changed & ours
            if head.get(p) != their_tree.get(p) and None in (head.get(p), their_tree.get(p))
        )
        if conflicted:
            self._stop_merge(incoming, their_tree, changed, conflicted)
            raise CommandError(
                ["git", "merge"],
                1,
                "\n".join(f"CONFLICT (modify/delete): {p}" for p in conflicted)
                + "\nAutomatic merge failed; fix conflicts and then commit the result.",
            )

        their_shas = {c.sha for c in theirs}
        if all(c.sha in their_shas for c in self.local):
            self.local = list(theirs)
        else:
            merged = self._apply(head, {p: their_tree.get(p) for p in changed})
            merge_commit = self._make(f"Merge remote-tracking branch '{ref}'", merged)
            self.local = self.local + incoming + [merge_commit]

        new_head = self.head_tree
        updates = {
            p: new_head.get(p) for p in set(head) | set(new_head) if head.get(p) != new_head.get(p)
        }
        self.index = self._apply(self.index, updates)
        self.worktree = self._apply(self.worktree, updates)

    def _stop_merge(
        self,
        incoming: list[FakeCommit],
        their_tree: dict[str, str],
        changed: set[str],
        conflicted: list[str],
    ) -> None:
        """Leaves the working copy the way git does after a stopped merge."""
        base = self._merge_base().tree
        head = self.head_tree
        self._pre_merge = (dict(self.index), dict(self.worktree))
        self._incoming = incoming
        self._their_tree = dict(their_tree)

        clean = {p: their_tree.get(p) for p in changed if p not in conflicted}
        self.index = self._apply(self.index, clean)
        self.worktree = self._apply(self.worktree, clean)
        for p in conflicted:
            self.index.pop(p, None)
            self.worktree[p] = head[p] if p in head else their_tree[p]
            stages = {s for s, tree in (("1", base), ("2", head), ("3", their_tree)) if p in tree}
            self.unmerged[p] = stages
        self.merge_head.write_text(f"{incoming[-1].sha}\n")

    def merge_abort(self) -> None:
        self._record("merge --abort")
        if self._pre_merge is None:
            raise CommandError(
                ["git", "merge", "--abort"], 128, "fatal: There is no merge to abort (MERGE_HEAD missing)."
            )
        self.index, self.worktree = self._pre_merge
        self._pre_merge = None
        self.unmerged = {}
        self.merge_head.unlink(missing_ok=True)

    def checkout_theirs(self, paths: list[str]) -> None:
        if not paths:
            return
        self._record("checkout")
        for p in paths:
            if p not in self._their_tree:
                raise CommandError(
                    ["git", "checkout"], 1, f"error: path '{p}' does not have their version"
                )
            self.worktree[p] = self._their_tree[p]

    def stage_paths(self, paths: list[str]) -> None:
        if not paths:
            return
        self._record("add")
        self.index = self._apply(self.index, {p: self.worktree.get(p) for p in paths})
        for p in paths:
            self.unmerged.pop(p, None)

    def remove_paths(self, paths: list[str]) -> None:
        if not paths:
            return
        self._record("rm")
        for p in paths:
            self.index.pop(p, None)
            self.worktree.pop(p, None)
            self.unmerged.pop(p, None)

    def commit_merge(self) -> None:
        self._record("commit")
        if self.unmerged:
            raise CommandError(
                ["git", "commit"], 128, "error: Committing is not possible because you have unmerged files."
            )
        merge_commit = self._make("Merge remote-tracking branch 'origin/main'", self.index)
        self.local = self.local + self._incoming + [merge_commit]
        self._pre_merge = None
        self.merge_head.unlink(missing_ok=True)

    def add_all(self) -> None:
        self._record("add")
        self.index = dict(self.worktree)

    def commit(self, message: str) -> None:
        self._record("commit")
        if self.index == self.head_tree:
            raise CommandError(["git", "commit"], 1, "nothing to commit, working tree clean")
        self.local.append(self._make(message, self.index))

    def push(self, remote: str, branch: str, force: bool = False) -> None:
        self._record("push --force" if force else "push")
        if not force and self.server[-1].sha not in {c.sha for c in self.local}:
            raise CommandError(
                ["git", "push"], 1, " ! [rejected]        main -> main (non-fast-forward)"
            )
        self.publish()

    def reset_soft(self, ref: str) -> None:
        self._record("reset")
        self.local = list(self._history(ref))

    def restore_paths(self, paths: list[str]) -> None:
        self._record("checkout")
        head = self.head_tree
        for p in paths:
            if p not in head:
                raise CommandError(
                    ["git", "checkout"], 1, f"error: pathspec '{p}' did not match"
                )
            self.index[p] = head[p]
            self.worktree[p] = head[p]

    def unstage_paths(self, paths: list[str]) -> None:
        self._record("reset")
        head = self.head_tree
        for p in paths:
            if p in head:
                self.index[p] = head[p]
            else:
                self.index.pop(p, None)

    def remove_untracked(self, paths: list[str]) -> None:
        self._record("clean")
        for p in paths:
            if p not in self.index:
                self.worktree.pop(p, None)


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    """A directory that passes as a git working copy."""
    path = tmp_path / "vault"
    (path / ".git").mkdir(parents=True)
    return path


@pytest.fixture
def fake_git(vault: Path) -> FakeGit:
    return FakeGit(vault / ".git")


@pytest.fixture
def settings(vault: Path) -> VaultSettings:
    return VaultSettings(path=vault)


@pytest.fixture
def engine(settings: VaultSettings, fake_git: FakeGit) -> ReconciliationEngine:
    return ReconciliationEngine(settings, repo=fake_git)
