"""Read-only queries describing where a vault stands relative to its remote.

Nothing here is cached: every call issues fresh git commands, so callers
always see the current working copy and the last fetched remote tip.
"""

import datetime
import logging
from dataclasses import dataclass
from typing import Protocol

from .constants import APP_NAME
from .errors import ObError, ParseError

logger = logging.getLogger(APP_NAME)


class VersionControlClient(Protocol):
    """The git capability the state queries and the engine depend on."""

    def status_porcelain(self, all_untracked: bool = False) -> list[str]: ...
    def rev_list_count(self, spec: str) -> list[str]: ...
    def log_timestamp(self, ref: str) -> list[str]: ...
    def log_oneline(
        self, limit: int | None = None, spec: str | None = None
    ) -> list[str]: ...
    def changed_paths(self, spec: str) -> list[str]: ...
    def staged_paths(self) -> list[str]: ...
    def unmerged_entries(self) -> list[str]: ...
    def fetch(self, remote: str, branch: str) -> None: ...
    def merge_theirs(self, ref: str) -> None: ...
    def merge_abort(self) -> None: ...
    def checkout_theirs(self, paths: list[str]) -> None: ...
    def stage_paths(self, paths: list[str]) -> None: ...
    def remove_paths(self, paths: list[str]) -> None: ...
    def commit_merge(self) -> None: ...
    def add_all(self) -> None: ...
    def commit(self, message: str) -> None: ...
    def push(self, remote: str, branch: str, force: bool = False) -> None: ...
    def reset_soft(self, ref: str) -> None: ...
    def restore_paths(self, paths: list[str]) -> None: ...
    def unstage_paths(self, paths: list[str]) -> None: ...
    def remove_untracked(self, paths: list[str]) -> None: ...


@dataclass(frozen=True)
class Divergence:
    """Commits present on one side only.

    Attributes:
        ahead (int): Local commits not on the remote tip.
        behind (int): Remote commits not on the local tip.
    """

    ahead: int
    behind: int


@dataclass(frozen=True)
class LocalChange:
    """One entry of `git status --porcelain`.

    Attributes:
        code (str): The two-character status code (e.g., ' M', '??', 'A ').
        path (str): The path as it exists in the working tree.
        orig_path (str | None): The source path of a rename or copy.
    """

    code: str
    path: str
    orig_path: str | None = None

    @property
    def is_new(self) -> bool:
        """True if `path` does not exist in HEAD (untracked, added or rename target)."""
        return self.code == "??" or self.code[0] in "ARC"


@dataclass(frozen=True)
class StatusSnapshot:
    """Projection of the repository state for the status surface.

    Attributes:
        dirty (bool): Whether uncommitted changes exist.
        ahead (int): Unpushed local commits.
        last_local_commit (datetime | None): Tip time of HEAD, if any.
        last_remote_commit (datetime | None): Tip time of the remote branch, if known.
    """

    dirty: bool
    ahead: int
    last_local_commit: datetime.datetime | None
    last_remote_commit: datetime.datetime | None


def parse_porcelain(entries: list[str]) -> list[LocalChange]:
    """Parses `git status --porcelain -z` (v1) entries into LocalChange entries.

    Paths arrive unquoted. A rename or copy occupies two consecutive entries:
    `XY <new path>` and then the original path on its own.

    Args:
        entries (list[str]): The NUL-separated fields of the status output.

    Returns:
        list[LocalChange]: One change per working tree path.
    """
    changes = []
    it = iter(entries)
    for entry in it:
        if len(entry) < 4:
            continue
        code, path = entry[:2], entry[3:]
        orig = None
        if code[0] in "RC" or code[1] in "RC":
            orig = next(it, None)
        changes.append(LocalChange(code, path, orig))
    return changes


def parse_unmerged(entries: list[str]) -> tuple[list[str], list[str]]:
    """Splits `ls-files -u -z` entries by whether the incoming side kept the path.

    Each entry reads `<mode> <sha> <stage>\\t<path>`; stage 3 is the side
    being merged in.

    Returns:
        tuple[list[str], list[str]]: (paths present on the incoming side,
                                      paths the incoming side deleted).
    """
    stages: dict[str, set[str]] = {}
    for entry in entries:
        meta, sep, path = entry.partition("\t")
        if not sep:
            continue
        fields = meta.split()
        if len(fields) < 3:
            raise ParseError(f"Invalid unmerged entry: {entry!r}")
        stages.setdefault(path, set()).add(fields[2])
    kept = [p for p, s in stages.items() if "3" in s]
    deleted = [p for p, s in stages.items() if "3" not in s]
    return kept, deleted


def parse_count(lines: list[str], what: str) -> int:
    """Interprets single-line integer output (e.g., from `rev-list --count`).

    Raises:
        ParseError: If the output is empty or not an integer.
    """
    if not lines:
        raise ParseError(f"No output for {what}")
    try:
        return int(lines[0].strip())
    except ValueError as e:
        raise ParseError(f"Invalid {what}: {lines[0]!r}") from e


class RepositoryState:
    """Queries the state of a vault against a fixed remote branch.

    Attributes:
        repo (VersionControlClient): The git client bound to the vault.
        remote_ref (str): The remote tracking ref (e.g., 'origin/main').
    """

    def __init__(self, repo: VersionControlClient, remote_ref: str):
        self.repo = repo
        self.remote_ref = remote_ref

    def local_changes(self, all_untracked: bool = False) -> list[LocalChange]:
        return parse_porcelain(self.repo.status_porcelain(all_untracked=all_untracked))

    def has_local_changes(self) -> bool:
        """True if the working copy has uncommitted tracked or untracked changes."""
        return any(line.strip() for line in self.repo.status_porcelain())

    def unmerged_paths(self) -> tuple[list[str], list[str]]:
        """Conflicted paths of a stopped merge, split as in `parse_unmerged`."""
        return parse_unmerged(self.repo.unmerged_entries())

    def has_staged_changes(self) -> bool:
        """True if the index differs from HEAD."""
        return bool(self.repo.staged_paths())

    def commits_ahead(self) -> int:
        return parse_count(
            self.repo.rev_list_count(f"{self.remote_ref}..HEAD"), "ahead count"
        )

    def commits_behind(self) -> int:
        """Remote commits missing locally. Only meaningful after a fetch."""
        return parse_count(
            self.repo.rev_list_count(f"HEAD..{self.remote_ref}"), "behind count"
        )

    def divergence(self) -> Divergence:
        return Divergence(ahead=self.commits_ahead(), behind=self.commits_behind())

    def total_commits(self) -> int:
        return parse_count(self.repo.rev_list_count("HEAD"), "commit count")

    def last_commit_time(self, ref: str) -> datetime.datetime:
        """Returns the commit time of the tip of `ref`.

        Raises:
            ParseError: If `ref` has no commits or the timestamp is malformed.
            CommandError: If git fails (e.g., unknown ref).
        """
        lines = self.repo.log_timestamp(ref)
        if not lines:
            raise ParseError(f"No commits found for ref: {ref}")
        try:
            ts = int(lines[0].strip())
        except ValueError as e:
            raise ParseError(f"Invalid timestamp for {ref}: {lines[0]!r}") from e
        return datetime.datetime.fromtimestamp(ts)

    def _optional_time(self, ref: str) -> datetime.datetime | None:
        try:
            return self.last_commit_time(ref)
        except ObError as e:
            logger.debug(f"Failed to retrieve last commit time for {ref}: {e}")
            return None

    def snapshot(self) -> StatusSnapshot:
        """Collects the read-only status projection in one call."""
        return StatusSnapshot(
            dirty=self.has_local_changes(),
            ahead=self.commits_ahead(),
            last_local_commit=self._optional_time("HEAD"),
            last_remote_commit=self._optional_time(self.remote_ref),
        )
