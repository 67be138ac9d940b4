import logging
import subprocess
from pathlib import Path

from .constants import APP_NAME
from .errors import CommandError

logger = logging.getLogger(APP_NAME)


def run_command(
    command: str,
    args: list[str],
    cwd: Path | None = None,
    nul_separated: bool = False,
) -> list[str]:
    """Executes an external command once and returns its non-empty output lines.

    Standard output and standard error are captured separately. Nothing is
    retried and no timeout is applied.

    Args:
        command (str): The executable to run (e.g., 'git').
        args (list[str]): The ordered argument list.
        cwd (Path | None, optional): Working directory for the child process.
                                     Defaults to None (inherit).
        nul_separated (bool, optional): Split stdout on NUL instead of newlines,
                                        for `-z` output. Defaults to False.

    Returns:
        list[str]:  The non-empty lines (or NUL-separated fields) of stdout in
                    original order, unmodified (leading whitespace is
                    significant for porcelain formats). Empty output yields an
                    empty list.

    Raises:
        CommandError: If the process exits nonzero or cannot be spawned. The
                      captured stderr is carried verbatim.
    """
    argv = [command, *args]
    logger.debug(f"RUN: {' '.join(argv)}")
    try:
        res = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            encoding="utf-8",
            errors="surrogateescape",
        )
    except OSError as e:
        raise CommandError(argv, -1, str(e)) from e

    if res.returncode != 0:
        raise CommandError(argv, res.returncode, res.stderr)

    if nul_separated:
        return [field for field in res.stdout.split("\0") if field]
    return [line for line in res.stdout.splitlines() if line.strip()]




def resolve_git_dir(path: Path) -> Path:
    """Locates the git directory of a working copy.

    A linked worktree or submodule has a `.git` file holding a `gitdir:`
    pointer instead of a directory; lock and merge state live at its target.

    Args:
        path (Path): The working copy root.

    Returns:
        Path: The directory holding `index`, `MERGE_HEAD` and friends.
    """
    dot_git = path / ".git"
    if dot_git.is_file():
        content = dot_git.read_text().strip()
        if content.startswith("gitdir:"):
            target = Path(content[len("gitdir:") :].strip())
            return target if target.is_absolute() else (path / target).resolve()
    return dot_git


class GitRepo:
    """A wrapper around the Git command-line interface for a specific vault.

    Every method maps to a single `git -C <path> <subcommand>` invocation and
    returns raw output entries; interpretation of that output belongs to
    `state.RepositoryState`. Path listings use `-z` so that git never quotes
    non-ASCII or unusual file names. Tests substitute an in-memory object
    exposing the same methods.

    Attributes:
        path (Path): The file system path to the working copy root.
    """

    def __init__(self, path: Path):
        self.path = path

    def _run(self, args: list[str], nul_separated: bool = False) -> list[str]:
        return run_command(
            "git", ["-C", str(self.path), *args], nul_separated=nul_separated
        )

    # --- Queries ---

    def status_porcelain(self, all_untracked: bool = False) -> list[str]:
        """Returns the NUL-separated porcelain status entries of the working copy.

        A rename or copy yields two entries: `XY <new path>` followed by the
        bare original path.

        Args:
            all_untracked (bool, optional): List every untracked file instead of
                                            collapsing untracked directories.
                                            Defaults to False.
        """
        cmd = ["status", "--porcelain", "-z"]
        if all_untracked:
            cmd.append("--untracked-files=all")
        return self._run(cmd, nul_separated=True)

    def rev_list_count(self, spec: str) -> list[str]:
        """Counts commits in a revision range (e.g., 'origin/main..HEAD')."""
        return self._run(["rev-list", "--count", spec])

    def log_timestamp(self, ref: str) -> list[str]:
        """Returns the committer timestamp (epoch seconds) of the tip of `ref`."""
        return self._run(["log", "-1", "--format=%ct", ref])

    def log_oneline(self, limit: int | None = None, spec: str | None = None) -> list[str]:
        """Returns `git log --oneline` lines, newest first.

        Args:
            limit (int | None, optional): Maximum number of commits to list.
            spec (str | None, optional): A revision range to restrict the log to.
        """
        cmd = ["log", "--oneline"]
        if limit is not None:
            cmd.append(f"-{limit}")
        if spec:
            cmd.append(spec)
        return self._run(cmd)

    def changed_paths(self, spec: str) -> list[str]:
        """Lists paths changed within a diff range (e.g., 'HEAD...origin/main')."""
        return self._run(["diff", "--name-only", "-z", spec], nul_separated=True)

    def staged_paths(self) -> list[str]:
        """Lists paths whose index entry differs from HEAD."""
        return self._run(["diff", "--cached", "--name-only", "-z"], nul_separated=True)

    def unmerged_entries(self) -> list[str]:
        """Returns `ls-files -u` entries (`<mode> <sha> <stage>\\t<path>`) of a stopped merge."""
        return self._run(["ls-files", "-u", "-z"], nul_separated=True)

    # --- Mutations ---

    def fetch(self, remote: str, branch: str) -> None:
        self._run(["fetch", remote, branch])

    def merge_theirs(self, ref: str) -> None:
        """Merges `ref` into HEAD, resolving conflicting hunks in favour of `ref`."""
        self._run(["merge", "--no-edit", "-X", "theirs", ref])

    def merge_abort(self) -> None:
        self._run(["merge", "--abort"])

    def checkout_theirs(self, paths: list[str]) -> None:
        """Writes the incoming side of unmerged paths into the working tree."""
        if not paths:
            return
        self._run(["checkout", "--theirs", "--", *paths])

    def stage_paths(self, paths: list[str]) -> None:
        if not paths:
            return
        self._run(["add", "--", *paths])

    def remove_paths(self, paths: list[str]) -> None:
        """Deletes paths from both index and working tree, unmerged or not."""
        if not paths:
            return
        self._run(["rm", "-q", "-f", "--", *paths])

    def commit_merge(self) -> None:
        """Concludes a stopped merge with its prepared message."""
        self._run(["commit", "--no-edit"])

    def add_all(self) -> None:
        """
        Stages all changes (modified, deleted, and untracked files)
        in the working directory.
        """
        self._run(["add", "."])

    def commit(self, message: str) -> None:
        self._run(["commit", "-m", message])

    def push(self, remote: str, branch: str, force: bool = False) -> None:
        """Pushes the local branch to the remote.

        Args:
            remote (str): The remote name.
            branch (str): The branch name.
            force (bool, optional): Whether to overwrite remote history.
                                    Defaults to False.
        """
        cmd = ["push"]
        if force:
            cmd.append("--force")
        cmd.extend([remote, branch])
        self._run(cmd)

    def reset_soft(self, ref: str) -> None:
        """Moves HEAD to `ref`, keeping the combined content staged."""
        self._run(["reset", "--soft", ref])

    def restore_paths(self, paths: list[str]) -> None:
        """Restores tracked paths in both index and working tree to their HEAD version."""
        if not paths:
            return
        self._run(["checkout", "HEAD", "--", *paths])

    def unstage_paths(self, paths: list[str]) -> None:
        """Resets the index entries of the given paths to HEAD."""
        if not paths:
            return
        self._run(["reset", "-q", "HEAD", "--", *paths])

    def remove_untracked(self, paths: list[str]) -> None:
        """Deletes untracked files from the working tree."""
        if not paths:
            return
        self._run(["clean", "-f", "--", *paths])
