"""The reconciliation cycle that keeps a vault converged with its remote branch.

A full cycle runs fetch, merge, commit, squash evaluation and push, strictly in
that order. Merges use a remote-wins policy: for every path changed both
locally and on the remote, the remote version is kept. Uncommitted local edits
to such paths are discarded before merging and are not recoverable. The
engine never prompts.
"""

import datetime
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from . import markers
from .config import VaultSettings
from .constants import APP_NAME, GIT_LOCK_FILES, MANUAL_THRESHOLD
from .errors import CommandError, ObError
from .git_wrapper import GitRepo, resolve_git_dir
from .state import RepositoryState, VersionControlClient

logger = logging.getLogger(APP_NAME)


class CycleState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    COMMITTING = "committing"
    SQUASH_EVALUATING = "squash-evaluating"
    PUSHING = "pushing"
    ABORTED = "aborted"


class CycleOutcome(Enum):
    SYNCED = "synced"
    """Local history was squashed and pushed."""
    DEFERRED = "deferred"
    """Unpushed commits exist but are below the squash threshold."""
    NOOP = "noop"
    """Nothing to push."""
    COMMITTED = "committed"
    """A settle run committed pending changes."""
    SKIPPED = "skipped"
    """The cycle did not run (another cycle in flight or the repository is busy)."""
    ABORTED = "aborted"
    """A command failed; the remaining steps were not run."""


@dataclass
class CycleResult:
    """Record of one cycle, returned to the scheduler and the CLI.

    Attributes:
        trigger (str): What started the cycle (e.g., 'settle', 'manual').
        outcome (CycleOutcome | None): How the cycle ended.
        state (CycleState): The last state reached (ABORTED on failure).
        merged (int): Remote commits integrated by the merge step.
        committed (bool): Whether pending changes were committed.
        ahead (int): Unpushed commits observed during squash evaluation.
        squashed (int): Original commits represented by the new squash marker.
        pushed (bool): Whether a push completed.
        error (str | None): The failure description when aborted.
    """

    trigger: str
    outcome: CycleOutcome | None = None
    state: CycleState = CycleState.IDLE
    merged: int = 0
    committed: bool = False
    ahead: int = 0
    squashed: int = 0
    pushed: bool = False
    error: str | None = None
    started_at: datetime.datetime = field(default_factory=datetime.datetime.now)

    @property
    def ok(self) -> bool:
        return self.outcome is not CycleOutcome.ABORTED

    @classmethod
    def skipped(cls, trigger: str, reason: str) -> "CycleResult":
        return cls(trigger=trigger, outcome=CycleOutcome.SKIPPED, error=reason)


class ReconciliationEngine:
    """Runs reconciliation cycles against one vault.

    The engine holds no state between cycles apart from the informational
    `state` attribute; all decisions are taken from fresh git queries. Callers
    must ensure cycles for the same vault never overlap (see `scheduler`).

    Attributes:
        settings (VaultSettings): Vault path, remote, branch and threshold.
        repo (VersionControlClient): The git client used for every command.
        state (CycleState): The step the current (or last) cycle is in.
    """

    def __init__(
        self, settings: VaultSettings, repo: VersionControlClient | None = None
    ):
        self.settings = settings
        self.repo = repo if repo is not None else GitRepo(settings.path)
        self.queries = RepositoryState(self.repo, settings.remote_ref)
        self.state = CycleState.IDLE

    @property
    def name(self) -> str:
        return self.settings.path.name

    def _enter(self, state: CycleState) -> None:
        logger.debug(f"{self.name}: {self.state.value} -> {state.value}")
        self.state = state

    def busy_reason(self) -> str | None:
        """Reports an in-progress git operation that must not be interfered with.

        Returns:
            str | None: A description of the blocking operation, or None.
        """
        git_dir = resolve_git_dir(self.settings.path)
        for name in GIT_LOCK_FILES:
            marker = git_dir / name
            if not marker.exists():
                continue
            if name == "index.lock":
                try:
                    age_hours = (time.time() - marker.stat().st_mtime) / 3600
                except OSError:
                    continue  # Lock vanished.
                if age_hours > 24:
                    return f"stale index.lock ({age_hours:.1f}h old), remove {marker}"
            return f"git operation in progress ({name})"
        return None

    # --- Steps ---

    def _discard_conflicting_edits(self) -> list[str]:
        """Drops uncommitted local edits to paths the incoming remote commits touch.

        Tracked paths are restored to HEAD; new paths are unstaged and deleted.
        git refuses to merge over a dirty path.
        """
        incoming = set(self.repo.changed_paths(f"HEAD...{self.settings.remote_ref}"))
        if not incoming:
            return []

        tracked: list[str] = []
        new: list[str] = []
        staged_new: list[str] = []
        for change in self.queries.local_changes(all_untracked=True):
            if change.path in incoming:
                if change.is_new:
                    new.append(change.path)
                    if change.code != "??":
                        staged_new.append(change.path)
                else:
                    tracked.append(change.path)
            if change.orig_path and change.orig_path in incoming:
                tracked.append(change.orig_path)

        if not tracked and not new:
            return []

        if staged_new:
            self.repo.unstage_paths(staged_new)
        if new:
            self.repo.remove_untracked(new)
        if tracked:
            self.repo.restore_paths(tracked)

        discarded = sorted(tracked + new)
        logger.warning(
            f"REMOTE WINS {self.name}: discarded local edits to "
            f"{len(discarded)} path(s): {', '.join(discarded)}"
        )
        return discarded

    def _merge_remote_wins(self) -> None:
        self._discard_conflicting_edits()
        try:
            self.repo.merge_theirs(self.settings.remote_ref)
        except CommandError as e:
            if not (resolve_git_dir(self.settings.path) / "MERGE_HEAD").exists():
                raise
            self._conclude_stopped_merge(e)

    def _conclude_stopped_merge(self, error: CommandError) -> None:
        """Finishes a merge that `-X theirs` could not settle on its own.

        Modify/delete conflicts stop the merge even with a strategy option. The
        incoming side decides: paths it kept are taken from it, paths it deleted
        are removed. If that fails the merge is aborted, so no `MERGE_HEAD` is
        left behind to block later cycles.

        Args:
            error (CommandError): The failure reported by the merge command.

        Raises:
            ObError: If the merge cannot be concluded (the merge is aborted first).
        """
        try:
            kept, deleted = self.queries.unmerged_paths()
            if not kept and not deleted:
                raise error
            self.repo.checkout_theirs(kept)
            self.repo.stage_paths(kept)
            self.repo.remove_paths(deleted)
            self.repo.commit_merge()
        except ObError:
            logger.warning(f"{self.name}: Abandoning the stopped merge.")
            self.repo.merge_abort()
            raise

        resolved = sorted(kept + deleted)
        logger.warning(
            f"REMOTE WINS {self.name}: resolved {len(resolved)} conflicted "
            f"path(s) from the remote: {', '.join(resolved)}"
        )

    def _commit_local_changes(self) -> bool:
        if not self.queries.has_local_changes():
            return False
        self.repo.add_all()
        self.repo.commit(markers.AUTO_COMMIT_MESSAGE)
        logger.info(f"COMMITTED {self.name}: Local changes recorded.")
        return True

    def _squash_unpushed(self) -> int:
        """Collapses every unpushed commit into one squash marker on the remote tip.

        The marker's count is the sum of the markers in the range, unmarked
        commits counting one each; with no markers present it equals `ahead`.
        If the unpushed commits leave no net change against the remote tip
        (e.g., a local edit the merge overrode), HEAD simply moves to the tip
        and nothing is committed.

        Returns:
            int: The count embedded in the new marker, or 0 if none was written.
        """
        remote_ref = self.settings.remote_ref
        total = markers.represented_commits(
            self.repo.log_oneline(spec=f"{remote_ref}..HEAD")
        )
        self.repo.reset_soft(remote_ref)
        if not self.queries.has_staged_changes():
            logger.info(
                f"{self.name}: {total} unpushed commit(s) carry no net change."
            )
            return 0
        self.repo.commit(markers.encode_squash(total))
        return total

    def _integrate_remote(self) -> int:
        """Merges the fetched remote tip when it has commits HEAD lacks.

        Returns:
            int: The number of remote commits that were missing locally.
        """
        behind = self.queries.commits_behind()
        if behind > 0:
            self._enter(CycleState.MERGING)
            self._merge_remote_wins()
            logger.info(f"MERGED {self.name}: Pulled {behind} remote commit(s).")
        return behind

    # --- Cycles ---

    def run_cycle(
        self, threshold: int | None = None, trigger: str = "reconcile"
    ) -> CycleResult:
        """Runs one full reconciliation cycle.

        Steps: fetch; merge (only when behind, remote wins); commit pending
        changes; squash when at least `threshold` commits are unpushed; plain
        push. Any failure ends the cycle in ABORTED without rollback.

        Args:
            threshold (int | None, optional):   Unpushed commits required before
                                                squashing and pushing. Defaults to
                                                the configured squash threshold.
            trigger (str, optional): Label recorded in the result and logs.

        Returns:
            CycleResult: What the cycle did. Errors are captured, never raised.
        """
        if threshold is None:
            threshold = self.settings.squash_threshold
        result = CycleResult(trigger=trigger)

        if reason := self.busy_reason():
            logger.warning(f"SKIPPED {self.name}: {reason}")
            return CycleResult.skipped(trigger, reason)

        settings = self.settings
        try:
            self._enter(CycleState.FETCHING)
            self.repo.fetch(settings.remote, settings.branch)
            result.merged = self._integrate_remote()

            self._enter(CycleState.COMMITTING)
            result.committed = self._commit_local_changes()

            self._enter(CycleState.SQUASH_EVALUATING)
            result.ahead = self.queries.commits_ahead()
            if result.ahead == 0:
                return self._finish(result, CycleOutcome.NOOP)
            if result.ahead < threshold:
                logger.info(
                    f"DEFERRED {self.name}: {result.ahead}/{threshold} "
                    "commits before push."
                )
                return self._finish(result, CycleOutcome.DEFERRED)

            result.squashed = self._squash_unpushed()
            if not result.squashed:
                return self._finish(result, CycleOutcome.NOOP)

            self._enter(CycleState.PUSHING)
            self.repo.push(settings.remote, settings.branch)
            result.pushed = True
            logger.info(
                f"SYNCED {self.name}: Pushed {result.squashed} commit(s) as one."
            )
            return self._finish(result, CycleOutcome.SYNCED)

        except ObError as e:
            return self._abort(result, e)

    def sync_now(self) -> CycleResult:
        """Runs a manual cycle: anything unpushed is squashed and pushed."""
        return self.run_cycle(threshold=MANUAL_THRESHOLD, trigger="manual")

    def settle(self) -> CycleResult:
        """Commits pending working copy changes without touching the remote."""
        result = CycleResult(trigger="settle")

        if reason := self.busy_reason():
            logger.warning(f"SKIPPED {self.name}: {reason}")
            return CycleResult.skipped("settle", reason)

        try:
            self._enter(CycleState.COMMITTING)
            result.committed = self._commit_local_changes()
        except ObError as e:
            return self._abort(result, e)

        outcome = CycleOutcome.COMMITTED if result.committed else CycleOutcome.NOOP
        return self._finish(result, outcome)

    def squash_history(self, count: int) -> CycleResult:
        """Compacts the last `count` commits (already pushed) into one.

        Remote commits missing locally are merged first (remote wins), so the
        force push never drops work pushed from elsewhere. Unpushed commits are
        then squashed and pushed. The new marker embeds the sum of the counts
        carried by squash markers in the range, with unmarked commits counting
        as one. This rewrites shared history and is the only path that
        force-pushes.

        Args:
            count (int): Number of most recent commits to collapse.

        Returns:
            CycleResult: What the compaction did. Errors are captured, never raised.

        Raises:
            ValueError: If `count` is less than 1.
        """
        if count < 1:
            raise ValueError(f"Commit count must be at least 1, got {count}")

        trigger = "squash"
        result = CycleResult(trigger=trigger)

        if reason := self.busy_reason():
            logger.warning(f"SKIPPED {self.name}: {reason}")
            return CycleResult.skipped(trigger, reason)

        settings = self.settings
        try:
            self._enter(CycleState.FETCHING)
            self.repo.fetch(settings.remote, settings.branch)
            result.merged = self._integrate_remote()

            self._enter(CycleState.SQUASH_EVALUATING)
            result.ahead = self.queries.commits_ahead()
            if result.ahead > 0 and (pending := self._squash_unpushed()):
                self._enter(CycleState.PUSHING)
                self.repo.push(settings.remote, settings.branch)
                logger.info(
                    f"SYNCED {self.name}: Pushed {pending} local commit(s) as one."
                )
                self._enter(CycleState.SQUASH_EVALUATING)

            available = self.queries.total_commits()
            if count >= available:
                raise ObError(
                    f"Cannot squash {count} commits; repository only has "
                    f"{available} and the root commit must be kept"
                )

            result.squashed = markers.represented_commits(
                self.repo.log_oneline(limit=count)
            )
            self.repo.reset_soft(f"HEAD~{count}")
            self.repo.commit(markers.encode_squash(result.squashed))

            self._enter(CycleState.PUSHING)
            self.repo.push(settings.remote, settings.branch, force=True)
            result.pushed = True
            logger.info(
                f"SQUASHED {self.name}: {count} commit(s) representing "
                f"{result.squashed} total collapsed into one."
            )
            return self._finish(result, CycleOutcome.SYNCED)

        except ObError as e:
            return self._abort(result, e)

    def _finish(self, result: CycleResult, outcome: CycleOutcome) -> CycleResult:
        result.outcome = outcome
        result.state = self.state
        self._enter(CycleState.IDLE)
        return result

    def _abort(self, result: CycleResult, error: ObError) -> CycleResult:
        failed_in = self.state
        logger.error(f"ABORTED {self.name} ({result.trigger}, {failed_in.value}): {error}")
        self._enter(CycleState.ABORTED)
        result.outcome = CycleOutcome.ABORTED
        result.state = CycleState.ABORTED
        result.error = str(error)
        self._enter(CycleState.IDLE)
        return result
