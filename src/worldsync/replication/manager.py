"""Repository replication: the local working copy of the coordination repository.

World data is replicated by committing it. Pull happens only right after
the lease is acquired, push only right before it is released, so the working
copy never holds concurrent edits from two hosts and every pull is a
fast-forward.
"""

from __future__ import annotations

import logging
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from worldsync.core.config import GIT_LFS_PATTERNS, SYNC_IGNORE_PATTERNS, SyncConfig
from worldsync.core.errors import (
    OperationTimeoutError,
    RemoteUnavailableError,
    ReplicationError,
    TransientReplicationError,
    WorkingCopyMissingError,
)
from worldsync.core.git_ops import has_remote, redact, remote_branch_exists, run_command
from worldsync.core.retry import Deadline, RetryPolicy, call_with_retry
from worldsync.replication.models import TransferResult, WorldRevision, extract_session_key

logger = logging.getLogger(__name__)

# Never block on an interactive credential prompt.
GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}

# stderr fragments that mean "retrying will not help"
PERMANENT_FAILURES = (
    "rejected",
    "non-fast-forward",
    "fetch first",
    "authentication failed",
    "could not read username",
    "permission denied",
    "repository not found",
    "not a git repository",
    "does not appear to be a git repository",
)

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"
LOG_FORMAT = f"%H{FIELD_SEP}%an{FIELD_SEP}%cI{FIELD_SEP}%B{RECORD_SEP}"

# Past remote-tracking positions inspected when looking for rewritten history
REFLOG_DEPTH = 100


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientReplicationError)


class ReplicationManager:
    """
    Manage the local working copy of the coordination repository.

    Layout inside the working copy::

        worlds/<session_key>/   world data (LFS-tracked binaries)
        mods/<session_key>/
        config/<session_key>/
    """

    def __init__(
        self,
        config: SyncConfig,
        repo_path: Path | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.repo_path = repo_path or config.repo_path
        self.branch = config.branch
        self.policy = policy or RetryPolicy(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def world_path(self, session_key: str) -> Path:
        return self.repo_path / "worlds" / session_key

    def mods_path(self, session_key: str) -> Path:
        return self.repo_path / "mods" / session_key

    def config_path(self, session_key: str) -> Path:
        return self.repo_path / "config" / session_key

    @property
    def initialized(self) -> bool:
        return (self.repo_path / ".git").exists()

    # ------------------------------------------------------------------
    # Command plumbing
    # ------------------------------------------------------------------

    def _git(
        self,
        *args: str,
        operation: str,
        deadline: Deadline | None = None,
        check: bool = True,
        network: bool = False,
        cwd: Path | None = None,
    ) -> tuple[int, str, str]:
        cmd = ["git", *args]
        timeout = deadline.cap(self.config.sync_timeout) if deadline else self.config.sync_timeout
        try:
            return run_command(
                cmd,
                check_return=check,
                cwd=cwd or self.repo_path,
                timeout=timeout,
                env=GIT_ENV,
            )
        except subprocess.TimeoutExpired as exc:
            raise OperationTimeoutError(operation, deadline.timeout if deadline and deadline.timeout else timeout) from exc
        except FileNotFoundError as exc:
            raise ReplicationError(operation, "git executable not found") from exc
        except subprocess.CalledProcessError as exc:
            stderr = redact((exc.stderr or "").strip())
            command = redact(" ".join(cmd))
            detail = stderr.splitlines()[-1] if stderr else f"exit code {exc.returncode}"
            lowered = stderr.lower()
            if network and not any(fragment in lowered for fragment in PERMANENT_FAILURES):
                raise TransientReplicationError(operation, detail, command=command, stderr=stderr) from exc
            raise ReplicationError(operation, detail, command=command, stderr=stderr) from exc

    def _remote(self, *args: str, operation: str, deadline: Deadline) -> tuple[int, str, str]:
        """Run a network-facing git command with retries."""
        return call_with_retry(
            lambda: self._git(*args, operation=operation, deadline=deadline, network=True),
            policy=self.policy,
            is_transient=_is_transient,
            deadline=deadline,
            operation=f"git {operation}",
            sleep=self._sleep,
        )

    def _require_working_copy(self) -> None:
        if not self.initialized:
            raise WorkingCopyMissingError(f"No working copy at {self.repo_path}; run initialize() first")

    def _count(self, revision_range: str, operation: str) -> int:
        _, out, _ = self._git("rev-list", "--count", revision_range, operation=operation)
        return int(out or 0)

    def _resolve(self, revision: str) -> str | None:
        code, out, _ = self._git("rev-parse", "--verify", "--quiet", revision, operation="rev-parse", check=False)
        return out if code == 0 and out else None

    def _is_ancestor(self, ancestor: str, descendant: str) -> bool:
        code, _, _ = self._git("merge-base", "--is-ancestor", ancestor, descendant, operation="merge-base", check=False)
        return code == 0

    def _remote_dropped_local_commits(self) -> bool:
        """
        True when HEAD has commits the remote branch once had but no longer has.

        That only happens when the remote was rewritten (a restore on another
        host). Commits that were never pushed are not affected.
        """
        tracking = f"refs/remotes/origin/{self.branch}"
        _, ahead, _ = self._git("rev-list", "--reverse", f"{tracking}..HEAD", operation="rev-list")
        if not ahead:
            return False
        oldest = ahead.splitlines()[0]
        _, past, _ = self._git(
            "log", "--walk-reflogs", f"-n{REFLOG_DEPTH}", "--format=%H", tracking,
            operation="reflog",
            check=False,
        )
        return any(self._is_ancestor(oldest, tip) for tip in dict.fromkeys(past.split()))

    def _changed_files(self, other: str) -> int:
        _, names, _ = self._git("diff", "--name-only", "HEAD", other, operation="diff")
        return len([line for line in names.splitlines() if line.strip()])

    @staticmethod
    def _safety_branch_name() -> str:
        return "backup-" + datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize(self, timeout: float | None = None) -> None:
        """
        Ensure a configured working copy exists.

        Clones the coordination repository when there is no working copy.
        When the remote has no history on the configured branch, a fresh
        repository is initialized with ignore and LFS tracking rules and an
        initial push is attempted (its failure is deferred to the first sync).

        Raises:
            RemoteUnavailableError: The remote cannot be reached for the clone
            ReplicationError: The target directory is unusable or git failed
        """
        if self.initialized:
            self._configure()
            logger.debug("Working copy already present at %s", self.repo_path)
            return

        deadline = Deadline("initialize", timeout if timeout is not None else self.config.sync_timeout)
        self.repo_path.mkdir(parents=True, exist_ok=True)

        url = self.config.clone_url
        try:
            _, heads, _ = self._remote(
                "ls-remote", "--heads", url, self.branch, operation="ls-remote", deadline=deadline
            )
        except ReplicationError as exc:
            raise RemoteUnavailableError(
                f"Cannot reach coordination repository {redact(url)}: {exc}",
                operation="initialize",
            ) from exc

        if heads.strip():
            if any(self.repo_path.iterdir()):
                raise ReplicationError(
                    "initialize",
                    f"{self.repo_path} is not empty and is not a git working copy",
                )
            logger.info("Cloning coordination repository %s (branch %s)", redact(url), self.branch)
            self._remote(
                "clone", "--branch", self.branch, url, str(self.repo_path),
                operation="clone",
                deadline=deadline,
            )
            self._configure()
            logger.info("Repository cloned into %s", self.repo_path)
            return

        logger.info("Remote branch %s is empty; initializing a new repository", self.branch)
        self._initialize_new_repository(deadline)

    def _initialize_new_repository(self, deadline: Deadline) -> None:
        self._git("init", "--quiet", operation="init")
        self._git("symbolic-ref", "HEAD", f"refs/heads/{self.branch}", operation="init")
        self._configure()

        (self.repo_path / ".gitignore").write_text("\n".join(SYNC_IGNORE_PATTERNS) + "\n", encoding="utf-8")
        self._setup_lfs()

        self._git("add", "-A", operation="init")
        self._git("commit", "--quiet", "-m", "Initial commit - worldsync setup", operation="init")

        try:
            self._git("push", "-u", "origin", self.branch, operation="initial push", deadline=deadline, network=True)
        except (ReplicationError, OperationTimeoutError) as exc:
            logger.warning("Could not push initial commit (%s); it will be pushed on first sync", exc)

    def _configure(self) -> None:
        settings = (
            ("user.name", self.config.committer_name),
            ("user.email", self.config.committer_email),
            ("core.autocrlf", "false"),
            ("core.safecrlf", "false"),
        )
        for key, value in settings:
            self._git("config", key, value, operation="configure")
        if has_remote(self.repo_path):
            self._git("remote", "set-url", "origin", self.config.clone_url, operation="configure")
        else:
            self._git("remote", "add", "origin", self.config.clone_url, operation="configure")

    def _setup_lfs(self) -> None:
        if not self.config.lfs_enabled:
            return
        try:
            self._git("lfs", "install", "--local", operation="lfs install")
            for pattern in GIT_LFS_PATTERNS:
                self._git("lfs", "track", pattern, operation="lfs track")
        except ReplicationError as exc:
            logger.warning("Git LFS not available (%s); large world files will be stored in git history", exc)
            return
        logger.info("Git LFS tracking configured for %s", ", ".join(GIT_LFS_PATTERNS))

    # ------------------------------------------------------------------
    # Pull / push
    # ------------------------------------------------------------------

    def fetch(self, deadline: Deadline | None = None) -> bool:
        """Fetch from origin; returns whether the remote branch exists."""
        self._require_working_copy()
        deadline = deadline or Deadline("fetch", self.config.sync_timeout)
        self._remote("fetch", "--prune", "origin", operation="fetch", deadline=deadline)
        return remote_branch_exists(self.repo_path, self.branch)

    def pull(self, timeout: float | None = None) -> TransferResult:
        """
        Bring the working copy up to date with the remote branch.

        When the remote branch was rewritten (a restore on another host),
        local commits the remote no longer has are moved to a ``backup-*``
        branch and the working copy is reset to the remote.

        Returns:
            TransferResult with the resulting revision and number of files changed

        Raises:
            ReplicationError: Fetch failed permanently or history diverged
            TransientReplicationError: Fetch kept failing after retries
            OperationTimeoutError: The overall sync timeout elapsed
        """
        self._require_working_copy()
        deadline = Deadline("pull", timeout if timeout is not None else self.config.sync_timeout)
        logger.info("Pulling latest world data (branch %s)", self.branch)

        upstream = f"origin/{self.branch}"
        if not self.fetch(deadline):
            logger.info("Remote branch %s has no history yet; nothing to pull", self.branch)
            return TransferResult(revision_id=self.current_revision(), changed_count=0)

        if self.current_revision() is None:
            self._git("checkout", "-B", self.branch, upstream, operation="pull", deadline=deadline)
            changed = len(self._list_files(upstream))
            return TransferResult(revision_id=self.current_revision(), changed_count=changed)

        if self._remote_dropped_local_commits():
            changed = self._changed_files(upstream)
            safety_branch = self._safety_branch_name()
            self._git("branch", safety_branch, "HEAD", operation="pull")
            logger.warning(
                "Remote %s was rewritten (restored on another host); local head %s kept on %s, resetting to %s",
                self.branch,
                self.current_revision(),
                safety_branch,
                upstream,
            )
            self._git("reset", "--hard", "--quiet", upstream, operation="pull", deadline=deadline)
            return TransferResult(revision_id=self.current_revision(), changed_count=changed)

        behind = self._count(f"HEAD..{upstream}", "pull")
        changed = 0
        if behind > 0:
            changed = self._changed_files(upstream)
            self._git("merge", "--ff-only", "--quiet", upstream, operation="pull", deadline=deadline)
            logger.info("Pulled %d commits (%d files changed)", behind, changed)
        else:
            logger.info("Working copy already up to date")

        revision = self.current_revision()
        logger.info("Working copy at revision %s", revision)
        return TransferResult(revision_id=revision, changed_count=changed)

    def push(self, message: str, timeout: float | None = None) -> TransferResult:
        """
        Commit all working-copy changes (if any) and push them.

        Returns:
            TransferResult with the pushed revision and number of changed paths
        """
        self._require_working_copy()
        deadline = Deadline("push", timeout if timeout is not None else self.config.sync_timeout)

        changes = self._status_lines()
        if changes:
            logger.info("Staging %d changed paths", len(changes))
            self._git("add", "-A", operation="push", deadline=deadline)
            self._git("commit", "--quiet", "-m", message, operation="push", deadline=deadline)
            logger.info("Committed %s: %s", self.current_revision(), message.splitlines()[0])

        logger.info("Pushing to origin/%s", self.branch)
        self._remote("push", "-u", "origin", self.branch, operation="push", deadline=deadline)

        revision = self.current_revision()
        logger.info("Push successful (revision %s)", revision)
        return TransferResult(revision_id=revision, changed_count=len(changes))

    # ------------------------------------------------------------------
    # History / restore
    # ------------------------------------------------------------------

    def get_history(self, limit: int = 50) -> list[WorldRevision]:
        """Newest-first list of revisions, decorated with their session key."""
        self._require_working_copy()
        if self.current_revision() is None:
            return []

        _, out, _ = self._git("log", f"-n{int(limit)}", f"--format={LOG_FORMAT}", operation="history")
        revisions = [self._parse_log_record(chunk) for chunk in out.split(RECORD_SEP) if chunk.strip()]
        revisions.sort(key=lambda revision: revision.timestamp, reverse=True)
        return revisions

    @staticmethod
    def _parse_log_record(chunk: str) -> WorldRevision:
        revision_id, author, date, body = chunk.lstrip("\n").split(FIELD_SEP, 3)
        message = body.strip()
        return WorldRevision(
            revision_id=revision_id,
            message=message,
            timestamp=datetime.fromisoformat(date),
            author_label=author,
            session_key=extract_session_key(message),
        )

    def describe(self, revision_id: str) -> WorldRevision:
        _, out, _ = self._git("log", "-1", f"--format={LOG_FORMAT}", revision_id, operation="describe")
        return self._parse_log_record(out.rstrip(RECORD_SEP))

    def restore(self, revision_id: str, timeout: float | None = None) -> WorldRevision:
        """
        Reset shared history to ``revision_id`` and force-push it.

        Destructive: rewrites the remote branch. The previous head is kept on
        a timestamped ``backup-*`` branch (pushed when possible). Callers must
        hold the lease.
        """
        self._require_working_copy()
        deadline = Deadline("restore", timeout if timeout is not None else self.config.sync_timeout)

        code, target, _ = self._git(
            "rev-parse", "--verify", "--quiet", f"{revision_id}^{{commit}}",
            operation="restore",
            check=False,
        )
        if code != 0 or not target:
            raise ReplicationError("restore", f"unknown revision {revision_id}")

        safety_branch = self._safety_branch_name()
        previous = self.current_revision()
        self._git("branch", safety_branch, "HEAD", operation="restore")
        logger.warning(
            "Restoring %s from %s to %s; previous head kept on %s",
            self.branch,
            previous,
            target,
            safety_branch,
        )

        self._git("reset", "--hard", "--quiet", target, operation="restore", deadline=deadline)
        self._remote("push", "--force", "origin", self.branch, operation="force push", deadline=deadline)

        try:
            self._git("push", "origin", safety_branch, operation="push safety branch", deadline=deadline, network=True)
        except (ReplicationError, OperationTimeoutError) as exc:
            logger.warning("Safety branch %s kept locally only: %s", safety_branch, exc)

        logger.info("Restore to %s complete", target)
        return self.describe(target)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _status_lines(self) -> list[str]:
        _, out, _ = self._git("status", "--porcelain", operation="status")
        return [line for line in out.splitlines() if line.strip()]

    def _list_files(self, revision: str) -> list[str]:
        _, out, _ = self._git("ls-tree", "-r", "--name-only", revision, operation="ls-tree")
        return [line for line in out.splitlines() if line.strip()]

    def current_revision(self) -> str | None:
        if not self.initialized:
            return None
        return self._resolve("HEAD")

    def has_local_changes(self) -> bool:
        self._require_working_copy()
        return bool(self._status_lines())

    def is_remote_ahead(self) -> bool:
        """True when a pull would change the working copy (new or rewritten remote history)."""
        self._require_working_copy()
        if not self.fetch():
            return False
        if self.current_revision() is None or self._remote_dropped_local_commits():
            return True
        return self._count(f"HEAD..origin/{self.branch}", "remote-ahead") > 0

    def verify_integrity(self) -> bool:
        """Full object-store consistency check (``git fsck --full``)."""
        self._require_working_copy()
        code, _, err = self._git("fsck", "--full", operation="fsck", check=False)
        if code != 0:
            logger.error("Repository integrity check failed: %s", err.splitlines()[-1] if err else code)
            return False
        return True

    def repository_size(self) -> int:
        """Bytes on disk used by the working copy, including git metadata."""
        if not self.repo_path.exists():
            return 0
        return sum(path.stat().st_size for path in self.repo_path.rglob("*") if path.is_file())

    def cleanup(self) -> None:
        """Remove untracked files and directories (ignored files are kept)."""
        self._require_working_copy()
        self._git("clean", "-f", "-d", "--quiet", operation="clean")
        logger.info("Working copy cleaned")


__all__ = ["ReplicationManager"]
