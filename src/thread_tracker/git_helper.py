"""Git helper for committing tracker snapshots."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from git import Actor, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR_EMAIL = "tracker@thread-tracker.local"


class GitHelper:
    """Commit (and optionally push) snapshot files in a git repository."""

    def __init__(self, repo_path: Path, push: bool = False):
        """Initialize git helper for a repository.

        Args:
            repo_path: Path to the git repository holding the snapshot.
            push: Push to ``origin`` after each commit when a remote exists.
        """
        self.repo_path = repo_path
        self.push = push
        try:
            self.repo: Optional[Repo] = Repo(repo_path, search_parent_directories=False)
            logger.debug(f"Git repository found at {self.repo.working_dir}")
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            logger.info(f"Snapshot directory is not a git repository: {e}")
            self.repo = None

    def is_available(self) -> bool:
        """Check if git operations are available."""
        return self.repo is not None

    def commit_file(
        self,
        file_path: Path,
        message: str,
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
    ) -> tuple[bool, Optional[str]]:
        """Stage and commit a single file.

        Args:
            file_path: Path to the file to commit.
            message: Commit message.
            author_name: Override author name (defaults to git config).
            author_email: Override author email.

        Returns:
            Tuple of (success, error_message). A failed push after a
            successful commit reports success with an error message.
        """
        if not self.repo:
            return False, "Git repository not initialized"

        try:
            try:
                relative_path = Path(file_path).resolve().relative_to(Path(self.repo.working_dir).resolve())
            except ValueError:
                return False, f"File {file_path} is not in repository {self.repo.working_dir}"

            self.repo.index.add([str(relative_path)])

            # A fresh repository has no HEAD to diff against.
            if self.repo.head.is_valid() and not self.repo.index.diff("HEAD"):
                logger.debug("No snapshot changes to commit")
                return True, None

            if author_name:
                author = Actor(author_name, author_email or DEFAULT_AUTHOR_EMAIL)
                commit = self.repo.index.commit(message, author=author)
            else:
                commit = self.repo.index.commit(message)
            logger.info(f"Committed snapshot {commit.hexsha[:7]}: {message}")

            if self.push and self.repo.remotes:
                try:
                    self.repo.remotes.origin.push()
                except GitCommandError as e:
                    logger.warning(f"Push failed: {e}")
                    return True, f"Committed but push failed: {e}"

            return True, None

        except GitCommandError as e:
            return False, f"Git error: {e}"
