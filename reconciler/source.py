"""
Source reader for a git-sync style repository checkout.

The sync container keeps a symlink (GIT_DIR) pointing at a directory named
after the commit hash it checked out. Reading resolves the link once, lists
the files of the policy directory and then verifies the link still points at
the same commit; a commit which moved underneath the reader is reported as a
transient error and retried on the next cycle.
"""

import os
import logging
from typing import List, Optional, Tuple

from reconciler import errors
from reconciler.config import Config
from reconciler.state import SourceState

logger = logging.getLogger("reconciler.source")

IGNORED_DIRS = {".git"}


class SourceReader:
    """Reads the commit, policy directory and file list of the mounted repository"""

    def __init__(self, git_dir: Optional[str] = None, policy_dir: Optional[str] = None):
        self.git_dir = git_dir or Config.GIT_DIR
        self.policy_dir = policy_dir or Config.POLICY_DIR
        self._current_policy_dir = ""

    def compute_commit(self) -> str:
        """Commit hash checked out behind the GIT_DIR symlink"""
        target = os.path.realpath(self.git_dir)
        if not os.path.isdir(target):
            raise FileNotFoundError(f"source directory {self.git_dir} does not exist")
        return os.path.basename(target)

    def source_commit_and_dir(self) -> Tuple[str, str]:
        """
        Resolve the current commit and the absolute policy directory

        Raises:
            ConfigSyncError: source error when the checkout is missing
        """
        try:
            commit = self.compute_commit()
        except OSError as e:
            raise errors.source_error(e, self.git_dir)
        policy_dir = os.path.realpath(os.path.join(self.git_dir, self.policy_dir))
        if not os.path.isdir(policy_dir):
            raise errors.source_error(FileNotFoundError(f"policy directory {self.policy_dir} does not exist"),
                                      policy_dir)
        return commit, policy_dir

    def read_config_files(self, state: SourceState) -> SourceState:
        """
        List every file of the policy directory

        Args:
            state: Source state with commit and policy_dir populated

        Returns:
            The state with files populated

        Raises:
            ConfigSyncError: internal error for an unpopulated state, source
                error when listing fails, transient error when the commit
                changed while listing
        """
        if not state.commit or not state.policy_dir:
            raise errors.internal_error("source state is not populated yet")
        if state.policy_dir == self._current_policy_dir:
            logger.debug(f"The configs directory is unchanged: {state.policy_dir}")
        else:
            logger.info(f"Reading updated configs dir: {state.policy_dir}")
            self._current_policy_dir = state.policy_dir

        try:
            files = list_files(state.policy_dir)
        except OSError as e:
            raise errors.source_error(e, state.policy_dir)

        try:
            new_commit = self.compute_commit()
        except OSError as e:
            raise errors.transient_error(e)
        if new_commit != state.commit:
            raise errors.transient_error(Exception(
                f"source commit changed while listing files, was {state.commit}, now {new_commit}. "
                f"It will be retried in the next sync"))

        state.files = files
        return state

    def read(self) -> SourceState:
        commit, policy_dir = self.source_commit_and_dir()
        return self.read_config_files(SourceState(commit=commit, policy_dir=policy_dir))


def list_files(directory: str) -> List[str]:
    """All regular files under directory, symlinks resolved, sorted"""
    result = []

    def _raise(err):
        raise err

    for root, dirs, names in os.walk(directory, onerror=_raise, followlinks=True):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
        for name in sorted(names):
            result.append(os.path.realpath(os.path.join(root, name)))
    return result
