"""
Tests for reading a git-sync style checkout
"""

import os
import tempfile
from unittest.mock import patch

import pytest

from reconciler import errors
from reconciler.source import SourceReader
from reconciler.state import SourceState


def _checkout(root, commit, files):
    commit_dir = os.path.join(root, commit)
    for path, content in files.items():
        full = os.path.join(commit_dir, path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w") as f:
            f.write(content)
    return commit_dir


def _link(root, commit_dir):
    link = os.path.join(root, "rev")
    if os.path.islink(link):
        os.unlink(link)
    os.symlink(commit_dir, link)
    return link


def test_read_commit_and_files():
    """Test reading the commit and listing the policy directory"""
    print("🧪 Testing SourceReader.read...")

    with tempfile.TemporaryDirectory() as root:
        commit_dir = _checkout(root, "abc123", {
            "configs/ns.yaml": "kind: Namespace",
            "configs/team/role.yaml": "kind: Role",
            "configs/.git/HEAD": "ref",
            "README.md": "readme",
        })
        reader = SourceReader(_link(root, commit_dir), "configs")

        state = reader.read()
        assert state.commit == "abc123"
        assert state.policy_dir == os.path.realpath(os.path.join(commit_dir, "configs"))
        assert [os.path.relpath(f, state.policy_dir) for f in state.files] == [
            "ns.yaml", os.path.join("team", "role.yaml")], ".git is skipped and files are sorted"

    print("✅ SourceReader.read tests passed!")


def test_missing_checkout_is_source_error():
    with tempfile.TemporaryDirectory() as root:
        reader = SourceReader(os.path.join(root, "rev"), ".")
        with pytest.raises(errors.ConfigSyncError) as exc:
            reader.source_commit_and_dir()
        assert exc.value.code == errors.SOURCE_ERROR_CODE

        commit_dir = _checkout(root, "abc123", {"a.yaml": ""})
        reader = SourceReader(_link(root, commit_dir), "missing")
        with pytest.raises(errors.ConfigSyncError) as exc:
            reader.source_commit_and_dir()
        assert exc.value.code == errors.SOURCE_ERROR_CODE


def test_commit_changed_mid_read():
    """Test that a commit moving during the read is a transient error"""
    print("\n🧪 Testing commit change during read...")

    with tempfile.TemporaryDirectory() as root:
        commit_dir = _checkout(root, "abc123", {"a.yaml": ""})
        reader = SourceReader(_link(root, commit_dir), ".")
        commit, policy_dir = reader.source_commit_and_dir()

        with patch.object(reader, "compute_commit", return_value="def456"):
            with pytest.raises(errors.TransientError) as exc:
                reader.read_config_files(SourceState(commit=commit, policy_dir=policy_dir))
        assert "was abc123, now def456" in str(exc.value)

    print("✅ commit change tests passed!")


def test_unpopulated_state():
    with pytest.raises(errors.ConfigSyncError) as exc:
        SourceReader("/nonexistent", ".").read_config_files(SourceState())
    assert exc.value.code == errors.INTERNAL_ERROR_CODE
