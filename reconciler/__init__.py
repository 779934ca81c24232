"""
GitOps reconciler: keeps a cluster in sync with manifests in a git repository.
"""

__version__ = "0.1.0"
