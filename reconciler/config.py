"""
Reconciler configuration and logging setup.

All settings are read from environment variables once, at import time, the
same way the reconciler Deployment passes them to the container.
"""

import os
import sys
import logging
from typing import List, Optional, Set


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Config:
    """Reconciler configuration loaded from environment variables"""

    # Scope settings
    ROOT_SCOPE = ":root"
    RECONCILER_SCOPE = os.getenv("RECONCILER_SCOPE", ROOT_SCOPE)
    SYNC_NAME = os.getenv("SYNC_NAME", "root-sync")
    SYNC_NAMESPACE = os.getenv("SYNC_NAMESPACE", "config-management-system")
    CLUSTER_NAME = os.getenv("CLUSTER_NAME", "")

    # Source settings
    GIT_DIR = os.getenv("GIT_DIR", "/repo/source/rev")
    POLICY_DIR = os.getenv("POLICY_DIR", ".")
    GIT_REPO = os.getenv("GIT_REPO", "")
    GIT_BRANCH = os.getenv("GIT_BRANCH", "master")
    GIT_REV = os.getenv("GIT_REV", "HEAD")

    # Control loop settings (seconds)
    POLL_PERIOD = float(os.getenv("POLL_PERIOD", "15"))
    RESYNC_PERIOD = float(os.getenv("RESYNC_PERIOD", "3600"))
    RETRY_PERIOD = float(os.getenv("RETRY_PERIOD", "1"))

    # Apply settings
    FIELD_MANAGER = os.getenv("FIELD_MANAGER", "configsync.gke.io")
    RECONCILE_TIMEOUT = float(os.getenv("RECONCILE_TIMEOUT", "60"))
    PRUNE_TIMEOUT = float(os.getenv("PRUNE_TIMEOUT", "60"))

    # API retry settings
    MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
    RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "2.0"))

    # Kinds that reject server-side apply patches of labels/annotations,
    # written as group/Kind. https://github.com/kubernetes/kubernetes/issues/89264
    SSA_INCOMPATIBLE_KINDS = _split(
        os.getenv("SSA_INCOMPATIBLE_KINDS", "apiregistration.k8s.io/APIService")
    )

    # Namespaces which are never deleted when they disappear from the source
    SPECIAL_NAMESPACES: Set[str] = set(_split(os.getenv(
        "SPECIAL_NAMESPACES",
        "default,kube-system,kube-public,kube-node-lease,gatekeeper-system",
    )))

    # Observability
    METRICS_PORT = int(os.getenv("METRICS_PORT", "8675"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def is_root(cls) -> bool:
        return cls.RECONCILER_SCOPE == cls.ROOT_SCOPE


def setup_logging(level: Optional[str] = None):
    """Configure structured logging for the reconciler process"""
    logging.basicConfig(
        level=getattr(logging, level or Config.LOG_LEVEL, logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
