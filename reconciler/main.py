"""
Reconciler entry point.

Builds the collaborators of one scope from the environment (see Config) and
runs its control loop until SIGTERM or Ctrl-C.

Usage:
    python -m reconciler [--list-errors] [--verbose]
"""

import sys
import signal
import logging
import argparse
import threading

from reconciler import errors
from reconciler.applier import new_namespace_applier, new_root_applier
from reconciler.config import Config, setup_logging
from reconciler.kube import KubernetesClient
from reconciler.loop import Reconciler
from reconciler.metrics import Metrics, serve
from reconciler.parser import Parser
from reconciler.remediator import Remediator
from reconciler.source import SourceReader
from reconciler.status import StatusWriter

logger = logging.getLogger("reconciler.main")


def build_reconciler(kube: KubernetesClient, metrics: Metrics) -> Reconciler:
    """Wire the collaborators of the configured scope"""
    scope = Config.RECONCILER_SCOPE
    if Config.is_root():
        applier = new_root_applier(kube, Config.SYNC_NAME, Config.SYNC_NAMESPACE, metrics=metrics)
    else:
        applier = new_namespace_applier(kube, scope, Config.SYNC_NAME, metrics=metrics)

    parser = Parser(scope, Config.SYNC_NAME, cluster_name=Config.CLUSTER_NAME,
                    git_repo=Config.GIT_REPO, git_branch=Config.GIT_BRANCH, git_rev=Config.GIT_REV, kube=kube)
    status_writer = StatusWriter(kube, scope, Config.SYNC_NAME, Config.SYNC_NAMESPACE,
                                 git_repo=Config.GIT_REPO, git_branch=Config.GIT_BRANCH,
                                 git_rev=Config.GIT_REV, policy_dir=Config.POLICY_DIR,
                                 metrics=metrics, syncing=applier.syncing)
    return Reconciler(
        source=SourceReader(Config.GIT_DIR, Config.POLICY_DIR),
        parser=parser,
        applier=applier,
        remediator=Remediator(scope),
        status_writer=status_writer,
        metrics=metrics,
        poll_period=Config.POLL_PERIOD,
        resync_period=Config.RESYNC_PERIOD,
        retry_period=Config.RETRY_PERIOD,
    )


def list_errors(taxonomy: errors.ErrorTaxonomy):
    for code in taxonomy.codes():
        print(f"KNV{code}\t{taxonomy.describe(code)}")


def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description="GitOps reconciler for one RootSync or RepoSync scope")
    parser.add_argument("--list-errors", action="store_true", help="Print the KNV error codes and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    if args.list_errors:
        list_errors(errors.ErrorTaxonomy())
        return

    setup_logging("DEBUG" if args.verbose else None)
    stop_event = threading.Event()

    def handle_sigterm(signum, frame):
        logger.info("Received SIGTERM, stopping after the current cycle...")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle_sigterm)

    logger.info("=" * 80)
    logger.info(f"Starting reconciler for scope {Config.RECONCILER_SCOPE} ({Config.SYNC_NAMESPACE}/{Config.SYNC_NAME})")
    logger.info(f"Poll period: {Config.POLL_PERIOD}s, resync period: {Config.RESYNC_PERIOD}s")
    logger.info("=" * 80)

    try:
        metrics = Metrics(Config.RECONCILER_SCOPE)
        serve(metrics, Config.METRICS_PORT)
        reconciler = build_reconciler(KubernetesClient(), metrics)
        reconciler.run(stop_event)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
