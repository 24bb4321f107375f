"""
fleet-sync continuously syncs Kubernetes manifests from git repositories to a
fleet of clusters, detecting drift and healing it according to each
application's sync policy.
"""

__all__ = [
    "cluster",
    "config",
    "diff",
    "exceptions",
    "manifest",
    "reconciler",
    "registry",
    "source",
    "store",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
