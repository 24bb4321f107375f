"""The reconciler module.

The reconciler drives sync cycles that converge the live state of each
application's destination cluster to the desired state in its source.
"""

from .reconciler import Reconciler, TRACKING_LABEL

__all__ = ["Reconciler", "TRACKING_LABEL"]
