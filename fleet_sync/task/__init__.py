"""Task tracking module for fleet-sync.

This module provides the service the reconciler uses to run sync cycles and
its loop as asyncio tasks, and to cancel them on shutdown.
"""

from .service import TaskService, TaskServiceImpl

__all__ = ["TaskService", "TaskServiceImpl"]
