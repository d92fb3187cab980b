"""
Worker module.
Contains the newsletter worker loop and the session registry.
"""

from mailqueue.worker.main import Worker, build_worker, run
from mailqueue.worker.registry import SessionRegistry

__all__ = ["Worker", "SessionRegistry", "build_worker", "run"]
