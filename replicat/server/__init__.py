"""HTTP servers for Replicat.

``create_app`` serves one node's inbound surface; ``create_manager_app``
serves the membership manager.
"""

from .app import create_app
from .manager import ManagerState, create_manager_app

__all__ = ["ManagerState", "create_app", "create_manager_app"]
