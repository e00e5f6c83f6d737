"""
ProxyUpgrader - verified upgrades, dry runs and rollback for a managed proxy binary
"""

__version__ = "0.1.0"

from .core import UpgradeOrchestrator
from .errors import UpgradeError

__all__ = ["UpgradeOrchestrator", "UpgradeError"]
