"""
CareVault - Security Core
MFA, envelope encryption and security event trail for healthcare practice portals.
"""

__version__ = "0.1.0"
__author__ = "CareVault Engineering"

from carevault.core.config import settings
from carevault.core.logging import get_logger

logger = get_logger(__name__)
logger.debug(f"CareVault v{__version__} initialized")

__all__ = ["settings", "get_logger", "__version__"]
