"""Local task store automation."""

from .base import DEFAULT_TIMEOUT_SECONDS, AutomationCapability
from .omnifocus import OmniFocusAutomation

__all__ = ["AutomationCapability", "DEFAULT_TIMEOUT_SECONDS", "OmniFocusAutomation"]
