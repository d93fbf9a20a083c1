"""Platform messengers and the browser automation boundary."""
from channels.automation import (
    AutomationError,
    BrowserAutomation,
    RemoteBrowserAutomation,
    UnavailableAutomation,
)
from channels.base import (
    ErrorCode,
    Messenger,
    MessengerMetrics,
    MessengerRegistry,
    SendResult,
    is_retryable,
)
from channels.linkedin import LinkedInMessenger
from channels.instagram import InstagramMessenger

__all__ = [
    "AutomationError", "BrowserAutomation", "RemoteBrowserAutomation", "UnavailableAutomation",
    "ErrorCode", "Messenger", "MessengerMetrics", "MessengerRegistry", "SendResult", "is_retryable",
    "LinkedInMessenger", "InstagramMessenger",
]
