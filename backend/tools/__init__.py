from tools.builtin import (
    FULL_TOOLSET,
    HEARTBEAT_TOOLSET,
    AgentToolbox,
    build_registry,
    tool_protocol,
)
from tools.browser import PageAutomation, PlaywrightPageAutomation
from tools.mail import SmtpEmailTransport
from tools.messaging import TelegramGateway
from tools.web import DuckDuckGoSearch, fetch_page_text

__all__ = [
    "AgentToolbox",
    "DuckDuckGoSearch",
    "FULL_TOOLSET",
    "HEARTBEAT_TOOLSET",
    "PageAutomation",
    "PlaywrightPageAutomation",
    "SmtpEmailTransport",
    "TelegramGateway",
    "build_registry",
    "fetch_page_text",
    "tool_protocol",
]
