"""Channel adapters for all supported outbound channels."""
from channels.base import (
    ChannelAdapter,
    ChannelRegistry,
    ChannelError,
    ChannelMetrics,
    build_channel_registry,
)
from channels.email_adapter import EmailAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from channels.sms_adapter import SMSAdapter

__all__ = [
    "ChannelAdapter", "ChannelRegistry", "ChannelError", "ChannelMetrics",
    "build_channel_registry",
    "EmailAdapter", "WhatsAppAdapter", "SMSAdapter",
]
