from ticobot.schemas.callback import ReceiptReconciledRequest, SendPdfRequest
from ticobot.schemas.channel import ChannelEvent, InboundMessage
from ticobot.schemas.reminder import Reminder, RunSummary

__all__ = [
    "ChannelEvent",
    "InboundMessage",
    "ReceiptReconciledRequest",
    "Reminder",
    "RunSummary",
    "SendPdfRequest",
]
