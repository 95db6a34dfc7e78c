from .attachments import annotate_prompt, encode_images
from .events import StreamEvent, done_event, error_event, text_event
from .reconciler import StreamReconciler
from .stream import TurnRecorder, relay_stream

__all__ = [
    "StreamEvent",
    "StreamReconciler",
    "TurnRecorder",
    "annotate_prompt",
    "done_event",
    "encode_images",
    "error_event",
    "relay_stream",
    "text_event",
]
