from lecturepulse.streaming.client import TranscriptionStreamClient
from lecturepulse.streaming.pubsub import BusMessage, EventBus

__all__ = ["BusMessage", "EventBus", "TranscriptionStreamClient"]
