"""Data models for hookrelay.

Models:
    - Endpoint: Registered webhook destination with its secret and event filter
    - Delivery: One event delivered to one endpoint, with retry history
    - DeliveryEnvelope: JSON body POSTed to endpoints
"""

from .base import generate_id, truncate
from .delivery import TERMINAL_STATES, Delivery, DeliveryEnvelope, DeliveryState
from .endpoint import Endpoint

__all__ = [
    "generate_id",
    "truncate",
    "Endpoint",
    "Delivery",
    "DeliveryEnvelope",
    "DeliveryState",
    "TERMINAL_STATES",
]
