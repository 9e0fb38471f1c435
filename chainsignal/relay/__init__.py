# Relay package
#
# Provides:
#  - Relay: the contract every public append/observe log adapter implements
#  - RelayGateway: ordered per-identity submission and filtered subscriptions
#  - InMemoryLedger: process-local log for tests and simulations
#  - ContractRelay: web3 client of the SignalServer contract
#  - WebSocketRelay / server.app: development relay over FastAPI + websockets
#
# ContractRelay, WebSocketRelay and the server are imported from their own
# modules so that importing the package does not pull in web3 or FastAPI.
from .base import Relay, RelayEvent, Listener
from .gateway import RelayGateway, Subscription
from .memory import InMemoryLedger, InMemoryRelay

__all__ = [
    "Relay",
    "RelayEvent",
    "Listener",
    "RelayGateway",
    "Subscription",
    "InMemoryLedger",
    "InMemoryRelay",
]
