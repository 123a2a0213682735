"""Messaging gateway: the engine's only door to the remote platform.

Package layout:
  _protocol.py  MessagingGateway contract every implementation satisfies
  _validation.py client-side send payload checks
  _http.py      HttpMessagingGateway (aiohttp REST client + error mapping)
"""

from __future__ import annotations

from ._http import HttpMessagingGateway, error_for_status
from ._protocol import MessagingGateway
from ._validation import PayloadLimits, validate_payload

__all__ = [
    "HttpMessagingGateway",
    "MessagingGateway",
    "PayloadLimits",
    "error_for_status",
    "validate_payload",
]
