"""Remote chat actor boundary: gateway, typed API, wire models, errors."""

from .api import ChatActorAPI
from .errors import ChatError, ErrorKind, classify
from .gateway import ActorGateway

__all__ = ["ActorGateway", "ChatActorAPI", "ChatError", "ErrorKind", "classify"]
