"""Exceptions raised by the pipeline core.

Routers translate these to HTTP status codes (see ``main.py``); agents and
services convert collaborator failures into one of them before marking the
in-flight task failed.
"""


class AgentFlowError(Exception):
    """Base class for pipeline errors."""


class EntityNotFoundError(AgentFlowError):
    """A referenced lead/deal/offer/task does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransitionError(AgentFlowError):
    """A deal status change that the pipeline state machine does not allow."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Deal cannot move from '{current}' to '{target}'")


class OfferConflictError(AgentFlowError):
    """An offer operation clashes with the offer's (or deal's) current state."""


class LLMOutputError(AgentFlowError):
    """The reasoning service kept returning output that does not fit the schema."""


class DeliveryError(AgentFlowError):
    """Outbound mail could not be delivered."""
