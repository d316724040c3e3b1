from app.core.errors import InvalidTransition
from app.models.message import DeliveryStatus

TRANSITIONS = {
    DeliveryStatus.SENDING: {DeliveryStatus.SENT, DeliveryStatus.FAILED},
    DeliveryStatus.SENT: {DeliveryStatus.DELIVERED, DeliveryStatus.READ},
    DeliveryStatus.DELIVERED: {DeliveryStatus.READ},
    DeliveryStatus.READ: set(),
    DeliveryStatus.FAILED: set(),
}


def advance(current: DeliveryStatus, target: DeliveryStatus) -> DeliveryStatus:
    """Return the new status; same-state moves are no-ops."""
    if current == target:
        return current
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot move delivery status from {current.value} to {target.value}"
        )
    return target
