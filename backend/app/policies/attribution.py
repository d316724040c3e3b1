"""Rendering of forwarded-message attribution."""

from dataclasses import dataclass

from app.models.identity import AttributionDisplay
from app.models.message import Message


@dataclass
class Attribution:
    type: AttributionDisplay
    text: str | None
    show_sender: bool
    sender_alias: str | None
    chain_count: int


def resolve_attribution(message: Message) -> Attribution | None:
    if message.forwarded_from_id is None and message.forward_chain == 0:
        return None

    display = message.attribution_display or AttributionDisplay.SHOW_ORIGINAL
    chain = message.forward_chain

    if display == AttributionDisplay.SHOW_ORIGINAL:
        alias = message.original_sender_alias or "deleted identity"
        return Attribution(display, f"Forwarded from {alias}", True, alias, chain)

    if display == AttributionDisplay.SHOW_IMMEDIATE:
        alias = message.forwarded_by_alias or "deleted identity"
        return Attribution(display, f"Forwarded by {alias}", True, alias, chain)

    if display == AttributionDisplay.HIDE_ALL:
        return Attribution(display, None, False, None, 0)

    text = "Forwarded message"
    if chain > 1:
        text = f"Forwarded message ({chain} times)"
    return Attribution(display, text, False, None, chain)
