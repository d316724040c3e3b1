"""
Protection rules for identities.

Pure functions over identity rows and counts: they decide whether an
operation is allowed and what it cascades into, and never touch storage.
The default identity is always treated as protected. Explicitly flagged
non-default identities are capped at MAX_PROTECTED_IDENTITIES.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.core.config import settings
from app.core.errors import (
    ActiveUsageConflict,
    CannotUnprotectDefault,
    NoReplacementDefault,
    ProtectedIdentity,
    ProtectionSlotsFull,
)
from app.models.identity import Identity

SOFT = "soft"
PERMANENT = "permanent"

LEVEL_DEFAULT = "default"
LEVEL_USER_SELECTED = "user_selected"
LEVEL_UNPROTECTED = "unprotected"


@dataclass
class DeletionPlan:
    deletion_type: str
    restorable: bool
    protection_level: str
    reassign_default: bool = False
    cascade_references: bool = False
    deletion_reason: str = "user_request"
    warnings: list[str] = field(default_factory=list)


def is_effectively_protected(identity: Identity) -> bool:
    return identity.is_protected or identity.is_default


def protection_level(identity: Identity) -> str:
    if identity.is_default:
        return LEVEL_DEFAULT
    if identity.is_protected:
        return LEVEL_USER_SELECTED
    return LEVEL_UNPROTECTED


def check_protection_change(
    identity: Identity,
    protect: bool,
    protected_count: int,
) -> None:
    """
    protected_count is the number of non-deleted, non-default identities of
    the owner that currently carry the protection flag.
    """
    if not protect:
        if identity.is_default:
            raise CannotUnprotectDefault("Default identity cannot be unprotected")
        return

    if identity.is_default or identity.is_protected:
        return
    if protected_count >= settings.MAX_PROTECTED_IDENTITIES:
        raise ProtectionSlotsFull(
            f"Maximum {settings.MAX_PROTECTED_IDENTITIES} protected identities allowed "
            "(excluding default)"
        )


def check_default_transfer(
    outgoing: Identity | None,
    incoming: Identity,
    protected_count: int,
) -> None:
    """
    Handing default status from outgoing to incoming frees a slot when the
    incoming identity was flagged and takes one when the outgoing was.
    """
    if outgoing is None or outgoing.id == incoming.id:
        return
    after = protected_count
    if incoming.is_protected:
        after -= 1
    if outgoing.is_protected and not outgoing.is_deleted:
        after += 1
    if after > settings.MAX_PROTECTED_IDENTITIES:
        raise ProtectionSlotsFull(
            f"Changing the default would leave more than "
            f"{settings.MAX_PROTECTED_IDENTITIES} protected identities; "
            f"unprotect one first"
        )


def plan_deletion(
    identity: Identity,
    permanent: bool,
    force: bool,
    active_memberships: int,
    has_replacement: bool,
) -> DeletionPlan:
    level = protection_level(identity)

    if permanent:
        if identity.is_default:
            raise ProtectedIdentity(
                "Default identity cannot be permanently deleted"
            )
        if identity.is_protected:
            raise ProtectedIdentity(
                "Protected identities cannot be permanently deleted. "
                "Remove protection first."
            )
        if active_memberships > 0 and not force:
            raise ActiveUsageConflict(
                f"Identity is used in {active_memberships} active conversation(s)",
                active_conversations=active_memberships,
            )
        plan = DeletionPlan(
            deletion_type=PERMANENT,
            restorable=False,
            protection_level=level,
            cascade_references=True,
            deletion_reason="forced" if force else "user_request",
        )
        if active_memberships:
            plan.warnings.append(
                f"Removed from {active_memberships} active conversation(s)"
            )
        return plan

    plan = DeletionPlan(
        deletion_type=SOFT,
        restorable=True,
        protection_level=level,
        deletion_reason="forced" if force else "user_request",
    )
    if identity.is_default:
        if has_replacement:
            plan.reassign_default = True
        elif not force:
            raise NoReplacementDefault(
                "Default identity cannot be deleted without another identity "
                "to take its place"
            )
        else:
            plan.warnings.append("No identity is left to become the new default")
    return plan


def elect_replacement_default(candidates: Iterable[Identity]) -> Identity | None:
    """Protected first, then most messages sent, then oldest."""
    ranked = sorted(
        candidates,
        key=lambda identity: (
            not identity.is_protected,
            -identity.messages_sent,
            identity.created_at,
        ),
    )
    return ranked[0] if ranked else None


def _option(identity, permanent, force, active_memberships, has_replacement) -> dict:
    try:
        plan = plan_deletion(
            identity, permanent, force, active_memberships, has_replacement
        )
    except (ProtectedIdentity, NoReplacementDefault, ActiveUsageConflict) as exc:
        return {"available": False, "reason": exc.message}
    return {
        "available": True,
        "restorable": plan.restorable,
        "reassign_default": plan.reassign_default,
        "warnings": plan.warnings,
    }


def deletion_options(
    identity: Identity,
    active_memberships: int,
    has_replacement: bool,
) -> dict:
    """Read-only preview of what each deletion mode would do."""
    level = protection_level(identity)
    soft = _option(identity, False, False, active_memberships, has_replacement)
    soft.update(
        description="Identity is hidden and can be restored later",
        consequences=[
            "Identity disappears from lists and cannot send messages",
            "Conversations and messages are kept",
            "Alias stays reserved until a new identity takes it",
        ],
    )
    if identity.is_default and has_replacement:
        soft["consequences"].append("Another identity becomes the default")

    permanent = _option(identity, True, False, active_memberships, has_replacement)
    permanent.update(
        description="Identity and its references are removed for good",
        consequences=[
            "Identity cannot be restored",
            "Memberships and sent messages show the identity as deleted",
            "Alias becomes available again",
        ],
    )
    if active_memberships and not is_effectively_protected(identity):
        permanent["forced_available"] = True

    if level == LEVEL_DEFAULT:
        recommendation = "Set another identity as default before deleting"
    elif level == LEVEL_USER_SELECTED:
        recommendation = "Remove protection to allow permanent deletion"
    elif active_memberships:
        recommendation = "Soft delete keeps your conversations intact"
    else:
        recommendation = "Either mode is available"

    return {
        "protection_type": level,
        "is_protected": is_effectively_protected(identity),
        "active_conversations": active_memberships,
        "available_options": {SOFT: soft, PERMANENT: permanent},
        "recommendation": recommendation,
    }


def protection_recommendations(
    identities: Iterable[Identity],
    available_slots: int,
    now: datetime,
) -> list[dict]:
    """Suggest unprotected identities worth protecting, up to the free slots."""
    if available_slots <= 0:
        return []

    recent = now - timedelta(days=7)
    picks: list[dict] = []
    seen: set[int] = set()
    unprotected = [
        identity
        for identity in identities
        if not identity.is_protected and not identity.is_default and not identity.is_deleted
    ]

    def add(identity: Identity, reason: str) -> None:
        if identity.id in seen or len(picks) >= available_slots:
            return
        seen.add(identity.id)
        picks.append({"id": identity.id, "alias": identity.alias, "reason": reason})

    for identity in sorted(unprotected, key=lambda i: -i.messages_sent):
        if identity.messages_sent > 50:
            add(identity, "High usage")
    for identity in sorted(unprotected, key=lambda i: i.last_used_at, reverse=True):
        if identity.last_used_at > recent:
            add(identity, "Recently active")
    for identity in sorted(unprotected, key=lambda i: i.created_at):
        add(identity, "Long-standing identity")
    return picks
