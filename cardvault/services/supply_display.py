"""
Display-only supply statistics.

Admins may override what users are *shown* as the remaining copies of a
card. The override lives in the settings table and is read only here.
The allocator never imports this module, so a displayed number can never
leak into an allocation decision.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.db.operations import delete_setting, get_setting, set_setting
from cardvault.models.failure import ForbiddenError, ValidationError
from cardvault.models.identity import Caller
from cardvault.services.events import log_audit
from cardvault.services.supply import query_remaining_supply

logger = logging.getLogger(__name__)

DISPLAY_OVERRIDE_PREFIX = "display.remaining"


@dataclass(frozen=True)
class DisplayedSupply:
    definition_id: int
    rarity: str
    remaining: int
    overridden: bool


def display_override_key(definition_id: int, rarity: str) -> str:
    return f"{DISPLAY_OVERRIDE_PREFIX}.{definition_id}.{rarity}"


async def displayed_remaining_supply(
    session: AsyncSession, definition_id: int, rarity: str
) -> DisplayedSupply:
    """What users see as "copies remaining" for a card at a rarity."""
    remaining = await query_remaining_supply(session, definition_id, rarity)
    override = await get_setting(session, display_override_key(definition_id, rarity))
    if override is None:
        return DisplayedSupply(definition_id, rarity, remaining, overridden=False)
    return DisplayedSupply(definition_id, rarity, int(override), overridden=True)


async def set_display_override(
    session: AsyncSession,
    caller: Caller,
    definition_id: int,
    rarity: str,
    value: int | None,
) -> None:
    """
    Set or clear (value=None) the displayed-remaining override.

    Caller commits.
    """
    if not caller.is_admin:
        raise ForbiddenError("Only admins can change displayed statistics")

    # Validates that the tier exists
    await query_remaining_supply(session, definition_id, rarity)

    key = display_override_key(definition_id, rarity)
    if value is None:
        await delete_setting(session, key)
    else:
        if value < 0:
            raise ValidationError("Displayed remaining supply cannot be negative")
        await set_setting(session, key, value)

    logger.info("Display override %s set to %s by %s", key, value, caller.user_id)
    log_audit("Display Override Set", key=key, value=value, admin=caller.user_id)
