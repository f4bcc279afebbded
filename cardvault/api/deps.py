"""
Shared API dependencies.

Identity comes from the upstream identity provider as request headers.
The service trusts them and performs no authentication itself.
"""

from typing import Annotated

from fastapi import Depends, Header

from cardvault.models.failure import ForbiddenError
from cardvault.models.identity import Caller

_TRUE_VALUES = {"1", "true", "yes"}


async def get_caller(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_admin: Annotated[str | None, Header()] = None,
) -> Caller:
    """Build the Caller for this request from X-User-Id / X-User-Admin."""
    if not x_user_id or not x_user_id.strip():
        raise ForbiddenError(
            "No user identity on this request.",
            suggestion="Send the X-User-Id header.",
        )
    is_admin = (x_user_admin or "").strip().lower() in _TRUE_VALUES
    return Caller(user_id=x_user_id.strip(), is_admin=is_admin)


CallerDep = Annotated[Caller, Depends(get_caller)]
