from dataclasses import dataclass


@dataclass(frozen=True)
class Caller:
    """
    Identity of whoever invokes an operation.

    Supplied by the identity provider and trusted as-is.
    """

    user_id: str
    is_admin: bool = False
