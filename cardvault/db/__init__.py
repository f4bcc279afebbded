from cardvault.db.database import atomic, get_read_session, get_session, init_db
from cardvault.db.operations import (
    create_card_definition,
    create_user,
    credit_packs,
    debit_packs,
    delete_setting,
    get_card_definition,
    get_packs_balance,
    get_rarity_tier,
    get_setting,
    get_user,
    get_user_instances,
    lock_users,
    require_user,
    set_setting,
)

__all__ = [
    "atomic",
    "create_card_definition",
    "create_user",
    "credit_packs",
    "debit_packs",
    "delete_setting",
    "get_card_definition",
    "get_packs_balance",
    "get_rarity_tier",
    "get_read_session",
    "get_session",
    "get_setting",
    "get_user",
    "get_user_instances",
    "lock_users",
    "init_db",
    "require_user",
    "set_setting",
]
