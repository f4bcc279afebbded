from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env")

    app_name: str = "CardVault"
    debug: bool = False

    database_url: str = "postgresql+asyncpg://localhost:5432/cardvault"

    # Optional replica for advisory reads (remaining supply, listing browse).
    # Falls back to the primary when unset.
    read_database_url: str | None = None

    grading_duration_hours: int = 24
    non_gradable_rarity: str = "Event"

    listing_max_age_days: int = 7

    # None disables trade expiry entirely
    trade_expiry_days: int | None = None

    max_offered_instances: int = 20


settings = Settings()


# =============================================================================
# GRADING
# =============================================================================

MIN_GRADE = 1
MAX_GRADE = 10

# Relative weights for a randomly drawn grade (grade -> weight)
GRADE_WEIGHTS: dict[int, int] = {
    10: 1,
    9: 3,
    8: 7,
    7: 10,
    6: 12,
    5: 14,
    4: 12,
    3: 10,
    2: 7,
    1: 4,
}
