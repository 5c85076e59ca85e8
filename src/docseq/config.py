from pydantic_settings import BaseSettings


class Config(BaseSettings):
    """Configuration loaded from environment variables."""

    database_url: str  # mongodb://host:port/dbname, the path selects the database
    debug: bool = False
    counters_collection: str = "counters"  # Default collection for counter records
    allocate_max_retries: int = 5  # Attempts per allocation when concurrent upserts collide

    model_config = {
        "env_file": [".env"],
        "env_prefix": "DOCSEQ_",
        "extra": "ignore",
    }
