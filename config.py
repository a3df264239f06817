import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass
class Settings:
    """Runtime settings, read from the environment (and a local .env file)."""

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "taskboard"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    # Wrap batch reorders in a multi-document transaction (needs a replica set)
    mongo_transactions: bool = False
    join_code_attempts: int = 5
    default_import_column: str = "to-do"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(override=False)
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            host=os.getenv("HOST", cls.host),
            port=int(os.getenv("PORT", cls.port)),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            mongo_transactions=_env_bool("MONGO_TRANSACTIONS"),
            join_code_attempts=int(os.getenv("JOIN_CODE_ATTEMPTS", cls.join_code_attempts)),
            default_import_column=os.getenv("DEFAULT_IMPORT_COLUMN", cls.default_import_column),
        )
