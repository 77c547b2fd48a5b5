from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from decimal import Decimal
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'dte_user'
    POSTGRES_PASSWORD: str = 'dte_pass'
    POSTGRES_DB: str = 'dte_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Sobrescribe la URL construida (ej. sqlite:// en tests)

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # OpenFactura (autoridad tributaria / proveedor DTE)
    OPENFACTURA_BASE_URL: str = 'https://api.haulmer.com'
    OPENFACTURA_API_KEY: str = ''
    OPENFACTURA_TIMEOUT_SECONDS: float = 15.0

    # Identidad del emisor (la empresa que opera el sistema)
    COMPANY_TAX_ID: str = '78188363-8'
    COMPANY_NAME: str = 'MURALLA SPA'

    # Impuestos
    TAX_RATE: Decimal = Decimal('0.19')  # IVA Chile

    # Importación de documentos recibidos
    RECEIVED_DOCUMENTS_WINDOW_DAYS: int = 60
    IMPORT_MAX_PAGES: int = 5
    IMPORT_PAGE_DELAY_SECONDS: float = 2.0
    DEFAULT_TENANT_ID: Optional[str] = None  # Tenant para la importación programada

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Frontend
    CORS_ORIGINS: List[str] = ["*"]

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("OPENFACTURA_BASE_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

settings = Settings()
