from pydantic_settings import BaseSettings, SettingsConfigDict
class Settings(BaseSettings):
    APP_ENV: str = "dev"
    APP_SECRET: str
    DB_URL: str
    JWT_ISS: str = "storefront"
    IDENTITY_HINT_DAYS: int = 90
    LOG_LEVEL: str = "INFO"
    TZ: str = "UTC"

    # collaborators; an empty URL disables the call
    HTTP_TIMEOUT: float = 10.0
    INVENTORY_URL: str = ""
    NOTIFY_URL: str = ""
    MERCADOPAGO_URL: str = "https://api.mercadopago.com"
    MERCADOPAGO_TOKEN: str = ""
    PICPAY_URL: str = "https://checkout-api.picpay.com"
    PICPAY_TOKEN: str = ""
    PUBLIC_BASE_URL: str = "http://localhost:8080"

    PAYMENT_SESSION_TTL_MIN: int = 30
    DEFAULT_PREP_MIN: int = 30
    DELIVERY_BUFFER_MIN: int = 15
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")
settings = Settings()
