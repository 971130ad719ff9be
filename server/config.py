from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_secret_key: str = "change-me-in-production"
    app_base_url: str = "http://localhost:8000"

    # Database
    database_path: str = "./data/promptworks.db"

    # Logging
    log_level: str = "info"

    # CORS
    cors_origins: str = "http://localhost:5173"

    # Admin HTTP basic auth (disabled unless both credentials are set)
    auth_enabled: bool = False
    http_basic_auth_name: str = ""
    http_basic_auth_password: str = ""

    # LLM providers (secret-store fallback when no key is stored in the DB)
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    # OpenAI Evals API
    evals_base_url: str = "https://api.openai.com/v1"
    evals_connect_timeout: float = 10.0
    evals_read_timeout: float = 30.0
    eval_poll_interval_seconds: float = 5.0
    eval_poll_max_attempts: int = 60

    # LLM execution
    llm_timeout: float = 60.0

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
