"""ekat configuration: upstream endpoints, pacing, and on-disk locations."""

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # eKatastar Public Access
    base_url: str = "https://katastar.rgz.gov.rs/eKatastarPublic"

    # Street search: the server can be very slow, keep the timeout long.
    search_timeout: float = 120.0
    search_delay: float = 0.0
    search_page_size: int = 1000
    max_query_length: int = 0  # 0 = split until the upstream stops truncating

    # Captcha images
    image_timeout: float = 30.0
    captcha_delay: float = 1.0
    captcha_concurrency: int = 2
    captcha_samples: int = 2

    # Municipality listing: one start-page GET per municipality
    listing_delay: float = 0.5

    # Retries for one-off requests (municipality listing, captcha pages)
    retries: int = 3
    retry_delay: float = 2.0

    # Directories
    cache_dir: Path = Path("dist/street_search")
    output_dir: Path = Path("dist")
    captcha_dir: Path = Path("data/captchas")

    # Logging
    log_json: bool = False
    log_level: str = "INFO"

    # MLflow run tracking (off unless explicitly enabled)
    mlflow_enabled: bool = False
    mlflow_tracking_uri: str = "sqlite:///mlruns/mlflow.db"
    mlflow_experiment_name: str = "ekat-harvest"

    @model_validator(mode="after")
    def _normalize_base_url(self) -> "Settings":
        """Strip the trailing slash so endpoint paths can be joined with '/'."""
        self.base_url = self.base_url.rstrip("/")
        return self

    model_config = {"env_file": ".env", "env_prefix": "EKAT_", "extra": "ignore"}


settings = Settings()
