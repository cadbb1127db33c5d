import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        auth_secret: str,
        public_base_url: str,
        ocr_gateway_url: str,
        ocr_api_key: str,
        ocr_model: str,
        ocr_timeout_secs: float,
        receipt_url_max_age_secs: int,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.auth_secret = auth_secret
        self.public_base_url = public_base_url
        self.ocr_gateway_url = ocr_gateway_url
        self.ocr_api_key = ocr_api_key
        self.ocr_model = ocr_model
        self.ocr_timeout_secs = ocr_timeout_secs
        self.receipt_url_max_age_secs = receipt_url_max_age_secs

    @property
    def receipts_dir(self) -> Path:
        return self.data_dir / "receipts"

    @property
    def cache_dir(self) -> Path:
        return self.data_dir / "cache"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BOARDING_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "boarding.db"
    database_url = os.getenv("BOARDING_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BOARDING_TIMEZONE", "Asia/Dhaka")
    csrf_secret = os.getenv(
        "BOARDING_CSRF_SECRET",
        "5d2f0c8e6b1a4f3e9c7d2b8a0e4f6c1d3b5a7e9f0c2d4b6a8e1f3c5d7b9a0e2f",
    )
    auth_secret = os.getenv(
        "BOARDING_AUTH_SECRET",
        "a41c9e07d3b85f2e6c1a0d9b7e3f5c2a8d6b4e0f1c3a5e7d9b2f4c6a8e0d1b3f",
    )
    public_base_url = os.getenv("BOARDING_PUBLIC_BASE_URL", "http://localhost:8000")
    ocr_gateway_url = os.getenv(
        "BOARDING_OCR_GATEWAY_URL",
        "https://ai.gateway.lovable.dev/v1/chat/completions",
    )
    ocr_api_key = os.getenv("BOARDING_OCR_API_KEY", "")
    ocr_model = os.getenv("BOARDING_OCR_MODEL", "google/gemini-2.5-flash")
    ocr_timeout_secs = float(os.getenv("BOARDING_OCR_TIMEOUT_SECS", "60"))
    receipt_url_max_age_secs = int(
        os.getenv("BOARDING_RECEIPT_URL_MAX_AGE_SECS", "3600")
    )
    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        auth_secret=auth_secret,
        public_base_url=public_base_url,
        ocr_gateway_url=ocr_gateway_url,
        ocr_api_key=ocr_api_key,
        ocr_model=ocr_model,
        ocr_timeout_secs=ocr_timeout_secs,
        receipt_url_max_age_secs=receipt_url_max_age_secs,
    )
