from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./pocketledger.db"
    frontend_origin: str = "http://localhost:3000"
    fx_api_url: str = "https://api.frankfurter.app"
    coingecko_api_url: str = "https://api.coingecko.com/api/v3"
    yahoo_chart_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    openfigi_api_url: str = "https://api.openfigi.com/v3"
    export_dir: Path = Path("./exports")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", defaults.frontend_origin),
            fx_api_url=os.getenv("FX_API_URL", defaults.fx_api_url).rstrip("/"),
            coingecko_api_url=os.getenv("COINGECKO_API_URL", defaults.coingecko_api_url).rstrip("/"),
            yahoo_chart_url=os.getenv("YAHOO_CHART_URL", defaults.yahoo_chart_url).rstrip("/"),
            openfigi_api_url=os.getenv("OPENFIGI_API_URL", defaults.openfigi_api_url).rstrip("/"),
            export_dir=Path(os.getenv("EXPORT_DIR", str(defaults.export_dir))),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )
