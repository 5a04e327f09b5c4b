from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import sys

from pdvhub.domain.errors import ValidationError


NFE_ENVIRONMENTS = ("staging", "production")


@dataclass(frozen=True)
class AppPaths:
    base_dir: Path
    db_path: Path
    logs_dir: Path
    storage_path: Path
    receipts_dir: Path


@dataclass(frozen=True)
class StoreConfig:
    code: str
    name: str
    id: str | None = None

    @property
    def stock_field(self) -> str:
        return "stock_" + "_".join(self.code.lower().split())


@dataclass(frozen=True)
class Settings:
    backend_url: str = ""
    functions_url: str = ""
    api_key: str = ""
    webhook_url: str = ""
    nfe_environment: str = "staging"
    recipient_tax_id: str = ""
    store_name: str = "Móveis Pedro II"
    logo_url: str = ""
    http_timeout: float = 10.0
    default_markup: float = 1.8
    stores: tuple[StoreConfig, ...] = field(default_factory=tuple)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        nfe_env = env.get("PDV_NFE_ENVIRONMENT", "staging").strip().lower() or "staging"
        if nfe_env not in NFE_ENVIRONMENTS:
            raise ValidationError(f"PDV_NFE_ENVIRONMENT must be one of {NFE_ENVIRONMENTS}. Received: {nfe_env}")

        return cls(
            backend_url=env.get("PDV_BACKEND_URL", "").rstrip("/"),
            functions_url=env.get("PDV_FUNCTIONS_URL", "").rstrip("/"),
            api_key=env.get("PDV_API_KEY", ""),
            webhook_url=env.get("PDV_WEBHOOK_URL", "").rstrip("/"),
            nfe_environment=nfe_env,
            recipient_tax_id="".join(ch for ch in env.get("PDV_RECIPIENT_TAX_ID", "") if ch.isdigit()),
            store_name=env.get("PDV_STORE_NAME", "Móveis Pedro II"),
            logo_url=env.get("PDV_LOGO_URL", ""),
            http_timeout=_positive_float(env, "PDV_HTTP_TIMEOUT", 10.0),
            default_markup=_positive_float(env, "PDV_DEFAULT_MARKUP", 1.8),
            stores=_parse_stores(env.get("PDV_STORES", "")),
        )


def _positive_float(env, key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValidationError(f"{key} must be a number. Received: {raw}") from e
    if value <= 0:
        raise ValidationError(f"{key} must be > 0. Received: {raw}")
    return value


def _parse_stores(raw: str) -> tuple[StoreConfig, ...]:
    """
    PDV_STORES format: "CODE:Name,CODE:Name" (id optional as third part).
    """
    stores = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        parts = [p.strip() for p in chunk.split(":")]
        code = parts[0]
        name = parts[1] if len(parts) > 1 and parts[1] else code
        store_id = parts[2] if len(parts) > 2 and parts[2] else None
        stores.append(StoreConfig(code=code, name=name, id=store_id))
    return tuple(stores)


def _windows_appdata() -> Path:
    return Path(os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming")))


def _mac_app_support() -> Path:
    return Path.home() / "Library" / "Application Support"


def get_app_paths(app_name: str = "PdvHub", base_dir: Path | str | None = None) -> AppPaths:
    if base_dir is not None:
        base = Path(base_dir)
    elif sys.platform.startswith("win"):
        base = _windows_appdata() / app_name
    elif sys.platform == "darwin":
        base = _mac_app_support() / app_name
    else:
        base = Path.home() / f".{app_name.lower()}"

    logs = base / "logs"
    receipts = base / "receipts"

    base.mkdir(parents=True, exist_ok=True)
    logs.mkdir(parents=True, exist_ok=True)
    receipts.mkdir(parents=True, exist_ok=True)

    return AppPaths(
        base_dir=base,
        db_path=base / "pdv.db",
        logs_dir=logs,
        storage_path=base / "local_storage.json",
        receipts_dir=receipts,
    )
