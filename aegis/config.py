# aegis/config.py
import os
from dataclasses import dataclass, field
from typing import Mapping, Tuple


def _as_bool(v) -> bool:
    return str(v).lower() in ("1", "true", "yes", "on")


def _models(raw: str) -> Tuple[str, ...]:
    # sin duplicados: cada modelo vota una sola vez en el consenso
    models = (m.strip() for m in (raw or "").split(","))
    return tuple(dict.fromkeys(m for m in models if m))


class BaseConfig:
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://redis:6379/0")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://redis:6379/0")

    # --- DB ---
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", "postgresql+psycopg2://app_user:app_pass@db:5432/app_db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # --- Chain ---
    WEB3_PROVIDER_URI = os.environ.get("WEB3_PROVIDER_URI", "")
    WEB3_USE_POA = _as_bool(os.environ.get("WEB3_USE_POA", "false"))
    CHAIN_ID = int(os.environ.get("CHAIN_ID", "8453"))  # Base mainnet
    AEGIS_MODULE_ADDRESS = os.environ.get("AEGIS_MODULE_ADDRESS", "")
    PRIVATE_KEY = os.environ.get("PRIVATE_KEY", "")
    VERDICT_WIRE_VERSION = int(os.environ.get("VERDICT_WIRE_VERSION", "1"))

    # --- Source resolution ---
    ETHERSCAN_API_KEY = os.environ.get("ETHERSCAN_API_KEY", "")
    ETHERSCAN_V2_BASE = os.environ.get("ETHERSCAN_V2_BASE", "https://api.etherscan.io/v2/api")
    DEDAUB_API_KEY = os.environ.get("DEDAUB_API_KEY", "")
    DEDAUB_BASE_URL = os.environ.get("DEDAUB_BASE_URL", "https://api.dedaub.com")
    SOURCE_RESOLVE_TIMEOUT = float(os.environ.get("SOURCE_RESOLVE_TIMEOUT", "90"))

    # --- Detectors ---
    GOPLUS_BASE_URL = os.environ.get("GOPLUS_BASE_URL", "https://api.gopluslabs.io/api/v1")
    SELL_TAX_THRESHOLD = float(os.environ.get("SELL_TAX_THRESHOLD", "0.10"))
    LLM_BASE_URL = os.environ.get("LLM_BASE_URL", "https://api.openai.com/v1")
    LLM_API_KEY = os.environ.get("LLM_API_KEY", "")
    LLM_MODELS = os.environ.get("LLM_MODELS", "gpt-4o,llama-3.3-70b")
    STRICT_CONSENSUS = _as_bool(os.environ.get("STRICT_CONSENSUS", "false"))
    DETECTOR_TIMEOUT = float(os.environ.get("DETECTOR_TIMEOUT", "60"))

    # --- Clearance ---
    CLEARANCE_MAX_ATTEMPTS = int(os.environ.get("CLEARANCE_MAX_ATTEMPTS", "300"))


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    ENV = "development"


class ProductionConfig(BaseConfig):
    DEBUG = False
    ENV = "production"


class TestingConfig(BaseConfig):
    TESTING = True
    ENV = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    WEB3_PROVIDER_URI = ""
    PRIVATE_KEY = ""
    ETHERSCAN_API_KEY = "test-key"
    DEDAUB_API_KEY = "test-key"
    LLM_API_KEY = "test-key"


@dataclass(frozen=True)
class AuditSettings:
    """
    Snapshot of the audit knobs. Built once from the Flask config and passed
    explicitly into the services, which never read the environment themselves.
    """
    chain_id: int = 8453
    web3_provider_uri: str = ""
    web3_use_poa: bool = False
    module_address: str = ""
    private_key: str = field(default="", repr=False)
    verdict_wire_version: int = 1
    etherscan_api_key: str = field(default="", repr=False)
    etherscan_base: str = "https://api.etherscan.io/v2/api"
    dedaub_api_key: str = field(default="", repr=False)
    dedaub_base_url: str = "https://api.dedaub.com"
    source_resolve_timeout: float = 90.0
    goplus_base_url: str = "https://api.gopluslabs.io/api/v1"
    sell_tax_threshold: float = 0.10
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str = field(default="", repr=False)
    llm_models: Tuple[str, ...] = ("gpt-4o", "llama-3.3-70b")
    strict_consensus: bool = False
    detector_timeout: float = 60.0
    clearance_max_attempts: int = 300

    @classmethod
    def from_mapping(cls, cfg: Mapping) -> "AuditSettings":
        return cls(
            chain_id=int(cfg.get("CHAIN_ID", 8453)),
            web3_provider_uri=cfg.get("WEB3_PROVIDER_URI", "") or "",
            web3_use_poa=_as_bool(cfg.get("WEB3_USE_POA", False)),
            module_address=cfg.get("AEGIS_MODULE_ADDRESS", "") or "",
            private_key=cfg.get("PRIVATE_KEY", "") or "",
            verdict_wire_version=int(cfg.get("VERDICT_WIRE_VERSION", 1)),
            etherscan_api_key=cfg.get("ETHERSCAN_API_KEY", "") or "",
            etherscan_base=cfg.get("ETHERSCAN_V2_BASE", cls.etherscan_base),
            dedaub_api_key=cfg.get("DEDAUB_API_KEY", "") or "",
            dedaub_base_url=cfg.get("DEDAUB_BASE_URL", cls.dedaub_base_url),
            source_resolve_timeout=float(cfg.get("SOURCE_RESOLVE_TIMEOUT", 90)),
            goplus_base_url=cfg.get("GOPLUS_BASE_URL", cls.goplus_base_url),
            sell_tax_threshold=float(cfg.get("SELL_TAX_THRESHOLD", 0.10)),
            llm_base_url=cfg.get("LLM_BASE_URL", cls.llm_base_url),
            llm_api_key=cfg.get("LLM_API_KEY", "") or "",
            llm_models=_models(cfg.get("LLM_MODELS", "gpt-4o,llama-3.3-70b")),
            strict_consensus=_as_bool(cfg.get("STRICT_CONSENSUS", False)),
            detector_timeout=float(cfg.get("DETECTOR_TIMEOUT", 60)),
            clearance_max_attempts=int(cfg.get("CLEARANCE_MAX_ATTEMPTS", 300)),
        )
