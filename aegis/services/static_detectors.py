# aegis/services/static_detectors.py
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from aegis.errors import TransportError, UpstreamError
from aegis.services.risk_bits import RiskBit

logger = logging.getLogger(__name__)

GOPLUS_BASE = "https://api.gopluslabs.io/api/v1"
DEFAULT_SELL_TAX_THRESHOLD = 0.10


@dataclass
class StaticReport:
    bits: int = 0
    details: Dict[str, Any] = field(default_factory=dict)


def _flag(value: Any) -> bool:
    return str(value).strip() == "1"


def _as_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_token_security(data: Dict[str, Any], sell_tax_threshold: float = DEFAULT_SELL_TAX_THRESHOLD) -> StaticReport:
    """
    Deterministic rules over a GoPlus token_security record:
      bit0 is_open_source == "0"
      bit1 sell_tax above threshold (GoPlus reports 0..1)
      bit2 is_honeypot == "1" (simulated buy/sell)
      bit3 is_proxy == "1"
    Missing fields never trigger.
    """
    bits = 0
    if str(data.get("is_open_source", "")).strip() == "0":
        bits |= RiskBit.UNVERIFIED

    sell_tax = _as_float(data.get("sell_tax"))
    if sell_tax is not None and sell_tax > sell_tax_threshold:
        bits |= RiskBit.SELL_RESTRICTION
    if _flag(data.get("cannot_sell_all")):
        bits |= RiskBit.SELL_RESTRICTION

    if _flag(data.get("is_honeypot")):
        bits |= RiskBit.HONEYPOT
    if _flag(data.get("is_proxy")):
        bits |= RiskBit.PROXY

    details = {
        "is_open_source": data.get("is_open_source"),
        "sell_tax": sell_tax,
        "is_honeypot": data.get("is_honeypot"),
        "is_proxy": data.get("is_proxy"),
    }
    return StaticReport(bits=int(bits), details=details)


class GoPlusStaticDetector:
    """Static family: GoPlus token-security lookup + rules above."""

    name = "GoPlus"

    def __init__(
        self,
        chain_id: int,
        *,
        base_url: str = GOPLUS_BASE,
        sell_tax_threshold: float = DEFAULT_SELL_TAX_THRESHOLD,
        session=None,
        timeout: float = 15.0,
    ):
        self.chain_id = chain_id
        self.base_url = base_url.rstrip("/")
        self.sell_tax_threshold = sell_tax_threshold
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch(self, address: str) -> Dict[str, Any]:
        url = f"{self.base_url}/token_security/{self.chain_id}"
        try:
            resp = self.session.get(url, params={"contract_addresses": address.lower()}, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"GoPlus unreachable: {e}") from e
        if resp.status_code != 200:
            raise UpstreamError(f"GoPlus returned {resp.status_code}", status_code=resp.status_code)

        data = resp.json()
        if data.get("code") not in (1, "1"):
            raise UpstreamError(f"GoPlus error: {data.get('message')}", status_code=resp.status_code)

        result = data.get("result") or {}
        # las claves vienen en minúsculas
        return result.get(address.lower()) or {}

    def run(self, address: str) -> StaticReport:
        record = self.fetch(address)
        report = evaluate_token_security(record, self.sell_tax_threshold)
        logger.info("GoPlus static bits for %s: %d", address, report.bits)
        return report
