# aegis/services/clearance_poller.py
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from hexbytes import HexBytes
from web3 import Web3

from aegis.errors import AuditTimeoutError, InputError
from aegis.services.cancel import CancelToken

logger = logging.getLogger(__name__)

APPROVED_EVENT = "ClearanceUpdated(address,bool)"
DENIED_EVENT = "ClearanceDenied(address,uint256)"

DEFAULT_MAX_ATTEMPTS = 120     # ~2 min a 1s; el consenso off-chain puede tardar minutos
DEFAULT_INTERVAL_SECONDS = 1.0


class ClearanceOutcome(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMEOUT = "timeout"


@dataclass
class PollState:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    interval: float = DEFAULT_INTERVAL_SECONDS
    attempts: int = 0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise InputError("max_attempts debe ser >= 1")

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_attempt(self) -> int:
        if self.exhausted:
            raise AuditTimeoutError("presupuesto de intentos agotado")
        self.attempts += 1
        return self.attempts


@dataclass(frozen=True)
class ClearanceResult:
    outcome: ClearanceOutcome
    attempts: int
    risk_score: Optional[int] = None

    @property
    def approved(self) -> bool:
        return self.outcome is ClearanceOutcome.APPROVED

    def to_dict(self) -> dict:
        return {"outcome": self.outcome.value, "attempts": self.attempts, "risk_score": self.risk_score}


class ClearanceLogSource(Protocol):
    def approved_logs(self, token: str, from_block: int) -> List[dict]:
        ...

    def denied_logs(self, token: str, from_block: int) -> List[dict]:
        ...


def _topic_for_address(address: str) -> str:
    return "0x" + "0" * 24 + Web3.to_checksum_address(address)[2:].lower()


def decode_denied_score(log: dict) -> int:
    # data = abi.encode(uint256 riskScore); llega como HexBytes o str 0x...
    data = HexBytes(log.get("data") or b"")
    return int.from_bytes(data[:32], "big") if data else 0


class Web3ClearanceLogSource:
    """eth_getLogs over the module address, scoped to the token topic."""

    def __init__(self, w3: Web3, module_address: str):
        self.w3 = w3
        self.module_address = Web3.to_checksum_address(module_address)
        self._approved_topic = Web3.to_hex(Web3.keccak(text=APPROVED_EVENT))
        self._denied_topic = Web3.to_hex(Web3.keccak(text=DENIED_EVENT))

    def _logs(self, topic0: str, token: str, from_block: int) -> List[dict]:
        return list(self.w3.eth.get_logs({
            "address": self.module_address,
            "topics": [topic0, _topic_for_address(token)],
            "fromBlock": from_block,
            "toBlock": "latest",
        }))

    def approved_logs(self, token: str, from_block: int) -> List[dict]:
        return self._logs(self._approved_topic, token, from_block)

    def denied_logs(self, token: str, from_block: int) -> List[dict]:
        return self._logs(self._denied_topic, token, from_block)


def poll_for_clearance(
    logs: ClearanceLogSource,
    token: str,
    start_block: int,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL_SECONDS,
    cancel: Optional[CancelToken] = None,
) -> ClearanceResult:
    """
    Wait for the module's terminal answer for ``token``.

    Pending -> Approved | Denied | Timeout; the first outcome observed wins.
    RPC errors inside an attempt are logged and retried. Abandoning the wait
    (cancelling ``cancel``) raises AuditTimeoutError between attempts; the
    chain side is never touched.
    """
    state = PollState(max_attempts=max_attempts, interval=interval)
    cancel = cancel or CancelToken()
    checksum = Web3.to_checksum_address(token)

    while not state.exhausted:
        attempt = state.next_attempt()
        try:
            if logs.approved_logs(checksum, start_block):
                logger.info("Clearance aprobado para %s tras %d intentos", checksum, attempt)
                return ClearanceResult(ClearanceOutcome.APPROVED, attempt)

            denied = logs.denied_logs(checksum, start_block)
            if denied:
                score = decode_denied_score(denied[0])
                logger.info("Clearance denegado para %s (riskScore=%d)", checksum, score)
                return ClearanceResult(ClearanceOutcome.DENIED, attempt, risk_score=score)
        except Exception as e:
            logger.warning("Intento %d de clearance falló (reintentando): %s", attempt, e)

        if not state.exhausted and cancel.wait(state.interval):
            raise AuditTimeoutError(f"espera de clearance para {checksum} cancelada tras {attempt} intentos")

    logger.info("Espera de clearance para %s agotada tras %d intentos", checksum, state.attempts)
    return ClearanceResult(ClearanceOutcome.TIMEOUT, state.attempts)
