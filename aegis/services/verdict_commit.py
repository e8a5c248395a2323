# aegis/services/verdict_commit.py
"""
Verdict commit: calldata encoding for the receiving module and a one-shot
committer per trade id.

Calldata layout (68 bytes, constant):
    selector (4) | tradeId uint256 big-endian (32) | riskScore uint256 big-endian (32)
The receiving contract decodes exactly this layout; the selector is picked by
wire version so a new report signature gets a new version, not a new code path.
"""
import logging
import threading
from typing import Optional, Protocol, Tuple

from hexbytes import HexBytes
from web3 import Web3

from aegis.errors import DuplicateCommitError, InputError, PipelineError
from aegis.services.risk_bits import MAX_RISK_SCORE, RiskVerdict, VerdictStatus

logger = logging.getLogger(__name__)

UINT256_MAX = 2 ** 256 - 1
WORD_SIZE = 32

REPORT_SIGNATURES = {
    1: "onReportDirect(uint256,uint256)",
}
DEFAULT_WIRE_VERSION = 1

CALLDATA_LENGTH = 4 + 2 * WORD_SIZE


def report_selector(version: int = DEFAULT_WIRE_VERSION) -> bytes:
    try:
        signature = REPORT_SIGNATURES[version]
    except KeyError:
        raise InputError(f"versión de wire de veredicto desconocida: {version}") from None
    return bytes(Web3.keccak(text=signature)[:4])


def _check_uint(value, upper: int, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InputError(f"{what} debe ser entero, recibido {type(value).__name__}")
    if not 0 <= value <= upper:
        raise InputError(f"{what} fuera de rango: {value}")
    return value


def encode_verdict_calldata(trade_id: int, risk_score: int, version: int = DEFAULT_WIRE_VERSION) -> bytes:
    # validar todo antes de producir un solo byte
    _check_uint(trade_id, UINT256_MAX, "tradeId")
    _check_uint(risk_score, MAX_RISK_SCORE, "riskScore")
    selector = report_selector(version)
    return selector + trade_id.to_bytes(WORD_SIZE, "big") + risk_score.to_bytes(WORD_SIZE, "big")


def decode_verdict_calldata(data: bytes, version: int = DEFAULT_WIRE_VERSION) -> Tuple[int, int]:
    data = bytes(HexBytes(data))
    if len(data) != CALLDATA_LENGTH:
        raise InputError(f"calldata debe tener {CALLDATA_LENGTH} bytes, recibido {len(data)}")
    if data[:4] != report_selector(version):
        raise InputError("el selector del calldata no corresponde a la versión de wire")
    trade_id = int.from_bytes(data[4:4 + WORD_SIZE], "big")
    risk_score = int.from_bytes(data[4 + WORD_SIZE:], "big")
    return trade_id, risk_score


class TransactionSender(Protocol):
    def send(self, calldata: bytes) -> str:
        ...

    def wait_for_receipt(self, tx_hash: str) -> dict:
        ...


class Web3TransactionSender:
    """
    Signs and sends raw calldata to the receiving module.
    Gas: estimate x1.2; EIP-1559 fees when the chain exposes baseFeePerGas,
    legacy gasPrice otherwise.
    """

    def __init__(self, w3: Web3, module_address: str, private_key: str, *, chain_id: Optional[int] = None,
                 receipt_timeout: int = 600):
        if not private_key:
            raise RuntimeError("PRIVATE_KEY no configurada")
        self.w3 = w3
        self.module_address = Web3.to_checksum_address(module_address)
        self.private_key = private_key
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout

    def send(self, calldata: bytes) -> str:
        w3 = self.w3
        account = w3.eth.account.from_key(self.private_key)
        tx = {
            "from": account.address,
            "to": self.module_address,
            "data": Web3.to_hex(calldata),
            "value": 0,
            "nonce": w3.eth.get_transaction_count(account.address, "pending"),
            "chainId": int(self.chain_id or w3.eth.chain_id),
        }

        try:
            gas = w3.eth.estimate_gas(tx)
        except ValueError as e:
            # revert del módulo (trade desconocido, ya reportado, etc.)
            raise RuntimeError(f"No se pudo estimar gas para el reporte: {e}") from e
        tx["gas"] = int(gas * 1.2)

        latest = w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is not None:
            max_priority = w3.to_wei(2, "gwei")
            tx["maxFeePerGas"] = int(base_fee * 2) + max_priority
            tx["maxPriorityFeePerGas"] = max_priority
        else:
            tx["gasPrice"] = w3.eth.gas_price

        signed = w3.eth.account.sign_transaction(tx, private_key=self.private_key)
        raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
        tx_hash = w3.eth.send_raw_transaction(raw)
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str) -> dict:
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        return dict(receipt)


class VerdictCommitter:
    """
    Commits each trade id at most once from this process. The receiving
    contract destroys the clearance on first use and rejects replays; that
    remains the authoritative guard.
    """

    def __init__(self, sender: TransactionSender, version: int = DEFAULT_WIRE_VERSION):
        self.sender = sender
        self.version = version
        self._committed = set()
        self._lock = threading.Lock()

    def commit(self, verdict: RiskVerdict) -> Tuple[str, bytes]:
        if verdict.status is VerdictStatus.ERROR:
            raise PipelineError("un veredicto ERROR nunca se comitea")

        calldata = encode_verdict_calldata(verdict.trade_id, verdict.risk_score, self.version)
        with self._lock:
            if verdict.trade_id in self._committed:
                raise DuplicateCommitError(f"el trade {verdict.trade_id} ya tiene veredicto comiteado")
            self._committed.add(verdict.trade_id)

        logger.info("Comiteando veredicto trade=%s score=%d", verdict.trade_id, verdict.risk_score)
        try:
            tx_hash = self.sender.send(calldata)
        except Exception:
            # nothing was broadcast; the trade id may be retried
            with self._lock:
                self._committed.discard(verdict.trade_id)
            raise
        return tx_hash, calldata
