# aegis/services/source_resolver.py
"""
Contract source resolution: verified source first, bytecode decompilation
as fallback, empty result when both are unavailable.

The three collaborators (verified-source provider, bytecode source and
decompiler) are plain protocols; production adapters live here, test doubles
live in tests/.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import requests
from web3 import Web3

from aegis.errors import InputError, TransportError, UpstreamError
from aegis.services.cancel import CancelToken
from aegis.services.decompiler import LOG_TAG, is_trivial_bytecode

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]


class SourceProvider(str, enum.Enum):
    VERIFIED = "basescan"
    DECOMPILED = "decompiled"
    NONE = "none"


@dataclass(frozen=True)
class VerifiedSource:
    source: str
    contract_name: str = ""


@dataclass(frozen=True)
class SourceResult:
    source: str
    contract_name: str
    provider: SourceProvider
    is_decompiled: bool = False

    def __post_init__(self):
        if self.provider is SourceProvider.NONE and self.source:
            raise ValueError("provider=none requires an empty source")

    @classmethod
    def empty(cls) -> "SourceResult":
        return cls(source="", contract_name="", provider=SourceProvider.NONE, is_decompiled=False)

    @property
    def provenance(self) -> str:
        if self.provider is SourceProvider.VERIFIED:
            return "verified"
        if self.provider is SourceProvider.DECOMPILED:
            return "decompiled"
        return "none"

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "contractName": self.contract_name,
            "provider": self.provider.value,
            "isDecompiled": self.is_decompiled,
        }


# ---------------------------
# Collaborator interfaces
# ---------------------------

class VerifiedSourceProvider(Protocol):
    def fetch_verified(self, address: str) -> Optional[VerifiedSource]:
        ...


class BytecodeSource(Protocol):
    def get_bytecode(self, address: str) -> str:
        ...


class Decompiler(Protocol):
    def submit(self, bytecode: str, cancel: Optional[CancelToken] = None) -> str:
        ...


# ---------------------------
# Production adapters
# ---------------------------

def norm_address(address: str) -> str:
    """Checksum an address; InputError when it is empty or malformed."""
    if not address or not isinstance(address, str):
        raise InputError("Empty or invalid contract address")
    try:
        return Web3.to_checksum_address(address.strip())
    except ValueError as e:
        raise InputError(f"Invalid contract address: {address}") from e


def _first_result(data: dict) -> dict:
    res = data.get("result")
    if isinstance(res, list) and res and isinstance(res[0], dict):
        return res[0]
    if isinstance(res, dict):
        return res
    return {}


class BaseScanSourceProvider:
    """
    Verified source lookup through the Etherscan v2 multichain API
    (``module=contract&action=getsourcecode``). Base/BaseScan is selected
    through ``chain_id``.
    """

    def __init__(self, api_key: str, base_url: str, chain_id: int, *, session=None, timeout: float = 20.0):
        self.api_key = api_key
        self.base_url = base_url
        self.chain_id = chain_id
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_verified(self, address: str) -> Optional[VerifiedSource]:
        if not self.api_key:
            raise RuntimeError("ETHERSCAN_API_KEY is not set")

        params = {
            "module": "contract",
            "action": "getsourcecode",
            "address": norm_address(address),
            "apikey": self.api_key,
            "chainid": str(self.chain_id),
        }
        try:
            resp = self.session.get(self.base_url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"BaseScan unreachable: {e}") from e
        if resp.status_code != 200:
            raise UpstreamError(f"BaseScan returned {resp.status_code}", status_code=resp.status_code)

        data = resp.json()
        if str(data.get("status")) == "0":
            # "NOTOK" / rate limit: nothing verified we can use
            logger.warning("BaseScan error for %s: %s", address, data.get("result"))
            return None

        info = _first_result(data)
        source = info.get("SourceCode") or ""
        if not source:
            return None
        return VerifiedSource(source=source, contract_name=info.get("ContractName") or "")


class Web3BytecodeSource:
    def __init__(self, w3: Web3):
        self.w3 = w3

    def get_bytecode(self, address: str) -> str:
        code = self.w3.eth.get_code(Web3.to_checksum_address(address))
        hexed = code.hex() if hasattr(code, "hex") else str(code)
        return hexed if hexed.startswith("0x") else "0x" + hexed


# ---------------------------
# Resolver
# ---------------------------

def resolve_source(
    address: str,
    *,
    verified: VerifiedSourceProvider,
    bytecode: BytecodeSource,
    decompiler: Optional[Decompiler],
    log_sink: Optional[LogSink] = None,
    cancel: Optional[CancelToken] = None,
) -> SourceResult:
    """
    Resolve readable source for ``address``.

    Steps run strictly in order and stop at the first usable result. Only an
    invalid address raises (InputError); every collaborator failure is logged
    and downgrades to ``provider=none``.
    """
    checksum = norm_address(address)
    log = log_sink or logger.info
    cancel = cancel or CancelToken()

    # 1) verified source
    try:
        found = verified.fetch_verified(checksum)
    except Exception as e:
        log(f"[BaseScan] Lookup failed for {checksum}: {e}")
        found = None

    if found and found.source:
        log(f"[BaseScan] Verified source found for {checksum} ({len(found.source)} chars)")
        return SourceResult(
            source=found.source,
            contract_name=found.contract_name,
            provider=SourceProvider.VERIFIED,
            is_decompiled=False,
        )

    log(f"{LOG_TAG} Unverified contract at {checksum}, attempting bytecode decompilation")

    # 2) bytecode
    try:
        code = bytecode.get_bytecode(checksum)
    except Exception as e:
        log(f"{LOG_TAG} Bytecode fetch failed for {checksum}: {e}")
        code = ""

    if is_trivial_bytecode(code):
        log(f"{LOG_TAG} No bytecode found for {checksum}, skipping decompilation")
        return SourceResult.empty()

    log(f"{LOG_TAG} Bytecode fetched: {len(code)} hex chars")

    # 3) decompiler
    if decompiler is not None and not cancel.cancelled:
        try:
            decompiled = decompiler.submit(code, cancel=cancel)
        except Exception as e:
            log(f"{LOG_TAG} Decompilation failed: {e}")
            decompiled = ""

        if decompiled:
            log(f"{LOG_TAG} Decompilation successful: {len(decompiled)} chars")
            return SourceResult(
                source=decompiled,
                contract_name=f"Decompiled_{checksum[:10]}",
                provider=SourceProvider.DECOMPILED,
                is_decompiled=True,
            )

    # 4) nothing usable
    log(f"{LOG_TAG} All source retrieval methods exhausted, AI will be skipped, bit 0 set")
    return SourceResult.empty()
