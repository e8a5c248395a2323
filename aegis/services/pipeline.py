# aegis/services/pipeline.py
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from aegis.config import AuditSettings
from aegis.errors import InputError, PipelineError
from aegis.services import streamer as ev
from aegis.services.aggregator import AggregateResult, RiskDetectorAggregator
from aegis.services.ai_detectors import LLMDetector
from aegis.services.cancel import CancelToken
from aegis.services.decompiler import DecompilerClient
from aegis.services.risk_bits import RiskVerdict, VerdictStatus, interpret_verdict
from aegis.services.source_resolver import (
    BaseScanSourceProvider,
    BytecodeSource,
    Decompiler,
    SourceResult,
    VerifiedSourceProvider,
    Web3BytecodeSource,
    norm_address,
    resolve_source,
)
from aegis.services.static_detectors import GoPlusStaticDetector
from aegis.services.streamer import AuditStreamer
from aegis.services.verdict_commit import (
    UINT256_MAX,
    VerdictCommitter,
    Web3TransactionSender,
    encode_verdict_calldata,
)
from aegis.services.web3_client import get_w3

logger = logging.getLogger(__name__)

PHASE_SOURCE = "Fetching contract source"
PHASE_DETECT = "Running risk detectors"
PHASE_SCORE = "Computing final risk code"
PHASE_COMMIT = "Committing verdict on-chain"


@dataclass(frozen=True)
class AuditRequest:
    trade_id: int
    target_token: str
    start_block: int = 0

    def __post_init__(self):
        if isinstance(self.trade_id, bool) or not isinstance(self.trade_id, int):
            raise InputError("trade_id must be an integer")
        if not 0 <= self.trade_id <= UINT256_MAX:
            raise InputError(f"trade_id out of uint256 range: {self.trade_id}")
        if self.start_block < 0:
            raise InputError("start_block must be >= 0")
        object.__setattr__(self, "target_token", norm_address(self.target_token))


@dataclass
class AuditCollaborators:
    verified: VerifiedSourceProvider
    bytecode: BytecodeSource
    decompiler: Optional[Decompiler]
    aggregator: RiskDetectorAggregator
    committer: Optional[VerdictCommitter] = None


@dataclass
class AuditOutcome:
    verdict: RiskVerdict
    source: SourceResult
    aggregate: AggregateResult
    calldata: bytes
    tx_hash: Optional[str] = None
    tx_status: Optional[str] = None

    def to_dict(self) -> dict:
        payload = self.verdict.to_payload()
        payload.update({
            "provider": self.source.provider.value,
            "isDecompiled": self.source.is_decompiled,
            "contractName": self.source.contract_name,
            "modelScores": self.aggregate.model_scores,
            "detectorFailures": self.aggregate.failures,
            "calldata": "0x" + self.calldata.hex(),
            "hash": self.tx_hash,
            "txStatus": self.tx_status,
        })
        return payload


def build_collaborators(settings: AuditSettings, *, log_sink: Optional[Callable[[str], None]] = None) -> AuditCollaborators:
    """Production adapters wired from an AuditSettings snapshot."""
    w3 = get_w3(settings.web3_provider_uri, settings.web3_use_poa)

    decompiler = None
    if settings.dedaub_api_key:
        decompiler = DecompilerClient(settings.dedaub_api_key, settings.dedaub_base_url, log_sink=log_sink)

    static = GoPlusStaticDetector(
        settings.chain_id,
        base_url=settings.goplus_base_url,
        sell_tax_threshold=settings.sell_tax_threshold,
    )
    ai = []
    if settings.llm_api_key:
        ai = [
            LLMDetector(m, base_url=settings.llm_base_url, api_key=settings.llm_api_key,
                        timeout=settings.detector_timeout)
            for m in settings.llm_models
        ]

    committer = None
    if settings.module_address and settings.private_key:
        sender = Web3TransactionSender(w3, settings.module_address, settings.private_key, chain_id=settings.chain_id)
        committer = VerdictCommitter(sender, version=settings.verdict_wire_version)

    return AuditCollaborators(
        verified=BaseScanSourceProvider(settings.etherscan_api_key, settings.etherscan_base, settings.chain_id),
        bytecode=Web3BytecodeSource(w3),
        decompiler=decompiler,
        aggregator=RiskDetectorAggregator(
            static,
            ai,
            strict_consensus=settings.strict_consensus,
            detector_timeout=settings.detector_timeout,
        ),
        committer=committer,
    )


def run_audit_pipeline(
    request: AuditRequest,
    settings: AuditSettings,
    collaborators: AuditCollaborators,
    streamer: Optional[AuditStreamer] = None,
    *,
    log_sink: Optional[Callable[[str], None]] = None,
    on_broadcast: Optional[Callable[[str, bytes], None]] = None,
) -> AuditOutcome:
    """
    One audit for one trade id: resolve source, run detectors, map the score
    to a verdict, commit it (when a committer is configured) and close the
    stream with the final verdict. Any failure closes the stream with a single
    fatal ``error`` event and is re-raised; an Error verdict is never encoded.

    ``on_broadcast(tx_hash, calldata)`` runs as soon as the verdict transaction
    is sent and before its receipt is awaited, so the caller can record the
    commit even if waiting for the receipt fails.
    """
    streamer = streamer or AuditStreamer()
    token = request.target_token

    try:
        # 1) fuente (con deadline de pipeline: corta el polling del decompilador)
        streamer.start_phase(PHASE_SOURCE)
        cancel = CancelToken(timeout=settings.source_resolve_timeout)
        source = resolve_source(
            token,
            verified=collaborators.verified,
            bytecode=collaborators.bytecode,
            decompiler=collaborators.decompiler,
            log_sink=log_sink,
            cancel=cancel,
        )
        streamer.finish_phase(PHASE_SOURCE)

        # 2) detectores
        streamer.start_phase(PHASE_DETECT)
        aggregate = collaborators.aggregator.run(token, source, emit=streamer.emit)
        streamer.finish_phase(PHASE_DETECT)

        # 3) verdict
        streamer.start_phase(PHASE_SCORE)
        if interpret_verdict(aggregate.risk_score) is VerdictStatus.ERROR:
            raise PipelineError(f"negative risk score {aggregate.risk_score} for trade {request.trade_id}")
        verdict = RiskVerdict(
            trade_id=request.trade_id,
            risk_score=aggregate.risk_score,
            reasoning=aggregate.reasoning,
            checks=aggregate.checks,
        )
        calldata = encode_verdict_calldata(verdict.trade_id, verdict.risk_score, settings.verdict_wire_version)
        streamer.finish_phase(PHASE_SCORE)

        outcome = AuditOutcome(verdict=verdict, source=source, aggregate=aggregate, calldata=calldata)

        # 4) commit on-chain
        if collaborators.committer is not None:
            streamer.start_phase(PHASE_COMMIT)
            tx_hash, calldata = collaborators.committer.commit(verdict)
            outcome.tx_hash, outcome.calldata = tx_hash, calldata
            if on_broadcast is not None:
                on_broadcast(tx_hash, calldata)
            streamer.emit(ev.TX, hash=tx_hash)

            receipt = collaborators.committer.sender.wait_for_receipt(tx_hash)
            outcome.tx_status = "Confirmed" if receipt.get("status") == 1 else "Reverted"
            streamer.emit(ev.TX_STATUS, hash=tx_hash, status=outcome.tx_status)
            if outcome.tx_status != "Confirmed":
                raise PipelineError(f"verdict transaction {tx_hash} reverted")
            streamer.finish_phase(PHASE_COMMIT)

        payload = verdict.to_payload(target_token=token)
        payload.update({"hash": outcome.tx_hash, "calldata": "0x" + outcome.calldata.hex(),
                        "provider": source.provider.value})
        streamer.final_verdict(payload)
        logger.info("Audit verdict=%s score=%d", verdict.status.value, verdict.risk_score,
                    extra={"trade_id": str(request.trade_id), "token": token,
                           "provider": source.provider.value, "tx_hash": outcome.tx_hash})
        return outcome

    except Exception as e:
        logger.exception("Audit pipeline failed", extra={"trade_id": str(request.trade_id), "token": token})
        if not streamer.terminated:
            streamer.fatal(str(e), kind=e.__class__.__name__)
        raise
