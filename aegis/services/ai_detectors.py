# aegis/services/ai_detectors.py
"""
AI detector family: one language model reads the resolved source and answers
four yes/no questions (bits 4..7). Calls go to an OpenAI-compatible
``/chat/completions`` endpoint with ``stream=true`` so partial reasoning can be
forwarded to the progress feed while the model is still answering.
"""
import json
import logging
import re
from typing import Callable, Iterator, Optional

import requests

from aegis.errors import TransportError, UpstreamError
from aegis.services.risk_bits import AI_BITS, AI_FLAG_KEYS
from aegis.services.source_resolver import SourceResult

logger = logging.getLogger(__name__)

ChunkSink = Callable[[str], None]

SYSTEM_PROMPT = """You are a smart-contract security auditor protecting an autonomous trading agent.
Read the token contract and decide, for each category, whether it is present:
- obfuscated_tax: hidden or owner-adjustable transfer/sell fees, fee logic disguised in helpers
- privilege_escalation: non-standard owner/admin backdoors, fake renounce, arbitrary mint/blacklist by a privileged role
- external_call_risk: arbitrary external calls, delegatecall to mutable targets, reentrancy on transfer paths
- logic_bomb: time-gated, block-gated or condition-gated behaviour that later blocks sells or drains balances
Think briefly, then finish with ONE JSON object on its own line:
{"obfuscated_tax": bool, "privilege_escalation": bool, "external_call_risk": bool, "logic_bomb": bool}"""

DECOMPILED_NOTE = (
    "NOTE: no verified source exists. The code below was reconstructed from bytecode by a "
    "decompiler; names, types and control flow are lossy. Flag a category only when the "
    "reconstructed logic clearly shows it."
)

_JSON_OBJ = re.compile(r"\{[^{}]*\}", re.S)


def build_messages(source_result: SourceResult, address: str) -> list:
    header = f"Token contract {source_result.contract_name or address} at {address}"
    parts = [header, f"Source provenance: {source_result.provenance}"]
    if source_result.is_decompiled:
        parts.append(DECOMPILED_NOTE)
    parts.append("```solidity\n" + source_result.source + "\n```")
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n\n".join(parts)},
    ]


def parse_ai_flags(text: str) -> int:
    """Last JSON object in the answer -> sub-bitmask limited to bits 4..7."""
    candidates = _JSON_OBJ.findall(text or "")
    for raw in reversed(candidates):
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict) or not any(k in obj for k in AI_FLAG_KEYS):
            continue
        bits = 0
        for key, bit in AI_FLAG_KEYS.items():
            if str(obj.get(key)).lower() == "true":
                bits |= bit
        return int(bits) & int(AI_BITS)
    raise UpstreamError("model answer did not contain the risk flags object")


def iter_stream_deltas(resp) -> Iterator[str]:
    """Yield content deltas from an SSE chat-completions stream."""
    for line in resp.iter_lines(decode_unicode=True):
        if not line or not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            break
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            continue
        for choice in chunk.get("choices") or []:
            delta = (choice.get("delta") or {}).get("content")
            if delta:
                yield delta


class LLMDetector:
    def __init__(
        self,
        model: str,
        *,
        base_url: str,
        api_key: str,
        label: Optional[str] = None,
        session=None,
        timeout: float = 60.0,
        temperature: float = 0.0,
    ):
        self.model = model
        self.name = label or model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.temperature = temperature

    def run(self, address: str, source_result: SourceResult, on_chunk: Optional[ChunkSink] = None) -> int:
        payload = {
            "model": self.model,
            "messages": build_messages(source_result, address),
            "temperature": self.temperature,
            "stream": True,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            resp = self.session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=headers,
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"{self.name} unreachable: {e}") from e

        if resp.status_code != 200:
            raise UpstreamError(f"{self.name} returned {resp.status_code}", status_code=resp.status_code)

        text = []
        try:
            for delta in iter_stream_deltas(resp):
                text.append(delta)
                if on_chunk:
                    on_chunk(delta)
        except requests.RequestException as e:
            raise TransportError(f"{self.name} stream interrupted: {e}") from e
        finally:
            resp.close()

        bits = parse_ai_flags("".join(text))
        logger.info("%s flagged bits %d for %s", self.name, bits, address)
        return bits
