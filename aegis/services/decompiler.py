# aegis/services/decompiler.py
import logging
from typing import Any, Callable, Optional

import requests

from aegis.errors import AuditTimeoutError, InputError, TransportError, UpstreamError
from aegis.services.cancel import CancelToken

logger = logging.getLogger(__name__)

LOG_TAG = "[DEDAUB_BETA]"

MAX_OUTPUT_CHARS = 15000
MAX_POLL_ATTEMPTS = 10
POLL_INTERVAL_SECONDS = 3.0

LogSink = Callable[[str], None]


def is_trivial_bytecode(bytecode: Optional[str]) -> bool:
    """True for '', '0x' and anything with at most one data byte."""
    if not bytecode:
        return True
    body = bytecode[2:] if bytecode.lower().startswith("0x") else bytecode
    return len(body.strip()) <= 2


def truncate_output(source: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    return source[:limit] if len(source) > limit else source


def _default_sink(msg: str) -> None:
    logger.info(msg)


def _extract_source(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    return body.get("source") or body.get("decompiled") or ""


class DecompilerClient:
    """
    Client for the bytecode decompilation API.

    Two success shapes are accepted on submit: 200 with the decompiled text
    embedded, or 202 with a job id (``md5`` / ``jobId``) that is then polled.
    The HTTP session is injectable (anything with ``post`` and ``get``) and
    every transition goes to ``log_sink`` prefixed with ``[DEDAUB_BETA]``.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        *,
        session=None,
        log_sink: Optional[LogSink] = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        request_timeout: float = 20.0,
    ):
        self.api_key = api_key or ""
        self.base_url = (base_url or "").rstrip("/")
        self.session = session or requests.Session()
        self.log_sink = log_sink or _default_sink
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.request_timeout = request_timeout

    def _log(self, msg: str) -> None:
        self.log_sink(f"{LOG_TAG} {msg}")

    def _headers(self, json_body: bool = False) -> dict:
        headers = {"x-api-key": self.api_key}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def submit(self, bytecode: str, cancel: Optional[CancelToken] = None) -> str:
        if is_trivial_bytecode(bytecode):
            raise InputError("Empty or invalid bytecode, nothing to decompile")

        cancel = cancel or CancelToken()
        clean = bytecode[2:] if bytecode.lower().startswith("0x") else bytecode
        self._log(f"Submitting {len(clean)} hex chars for decompilation")

        try:
            resp = self.session.post(
                f"{self.base_url}/api/v2/decompile",
                json={"bytecode": clean},
                headers=self._headers(json_body=True),
                timeout=cancel.bound(self.request_timeout),
            )
        except requests.RequestException as e:
            self._log(f"Network error: {e}")
            raise TransportError(f"{LOG_TAG} Network error: {e}", status_code=0) from e

        status = resp.status_code
        if not 200 <= status < 300:
            self._log(f"API error: HTTP {status}")
            raise UpstreamError(f"{LOG_TAG} API returned {status}", status_code=status)

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if status == 202 or body.get("status") == "pending":
            job_id = body.get("md5") or body.get("jobId") or body.get("job_id")
            if not job_id:
                raise UpstreamError(f"{LOG_TAG} Pending response without job id", status_code=status)
            self._log(f"Decompilation pending (job {job_id}), polling...")
            source = self.poll(job_id, cancel=cancel)
        else:
            source = _extract_source(body)

        if len(source) > MAX_OUTPUT_CHARS:
            self._log(f"Output truncated from {len(source)} to {MAX_OUTPUT_CHARS} chars")
            source = truncate_output(source)

        self._log(f"Decompilation complete: {len(source)} chars")
        return source

    def poll(self, job_id: str, cancel: Optional[CancelToken] = None) -> str:
        cancel = cancel or CancelToken()

        for attempt in range(1, self.max_poll_attempts + 1):
            self._log(f"Poll attempt {attempt}/{self.max_poll_attempts}...")
            if cancel.wait(self.poll_interval):
                self._log("Polling aborted by caller deadline")
                raise AuditTimeoutError(f"{LOG_TAG} Decompilation polling aborted")

            try:
                resp = self.session.get(
                    f"{self.base_url}/api/v2/decompile/{job_id}",
                    headers=self._headers(),
                    timeout=cancel.bound(self.request_timeout),
                )
            except requests.RequestException as e:
                self._log(f"Poll transport error (retrying): {e}")
                continue

            if not 200 <= resp.status_code < 300:
                continue
            try:
                source = _extract_source(resp.json())
            except ValueError:
                continue
            if source:
                self._log(f"Decompilation ready after {attempt} polls")
                return truncate_output(source)

        raise AuditTimeoutError(
            f"{LOG_TAG} Decompilation timed out after {self.max_poll_attempts} attempts"
        )
