import pytest
from web3 import Web3

from aegis.errors import InputError, UpstreamError
from aegis.services.source_resolver import (
    BaseScanSourceProvider,
    SourceProvider,
    SourceResult,
    VerifiedSource,
    resolve_source,
)

TOKEN = "0x" + "ab" * 20
CHECKSUM = Web3.to_checksum_address(TOKEN)


class FakeVerified:
    def __init__(self, result=None, error=None):
        self.result, self.error, self.calls = result, error, 0

    def fetch_verified(self, address):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


class FakeBytecode:
    def __init__(self, code="0x6080604052", error=None):
        self.code, self.error, self.calls = code, error, 0

    def get_bytecode(self, address):
        self.calls += 1
        if self.error:
            raise self.error
        return self.code


class FakeDecompiler:
    def __init__(self, out="", error=None):
        self.out, self.error, self.calls = out, error, 0

    def submit(self, bytecode, cancel=None):
        self.calls += 1
        if self.error:
            raise self.error
        return self.out


def test_verified_source_wins_and_stops_the_chain():
    verified = FakeVerified(VerifiedSource("contract Foo{}", "Foo"))
    bytecode, decompiler = FakeBytecode(), FakeDecompiler("never")

    res = resolve_source(TOKEN, verified=verified, bytecode=bytecode, decompiler=decompiler)

    assert res.provider is SourceProvider.VERIFIED
    assert res.provider.value == "basescan"
    assert res.source == "contract Foo{}"
    assert res.contract_name == "Foo"
    assert res.is_decompiled is False
    assert bytecode.calls == 0
    assert decompiler.calls == 0


def test_unverified_contract_falls_back_to_decompiler():
    decompiler = FakeDecompiler("function transfer(...){...}")
    logs = []

    res = resolve_source(
        TOKEN,
        verified=FakeVerified(VerifiedSource("", "")),
        bytecode=FakeBytecode(),
        decompiler=decompiler,
        log_sink=logs.append,
    )

    assert res.provider is SourceProvider.DECOMPILED
    assert res.is_decompiled is True
    assert res.source == "function transfer(...){...}"
    assert res.contract_name == "Decompiled_" + CHECKSUM[:10]
    assert decompiler.calls == 1
    assert any(line.startswith("[DEDAUB_BETA]") for line in logs)


def test_registry_failure_still_tries_decompiler():
    res = resolve_source(
        TOKEN,
        verified=FakeVerified(error=UpstreamError("rate limited", status_code=429)),
        bytecode=FakeBytecode(),
        decompiler=FakeDecompiler("contract D {}"),
    )
    assert res.provider is SourceProvider.DECOMPILED


def test_both_sources_failing_yields_empty_result():
    res = resolve_source(
        TOKEN,
        verified=FakeVerified(error=RuntimeError("down")),
        bytecode=FakeBytecode(),
        decompiler=FakeDecompiler(error=TimeoutError("slow")),
    )
    assert res.provider is SourceProvider.NONE
    assert res.source == ""
    assert res.is_decompiled is False


@pytest.mark.parametrize("code", ["0x", "", "0x00"])
def test_trivial_bytecode_skips_decompiler(code):
    decompiler = FakeDecompiler("never")
    res = resolve_source(TOKEN, verified=FakeVerified(), bytecode=FakeBytecode(code), decompiler=decompiler)
    assert res == SourceResult.empty()
    assert decompiler.calls == 0


def test_bytecode_fetch_error_is_not_fatal():
    res = resolve_source(
        TOKEN,
        verified=FakeVerified(),
        bytecode=FakeBytecode(error=ConnectionError("rpc")),
        decompiler=FakeDecompiler("never"),
    )
    assert res.provider is SourceProvider.NONE


def test_no_decompiler_configured():
    res = resolve_source(TOKEN, verified=FakeVerified(), bytecode=FakeBytecode(), decompiler=None)
    assert res.provider is SourceProvider.NONE


def test_invalid_address_is_input_error():
    with pytest.raises(InputError):
        resolve_source("0x1234", verified=FakeVerified(), bytecode=FakeBytecode(), decompiler=None)


def test_none_provider_cannot_carry_source():
    with pytest.raises(ValueError):
        SourceResult(source="x", contract_name="", provider=SourceProvider.NONE)


# --- BaseScan adapter ---

def test_basescan_reads_source_and_contract_name(fake_session, fake_response):
    body = {"status": "1", "result": [{"SourceCode": "contract Foo{}", "ContractName": "Foo"}]}
    session = fake_session(get=[fake_response(200, body)])
    provider = BaseScanSourceProvider("key", "https://api.etherscan.test/v2/api", 8453, session=session)

    found = provider.fetch_verified(TOKEN)

    assert found == VerifiedSource("contract Foo{}", "Foo")
    params = session.gets[0]["params"]
    assert params["action"] == "getsourcecode"
    assert params["chainid"] == "8453"
    assert params["address"] == CHECKSUM


def test_basescan_unverified_and_notok_return_none(fake_session, fake_response):
    unverified = {"status": "1", "result": [{"SourceCode": "", "ContractName": ""}]}
    notok = {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}
    session = fake_session(get=[fake_response(200, unverified), fake_response(200, notok)])
    provider = BaseScanSourceProvider("key", "https://api.etherscan.test/v2/api", 8453, session=session)

    assert provider.fetch_verified(TOKEN) is None
    assert provider.fetch_verified(TOKEN) is None
