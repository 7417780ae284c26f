"""Tests for the local and remote KMS providers."""
import pytest

from navigator_fle.encryption.crypto import generate_data_key
from navigator_fle.encryption.exceptions import KmsTransientError, KmsUnwrapError
from navigator_fle.encryption.kms import (
    KmsProviders,
    LocalKmsProvider,
    RemoteKmsProvider,
)


class FakeRemoteKms:
    """Transport that 'wraps' by XOR and fails on demand."""

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.requests = []

    async def __call__(self, request: dict) -> dict:
        self.requests.append(request)
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, BaseException):
                raise failure
            return failure
        payload = bytes(b ^ 0x5A for b in request["payload"])
        return {"status": 200, "payload": payload}


class TestLocalKms:

    @pytest.mark.asyncio
    async def test_wrap_unwrap(self, local_master_key):
        provider = LocalKmsProvider(local_master_key)
        raw = generate_data_key()
        wrapped = await provider.wrap(raw, {"provider": "local"})
        assert wrapped != raw
        assert await provider.unwrap(wrapped, {"provider": "local"}) == raw

    @pytest.mark.asyncio
    async def test_wrong_master_key(self, local_master_key):
        wrapped = await LocalKmsProvider(local_master_key).wrap(generate_data_key(), {})
        other = LocalKmsProvider(bytes(reversed(local_master_key)))
        with pytest.raises(KmsUnwrapError):
            await other.unwrap(wrapped, {})

    def test_key_length(self):
        with pytest.raises(ValueError):
            LocalKmsProvider(b"short")

    def test_master_key_document(self, local_master_key):
        provider = LocalKmsProvider(local_master_key)
        assert provider.master_key_document() == {"provider": "local"}


class TestRemoteKms:

    @pytest.mark.asyncio
    async def test_round_trip(self):
        transport = FakeRemoteKms()
        provider = RemoteKmsProvider("aws", transport, credentials={"accessKeyId": "x"})
        master = provider.master_key_document({"region": "us-east-1", "key": "arn"})
        raw = generate_data_key()
        wrapped = await provider.wrap(raw, master)
        assert await provider.unwrap(wrapped, master) == raw
        first = transport.requests[0]
        assert first["operation"] == "encrypt"
        assert first["masterKey"] == {"provider": "aws", "region": "us-east-1", "key": "arn"}
        assert first["credentials"] == {"accessKeyId": "x"}
        assert transport.requests[1]["operation"] == "decrypt"

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        transport = FakeRemoteKms(failures=[
            ConnectionResetError("reset"),
            {"status": 503, "error": "unavailable"},
        ])
        provider = RemoteKmsProvider("aws", transport, max_attempts=3, backoff=0)
        raw = generate_data_key()
        wrapped = bytes(b ^ 0x5A for b in raw)
        assert await provider.unwrap(wrapped, {"provider": "aws"}) == raw
        assert len(transport.requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        transport = FakeRemoteKms(failures=[{"status": 429}] * 5)
        provider = RemoteKmsProvider("gcp", transport, max_attempts=2, backoff=0)
        with pytest.raises(KmsTransientError):
            await provider.unwrap(b"x" * 96, {"provider": "gcp"})
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_fatal_error_not_retried(self):
        transport = FakeRemoteKms(failures=[{"status": 403, "error": "denied"}])
        provider = RemoteKmsProvider("azure", transport, max_attempts=3, backoff=0)
        with pytest.raises(KmsUnwrapError) as exc:
            await provider.unwrap(b"x" * 96, {"provider": "azure"})
        assert not exc.value.transient
        assert "denied" in str(exc.value)
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_wrong_key_length_from_kms(self):
        provider = RemoteKmsProvider("aws", FakeRemoteKms(), backoff=0)
        with pytest.raises(KmsUnwrapError):
            await provider.unwrap(b"x" * 10, {"provider": "aws"})

    def test_local_name_reserved(self):
        with pytest.raises(ValueError):
            RemoteKmsProvider("local", FakeRemoteKms())


class TestKmsProviders:

    def test_from_config(self, local_master_key):
        providers = KmsProviders.from_config(
            {"local": {"key": local_master_key}, "aws": {"accessKeyId": "x"}},
            transports={"aws": FakeRemoteKms()},
        )
        assert providers.names() == ["aws", "local"]
        assert "aws" in providers
        assert isinstance(providers.get("local"), LocalKmsProvider)

    def test_remote_needs_transport(self):
        with pytest.raises(ValueError, match="transport"):
            KmsProviders.from_config({"aws": {}})

    def test_unknown_provider(self, local_master_key):
        providers = KmsProviders.from_config({"local": {"key": local_master_key}})
        with pytest.raises(KmsUnwrapError, match="not configured"):
            providers.get("kmip")
