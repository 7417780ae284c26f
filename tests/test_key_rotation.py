"""Tests for batch re-wrapping of data keys."""
import pytest
from bson.binary import Binary, UUID_SUBTYPE

from navigator_fle.client import ClientEncryption
from navigator_fle.encryption.crypto import Algorithm
from navigator_fle.encryption.key_rotation import rewrap_many_data_key
from navigator_fle.encryption.keyvault import KeyVaultStore
from navigator_fle.encryption.kms import KmsProviders


class XorKms:
    """Remote KMS transport: XOR with a byte derived from the key name."""

    async def __call__(self, request: dict) -> dict:
        mask = len(request["masterKey"].get("key", "")) or 1
        return {"status": 200, "payload": bytes(b ^ mask for b in request["payload"])}


@pytest.fixture
def providers(kms_providers):
    return {**kms_providers, "aws": {"accessKeyId": "id"}}


@pytest.fixture
def encryption(server, providers):
    return ClientEncryption.create(server, providers, kms_transports={"aws": XorKms()})


class TestRewrap:

    @pytest.mark.asyncio
    async def test_rewrap_to_new_provider(self, encryption, server):
        key_id = await encryption.create_data_key("local", key_alt_names=["k"])
        before = await encryption.encrypt("v", Algorithm.DETERMINISTIC, key_id=key_id)
        old = await encryption.get_key(key_id)

        stats = await encryption.rewrap_many_data_key(
            provider="aws", master_key={"region": "us-east-1", "key": "arn:new"},
        )
        assert stats == {"total": 1, "rewrapped": 1, "errors": 0}

        key = await encryption.get_key(key_id)
        assert key.provider == "aws"
        assert key.master_key["key"] == "arn:new"
        assert key.key_material != old.key_material
        assert key.key_alt_names == ["k"]

        # same raw key: a fresh client decrypts old ciphertexts
        fresh = ClientEncryption.create(
            server, {"aws": {"accessKeyId": "id"}}, kms_transports={"aws": XorKms()},
        )
        assert await fresh.decrypt(before) == "v"
        await fresh.close()

    @pytest.mark.asyncio
    async def test_rewrap_keeps_provider(self, encryption):
        key_id = await encryption.create_data_key("local")
        old = await encryption.get_key(key_id)
        stats = await encryption.rewrap_many_data_key()
        assert stats["rewrapped"] == 1
        key = await encryption.get_key(key_id)
        assert key.provider == "local"
        # random IV: material changes, raw key does not
        assert key.key_material != old.key_material

    @pytest.mark.asyncio
    async def test_filter_and_batches(self, server, providers):
        kms = KmsProviders.from_config(providers, {"aws": XorKms()})
        store = KeyVaultStore(server, "keyvault.datakeys")
        encryption = ClientEncryption.create(
            server, providers, kms_transports={"aws": XorKms()},
        )
        for i in range(5):
            await encryption.create_data_key("local", key_alt_names=[f"k{i}"])
        stats = await rewrap_many_data_key(
            store, kms, filter={"keyAltNames": {"$in": ["k0", "k1", "k2"]}},
            provider="aws", master_key={"key": "arn"}, batch_size=2,
        )
        assert stats == {"total": 3, "rewrapped": 3, "errors": 0}
        providers_by_name = {
            k.key_alt_names[0]: k.provider for k in await store.get_keys()
        }
        assert providers_by_name == {
            "k0": "aws", "k1": "aws", "k2": "aws", "k3": "local", "k4": "local",
        }

    @pytest.mark.asyncio
    async def test_errors_counted_not_raised(self, server, kms_providers):
        encryption = ClientEncryption.create(server, kms_providers)
        await encryption.create_data_key("local")
        existing = (await encryption.get_keys())[0]
        # key wrapped by a provider this client does not know
        await server.dispatch("keyvault", {
            "insert": "datakeys",
            "documents": [{
                **existing.to_document(),
                "_id": Binary(b"\x01" * 16, UUID_SUBTYPE),
                "masterKey": {"provider": "gcp"},
            }],
        })
        stats = await encryption.rewrap_many_data_key()
        assert stats == {"total": 2, "rewrapped": 1, "errors": 1}

    @pytest.mark.asyncio
    async def test_master_key_needs_provider(self, encryption):
        with pytest.raises(ValueError):
            await encryption.rewrap_many_data_key(master_key={"key": "x"})


class TestRewrapPaging:

    @pytest.fixture
    def store(self, server):
        return KeyVaultStore(server, "keyvault.datakeys")

    @pytest.fixture
    def kms(self, providers):
        return KmsProviders.from_config(providers, {"aws": XorKms()})

    @staticmethod
    def key_finds(server):
        return [c for c in server.sent("find") if c["find"] == "datakeys" and "sort" in c]

    @pytest.mark.asyncio
    async def test_reads_one_page_per_batch(self, encryption, store, kms, server):
        for _ in range(5):
            await encryption.create_data_key("local")
        stats = await rewrap_many_data_key(store, kms, batch_size=2)
        assert stats == {"total": 5, "rewrapped": 5, "errors": 0}
        finds = self.key_finds(server)
        # three pages of keys and the empty page that ends the run
        assert len(finds) == 4
        assert all(f["limit"] == 2 and f["sort"] == {"_id": 1} for f in finds)

    @pytest.mark.asyncio
    async def test_filter_that_stops_matching(self, encryption, store, kms):
        for _ in range(5):
            await encryption.create_data_key("local")
        stats = await rewrap_many_data_key(
            store, kms, filter={"masterKey.provider": "local"},
            provider="aws", master_key={"key": "arn"}, batch_size=2,
        )
        assert stats["rewrapped"] == 5
        assert {k.provider for k in await store.get_keys()} == {"aws"}

    @pytest.mark.asyncio
    async def test_resume_after(self, encryption, store, kms):
        for _ in range(4):
            await encryption.create_data_key("local")
        ordered = sorted(k.id for k in await store.get_keys())
        stats = await rewrap_many_data_key(
            store, kms, provider="aws", master_key={"key": "arn"},
            batch_size=2, resume_after=ordered[1],
        )
        assert stats["total"] == 2
        providers_by_id = {k.id: k.provider for k in await store.get_keys()}
        assert [providers_by_id[i] for i in ordered] == ["local", "local", "aws", "aws"]

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, store, kms):
        with pytest.raises(ValueError):
            await rewrap_many_data_key(store, kms, batch_size=0)
