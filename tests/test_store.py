"""SqlStore against a SQLite database."""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

from aihub.core.database import create_session_factory, init_db
from aihub.gateway.services.secret_manager import SecretManager, SecretManagerError, mask_credential_value
from aihub.gateway.store import ModelCallRecord, ModelStatusRecord, SqlStore, UsageRecord
from aihub.models.gateway import AiCredential, AiModelRate, AiModelStatus, AiProvider, ModelCall, Usage


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def secrets():
    return SecretManager(SecretManager.generate_key())


@pytest.fixture
async def sql_store(session_factory, secrets):
    async with session_factory() as session:
        session.add_all([
            AiProvider(id="p-openai", name="openai"),
            AiProvider(id="p-google", name="google", enabled=False),
            AiCredential(
                id="c-used", provider_id="p-openai", name="used",
                credential_value=secrets.encrypt_credential({"api_key": "sk-used"}), usage_count=5,
            ),
            AiCredential(
                id="c-idle", provider_id="p-openai", name="idle",
                credential_value=secrets.encrypt_credential({"api_key": "sk-idle"}),
            ),
            AiCredential(
                id="c-off", provider_id="p-openai", name="off",
                credential_value=secrets.encrypt_credential({"api_key": "sk-off"}), active=False,
            ),
            AiModelRate(
                provider_id="p-openai", model="gpt-4o", type="chatCompletion",
                input_rate=2.5, output_rate=10, caching={"readRate": 1.25},
            ),
        ])
        await session.commit()
    return SqlStore(session_factory, secrets)


class TestConfigReads:
    async def test_find_enabled_provider(self, sql_store):
        providers = await sql_store.find_providers(enabled=True)

        assert [p.name for p in providers] == ["openai"]
        assert await sql_store.find_providers(name="google", enabled=True) == []

    async def test_credentials_are_decrypted_least_used_first(self, sql_store):
        credentials = await sql_store.find_credentials(["p-openai"], active=True)

        assert [c.id for c in credentials] == ["c-idle", "c-used"]
        assert credentials[0].api_key == "sk-idle"

    async def test_stored_value_is_ciphertext(self, sql_store, session_factory):
        async with session_factory() as session:
            row = await session.get(AiCredential, "c-idle")

        assert row.credential_value["api_key"] != "sk-idle"

    async def test_model_rates(self, sql_store):
        rates = await sql_store.find_model_rates(model="gpt-4o", provider_id="p-openai")

        assert len(rates) == 1
        assert rates[0].input_rate == 2.5
        assert rates[0].output_rate == 10.0
        assert rates[0].caching == {"readRate": 1.25}


class TestCredentialWrites:
    async def test_update_credential(self, sql_store):
        await sql_store.update_credential("c-idle", {"active": False, "error": "invalid api key"})

        credentials = await sql_store.find_credentials(["p-openai"])
        idle = next(c for c in credentials if c.id == "c-idle")
        assert idle.active is False
        assert idle.error == "invalid api key"

    async def test_record_credential_use_recovers(self, sql_store):
        await sql_store.update_credential("c-off", {"weight": 10, "error": "rate limited"})

        await sql_store.record_credential_use("c-off", recover_weight=100)

        off = next(c for c in await sql_store.find_credentials(["p-openai"]) if c.id == "c-off")
        assert (off.active, off.weight, off.error, off.usage_count) == (True, 100, None, 1)
        assert off.last_used_at is not None


class TestRecordWrites:
    async def test_model_call_and_usage(self, sql_store, session_factory):
        await sql_store.create_model_call(ModelCallRecord(
            user_did="z1user", model="gpt-4o", type="chatCompletion", status="success",
            call_time=1700000000, request_id="req_1", provider_id="p-openai",
            total_usage=15, usage_metrics={"inputTokens": 12}, credits=0.5,
        ))
        await sql_store.create_usage(UsageRecord(
            type="chatCompletion", model="gpt-4o", user_did="z1user", app_id="z1app",
            prompt_tokens=12, completion_tokens=3, used_credits=0.5,
        ))

        async with session_factory() as session:
            call = (await session.execute(select(ModelCall))).scalar_one()
            usage = (await session.execute(select(Usage))).scalar_one()

        assert (call.request_id, call.status, call.total_usage) == ("req_1", "success", 15)
        assert call.usage_metrics == {"inputTokens": 12}
        assert (usage.prompt_tokens, usage.completion_tokens, usage.app_id) == (12, 3, "z1app")

    async def test_model_status_written_on_change_only(self, sql_store, session_factory):
        up = ModelStatusRecord(provider_id="p-openai", model="gpt-4o", type="chatCompletion", available=True)
        down = ModelStatusRecord(
            provider_id="p-openai", model="gpt-4o", type="chatCompletion", available=False,
            error={"code": "MODEL_UNAVAILABLE", "message": "overloaded"},
        )

        assert await sql_store.upsert_model_status(up) is True
        assert await sql_store.upsert_model_status(up) is False
        assert await sql_store.upsert_model_status(down) is True

        async with session_factory() as session:
            rows = (await session.execute(select(AiModelStatus))).scalars().all()

        assert len(rows) == 1
        assert rows[0].available is False
        assert rows[0].error["code"] == "MODEL_UNAVAILABLE"


class TestSecretManager:
    def test_identifiers_stay_readable(self, secrets):
        stored = secrets.encrypt_credential({"access_key_id": "AKIA123", "secret_access_key": "shh"})

        assert stored["access_key_id"] == "AKIA123"
        assert stored["secret_access_key"] != "shh"
        assert secrets.decrypt_credential(stored)["secret_access_key"] == "shh"

    def test_wrong_key(self, secrets):
        ciphertext = secrets.encrypt("sk-1")

        with pytest.raises(SecretManagerError):
            SecretManager(SecretManager.generate_key()).decrypt(ciphertext)

    def test_mask(self):
        assert mask_credential_value("sk-abcdefghijklmnop") == "sk-a***********mnop"
        assert mask_credential_value("short") == "***"
        assert mask_credential_value(None) == "***"
