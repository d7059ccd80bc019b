# tests/test_model_config.py
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from tutor_gateway.crypto import CredentialCipher, StaticKeyProvider
from tutor_gateway.errors import ConfigError
from tutor_gateway.model_config import (
    CONFIG_ID,
    CURRENT_SCHEMA_VERSION,
    ModelConfigResolver,
    SqlConfigStore,
    derive_endpoint_id,
    is_allowed_host,
    migrate_from_legacy,
    validate_base_url,
)
from tutor_gateway.models import GatewayConfigRecord
from tutor_gateway.schemas import ModelEndpoint, SelectedModel


@pytest.fixture
def legacy_document(cipher):
    return {
        "base_url": "https://api.example.com/v1",
        "credential_encrypted": cipher.encrypt("sk-legacy-123456"),
        "model_name": "gpt-4o-mini",
        "timeout_seconds": 45,
        "requests_per_minute": 3,
    }


# Host validation
def test_is_allowed_host_public():
    assert is_allowed_host("api.openai.com") is True


def test_is_allowed_host_blocks_local_and_private():
    assert is_allowed_host("localhost") is False
    assert is_allowed_host("127.0.0.1") is False
    assert is_allowed_host("10.0.0.1") is False
    assert is_allowed_host("169.254.169.254") is False
    assert is_allowed_host(None) is False


def test_validate_base_url_strips_trailing_slash():
    assert validate_base_url("https://api.example.com/v1/") == "https://api.example.com/v1"


def test_validate_base_url_rejects_bad_scheme():
    with pytest.raises(ConfigError, match="http or https"):
        validate_base_url("ftp://api.example.com/v1")


def test_validate_base_url_rejects_private_host():
    with pytest.raises(ConfigError, match="not allowed"):
        validate_base_url("http://192.168.1.20:8000/v1")


# Migration
def test_get_config_without_document_returns_unsaved_default(resolver, config_store):
    config = resolver.get_config()

    assert config.schema_version == CURRENT_SCHEMA_VERSION
    assert config.endpoints == []
    assert config.selected_models == []
    assert config_store.document is None


def test_initialize_default_config_persists(resolver, config_store):
    resolver.initialize_default_config()
    assert config_store.document["schema_version"] == CURRENT_SCHEMA_VERSION

    resolver.initialize_default_config()
    assert config_store.writes == 1


def test_legacy_document_migrated_on_read(cipher, legacy_document, store_factory):
    store = store_factory(legacy_document)
    resolver = ModelConfigResolver(store=store, cipher=cipher)

    config = resolver.get_config()

    assert config.schema_version == CURRENT_SCHEMA_VERSION
    assert len(config.endpoints) == 1
    endpoint = config.endpoints[0]
    assert endpoint.name == "Default endpoint"
    assert endpoint.base_url == "https://api.example.com/v1"
    assert endpoint.models == ["gpt-4o-mini"]
    assert config.selected_models == [SelectedModel(endpoint_id=endpoint.id, model_name="gpt-4o-mini")]
    assert config.timeout_seconds == 45
    assert config.requests_per_minute == 3
    # Legacy fields kept for rollback
    assert config.base_url == "https://api.example.com/v1"
    assert config.model_name == "gpt-4o-mini"
    # Migrated form is written back
    assert store.document["schema_version"] == CURRENT_SCHEMA_VERSION
    assert store.writes == 1


def test_migration_is_idempotent(legacy_document):
    first = migrate_from_legacy(legacy_document)
    second = migrate_from_legacy(legacy_document)
    again = migrate_from_legacy(first.model_dump(mode="json"))

    assert first.model_dump() == second.model_dump()
    assert again.endpoints == first.endpoints
    assert again.selected_models == first.selected_models


def test_concurrent_migrations_converge(cipher, legacy_document, store_factory):
    """Two readers migrating the same document write identical results."""
    store_a = store_factory(legacy_document)
    store_b = store_factory(legacy_document)

    ModelConfigResolver(store=store_a, cipher=cipher).get_config()
    ModelConfigResolver(store=store_b, cipher=cipher).get_config()

    assert store_a.document == store_b.document


def test_migrated_document_not_rewritten(cipher, legacy_document, store_factory):
    store = store_factory(legacy_document)
    resolver = ModelConfigResolver(store=store, cipher=cipher)

    resolver.get_config()
    resolver.get_config()

    assert store.writes == 1


def test_v1_endpoints_without_ids_get_stable_ids():
    legacy = {
        "schema_version": 1,
        "base_url": "https://api.example.com/v1",
        "credential_encrypted": "token",
        "endpoints": [
            {"base_url": "https://a.example.com/v1", "models": ["m1", "m2"]},
            {"name": "Backup", "base_url": "https://b.example.com/v1", "models": ["m3"], "enabled": False},
        ],
        "selected_models": [{"endpoint_id": "missing", "model_name": "m1"}],
    }

    config = migrate_from_legacy(legacy)

    assert [ep.id for ep in config.endpoints] == [
        derive_endpoint_id("https://a.example.com/v1", 0),
        derive_endpoint_id("https://b.example.com/v1", 1),
    ]
    assert config.endpoints[0].name == "Endpoint 1"
    assert config.endpoints[0].credential_encrypted == "token"
    assert config.endpoints[1].enabled is False
    # Dangling selection dropped; first model of each endpoint selected instead
    assert [(sm.endpoint_id, sm.model_name) for sm in config.selected_models] == [
        (config.endpoints[0].id, "m1"),
        (config.endpoints[1].id, "m3"),
    ]


def test_empty_legacy_document_migrates_to_empty_config():
    config = migrate_from_legacy({})
    assert config.endpoints == []
    assert config.selected_models == []
    assert config.schema_version == CURRENT_SCHEMA_VERSION


# Mutations
def _add_two_endpoints(resolver):
    primary = resolver.add_endpoint("Primary", "https://a.example.com/v1/", "sk-primary-0001", models=["gpt-4o-mini"])
    backup = resolver.add_endpoint("Backup", "https://b.example.com/v1", "sk-backup-0002", models=["qwen-plus"])
    return primary, backup


def test_add_endpoint_encrypts_credential(resolver, cipher):
    endpoint, _ = _add_two_endpoints(resolver)

    assert endpoint.base_url == "https://a.example.com/v1"
    assert endpoint.credential_encrypted != "sk-primary-0001"
    assert cipher.decrypt(endpoint.credential_encrypted) == "sk-primary-0001"


def test_config_round_trip(resolver, config_store, cipher):
    primary, backup = _add_two_endpoints(resolver)
    resolver.update_selected_models([
        SelectedModel(endpoint_id=backup.id, model_name="qwen-plus"),
        SelectedModel(endpoint_id=primary.id, model_name="gpt-4o-mini"),
    ])
    saved = resolver.get_config()

    reloaded = ModelConfigResolver(store=config_store, cipher=cipher).get_config()

    assert reloaded == saved


def test_update_selected_models_rejects_unknown_endpoint(resolver):
    _add_two_endpoints(resolver)
    with pytest.raises(ConfigError, match="unknown endpoints"):
        resolver.update_selected_models([SelectedModel(endpoint_id="nope", model_name="x")])


def test_delete_endpoint_prunes_selections(resolver):
    primary, backup = _add_two_endpoints(resolver)
    resolver.update_selected_models([
        SelectedModel(endpoint_id=primary.id, model_name="gpt-4o-mini"),
        SelectedModel(endpoint_id=backup.id, model_name="qwen-plus"),
    ])

    resolver.delete_endpoint(primary.id)

    config = resolver.get_config()
    assert [ep.id for ep in config.endpoints] == [backup.id]
    assert [sm.endpoint_id for sm in config.selected_models] == [backup.id]


def test_update_missing_endpoint_raises(resolver):
    with pytest.raises(ConfigError) as exc_info:
        resolver.update_endpoint("missing", name="x")
    assert exc_info.value.code == "ENDPOINT_NOT_FOUND"


def test_update_endpoint_fields(resolver, cipher):
    primary, _ = _add_two_endpoints(resolver)

    updated = resolver.update_endpoint(primary.id, name="Renamed", credential="sk-new-99999999", enabled=False)

    assert updated.name == "Renamed"
    assert updated.enabled is False
    assert cipher.decrypt(resolver.get_endpoint(primary.id).credential_encrypted) == "sk-new-99999999"


def test_update_settings_validates(resolver):
    config = resolver.update_settings(timeout_seconds=60, prompt_template="Be brief.")
    assert config.timeout_seconds == 60
    assert config.prompt_template == "Be brief."

    with pytest.raises(ConfigError):
        resolver.update_settings(timeout_seconds=0)


# Resolution
def test_resolve_ordered_models_in_selection_order(resolver):
    primary, backup = _add_two_endpoints(resolver)
    resolver.update_selected_models([
        SelectedModel(endpoint_id=backup.id, model_name="qwen-plus"),
        SelectedModel(endpoint_id=primary.id, model_name="gpt-4o-mini"),
        SelectedModel(endpoint_id=backup.id, model_name="qwen-plus"),
    ])

    resolved = resolver.resolve_ordered_models()

    assert [(m.endpoint_name, m.model_name) for m in resolved] == [
        ("Backup", "qwen-plus"),
        ("Primary", "gpt-4o-mini"),
    ]
    assert resolved[0].credential == "sk-backup-0002"
    assert resolved[0].base_url == "https://b.example.com/v1"
    assert resolved[0].timeout_seconds == 30


def test_resolve_skips_disabled_and_missing_endpoints(resolver, config_store):
    primary, backup = _add_two_endpoints(resolver)
    resolver.update_selected_models([
        SelectedModel(endpoint_id=primary.id, model_name="gpt-4o-mini"),
        SelectedModel(endpoint_id=backup.id, model_name="qwen-plus"),
    ])
    resolver.update_endpoint(primary.id, enabled=False)

    # Simulate a dangling selection written by an older process
    config_store.document["selected_models"].append({"endpoint_id": "gone", "model_name": "x"})

    resolved = resolver.resolve_ordered_models()
    assert [m.endpoint_id for m in resolved] == [backup.id]


def test_resolve_skips_undecryptable_credentials(config_store, cipher):
    resolver = ModelConfigResolver(store=config_store, cipher=cipher)
    primary, backup = _add_two_endpoints(resolver)
    resolver.update_selected_models([
        SelectedModel(endpoint_id=primary.id, model_name="gpt-4o-mini"),
        SelectedModel(endpoint_id=backup.id, model_name="qwen-plus"),
    ])
    other = CredentialCipher(StaticKeyProvider("some-other-key"))
    config_store.document["endpoints"][0]["credential_encrypted"] = other.encrypt("sk-unreadable")

    resolved = resolver.resolve_ordered_models()
    assert [m.endpoint_id for m in resolved] == [backup.id]


def test_resolve_against_loaded_config_skips_store_read(resolver, config_store):
    primary, _ = _add_two_endpoints(resolver)
    resolver.update_selected_models([SelectedModel(endpoint_id=primary.id, model_name="gpt-4o-mini")])
    config = resolver.get_config()
    loads = config_store.loads

    resolved = resolver.resolve_ordered_models(config)

    assert [m.endpoint_id for m in resolved] == [primary.id]
    assert config_store.loads == loads


def test_resolve_with_no_selection_is_empty(resolver):
    _add_two_endpoints(resolver)
    assert resolver.resolve_ordered_models() == []


@pytest.mark.asyncio
async def test_refresh_endpoint_models(resolver):
    primary, _ = _add_two_endpoints(resolver)
    gateway = AsyncMock()
    gateway.list_models.return_value = ["gpt-4o", "gpt-4o-mini"]

    endpoint = await resolver.refresh_endpoint_models(primary.id, gateway)

    gateway.list_models.assert_awaited_once_with(
        "https://a.example.com/v1", "sk-primary-0001", timeout_seconds=30
    )
    assert endpoint.models == ["gpt-4o", "gpt-4o-mini"]
    assert endpoint.models_last_fetched is not None


def test_rotate_credentials_moves_to_new_key(config_store):
    old = CredentialCipher(StaticKeyProvider("old-key"))
    resolver = ModelConfigResolver(store=config_store, cipher=old)
    _add_two_endpoints(resolver)

    rotating = CredentialCipher(StaticKeyProvider("new-key", "old-key"))
    assert ModelConfigResolver(store=config_store, cipher=rotating).rotate_credentials() == 2

    new_only = CredentialCipher(StaticKeyProvider("new-key"))
    endpoints = ModelConfigResolver(store=config_store, cipher=new_only).get_config().endpoints
    assert [new_only.decrypt(ep.credential_encrypted) for ep in endpoints] == [
        "sk-primary-0001",
        "sk-backup-0002",
    ]


# SQL store
def test_sql_store_round_trip(session_factory):
    store = SqlConfigStore(session_factory=session_factory)
    assert store.load() is None

    store.upsert({"schema_version": 2, "timeout_seconds": 20})
    store.upsert({"schema_version": 2, "timeout_seconds": 25})

    assert store.load() == {"schema_version": 2, "timeout_seconds": 25}
    db = session_factory()
    try:
        assert db.query(GatewayConfigRecord).count() == 1
        assert db.get(GatewayConfigRecord, CONFIG_ID).schema_version == 2
    finally:
        db.close()


def test_sql_store_refuses_downgrade(session_factory):
    store = SqlConfigStore(session_factory=session_factory)
    store.upsert({"schema_version": 2})

    with pytest.raises(ConfigError, match="downgrade"):
        store.upsert({"schema_version": 1})


def test_resolver_with_sql_store(session_factory, cipher):
    store = SqlConfigStore(session_factory=session_factory)
    resolver = ModelConfigResolver(
        store=store,
        cipher=cipher,
        clock=lambda: datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    endpoint = resolver.add_endpoint("Primary", "https://a.example.com/v1", "sk-primary-0001", models=["m1"])

    config = ModelConfigResolver(store=store, cipher=cipher).get_config()
    assert config.endpoints == [ModelEndpoint(**endpoint.model_dump())]
    assert config.updated_at == datetime(2025, 1, 1, tzinfo=timezone.utc)
