# tutor_gateway/model_config.py
"""The versioned gateway configuration and the ordered model list built from it.

The configuration is a single JSON document (id ``default``). Documents written
before multi-endpoint support are migrated lazily on read: the migrated form is
upserted back under the same id, and endpoint ids that the legacy document lacks
are derived deterministically, so concurrent or repeated migrations converge on
the same document.
"""
import ipaddress
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from tutor_gateway.config import settings
from tutor_gateway.crypto import CredentialCipher
from tutor_gateway.database import SessionLocal
from tutor_gateway.errors import ConfigError
from tutor_gateway.models import GatewayConfigRecord
from tutor_gateway.schemas import GatewayConfig, ModelEndpoint, ResolvedModel, SelectedModel

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2
CONFIG_ID = "default"

_ENDPOINT_ID_NAMESPACE = uuid.UUID("6f0c3f5e-8a55-4c36-9d7e-3f0d2b1c9a41")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def derive_endpoint_id(base_url: str, position: int) -> str:
    """Stable id for a legacy endpoint that was stored without one."""
    return str(uuid.uuid5(_ENDPOINT_ID_NAMESPACE, f"{position}:{base_url}"))


def is_allowed_host(host: Optional[str]) -> bool:
    """Reject loopback, private and link-local hosts unless explicitly allowed."""
    if not host:
        return False

    if settings.allow_private_endpoints:
        return True

    if host in ("localhost", "127.0.0.1", "::1"):
        return False

    try:
        ip = ipaddress.ip_address(host)
        if ip.is_private or ip.is_loopback or ip.is_link_local:
            return False
    except ValueError:
        # Not an IP address
        pass

    return True


def validate_base_url(base_url: str) -> str:
    """Validate an endpoint base URL and return it without a trailing slash.

    Raises ConfigError if invalid.
    """
    parsed = urlparse(base_url)

    if parsed.scheme not in ("http", "https"):
        raise ConfigError(f"Endpoint URL must use http or https: {base_url}")

    if not is_allowed_host(parsed.hostname):
        raise ConfigError(f"Endpoint host not allowed: {parsed.hostname}")

    return base_url.rstrip("/")


def migrate_from_legacy(legacy: dict[str, Any]) -> GatewayConfig:
    """Bring a stored document of any older schema to CURRENT_SCHEMA_VERSION."""
    legacy_base_url = legacy.get("base_url") or ""
    legacy_credential = legacy.get("credential_encrypted") or ""
    legacy_model_name = legacy.get("model_name") or None
    raw_endpoints = legacy.get("endpoints") or []

    if raw_endpoints:
        endpoints = []
        for index, raw in enumerate(raw_endpoints):
            base_url = raw.get("base_url") or legacy_base_url
            models = raw.get("models")
            endpoints.append(ModelEndpoint(
                id=raw.get("id") or derive_endpoint_id(base_url, index),
                name=raw.get("name") or f"Endpoint {index + 1}",
                base_url=base_url,
                credential_encrypted=raw.get("credential_encrypted") or legacy_credential,
                models=models if isinstance(models, list) else [],
                models_last_fetched=raw.get("models_last_fetched"),
                enabled=raw.get("enabled") is not False,
            ))

        endpoint_ids = {endpoint.id for endpoint in endpoints}
        selected = [
            SelectedModel(**item)
            for item in legacy.get("selected_models") or []
            if item.get("endpoint_id") in endpoint_ids and item.get("model_name")
        ]

        # No valid selection: fall back to the legacy model name, then to the
        # first advertised model of each endpoint
        if not selected:
            if legacy_model_name:
                selected = [SelectedModel(endpoint_id=endpoints[0].id, model_name=legacy_model_name)]
            else:
                selected = [
                    SelectedModel(endpoint_id=endpoint.id, model_name=endpoint.models[0])
                    for endpoint in endpoints
                    if endpoint.models
                ]
    elif legacy_base_url:
        default_endpoint = ModelEndpoint(
            id=derive_endpoint_id(legacy_base_url, 0),
            name="Default endpoint",
            base_url=legacy_base_url,
            credential_encrypted=legacy_credential,
            models=[legacy_model_name] if legacy_model_name else [],
            enabled=True,
        )
        endpoints = [default_endpoint]
        selected = (
            [SelectedModel(endpoint_id=default_endpoint.id, model_name=legacy_model_name)]
            if legacy_model_name
            else []
        )
    else:
        endpoints = []
        selected = []

    fields = {
        key: legacy[key]
        for key in (
            "timeout_seconds",
            "requests_per_minute",
            "prompt_template",
            "custom_safety_patterns_text",
            "updated_at",
        )
        if legacy.get(key) is not None
    }

    return GatewayConfig(
        **fields,
        schema_version=CURRENT_SCHEMA_VERSION,
        endpoints=endpoints,
        selected_models=selected,
        base_url=legacy.get("base_url"),
        model_name=legacy.get("model_name"),
        credential_encrypted=legacy.get("credential_encrypted"),
    )


class ConfigStore(Protocol):
    def load(self) -> Optional[dict[str, Any]]:
        ...

    def upsert(self, document: dict[str, Any]) -> None:
        ...


class SqlConfigStore:
    """Singleton config document in the gateway_config table."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def load(self) -> Optional[dict[str, Any]]:
        db = self._session_factory()
        try:
            record = db.get(GatewayConfigRecord, CONFIG_ID)
            return dict(record.document) if record else None
        finally:
            db.close()

    def upsert(self, document: dict[str, Any]) -> None:
        """Write the document keyed by the singleton id.

        Raises ConfigError if the stored schema_version is newer.
        """
        version = int(document.get("schema_version") or 0)
        db = self._session_factory()
        try:
            existing = db.get(GatewayConfigRecord, CONFIG_ID)
            if existing is not None and existing.schema_version > version:
                raise ConfigError(
                    f"Refusing to downgrade config schema from {existing.schema_version} to {version}"
                )

            record = GatewayConfigRecord(
                id=CONFIG_ID,
                schema_version=version,
                document=document,
                updated_at=datetime.utcnow(),
            )
            db.merge(record)  # Upsert
            db.commit()
        finally:
            db.close()


class ModelConfigResolver:
    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        cipher: Optional[CredentialCipher] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._store = store or SqlConfigStore()
        self._cipher = cipher or CredentialCipher()
        self._clock = clock

    def get_config(self) -> GatewayConfig:
        """Load the configuration, migrating and persisting older documents."""
        raw = self._store.load()
        if raw is None:
            return GatewayConfig(
                schema_version=CURRENT_SCHEMA_VERSION,
                timeout_seconds=settings.default_timeout_seconds,
                requests_per_minute=settings.default_requests_per_minute,
            )

        if int(raw.get("schema_version") or 0) < CURRENT_SCHEMA_VERSION:
            logger.info(f"Migrating gateway config from schema {raw.get('schema_version') or 0}")
            config = migrate_from_legacy(raw)
            self._store.upsert(config.model_dump(mode="json"))
            logger.info(f"Migration complete with {len(config.endpoints)} endpoint(s)")
            return config

        return GatewayConfig.model_validate(raw)

    def initialize_default_config(self) -> GatewayConfig:
        """Create an empty configuration if none exists."""
        if self._store.load() is not None:
            logger.info("Gateway config already exists, skipping initialization")
            return self.get_config()
        return self._save(self.get_config())

    def resolve_ordered_models(self, config: Optional[GatewayConfig] = None) -> list[ResolvedModel]:
        """Return usable models in fallback priority order.

        Pass an already loaded config to resolve against the same snapshot
        without reading the store again.
        """
        if config is None:
            config = self.get_config()
        resolved: list[ResolvedModel] = []
        seen: set[tuple[str, str]] = set()

        for selected in config.selected_models:
            key = (selected.endpoint_id, selected.model_name)
            if key in seen:
                continue
            seen.add(key)

            endpoint = config.endpoint(selected.endpoint_id)
            if endpoint is None or not endpoint.enabled:
                continue

            try:
                resolved.append(self.resolve_model(endpoint, selected.model_name, config.timeout_seconds))
            except ValueError as e:
                logger.warning(f"Endpoint {endpoint.name} ({endpoint.id}) skipped: {e}")
        return resolved

    def resolve_model(
        self,
        endpoint: ModelEndpoint,
        model_name: str,
        timeout_seconds: Optional[int] = None,
    ) -> ResolvedModel:
        """Pair an endpoint with one of its models and a decrypted credential.

        Raises ValueError if the endpoint is incomplete or its credential
        cannot be decrypted.
        """
        if not endpoint.base_url or not endpoint.credential_encrypted:
            raise ValueError("endpoint is missing a base URL or credential")

        if timeout_seconds is None:
            timeout_seconds = self.get_config().timeout_seconds

        return ResolvedModel(
            endpoint_id=endpoint.id,
            endpoint_name=endpoint.name,
            base_url=endpoint.base_url,
            credential=self._cipher.decrypt(endpoint.credential_encrypted),
            model_name=model_name,
            timeout_seconds=timeout_seconds,
        )

    @property
    def cipher(self) -> CredentialCipher:
        return self._cipher

    def get_endpoint(self, endpoint_id: str) -> Optional[ModelEndpoint]:
        return self.get_config().endpoint(endpoint_id)

    def add_endpoint(
        self,
        name: str,
        base_url: str,
        credential: str,
        models: Optional[list[str]] = None,
        enabled: bool = True,
    ) -> ModelEndpoint:
        config = self.get_config()
        endpoint = ModelEndpoint(
            id=str(uuid.uuid4()),
            name=name,
            base_url=validate_base_url(base_url),
            credential_encrypted=self._cipher.encrypt(credential),
            models=list(models or []),
            enabled=enabled,
        )
        config.endpoints.append(endpoint)
        self._save(config)
        return endpoint

    def update_endpoint(
        self,
        endpoint_id: str,
        *,
        name: Optional[str] = None,
        base_url: Optional[str] = None,
        credential: Optional[str] = None,
        models: Optional[list[str]] = None,
        enabled: Optional[bool] = None,
    ) -> ModelEndpoint:
        config = self.get_config()
        endpoint = config.endpoint(endpoint_id)
        if endpoint is None:
            raise ConfigError(f"Endpoint not found: {endpoint_id}", code="ENDPOINT_NOT_FOUND")

        if name is not None:
            endpoint.name = name
        if base_url is not None:
            endpoint.base_url = validate_base_url(base_url)
        if credential:
            endpoint.credential_encrypted = self._cipher.encrypt(credential)
        if models is not None:
            endpoint.models = list(models)
            endpoint.models_last_fetched = self._clock()
        if enabled is not None:
            endpoint.enabled = enabled

        self._save(config)
        return endpoint

    def delete_endpoint(self, endpoint_id: str) -> None:
        """Remove an endpoint and every selection that references it."""
        config = self.get_config()
        if config.endpoint(endpoint_id) is None:
            raise ConfigError(f"Endpoint not found: {endpoint_id}", code="ENDPOINT_NOT_FOUND")

        config.endpoints = [ep for ep in config.endpoints if ep.id != endpoint_id]
        config.selected_models = [sm for sm in config.selected_models if sm.endpoint_id != endpoint_id]
        self._save(config)

    def update_selected_models(self, selected_models: list[SelectedModel]) -> GatewayConfig:
        """Replace the fallback order. Every entry must reference an existing endpoint."""
        config = self.get_config()
        known = {endpoint.id for endpoint in config.endpoints}
        unknown = [sm.endpoint_id for sm in selected_models if sm.endpoint_id not in known]
        if unknown:
            raise ConfigError(f"Selected models reference unknown endpoints: {', '.join(unknown)}")

        config.selected_models = list(selected_models)
        return self._save(config)

    def update_settings(
        self,
        *,
        timeout_seconds: Optional[int] = None,
        requests_per_minute: Optional[int] = None,
        prompt_template: Optional[str] = None,
        custom_safety_patterns_text: Optional[str] = None,
    ) -> GatewayConfig:
        config = self.get_config()
        updates = {
            "timeout_seconds": timeout_seconds,
            "requests_per_minute": requests_per_minute,
            "prompt_template": prompt_template,
            "custom_safety_patterns_text": custom_safety_patterns_text,
        }
        merged = config.model_dump()
        merged.update({key: value for key, value in updates.items() if value is not None})
        try:
            config = GatewayConfig.model_validate(merged)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        return self._save(config)

    async def refresh_endpoint_models(self, endpoint_id: str, gateway) -> ModelEndpoint:
        """Fetch the endpoint's advertised models and store them."""
        endpoint = self.get_endpoint(endpoint_id)
        if endpoint is None:
            raise ConfigError(f"Endpoint not found: {endpoint_id}", code="ENDPOINT_NOT_FOUND")

        config = self.get_config()
        models = await gateway.list_models(
            endpoint.base_url,
            self._cipher.decrypt(endpoint.credential_encrypted),
            timeout_seconds=config.timeout_seconds,
        )
        return self.update_endpoint(endpoint_id, models=models)

    def rotate_credentials(self) -> int:
        """Re-encrypt every stored credential under the primary key."""
        config = self.get_config()
        rotated = 0
        for endpoint in config.endpoints:
            if endpoint.credential_encrypted:
                endpoint.credential_encrypted = self._cipher.rotate(endpoint.credential_encrypted)
                rotated += 1
        if config.credential_encrypted:
            config.credential_encrypted = self._cipher.rotate(config.credential_encrypted)
        self._save(config)
        return rotated

    def _save(self, config: GatewayConfig) -> GatewayConfig:
        config.schema_version = CURRENT_SCHEMA_VERSION
        config.updated_at = self._clock()
        self._store.upsert(config.model_dump(mode="json"))
        return config
