"""Administrative commands for the gateway configuration."""
import asyncio
import json

import click

from tutor_gateway.crypto import CredentialCipher, mask_credential
from tutor_gateway.database import Base, engine
from tutor_gateway.errors import GatewayError
from tutor_gateway.gateway import GatewayClient
from tutor_gateway.model_config import ModelConfigResolver
from tutor_gateway.safety import SqlIncidentLog
from tutor_gateway.schemas import SelectedModel


def _build_resolver() -> ModelConfigResolver:
    return ModelConfigResolver()


def _build_incident_log() -> SqlIncidentLog:
    return SqlIncidentLog()


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


def _masked(cipher: CredentialCipher, token: str) -> str:
    if not token:
        return ""
    try:
        return mask_credential(cipher.decrypt(token))
    except ValueError:
        return "<undecryptable>"


@click.group()
def cli():
    """tutor-gateway administration."""
    pass


@cli.command("show-config")
def show_config():
    """Print the current configuration with credentials masked."""
    resolver = _build_resolver()
    cipher = resolver.cipher
    config = resolver.get_config()

    document = config.model_dump(mode="json")
    for endpoint in document["endpoints"]:
        endpoint["credential"] = _masked(cipher, endpoint.pop("credential_encrypted"))
    document["credential"] = _masked(cipher, document.pop("credential_encrypted") or "")
    click.echo(json.dumps(document, indent=2, ensure_ascii=False))


@cli.command()
def migrate():
    """Create tables and bring the stored configuration to the current schema."""
    Base.metadata.create_all(bind=engine)
    try:
        config = _build_resolver().initialize_default_config()
    except GatewayError as e:
        _fail(str(e))
    click.echo(
        f"Config at schema {config.schema_version}: "
        f"{len(config.endpoints)} endpoint(s), {len(config.selected_models)} selected model(s)"
    )


@cli.command("add-endpoint")
@click.option("--name", required=True, help="Display name")
@click.option("--base-url", required=True, help="OpenAI-compatible base URL, e.g. https://api.example.com/v1")
@click.option("--credential", required=True, help="Provider API key")
@click.option("--model", "models", multiple=True, help="Model name (repeatable)")
@click.option("--disabled", is_flag=True, help="Create the endpoint disabled")
def add_endpoint(name, base_url, credential, models, disabled):
    """Add an upstream endpoint."""
    try:
        endpoint = _build_resolver().add_endpoint(
            name, base_url, credential, models=list(models), enabled=not disabled
        )
    except (GatewayError, ValueError) as e:
        _fail(str(e))
    click.echo(f"Endpoint created: {endpoint.id}")


@cli.command("update-endpoint")
@click.argument("endpoint_id")
@click.option("--name", default=None)
@click.option("--base-url", default=None)
@click.option("--credential", default=None, help="New provider API key")
@click.option("--model", "models", multiple=True, help="Replace the model list (repeatable)")
@click.option("--enable/--disable", "enabled", default=None)
def update_endpoint(endpoint_id, name, base_url, credential, models, enabled):
    """Change fields of an existing endpoint."""
    try:
        endpoint = _build_resolver().update_endpoint(
            endpoint_id,
            name=name,
            base_url=base_url,
            credential=credential,
            models=list(models) if models else None,
            enabled=enabled,
        )
    except (GatewayError, ValueError) as e:
        _fail(str(e))
    click.echo(f"Endpoint updated: {endpoint.id} ({'enabled' if endpoint.enabled else 'disabled'})")


@cli.command("delete-endpoint")
@click.argument("endpoint_id")
def delete_endpoint(endpoint_id):
    """Delete an endpoint and the selections that use it."""
    try:
        _build_resolver().delete_endpoint(endpoint_id)
    except GatewayError as e:
        _fail(str(e))
    click.echo(f"Endpoint deleted: {endpoint_id}")


@cli.command("select-models")
@click.argument("selections", nargs=-1, required=True)
def select_models(selections):
    """Set the fallback order as ENDPOINT_ID:MODEL pairs, highest priority first."""
    selected = []
    for item in selections:
        endpoint_id, sep, model_name = item.partition(":")
        if not sep or not endpoint_id or not model_name:
            _fail(f"Expected ENDPOINT_ID:MODEL, got {item!r}")
        selected.append(SelectedModel(endpoint_id=endpoint_id, model_name=model_name))

    try:
        config = _build_resolver().update_selected_models(selected)
    except GatewayError as e:
        _fail(str(e))
    click.echo(f"Selected {len(config.selected_models)} model(s)")


@cli.command("refresh-models")
@click.argument("endpoint_id")
def refresh_models(endpoint_id):
    """Fetch the model list advertised by an endpoint."""
    resolver = _build_resolver()

    async def _refresh():
        async with GatewayClient() as gateway:
            return await resolver.refresh_endpoint_models(endpoint_id, gateway)

    try:
        endpoint = asyncio.run(_refresh())
    except (GatewayError, ValueError) as e:
        _fail(str(e))
    click.echo(f"{endpoint.name}: {len(endpoint.models)} model(s)")
    for model in endpoint.models:
        click.echo(f"  {model}")


@cli.command("test-endpoint")
@click.argument("endpoint_id")
@click.option("--model", "model_name", default=None, help="Model to test (defaults to the first listed)")
def test_endpoint(endpoint_id, model_name):
    """Send a minimal prompt to one endpoint and report latency."""
    resolver = _build_resolver()
    endpoint = resolver.get_endpoint(endpoint_id)
    if endpoint is None:
        _fail(f"Endpoint not found: {endpoint_id}")

    model_name = model_name or (endpoint.models[0] if endpoint.models else None)
    if not model_name:
        _fail("No model given and the endpoint lists none")

    try:
        model = resolver.resolve_model(endpoint, model_name)

        async def _check():
            async with GatewayClient() as gateway:
                return await gateway.test_connection(model)

        check = asyncio.run(_check())
    except (GatewayError, ValueError) as e:
        _fail(str(e))

    if not check.success:
        _fail(check.error or "Connection failed")
    click.echo(f"OK: {endpoint.name}/{model_name} answered in {check.latency_ms} ms")


@cli.command("rotate-credentials")
def rotate_credentials():
    """Re-encrypt stored credentials under the primary ENCRYPTION_KEY."""
    try:
        rotated = _build_resolver().rotate_credentials()
    except (GatewayError, ValueError) as e:
        _fail(str(e))
    click.echo(f"Re-encrypted {rotated} credential(s)")


@cli.command()
@click.option("--limit", default=20, show_default=True)
def incidents(limit):
    """Show recent safety incidents."""
    records = _build_incident_log().list_recent(limit)
    if not records:
        click.echo("No safety incidents recorded")
        return

    for record in records:
        click.echo(
            f"{record.created_at:%Y-%m-%d %H:%M:%S}  {record.tenant_id}/{record.user_id}  "
            f"{record.matched_pattern!r}  {record.matched_excerpt!r}"
        )


if __name__ == "__main__":
    cli()
