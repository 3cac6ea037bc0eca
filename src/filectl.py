#!/usr/bin/env python3
"""
CLI tool for the SSH provider
Provides kubectl-like interface for managing remote files
"""

import json

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = "http://localhost:8000/api/v1"

KIND_FILE = "File"
KIND_PROVIDER_CONFIG = "ProviderConfig"


class ProviderCLI:
    """CLI client for the SSH provider API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def _find(self, endpoint: str):
        """GET an object, returning None if it does not exist"""
        try:
            response = requests.get(f"{self.base_url}{endpoint}")
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            return None
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def apply_file(self, name: str, spec: dict):
        existing = self._find(f"/resources/by-name/{KIND_FILE}/{name}")
        if existing:
            return "configured", self._make_request(
                "PUT", f"/resources/{existing['id']}", json={"spec": spec}
            )
        return "created", self._make_request(
            "POST", "/resources", json={"name": name, "kind": KIND_FILE, "spec": spec}
        )

    def apply_provider_config(self, name: str, spec: dict):
        if self._find(f"/providerconfigs/{name}"):
            return "configured", self._make_request(
                "PUT", f"/providerconfigs/{name}", json=spec
            )
        return "created", self._make_request(
            "POST", "/providerconfigs", json={"name": name, **spec}
        )


def load_manifests(filename: str):
    """Read one or more manifests from a YAML/JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return [doc for doc in yaml.safe_load_all(f) if doc]
        data = json.load(f)
    return data if isinstance(data, list) else [data]


def condition_summary(resource: dict, condition_type: str) -> str:
    for condition in resource.get("status", {}).get("conditions", []):
        if condition.get("type") == condition_type:
            return f"{condition.get('status')} ({condition.get('reason')})"
    return "-"


@click.group()
@click.option(
    "--server",
    envvar="FILECTL_SERVER",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the provider API",
)
@click.pass_context
def cli(ctx, server):
    """SSH provider CLI - kubectl-like interface for remote files"""
    ctx.obj = ProviderCLI(server)


@cli.command()
@click.option(
    "--filename",
    "-f",
    required=True,
    type=click.Path(exists=True),
    help="Manifest file (YAML or JSON)",
)
@click.pass_obj
def apply(client, filename):
    """Create or update objects from a manifest file"""
    for manifest in load_manifests(filename):
        kind = manifest.get("kind")
        name = manifest.get("metadata", {}).get("name") or manifest.get("name")
        spec = manifest.get("spec", {})

        if not name:
            click.echo(f"Error: {kind} manifest has no metadata.name", err=True)
            continue

        if kind == KIND_FILE:
            action, result = client.apply_file(name, spec)
        elif kind == KIND_PROVIDER_CONFIG:
            action, result = client.apply_provider_config(name, spec)
        else:
            click.echo(f"Error: unsupported kind: {kind}", err=True)
            continue

        if result:
            click.echo(f"{kind.lower()}/{name} {action}")


@cli.group()
def get():
    """List objects"""
    pass


@get.command("files")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
@click.pass_obj
def get_files(client, output):
    """List File resources"""
    result = client._make_request("GET", "/resources", params={"kind": KIND_FILE})
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return
    if output == "yaml":
        click.echo(yaml.dump(result, default_flow_style=False))
        return

    headers = ["ID", "Name", "File", "ProviderConfig", "Ready", "Synced"]
    rows = []
    for resource in result:
        spec = resource.get("spec", {})
        rows.append(
            [
                resource["id"],
                resource["name"] + (" (deleting)" if resource.get("deleted_at") else ""),
                spec.get("forProvider", {}).get("file", ""),
                spec.get("providerConfigRef", {}).get("name", ""),
                condition_summary(resource, "Ready"),
                condition_summary(resource, "Synced"),
            ]
        )

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@get.command("providerconfigs")
@click.pass_obj
def get_provider_configs(client):
    """List provider configs"""
    result = client._make_request("GET", "/providerconfigs")
    if result is None:
        return

    headers = ["Name", "Address", "Username", "Auth"]
    rows = []
    for config in result:
        auth = [
            label
            for label, present in (
                ("password", config.get("has_password")),
                ("key", config.get("has_private_key")),
            )
            if present
        ]
        rows.append(
            [config["name"], config["address"], config["username"], ", ".join(auth)]
        )

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("resource_id", type=int)
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="json")
@click.pass_obj
def describe(client, resource_id, output):
    """Describe a specific resource"""
    result = client._make_request("GET", f"/resources/{resource_id}")

    if result:
        if output == "yaml":
            click.echo(yaml.dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("resource_id", type=int)
@click.confirmation_option(prompt="Are you sure you want to delete this resource?")
@click.pass_obj
def delete(client, resource_id):
    """Delete a resource (removes the remote file)"""
    result = client._make_request("DELETE", f"/resources/{resource_id}")

    if result:
        click.echo(result.get("message", "Resource marked for deletion"))


@cli.command()
@click.argument("resource_id", type=int)
@click.pass_obj
def reconcile(client, resource_id):
    """Manually trigger reconciliation for a resource"""
    result = client._make_request("POST", f"/resources/{resource_id}/reconcile")

    if result:
        click.echo("Reconciliation triggered successfully")


if __name__ == "__main__":
    cli()
