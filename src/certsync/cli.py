#!/usr/bin/env python3
"""
certctl - CLI for the certsync controller.

Provides a kubectl-like interface for managing certificate bindings.
"""

import json
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = "http://localhost:8000/api/v1"


class CertSyncCLI:
    """CLI client for the certsync API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(
        self, method: str, endpoint: str, ignore_not_found: bool = False, **kwargs
    ):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            if ignore_not_found and response.status_code == 404:
                return None
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


def load_manifest(filename: str) -> dict:
    """
    Read a binding manifest from a YAML or JSON file.

    Accepts either a flat {name, namespace, spec} document or a
    Kubernetes-style one with the identity under metadata.
    """
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)

    if not isinstance(data, dict):
        raise click.BadParameter(f"{filename} does not contain a mapping")

    metadata = data.get("metadata") or {}
    name = metadata.get("name", data.get("name"))
    if not name:
        raise click.BadParameter(f"{filename} has no binding name")
    return {
        "name": name,
        "namespace": metadata.get("namespace", data.get("namespace", "default")),
        "spec": data.get("spec") or {},
    }


@click.group()
@click.option(
    "--api-url",
    envvar="CERTSYNC_API_URL",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the certsync API",
)
@click.pass_context
def cli(ctx, api_url):
    """certctl - kubectl-like interface for certificate bindings"""
    ctx.obj = CertSyncCLI(api_url)


@cli.command()
@click.option(
    "--filename", "-f", required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.pass_obj
def apply(client, filename):
    """Create or update a binding from a YAML/JSON file"""
    manifest = load_manifest(filename)

    existing = client._make_request(
        "GET",
        f"/bindings/by-name/{manifest['namespace']}/{manifest['name']}",
        ignore_not_found=True,
    )

    if existing:
        result = client._make_request(
            "PUT", f"/bindings/{existing['id']}", json={"spec": manifest["spec"]}
        )
        verb = "configured"
    else:
        result = client._make_request("POST", "/bindings", json=manifest)
        verb = "created"

    if result:
        click.echo(f"binding/{result['namespace']}/{result['name']} {verb}")
        click.echo(f"ID: {result['id']}")
        click.echo(f"Generation: {result['generation']}")
        click.echo(f"Phase: {result['phase']}")
    else:
        raise SystemExit(1)


@cli.command()
@click.option("--namespace", "-n", default=None, help="Filter by namespace")
@click.option("--phase", default=None, help="Filter by phase")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, namespace, phase, output):
    """List bindings"""
    params = {}
    if namespace:
        params["namespace"] = namespace
    if phase:
        params["phase"] = phase

    result = client._make_request("GET", "/bindings", params=params)
    if result is None:
        raise SystemExit(1)

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    headers = ["ID", "Namespace", "Name", "Phase", "Ready", "Destinations"]
    if output == "wide":
        headers += ["Generation", "Observed", "Last Sync"]

    rows = []
    for binding in result:
        status = binding.get("status") or {}
        destinations = status.get("destinations") or []
        synced = sum(1 for d in destinations if d.get("state") == "Synced")
        row = [
            binding["id"],
            binding["namespace"],
            binding["name"],
            binding["phase"],
            "True" if status.get("ready") else "False",
            f"{synced}/{len(destinations)}",
        ]
        if output == "wide":
            row += [
                binding["generation"],
                binding["observed_generation"],
                status.get("lastSyncTime") or "Never",
            ]
        rows.append(row)

    click.echo(tabulate(rows, headers=headers))


@cli.command()
@click.argument("binding_id", type=int)
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, binding_id, output):
    """Describe a specific binding"""
    result = client._make_request("GET", f"/bindings/{binding_id}")

    if result:
        if output == "yaml":
            click.echo(yaml.safe_dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("binding_id", type=int)
@click.confirmation_option(prompt="Are you sure you want to delete this binding?")
@click.pass_obj
def delete(client, binding_id):
    """Delete a binding (cleans up destinations when cleanupOnDelete is set)"""
    result = client._make_request("DELETE", f"/bindings/{binding_id}")

    if result:
        click.echo("Binding marked for deletion")


@cli.command()
@click.argument("binding_id", type=int)
@click.pass_obj
def reconcile(client, binding_id):
    """Manually trigger reconciliation for a binding"""
    result = client._make_request("POST", f"/bindings/{binding_id}/reconcile")

    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("binding_id", type=int)
@click.option("--limit", "-l", default=10, help="Number of history entries to show")
@click.pass_obj
def history(client, binding_id, limit):
    """Show reconciliation history for a binding"""
    result = client._make_request(
        "GET", f"/bindings/{binding_id}/history", params={"limit": limit}
    )

    if result:
        headers = [
            "ID",
            "Generation",
            "Success",
            "Phase",
            "Synced",
            "Failed",
            "Trigger",
            "Time",
        ]
        rows = []
        for entry in result:
            rows.append(
                [
                    entry["id"],
                    entry["generation"],
                    "✓" if entry["success"] else "✗",
                    entry["phase"],
                    entry["destinations_synced"],
                    entry["destinations_failed"],
                    entry.get("trigger_reason") or "",
                    entry["reconcile_time"],
                ]
            )

        click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("binding_id", type=int)
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, binding_id, follow, interval):
    """Show status of a binding and each of its destinations"""

    def show_status():
        result = client._make_request("GET", f"/bindings/{binding_id}")
        if not result:
            return
        binding_status = result.get("status") or {}
        if follow:
            click.clear()
        click.echo(f"Binding: {result['namespace']}/{result['name']}")
        click.echo(f"Phase: {result['phase']}")
        click.echo(f"Ready: {bool(binding_status.get('ready'))}")
        click.echo(f"Message: {result.get('status_message') or 'N/A'}")
        click.echo(f"Generation: {result['generation']}")
        click.echo(f"Observed Generation: {result['observed_generation']}")
        click.echo(f"Sync Count: {binding_status.get('syncCount', 0)}")
        click.echo(f"Last Sync: {binding_status.get('lastSyncTime') or 'Never'}")

        destinations = binding_status.get("destinations") or []
        if destinations:
            rows = [
                [
                    d.get("name"),
                    d.get("state"),
                    d.get("retryCount", 0),
                    d.get("lastSync") or "",
                    d.get("error") or "",
                ]
                for d in destinations
            ]
            click.echo("")
            click.echo(
                tabulate(
                    rows, headers=["Destination", "State", "Retries", "Synced", "Error"]
                )
            )

        if result["generation"] != result["observed_generation"]:
            click.echo("\n⚠️  Binding is out of sync (reconciliation pending)")
        elif binding_status.get("ready"):
            click.echo("\n✓ Binding is up to date")

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


@cli.command()
@click.pass_obj
def destinations(client):
    """List destination plugins registered on the controller"""
    result = client._make_request("GET", "/plugins/destinations")

    if result is not None:
        rows = [[p["name"], p["version"]] for p in result]
        click.echo(tabulate(rows, headers=["Type", "Version"]))


if __name__ == "__main__":
    cli()
