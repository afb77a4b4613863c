"""EC2 Operator CLI (ec2op).

Usage:
    ec2op run                          # Run the operator
    ec2op validate instance.yaml       # Validate an Ec2Instance manifest
    ec2op reconcile default my-vm      # Reconcile one object once
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .manifest import ManifestLoadError, load_manifest
from .models import ObjectKey
from .store import StoreError


@click.group()
@click.version_option(version="0.1.0", prog_name="ec2op")
def cli() -> None:
    """EC2 Operator CLI (ec2op).

    Reconciles Ec2Instance objects in Kubernetes against AWS EC2.

    \b
    Quick Start:
        ec2op validate instance.yaml   # Check a manifest before applying it
        ec2op run                      # Run the operator locally
    """
    pass


@cli.command()
def run() -> None:
    """Run the operator until SIGTERM/SIGINT.

    Configuration is read from the environment (see Config.from_env).
    """
    from .main import main

    raise SystemExit(asyncio.run(main()))


@cli.command()
@click.argument("manifest", type=click.Path(path_type=Path, dir_okay=False))
def validate(manifest: Path) -> None:
    """Validate an Ec2Instance manifest."""
    try:
        instance = load_manifest(manifest)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    spec = instance.spec
    click.secho(f"✓ {instance.key} is a valid Ec2Instance", fg="green")
    click.echo(f"  image:    {spec.image_id}")
    click.echo(f"  type:     {spec.instance_type}")
    click.echo(f"  region:   {spec.region or '(operator default)'}")
    if spec.key_pair:
        click.echo(f"  key pair: {spec.key_pair}")
    if spec.subnet:
        click.echo(f"  subnet:   {spec.subnet}")
    if spec.tags:
        click.echo(f"  tags:     {json.dumps(spec.tags, sort_keys=True)}")


@cli.command()
@click.argument("namespace")
@click.argument("name")
def reconcile(namespace: str, name: str) -> None:
    """Run one reconciliation of NAMESPACE/NAME against the live cluster and AWS."""
    from .main import build_reconciler, setup_logging

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config)

    try:
        reconciler, _ = build_reconciler(config)
    except StoreError as e:
        raise click.ClickException(str(e)) from e

    result = asyncio.run(reconciler.reconcile(ObjectKey(namespace=namespace, name=name)))

    click.echo(
        json.dumps(
            {
                "key": str(result.key),
                "phase": result.phase.value if result.phase else None,
                "action": result.action.value,
                "requeue_after": result.requeue_after,
                "error": str(result.error) if result.error else None,
            },
            indent=2,
        )
    )
    if not result.success:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
