"""VM operator CLI (vmo).

Usage:
    vmo run                          # Run the operator against the cluster
    vmo validate vm.yaml             # Validate a VirtualMachine manifest
    vmo render lb vm.yaml            # Print the stack template for one stage
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import click

from .floatingip import KBPS_PER_MBPS, validate_public_spec
from .loadbalancer import stabilize_member_order, validate_ports
from .models import SpecValidationError, VirtualMachine
from .spec_loader import SpecLoadError, load_manifest
from .templates import TemplateEngine, TemplateKind, TemplateRenderError
from .vm_group import validate_server_spec

# Placeholders for values only known once the provider has answered
PLACEHOLDER_PORT_ID = "<port-id>"
PLACEHOLDER_FIXED_IP = "<fixed-ip>"
PLACEHOLDER_FLOATING_IP_ID = "<floating-ip-id>"


def _load(path: str) -> VirtualMachine:
    try:
        return load_manifest(Path(path))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def validate_manifest(vm: VirtualMachine) -> list[str]:
    """Run every stage's validation, returning the problems found."""
    problems: list[str] = []
    checks = [
        (vm.spec.server, validate_server_spec),
        (vm.spec.load_balance, validate_ports),
        (vm.spec.public, validate_public_spec),
    ]
    if vm.spec.auth is None:
        problems.append("authentication info not found")
    for section, check in checks:
        if section is None:
            continue
        try:
            check(section)
        except SpecValidationError as e:
            problems.append(str(e))
    return problems


def render_tree(vm: VirtualMachine, kind: TemplateKind) -> dict[str, Any]:
    """Build the template input for ``kind`` without consulting the provider."""
    name = vm.metadata.name
    if kind == TemplateKind.VM:
        if vm.spec.server is None:
            raise click.ClickException("manifest has no server section")
        tree = vm.spec.server.model_dump(by_alias=True)
        tree["name"] = name
        return tree
    if kind == TemplateKind.LB:
        if vm.spec.load_balance is None:
            raise click.ClickException("manifest has no loadBalance section")
        tree = vm.spec.load_balance.model_dump(by_alias=True)
        tree["name"] = name
        members = stabilize_member_order([], (ip for p in tree["ports"] for ip in p["ips"]))
        for port_map in tree["ports"]:
            port_map["ips"] = members
        return tree
    if vm.spec.public is None:
        raise click.ClickException("manifest has no public section")
    tree = vm.spec.public.model_dump(by_alias=True)
    address = vm.spec.public.address
    tree.update(
        name=name,
        portId=PLACEHOLDER_PORT_ID,
        fixIp=PLACEHOLDER_FIXED_IP,
        floatIpId=PLACEHOLDER_FLOATING_IP_ID if address is not None and address.ip else "",
        mbps=vm.spec.public.mbps * KBPS_PER_MBPS,
    )
    return tree


@click.group()
@click.version_option(version="0.1.0", prog_name="vmo")
def cli() -> None:
    """VM operator CLI (vmo).

    Reconciles VirtualMachine objects into OpenStack Heat stacks.

    \b
    Quick Start:
        vmo validate vm.yaml    # Check a manifest before applying it
        vmo render vm vm.yaml   # Show the stack template it produces
        vmo run                 # Run the operator (reads OS_* settings)
    """
    pass


@cli.command()
def run() -> None:
    """Run the operator until SIGTERM or SIGINT."""
    from .main import main

    sys.exit(asyncio.run(main()))


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
def validate(manifest: str) -> None:
    """Validate a VirtualMachine manifest."""
    vm = _load(manifest)
    problems = validate_manifest(vm)
    if problems:
        for problem in problems:
            click.secho(f"✗ {problem}", fg="red", err=True)
        raise SystemExit(1)
    click.secho(f"✓ {vm.key} is valid", fg="green")


@cli.command()
@click.argument("kind", type=click.Choice([k.value for k in TemplateKind]))
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--templates-dir",
    type=click.Path(exists=True, file_okay=False),
    envvar="TEMPLATES_DIR",
    help="Directory overriding the packaged templates",
)
def render(kind: str, manifest: str, templates_dir: str | None) -> None:
    """Render the stack template of one stage of a manifest."""
    vm = _load(manifest)
    engine = TemplateEngine(Path(templates_dir) if templates_dir else None)
    template_kind = TemplateKind(kind)
    try:
        rendered = engine.render(template_kind, render_tree(vm, template_kind))
    except TemplateRenderError as e:
        raise click.ClickException(str(e)) from e
    click.echo(rendered.decode("utf-8"), nl=False)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
