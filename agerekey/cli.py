"""agerekey CLI - Rekey and generate age secrets for hosts."""

import os
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from . import config, crypto, decrypt, graph
from .entities import Inventory
from .errors import Aborted, ConfigInvalid, CyclicDependency, RekeyError
from .generate import GeneratorRunner
from .rekey import RekeyOrchestrator

app = typer.Typer(
    name="agerekey",
    help="Rekey master-encrypted age secrets for hosts and generate missing ones.",
    no_args_is_help=True,
)


def _is_rekey_repo(path: Path) -> bool:
    """Check if a path looks like an agerekey secrets repo."""
    return (path / "src" / "rekey.toml").exists() or (path / "src" / "hosts").exists()


def get_rekey_repo(secrets_path: Optional[Path]) -> config.RekeyRepo:
    """Get the secrets repo, with default path handling.

    Resolution order:
    1. Explicit --secrets-path argument
    2. AGEREKEY_REPO environment variable
    3. Current directory (if it looks like a secrets repo)
    4. ./agerekey-secrets or ../agerekey-secrets
    """
    if secrets_path is not None:
        if not secrets_path.exists():
            typer.echo(f"Error: Specified path does not exist: {secrets_path}", err=True)
            raise typer.Exit(1)
        return config.RekeyRepo(secrets_path)

    env_path = os.environ.get("AGEREKEY_REPO")
    if env_path:
        path = Path(env_path)
        if path.exists() and _is_rekey_repo(path):
            return config.RekeyRepo(path)
        typer.echo(f"Error: AGEREKEY_REPO points to invalid repo: {env_path}", err=True)
        raise typer.Exit(1)

    candidates = [
        Path.cwd(),
        Path.cwd() / "agerekey-secrets",
        Path.cwd().parent / "agerekey-secrets",
    ]
    for candidate in candidates:
        if candidate.exists() and _is_rekey_repo(candidate):
            return config.RekeyRepo(candidate)

    typer.echo("Error: Could not find a secrets repo", err=True)
    typer.echo("", err=True)
    typer.echo("Options:", err=True)
    typer.echo("  1. Run from within the secrets repo", err=True)
    typer.echo("  2. Set AGEREKEY_REPO environment variable", err=True)
    typer.echo("  3. Use --secrets-path to specify location", err=True)
    raise typer.Exit(1)


def load_checked_inventory(repo: config.RekeyRepo) -> Inventory:
    """Load the repo and run pre-flight validation, exiting on errors."""
    inventory = config.load_inventory(repo)
    diagnostics = config.preflight(repo, inventory)
    for diagnostic in diagnostics:
        if not diagnostic.is_error:
            typer.secho(f"Warning: {diagnostic.message}", fg=typer.colors.YELLOW, err=True)
    try:
        config.check(diagnostics)
    except ConfigInvalid as e:
        for diagnostic in e.diagnostics:
            typer.secho(f"Error: {diagnostic.message}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    return inventory


def make_gateway(repo: config.RekeyRepo) -> crypto.Age:
    settings = repo.get_config()
    binary = os.environ.get("AGEREKEY_AGE") or settings.age_binary
    return crypto.Age(binary=binary, plugin_dirs=[Path(p) for p in settings.plugin_dirs])


def fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, bold=True, err=True)
    raise typer.Exit(1)


# =============================================================================
# Pipeline Commands
# =============================================================================

@app.command()
def rekey(
    hosts: Optional[List[str]] = typer.Option(None, "--host", "-H", help="Rekey only this host (repeatable)"),
    jobs: int = typer.Option(1, "--jobs", "-j", help="Number of secrets rekeyed in parallel"),
    secrets_path: Optional[Path] = typer.Option(None, "--secrets-path", "-s", help="Path to the secrets repo"),
):
    """Re-encrypt secrets for all hosts that require them."""
    repo = get_rekey_repo(secrets_path)
    inventory = load_checked_inventory(repo)

    hostnames = list(dict.fromkeys(hosts or inventory.hosts))
    unknown = [h for h in hostnames if h not in inventory.hosts]
    if unknown:
        fail(f"Unknown host(s): {', '.join(unknown)}")

    gateway = make_gateway(repo)
    with decrypt.RunState() as run:
        decryptor = decrypt.InteractiveDecryptor(gateway, inventory.master.identities, run)
        orchestrator = RekeyOrchestrator(
            inventory, repo.build_path / "hosts", gateway, decryptor, jobs=jobs
        )
        try:
            results = orchestrator.rekey_all(hostnames)
        except Aborted as e:
            fail(str(e))
        except RekeyError as e:
            fail(f"Error: {e}")

    failed = [r.host for r in results if not r.ok]
    if failed:
        fail(f"Rekeying failed for: {', '.join(failed)}")

    typer.secho("\nRekey complete!", fg=typer.colors.GREEN)


@app.command()
def generate(
    jobs: int = typer.Option(1, "--jobs", "-j", help="Number of generators run in parallel"),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Show what would be done"),
    secrets_path: Optional[Path] = typer.Option(None, "--secrets-path", "-s", help="Path to the secrets repo"),
):
    """Generate all secrets that have a generator but no file yet."""
    repo = get_rekey_repo(secrets_path)
    inventory = load_checked_inventory(repo)

    try:
        dependency_graph = graph.DependencyGraph.from_inventory(inventory)
        order = dependency_graph.order()
    except CyclicDependency as e:
        fail(f"Error: {e}")

    if not order:
        typer.echo("Nothing to generate.")
        return

    if dry_run:
        for ref in order:
            typer.echo(f"  [dry-run] Would generate {ref}")
        return

    gateway = make_gateway(repo)
    with decrypt.RunState() as run:
        decryptor = decrypt.InteractiveDecryptor(gateway, inventory.master.identities, run)
        runner = GeneratorRunner(inventory, gateway, decryptor, cwd=repo.path)
        try:
            generated = runner.run_all(order, dependency_graph, jobs=jobs)
        except Aborted as e:
            fail(str(e))
        except RekeyError as e:
            fail(f"Error: {e}")

    typer.secho(f"\nGenerated {len(generated)} secret(s).", fg=typer.colors.GREEN)
    typer.echo("Next: run 'agerekey rekey' to rekey them for their hosts")


@app.command()
def validate(
    secrets_path: Optional[Path] = typer.Option(None, "--secrets-path", "-s"),
):
    """Check the repository configuration without touching any secret."""
    repo = get_rekey_repo(secrets_path)
    inventory = load_checked_inventory(repo)

    try:
        graph.resolve(inventory)
    except CyclicDependency as e:
        fail(f"Error: {e}")

    typer.secho(
        f"Configuration OK ({len(inventory.hosts)} hosts)", fg=typer.colors.GREEN
    )


@app.command()
def plan(
    secrets_path: Optional[Path] = typer.Option(None, "--secrets-path", "-s"),
):
    """Print what generate and rekey would do, as YAML."""
    repo = get_rekey_repo(secrets_path)
    inventory = load_checked_inventory(repo)

    try:
        order = graph.resolve(inventory)
    except CyclicDependency as e:
        fail(f"Error: {e}")

    rekey_plan = {}
    for host in inventory.hosts.values():
        rekey_plan[host.name] = {
            "pubkey": host.pubkey,
            "secrets": {
                secret.name: str(secret.rekey_file) for secret in host.rekeyable()
            },
        }

    document = {
        "generate": [
            {
                "secret": str(ref),
                "generator": inventory.secret(ref).generator.name,
                "file": str(inventory.secret(ref).rekey_file),
            }
            for ref in order
        ],
        "rekey": rekey_plan,
    }
    typer.echo(yaml.dump(document, default_flow_style=False, sort_keys=False), nl=False)


# =============================================================================
# Configuration Commands
# =============================================================================

@app.command("init-host")
def init_host(
    hostname: str = typer.Argument(..., help="Hostname to initialize"),
    pubkey: Optional[str] = typer.Option(None, "--pubkey", "-k", help="The host's age or SSH public key"),
    secrets_path: Optional[Path] = typer.Option(None, "--secrets-path", "-s"),
):
    """Add a host to the secrets configuration."""
    repo = get_rekey_repo(secrets_path)
    repo.ensure_structure()

    existing = repo.get_host_config(hostname)
    if existing:
        typer.echo(f"Host {hostname} already configured")
        raise typer.Exit(1)

    host_config = config.HostConfig(hostname=hostname, pubkey=pubkey)
    repo.set_host_config(host_config)

    typer.secho(f"Initialized host: {hostname}", fg=typer.colors.GREEN)
    typer.echo(f"  Config: {repo.src_path / 'hosts' / f'{hostname}.toml'}")
    if not pubkey:
        typer.secho(
            "  No pubkey given, secrets will be rekeyed for a dummy key",
            fg=typer.colors.YELLOW,
        )


@app.command("add-secret")
def add_secret(
    hostname: str = typer.Argument(..., help="Host requiring the secret"),
    name: str = typer.Argument(..., help="Secret name"),
    file: Optional[Path] = typer.Argument(None, help="File containing the secret"),
    generator: Optional[str] = typer.Option(None, "--generator", "-g", help="Generate the secret with this generator instead"),
    secrets_path: Optional[Path] = typer.Option(None, "--secrets-path", "-s"),
):
    """Encrypt a secret for the master identities and declare it for a host."""
    repo = get_rekey_repo(secrets_path)

    if (file is None) == (generator is None):
        fail("Error: Give either a FILE or --generator")

    host_config = repo.get_host_config(hostname)
    if host_config is None:
        fail(f"Error: Host {hostname} is not configured. Use 'agerekey init-host' first.")
    if name in host_config.secrets:
        fail(f"Error: {hostname} already has a secret named {name}")

    output_path = repo.secret_path(name)
    rekey_file = str(output_path.relative_to(repo.path))

    if file is not None:
        if not file.exists():
            fail(f"Error: File not found: {file}")
        if output_path.exists():
            fail(f"Error: {output_path} already exists")

        inventory = load_checked_inventory(repo)
        gateway = make_gateway(repo)
        try:
            gateway.encrypt(file.read_bytes(), inventory.master.recipients(), output_path)
        except RekeyError as e:
            fail(f"Error: {e}")
        typer.echo(f"  Wrote: {output_path}")

    host_config.secrets[name] = config.SecretConfig(
        name=name, rekey_file=rekey_file, generator=generator
    )
    repo.set_host_config(host_config)

    typer.secho(f"Added secret: {name} for {hostname}", fg=typer.colors.GREEN)
    if generator:
        typer.echo("Next: run 'agerekey generate' to create it")
    else:
        typer.echo("Next: run 'agerekey rekey' to rekey it for the host")


# =============================================================================
# Utility Commands
# =============================================================================

@app.command("list")
def list_secrets(
    hostname: Optional[str] = typer.Argument(None, help="Hostname (optional, list all if omitted)"),
    secrets_path: Optional[Path] = typer.Option(None, "--secrets-path", "-s"),
):
    """List rekeyed secrets for a host or all hosts."""
    repo = get_rekey_repo(secrets_path)

    if hostname:
        hosts = [hostname]
    else:
        hosts = repo.list_hosts()

    for host in hosts:
        typer.echo(f"\n{host}:")
        build_path = repo.host_build_path(host)

        if not build_path.exists():
            typer.echo("  (not rekeyed yet)")
            continue

        for secret_file in sorted(build_path.glob("*.age")):
            size = secret_file.stat().st_size
            typer.echo(f"  {secret_file.name} ({size} bytes)")


def main():
    app()


if __name__ == "__main__":
    main()
