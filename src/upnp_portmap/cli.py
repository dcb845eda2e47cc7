"""
Command-line interface for inspecting and exercising a UPnP gateway.
"""
import asyncio
import click
from pathlib import Path
from typing import Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from upnp_portmap.config import MapperConfig
from upnp_portmap.host import get_local_ip
from upnp_portmap.igd import UPnPGatewayClient
from upnp_portmap.log import configure_logging
from upnp_portmap.manager import MappingManager
from upnp_portmap.nat_method import UPnPNatMethod


console = Console()


def _load_config(config: Optional[str], log_level: str) -> MapperConfig:
    if config and Path(config).exists():
        mapper_config = MapperConfig.from_file(config)
        console.print(f"[green]Loaded configuration from {config}[/green]")
    else:
        mapper_config = MapperConfig(log_level=log_level)
    mapper_config.validate()
    configure_logging(mapper_config.log_level)
    return mapper_config


class ConsoleHost:
    """Mapper host that reports to the console."""

    def __init__(self, base_port: int):
        self.base_port = base_port
        self.available = False
        self.external_address: Optional[str] = None

    def set_available(self, device_name: Optional[str] = None):
        self.available = True
        console.print(f"[green]Gateway available: {device_name or 'unknown'}[/green]")

    def set_external_address(self, address: str):
        self.external_address = address
        console.print(f"[cyan]External address: {address}[/cyan]")

    def get_base_port(self) -> int:
        return self.base_port


class ConsoleEndpoint:
    """Endpoint stand-in for the ``run`` command."""

    def __init__(self, rtp_port_base: int, rtp_port_max: int):
        self.rtp_port_base = rtp_port_base
        self.rtp_port_max = rtp_port_max
        self.registrations = 0

    def force_reregistration(self):
        self.registrations += 1
        console.print("[dim]Endpoint re-registration requested[/dim]")


@click.group()
def main():
    """UPnP Port Mapper - gateway port mappings for real-time media."""
    pass


@main.command()
@click.option("--config", "-c", type=click.Path(), help="Path to configuration file")
@click.option("--log-level", "-l", default="WARNING", help="Log level")
def discover(config, log_level):
    """Search the local network for Internet Gateway Devices."""
    mapper_config = _load_config(config, log_level)
    asyncio.run(_discover(mapper_config))


async def _discover(config: MapperConfig):
    client = UPnPGatewayClient(config)
    try:
        with console.status("Searching for gateways..."):
            found = await client.discover(config.device_type)

        if not found:
            console.print("[yellow]No gateway found[/yellow]")
            return

        info = await client.get_connection_info()
        external_ip = await client.get_external_ip()

        table = Table(title="Gateway")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Control URL", info["control_url"])
        table.add_row("Connection", info["connection_type"])
        table.add_row("Status", info["status"])
        table.add_row("LAN Address", info["lan_address"])
        table.add_row("External Address", external_ip)
        console.print(table)
    except Exception as e:
        console.print(f"[red]Error querying gateway: {e}[/red]")
    finally:
        await client.close()


@main.command(name="list")
@click.option("--config", "-c", type=click.Path(), help="Path to configuration file")
@click.option("--log-level", "-l", default="WARNING", help="Log level")
@click.option("--all-protocols", "-a", is_flag=True, help="Include non-UDP mappings")
def list_mappings(config, log_level, all_protocols):
    """List the port mappings present on the gateway."""
    mapper_config = _load_config(config, log_level)
    asyncio.run(_list_mappings(mapper_config, all_protocols))


async def _list_mappings(config: MapperConfig, all_protocols: bool):
    client = UPnPGatewayClient(config)
    try:
        names = await client.discover(config.device_type)
        if not names:
            console.print("[yellow]No gateway found[/yellow]")
            return

        try:
            await client.get_external_ip()
        except Exception as e:
            console.print(f"[yellow]External address unavailable: {e}[/yellow]")

        table = Table(title=f"Port Mappings on {names[0]}")
        table.add_column("External", style="cyan")
        table.add_column("Protocol", style="blue")
        table.add_column("Internal", style="green")
        table.add_column("Enabled", style="yellow")
        table.add_column("Description")

        count = 0
        async for mapping in client.enumerate_mappings():
            if not all_protocols and mapping.protocol.value != config.protocol:
                continue
            count += 1
            table.add_row(
                f"{mapping.external_ip or '?'}:{mapping.external_port}",
                mapping.protocol.value,
                f"{mapping.internal_client}:{mapping.internal_port}",
                "yes" if mapping.enabled else "no",
                mapping.description
            )

        console.print(table)
        console.print(f"[dim]{count} mapping(s)[/dim]")
    except Exception as e:
        console.print(f"[red]Error listing mappings: {e}[/red]")
    finally:
        await client.close()


@main.command(name="map")
@click.option("--config", "-c", type=click.Path(), help="Path to configuration file")
@click.option("--log-level", "-l", default="WARNING", help="Log level")
@click.option("--local-port", "-p", type=int, required=True, help="Internal port to forward to")
@click.option("--local-ip", "-i", default=None, help="Internal client address")
@click.option("--pair", is_flag=True, help="Also map local-port + 1 on the next external port")
@click.option("--keep", is_flag=True, help="Leave the mapping on the gateway")
def map_port(config, log_level, local_port, local_ip, pair, keep):
    """Create a UDP mapping (or pair) on the gateway."""
    mapper_config = _load_config(config, log_level)
    try:
        asyncio.run(_map_port(mapper_config, local_port, local_ip, pair, keep))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")


async def _map_port(config: MapperConfig, local_port: int, local_ip: Optional[str], pair: bool, keep: bool):
    client = UPnPGatewayClient(config)
    local_ip = local_ip or get_local_ip()
    manager = MappingManager(client, ConsoleHost(local_port), config, local_ip=local_ip)

    try:
        await manager.discover()
        await manager.refresh_mirror()
    except Exception as e:
        console.print(f"[red]{e}[/red]")
        await manager.shutdown()
        return

    result = await manager.create_map(pair, config.protocol, local_ip, local_port)
    if result is None:
        console.print("[red]Gateway refused the mapping[/red]")
        await manager.shutdown()
        return

    external_ip, external_port = result
    ports = f"{external_port}-{external_port + 1}" if pair else str(external_port)
    local_ports = f"{local_port}-{local_port + 1}" if pair else str(local_port)
    console.print(Panel.fit(
        f"[bold cyan]Mapping Created[/bold cyan]\n"
        f"External: {external_ip}:{ports}\n"
        f"Internal: {local_ip}:{local_ports}\n"
        f"Protocol: {config.protocol}",
        border_style="cyan"
    ))

    if keep:
        # Shutting down would drain the mapping we want to keep
        await client.close()
        return

    try:
        console.print("[dim]Press Ctrl+C to remove the mapping[/dim]")
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        await manager.shutdown()
        console.print("[green]Mapping removed[/green]")


@main.command()
@click.option("--config", "-c", type=click.Path(), help="Path to configuration file")
@click.option("--log-level", "-l", default="INFO", help="Log level")
def run(config, log_level):
    """Run the mapper: discover, self-test and track the gateway."""
    mapper_config = _load_config(config, log_level)

    console.print(Panel.fit(
        f"[bold cyan]Starting UPnP Port Mapper[/bold cyan]\n"
        f"Device Type: {mapper_config.device_type}\n"
        f"External Base Port: {mapper_config.external_base_port}\n"
        f"RTP Range: {mapper_config.rtp_port_base}-{mapper_config.rtp_port_max}",
        border_style="cyan"
    ))

    try:
        asyncio.run(_run_mapper(mapper_config))
    except KeyboardInterrupt:
        console.print("[yellow]Mapper stopped[/yellow]")


async def _run_mapper(config: MapperConfig):
    nat = UPnPNatMethod(config)
    await nat.attach_endpoint(ConsoleEndpoint(config.rtp_port_base, config.rtp_port_max))

    try:
        available = await nat.manager.wait_settled()
        if not available:
            error = nat.manager.last_error
            console.print(f"[red]UPnP unavailable: {error or 'unknown error'}[/red]")
            return

        while True:
            await asyncio.sleep(5)
            stats = nat.manager.get_stats()
            console.print(
                f"\r[dim]External: {nat.get_external_address()} | "
                f"Local: {stats['local_mappings']} | "
                f"Gateway: {stats['mirror_mappings']} | "
                f"Refreshes: {stats['mirror_refreshes']}[/dim]",
                end=""
            )
    except asyncio.CancelledError:
        pass
    finally:
        await nat.close()


@main.command()
@click.argument("output", type=click.Path())
@click.option("--base-port", "-p", type=int, default=55001, help="External base port")
@click.option("--description", "-d", default="PacPhone", help="Mapping description tag")
def generate_config(output, base_port, description):
    """Generate a configuration file."""
    config = MapperConfig(external_base_port=base_port, description=description)
    config.validate()
    config.to_file(output)
    console.print(f"[green]Configuration saved to {output}[/green]")


@main.command()
def version():
    """Display version information."""
    from . import __version__
    console.print(f"[cyan]UPnP Port Mapper v{__version__}[/cyan]")


if __name__ == "__main__":
    main()
