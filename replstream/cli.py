# -*- coding: utf-8 -*-
"""replstream command line interface - tail a MySQL binlog as a replica."""

import json
import logging
import signal
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .config import BinlogStreamConfig
from .engine import BinlogStreamEngine
from .events import BinlogEvent, RowsEvent
from .exceptions import ReplicationError
from .records import ChangeRecord, encode_row
from .repository import MySQLRepository

# Console for rich output
console = Console()

app = typer.Typer(
    name="replstream",
    help="MySQL binlog replication client",
    add_completion=False,
)


def _configure_logging(log_level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def _load_config(
    config_file: Optional[str],
    host: Optional[str],
    port: Optional[int],
    user: Optional[str],
    password: Optional[str],
    server_id: Optional[int],
    gtid: bool,
    gtid_set: Optional[str],
    binlog_file: Optional[str],
    binlog_position: Optional[int],
    tables: Optional[List[str]],
) -> BinlogStreamConfig:
    """Config file or REPLSTREAM_* environment, overridden by command line options."""
    config = BinlogStreamConfig.from_file(config_file) if config_file else BinlogStreamConfig.from_env()
    overrides = {
        "host": host,
        "port": port,
        "user": user,
        "password": password,
        "server_id": server_id,
        "gtid_set": gtid_set,
        "binlog_file": binlog_file,
        "binlog_position": binlog_position,
        "only_tables": tables or None,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    if gtid or gtid_set:
        config.gtid_enabled = True
    return config.validate()


def _print_event(event: BinlogEvent, output_format: str, log_file: Optional[str]) -> None:
    if output_format == "json":
        records = ChangeRecord.from_event(event, log_file=log_file)
        for record in records:
            console.print_json(json.dumps({
                "event_type": record.event_type,
                "schema": record.schema,
                "table": record.table,
                "timestamp": record.timestamp.isoformat(),
                "data": json.loads(encode_row(record.data)) if record.data is not None else None,
                "old_data": json.loads(encode_row(record.old_data)) if record.old_data is not None else None,
                "log_file": record.log_file,
                "log_pos": record.log_pos,
                "gtid": record.gtid,
                "query": record.query,
            }))
        return

    payload = event.payload
    if isinstance(payload, RowsEvent):
        table = Table(title=f"{payload.kind.value} {payload.schema}.{payload.table} @ {event.log_pos}")
        columns = payload.columns
        table.add_column("image", style="dim")
        for name in columns:
            table.add_column(name)
        for row in payload.rows:
            if row.before is not None:
                table.add_row("before", *[str(v) for v in row.before.values])
            if row.after is not None:
                table.add_row("after", *[str(v) for v in row.after.values])
        console.print(table)
    else:
        console.print(f"[bold blue]{payload.kind.value}[/bold blue] [dim]@{event.log_pos}[/dim] {escape(repr(payload))}")


@app.callback()
def main_callback():
    """replstream - stream row changes out of a MySQL binary log."""
    pass


@app.command()
def version():
    """Show replstream version."""
    from . import __version__
    console.print(f"[bold blue]replstream[/bold blue] version [bold green]{__version__}[/bold green]")


@app.command()
def tail(
    config_file: Optional[str] = typer.Option(None, "-c", "--config", help="JSON config file"),
    host: Optional[str] = typer.Option(None, "-h", "--host", help="MySQL host"),
    port: Optional[int] = typer.Option(None, "-P", "--port", help="MySQL port"),
    user: Optional[str] = typer.Option(None, "-u", "--user", help="Replication user"),
    password: Optional[str] = typer.Option(None, "-p", "--password", help="Password"),
    server_id: Optional[int] = typer.Option(None, "--server-id", help="Replica server id"),
    gtid: bool = typer.Option(False, "--gtid", help="Use GTID auto-positioning"),
    gtid_set: Optional[str] = typer.Option(None, "--gtid-set", help="Start after this GTID set"),
    binlog_file: Optional[str] = typer.Option(None, "--binlog-file", help="Start binlog file"),
    binlog_position: Optional[int] = typer.Option(None, "--binlog-position", help="Start offset"),
    tables: Optional[List[str]] = typer.Option(None, "-t", "--table", help="Table pattern (repeatable)"),
    output_format: str = typer.Option("table", "-f", "--format", help="Output format (table, json)"),
    log_level: str = typer.Option("WARNING", "-l", "--loglevel", help="Logging level"),
):
    """Stream binlog events and print them."""
    _configure_logging(log_level)

    try:
        config = _load_config(config_file, host, port, user, password, server_id,
                              gtid, gtid_set, binlog_file, binlog_position, tables)
    except ReplicationError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=1)

    console.print(Panel(
        f"[bold green]Tailing binlog[/bold green]\n"
        f"Server: {config.host}:{config.port}\n"
        f"Server ID: {config.server_id}\n"
        f"Mode: {'GTID' if config.gtid_enabled else 'file position'}\n"
        f"Tables: {', '.join(config.only_tables) if config.only_tables else 'all'}",
        title="Replication Stream"
    ))

    engine = BinlogStreamEngine(config)
    engine.register_subscriber(
        lambda event: _print_event(event, output_format, engine.tracker.current_log_file)
    )
    signal.signal(signal.SIGTERM, lambda signum, frame: engine.stop())

    try:
        engine.run()
    except ReplicationError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("\n[dim]Stopped by user[/dim]")
    finally:
        engine.close()
        console.print(f"[dim]Last committed position: {escape(str(engine.position))}[/dim]")

    if engine.supervisor.last_error is not None and engine.supervisor.retry.exhausted:
        console.print(f"[bold red]Gave up:[/bold red] {escape(str(engine.supervisor.last_error))}")
        raise typer.Exit(code=1)


@app.command()
def position(
    config_file: Optional[str] = typer.Option(None, "-c", "--config", help="JSON config file"),
    host: Optional[str] = typer.Option(None, "-h", "--host", help="MySQL host"),
    port: Optional[int] = typer.Option(None, "-P", "--port", help="MySQL port"),
    user: Optional[str] = typer.Option(None, "-u", "--user", help="User"),
    password: Optional[str] = typer.Option(None, "-p", "--password", help="Password"),
):
    """Show the server's current binlog position and capabilities."""
    try:
        config = _load_config(config_file, host, port, user, password, None,
                              False, None, None, None, None)
        repository = MySQLRepository.from_config(config)
        try:
            capabilities = repository.fetch_server_capabilities()
            file_position = repository.fetch_server_checkpoint(gtid_mode=False)
            gtid_executed = repository.fetch_server_checkpoint(gtid_mode=True) if capabilities.gtid_mode else None
        finally:
            repository.close()
    except ReplicationError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(code=1)

    table = Table(title=f"{config.host}:{config.port}")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("version", capabilities.version)
    table.add_row("binlog_format", capabilities.binlog_format or "")
    table.add_row("binlog_checksum", "CRC32" if capabilities.checksum_enabled else "NONE")
    table.add_row("gtid_mode", "ON" if capabilities.gtid_mode else "OFF")
    table.add_row("binlog position", str(file_position))
    if gtid_executed is not None:
        table.add_row("gtid_executed", str(gtid_executed))
    console.print(table)


def main():
    """Main CLI entry point - equivalent to 'replstream' command."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted by user[/dim]")
        sys.exit(1)


if __name__ == "__main__":
    main()
