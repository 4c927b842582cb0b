"""One-shot datastore connection check.

Probes MongoDB and (when DATABASE_URL is set) PostgreSQL once and prints the
resulting connection status.

Exit codes:
- 0: every configured datastore is connected
- 1: at least one probe failed
- 2: configuration error (bad settings, nothing to probe)

Run with: python scripts/check_connections.py [--json] [--timeout SECONDS]
"""

import asyncio
import json
import sys

import click
from pymongo import AsyncMongoClient
from pymongo.errors import ConfigurationError
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import ArgumentError

from analytics_server.config import Settings, get_settings
from analytics_server.lib.database import create_database_engine
from analytics_server.services.connection_monitor import ConnectionMonitor, MongoProbe, MonitorConfig, PostgresProbe

console = Console(stderr=True)


async def run_checks(settings: Settings, timeout_seconds: float) -> dict:
  """Probe the configured datastores once.

  Args:
      settings: Application settings
      timeout_seconds: Per-probe timeout

  Returns:
      ConnectionMonitor.get_connection_status() payload
  """
  mongo_client = AsyncMongoClient(settings.mongodb_uri, serverSelectionTimeoutMS=int(timeout_seconds * 1000))
  probes = {'mongodb': MongoProbe(mongo_client, settings.mongodb_db_name)}

  engine = None
  if settings.database_url:
    engine = create_database_engine(settings.database_url, pool_size=1, max_overflow=0,
                                    connect_timeout_seconds=timeout_seconds)
    probes['postgres'] = PostgresProbe(engine)

  monitor = ConnectionMonitor(probes, MonitorConfig(connection_timeout_seconds=timeout_seconds))
  try:
    return await monitor.check_all()
  finally:
    await mongo_client.close()
    if engine is not None:
      await engine.dispose()


def exit_code_for(status: dict, databases: list[str]) -> int:
  """0 when every probed database is connected, 1 otherwise."""
  return 0 if all(status[name]['status'] == 'connected' for name in databases) else 1


def print_table(status: dict, databases: list[str]) -> None:
  table = Table(title='Datastore connections')
  table.add_column('Database')
  table.add_column('Status')
  table.add_column('Response (ms)', justify='right')
  table.add_column('Pool (available/max)', justify='right')
  table.add_column('Error')

  for name in databases:
    entry = status[name]
    colour = 'green' if entry['status'] == 'connected' else 'red'
    pool = entry['pool_stats']
    table.add_row(
      name,
      f'[{colour}]{entry["status"]}[/{colour}]',
      f'{entry["response_time_ms"]:.2f}' if entry['response_time_ms'] is not None else '-',
      f'{pool["available_connections"]}/{pool["max_pool_size"]}',
      entry['error'] or '',
    )
  console.print(table)


@click.command()
@click.option('--timeout', 'timeout_seconds', default=None, type=float, help='Per-probe timeout in seconds (CONNECTION_TIMEOUT_SECONDS)')
@click.option('--json', 'as_json', is_flag=True, help='Print the raw status as JSON on stdout')
def main(timeout_seconds, as_json):
  """Check datastore connectivity and exit non-zero on failure."""
  try:
    settings = get_settings()
  except ValueError as e:
    console.print(f'[red]Configuration error: {e}[/red]')
    sys.exit(2)

  timeout_seconds = timeout_seconds or settings.connection_timeout_seconds
  if timeout_seconds <= 0:
    console.print('[red]Configuration error: timeout must be positive[/red]')
    sys.exit(2)

  databases = ['mongodb'] + (['postgresql'] if settings.database_url else [])
  if not settings.database_url:
    console.print('[yellow]DATABASE_URL not set; skipping PostgreSQL[/yellow]')

  try:
    status = asyncio.run(run_checks(settings, timeout_seconds))
  except (ArgumentError, ConfigurationError, ValueError) as e:
    console.print(f'[red]Configuration error: {e}[/red]')
    sys.exit(2)

  if as_json:
    click.echo(json.dumps(status, indent=2))
  else:
    print_table(status, databases)

  sys.exit(exit_code_for(status, databases))


if __name__ == '__main__':
  main()
