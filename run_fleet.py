#!/usr/bin/env python3
"""
BotFleet - CLI Principal
Arranca la flota, encola jobs de prueba y valida la configuración
"""

import sys
import json
import logging
import threading
import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from config import validate_config, parse_workers, BOT_NAME, LOG_LEVEL

# Setup logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)]
)
logger = logging.getLogger(__name__)
console = Console()


def _print_validation(validation: dict):
    for error in validation['errors']:
        console.print(f"   [red]• {error}[/red]")
    for warning in validation['warnings']:
        console.print(f"   [yellow]• {warning}[/yellow]")


@click.group()
@click.version_option(version='1.0.0')
def cli():
    """🤖 BotFleet - Automatización de dispositivos"""
    pass


@cli.command()
@click.option('--web', is_flag=True, help='Servir también la API de administración')
@click.option('--force-stop', is_flag=True, help='Cancelar jobs en curso al parar (sin drenar)')
def run(web: bool, force_stop: bool):
    """🚀 Arrancar la flota con los workers de FLEET_WORKERS"""

    console.print(f"\n[bold blue]🚀 {BOT_NAME}[/bold blue]")

    validation = validate_config()
    if not validation['valid']:
        console.print("[red]❌ Configuración inválida:[/red]")
        _print_validation(validation)
        sys.exit(1)

    from orchestrator import Orchestrator
    from botfleet import FleetOptions

    from config import LOGS_DIR
    file_handler = logging.FileHandler(LOGS_DIR / "orchestrator.log")
    file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    logging.getLogger().addHandler(file_handler)

    options = FleetOptions.from_config(drain_on_shutdown=False) if force_stop else None
    orchestrator = Orchestrator(options=options)

    workers = parse_workers()
    for worker_id, endpoint in (workers or {'worker-1': 'loopback://worker-1'}).items():
        console.print(f"  [cyan]{worker_id:15}[/cyan] → {endpoint}")
    console.print()

    if web:
        from webapp import create_app
        from config import WEB_HOST, WEB_PORT

        orchestrator.start()
        app = create_app(orchestrator)
        try:
            app.run(host=WEB_HOST, port=WEB_PORT, debug=False, use_reloader=False)
        finally:
            orchestrator.stop(reason="web server exited")
        return

    orchestrator.run_forever()


@cli.command()
@click.option('--owner', '-o', default='cli', help='Owner del job')
@click.option('--bot', '-b', 'bot_type', type=click.Choice(['command', 'ping']), default='ping',
              help='Tipo de bot')
@click.option('--command', '-c', 'commands', multiple=True, help='Comando (repetible, bot command)')
@click.option('--count', default=1, help='Número de pings (bot ping)')
@click.option('--priority', '-p', default=2, help='Tier de prioridad (1-4)')
@click.option('--timeout', type=float, default=30.0, help='Segundos máximos de espera')
def submit(owner: str, bot_type: str, commands, count: int, priority: int, timeout: float):
    """📥 Encolar un job en una flota loopback y esperar el resultado"""
    from orchestrator import Orchestrator
    from botfleet import FleetError, FleetOptions

    payload = {'commands': list(commands)} if bot_type == 'command' else {'count': count}

    orchestrator = Orchestrator(
        options=FleetOptions(poll_interval=0.2),
        workers={'demo': 'loopback://demo'},
        notifications=False,
    )
    orchestrator.setup()

    done = threading.Event()
    events = []

    def on_event(event):
        events.append(event)
        if event.is_terminal:
            done.set()

    orchestrator.dispatcher.subscribe(on_event, name='cli')
    orchestrator.start(install_signals=False)

    try:
        try:
            job = orchestrator.add_job(owner, bot_type, payload, priority=priority)
        except FleetError as e:
            console.print(f"[red]❌ {e.__class__.__name__}: {e}[/red]")
            sys.exit(1)

        console.print(f"Job [cyan]{job.id}[/cyan] encolado ({bot_type})")
        if not done.wait(timeout):
            console.print(f"[red]❌ Sin resultado en {timeout}s[/red]")
            sys.exit(1)
    finally:
        orchestrator.stop(reason="cli submit")

    table = Table(title=f"Job {job.id}")
    table.add_column("Evento")
    table.add_column("Worker")
    table.add_column("Detalle")
    for event in events:
        if event.job_id != job.id:
            continue
        detail = event.error or (json.dumps(event.result) if event.result else '')
        if event.progress is not None:
            detail = f"{event.progress}%"
        table.add_row(event.kind.value, event.worker_id or '-', detail)
    console.print(table)

    final = events[-1]
    if final.kind.value != 'completed':
        sys.exit(1)


@cli.command()
def check():
    """🔧 Validar la configuración"""
    validation = validate_config()

    if validation['valid']:
        console.print("[green]✅ Configuración válida[/green]")
    else:
        console.print("[red]❌ Configuración inválida:[/red]")
    _print_validation(validation)

    sys.exit(0 if validation['valid'] else 1)


@cli.command()
def bots():
    """📋 Lista los tipos de bot disponibles"""
    from bots import BOT_REGISTRY

    console.print("\n[bold]Tipos de bot disponibles:[/bold]\n")
    for key, bot_class in sorted(BOT_REGISTRY.items()):
        doc = (bot_class.__doc__ or '').strip().splitlines()
        console.print(f"  [cyan]{key:15}[/cyan] → {doc[0] if doc else bot_class.__name__}")

    console.print(f"\n[dim]Total: {len(BOT_REGISTRY)} bots[/dim]")
    console.print("\nUso: [cyan]python run_fleet.py submit --bot ping --count 3[/cyan]")


if __name__ == '__main__':
    cli()
