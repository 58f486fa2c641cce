import typer
from typing import List, Optional
from rich.console import Console
from rich.table import Table
from .api import api_request, error_detail

# initialise the app and console
app = typer.Typer(help="shardctl - Control the shardkeeper worker pool")
console = Console()


def print_outcomes(title: str, outcomes: List[dict]):
    table = Table(title=f"\n[bold]{title}[/]")
    table.add_column("Worker", style="cyan", no_wrap=True)
    table.add_column("Result", style="green")
    table.add_column("Details", style="yellow")

    for outcome in outcomes:
        if outcome["ok"]:
            result, details = "[green]ok[/]", str(outcome.get("result") or "")
        elif not outcome["delivered"]:
            result, details = "[red]unreachable[/]", outcome.get("error") or ""
        else:
            result, details = "[red]failed[/]", outcome.get("error") or ""
        table.add_row(outcome["worker"], result, details)
    console.print(table)


@app.command()
def status():
    """Show live workers, their status and the active broadcast."""
    response = api_request("GET", "/status")

    if response is None:
        console.print("\n[bold red]✗[/] Could not connect to the control plane")
    elif response.status_code == 200:
        data = response.json()
        table = Table(title=f"\n[bold]Workers[/] ({len(data['workers'])} live)")
        table.add_column("Worker", style="cyan", no_wrap=True)
        table.add_column("Status", style="magenta")
        for worker in data["workers"]:
            table.add_row(worker["worker_id"], worker.get("status") or "[dim]-[/]")
        console.print(table)
        if data.get("broadcast"):
            console.print(f"\n[yellow]→[/] Broadcast active: [bold]{data['broadcast']}[/]")
    else:
        console.print(f"\n[bold red]✗[/] {error_detail(response, 'Status check failed')}")


@app.command()
def reload(
    identifier: str = typer.Argument(..., help="Module to reload"),
    worker: Optional[str] = typer.Option(None, "--worker", "-w", help="Only reload on this worker")
):
    """Reload one handler module without restarting the workers."""
    console.print(f"\n[bold cyan]Reloading {identifier}...[/]")
    params = {"worker": worker} if worker else None
    response = api_request("POST", f"/modules/{identifier}/reload", params=params)

    if response is None:
        console.print("\n[bold red]✗[/] Could not connect to the control plane")
    elif response.status_code == 200:
        outcomes = response.json()["outcomes"]
        print_outcomes(f"Reload of {identifier}", outcomes)
        if all(o["ok"] for o in outcomes):
            console.print(f"\n[bold green]✓[/] Module {identifier} reloaded")
        else:
            raise typer.Exit(code=1)
    else:
        console.print(f"\n[bold red]✗[/] {error_detail(response, 'Reload failed')}")
        raise typer.Exit(code=1)


@app.command()
def audio_reload(
    worker: Optional[str] = typer.Option(None, "--worker", "-w", help="Only reconnect this worker")
):
    """Reconnect the audio backend."""
    params = {"worker": worker} if worker else None
    response = api_request("POST", "/audio/reload", params=params)

    if response is None:
        console.print("\n[bold red]✗[/] Could not connect to the control plane")
    elif response.status_code == 200:
        print_outcomes("Audio backend reload", response.json()["outcomes"])
    else:
        console.print(f"\n[bold red]✗[/] {error_detail(response, 'Audio reload failed')}")
        raise typer.Exit(code=1)


@app.command()
def broadcast(message: str = typer.Argument(..., help="Status shown by every worker")):
    """Override the playing status of the whole pool."""
    response = api_request("PUT", "/broadcast", json={"message": message})

    if response is None:
        console.print("\n[bold red]✗[/] Could not connect to the control plane")
    elif response.status_code == 200:
        console.print(f"\n[bold green]✓[/] Broadcasting: [bold]{message}[/]")
    else:
        console.print(f"\n[bold red]✗[/] {error_detail(response, 'Broadcast failed')}")
        raise typer.Exit(code=1)


@app.command()
def broadcast_end():
    """End the broadcast, workers go back to rotating their status."""
    response = api_request("DELETE", "/broadcast")

    if response is None:
        console.print("\n[bold red]✗[/] Could not connect to the control plane")
    elif response.status_code == 200:
        console.print("\n[bold green]✓[/] Broadcast ended")
    else:
        console.print(f"\n[bold red]✗[/] {error_detail(response, 'Could not end the broadcast')}")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
