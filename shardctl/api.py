import requests
from rich.console import Console
from core.config import settings

console = Console()


def api_request(method: str, endpoint: str, **kwargs):
    """Make a request to the control plane, None when it cannot be reached."""
    url = f"{settings.API_URL}{endpoint}"

    try:
        response = requests.request(method, url, timeout=settings.COMMAND_TIMEOUT_SECONDS + 5, **kwargs)
        return response
    except requests.exceptions.RequestException as e:
        console.print(f"[bold red]Connection Error:[/] {e}")
        return None


def error_detail(response, fallback: str) -> str:
    try:
        detail = response.json().get("detail", fallback)
    except ValueError:
        return fallback
    if isinstance(detail, dict):
        return detail.get("message", fallback)
    return str(detail)
