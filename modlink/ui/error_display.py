"""Clean error display for module-linking failures."""

from __future__ import annotations

import sys

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..errors import CycleError
from ..errors import HookError
from ..errors import InteropError
from ..errors import ManifestError
from ..errors import ModuleLinkError
from ..errors import ResolutionError

_TITLES = {
    ResolutionError: "Resolution Failed",
    ManifestError: "Invalid Manifest",
    CycleError: "Workspace Cycle",
    HookError: "Hook Failed",
    InteropError: "Interop Error",
}

# ---- Maximum message length before truncation ----
_MAX_MESSAGE_LEN = 400


def _truncate(message: str, limit: int = _MAX_MESSAGE_LEN) -> str:
    """Truncate a long error message, adding an ellipsis if shortened."""
    if len(message) <= limit:
        return message
    return message[:limit] + "…"


def _title_for(error: ModuleLinkError) -> str:
    for error_type, title in _TITLES.items():
        if isinstance(error, error_type):
            return title
    return "Module Evaluation Failed"


def display_link_error(console: Console, error: Exception, verbose: bool = False) -> bool:
    """Display a ModuleLinkError with clean Rich formatting.

    Args:
        console: Rich console for output
        error: The error to display
        verbose: If True, also print traceback

    Returns:
        True if error was handled as a link error, False if not (caller should handle)
    """
    if not isinstance(error, ModuleLinkError):
        return False

    content = Text()
    content.append("Kind: ", style="dim")
    content.append(error.kind, style="bold yellow")
    if error.stage:
        content.append("   Stage: ", style="dim")
        content.append(error.stage, style="yellow")
    content.append("\n")

    if error.specifier:
        content.append("Specifier: ", style="dim")
        content.append(error.specifier, style="bold cyan")
        content.append("\n")

    if isinstance(error, HookError):
        content.append("Hook: ", style="dim")
        content.append(error.hook, style="bold magenta")
        content.append("\n")
    if isinstance(error, ManifestError) and error.path:
        content.append("Path: ", style="dim")
        content.append(error.path, style="cyan")
        content.append("\n")

    content.append("\n")
    content.append(_truncate(error.message), style="white")

    console.print()
    console.print(
        Panel(
            content,
            title=f"[bold red]{_title_for(error)}[/bold red]",
            border_style="red",
            padding=(1, 2),
        )
    )

    if error.trail:
        trail_table = Table(show_header=False, box=None, padding=(0, 1))
        trail_table.add_column("Step", style="dim", width=3)
        trail_table.add_column("Importer", style="cyan")
        for index, importer in enumerate(error.trail, start=1):
            trail_table.add_row(str(index), importer)
        console.print("[dim]Import trail (outermost first):[/dim]")
        console.print(trail_table)

    console.print(f"[dim]Tip: {_get_actionable_tip(error)}[/dim]")
    console.print()

    if verbose:
        console.print("[dim]--- Traceback ---[/dim]")
        if sys.exc_info()[0] is not None:
            console.print_exception()

    return True


def _get_actionable_tip(error: ModuleLinkError) -> str:
    """Return an actionable tip based on the error kind."""
    tips = {
        "NotFound": "Check the specifier spelling, the package's entry points and that it is linked or installed.",
        "AmbiguousExtension": "Add an explicit file extension to the specifier.",
        "InvalidSpecifier": "Use ./relative, /absolute, builtin:name or a package name.",
        "AsyncOnly": "Load the module through a deferred import before requiring it synchronously.",
        "NotLoaded": "Load the module (import_module / ensure_loaded) before accessing it synchronously.",
        "DynamicRequire": "Use a string literal in require() so the dependency is linked before evaluation.",
        "WorkspaceConflict": "Rename one of the packages or exclude it from workspace.yaml.",
        "UnknownWorkspacePackage": "Add the package to the workspace or use a version range instead of workspace:.",
        "WorkspaceVersionMismatch": "Align the workspace: range with the member's version.",
        "InvalidHook": "Check the 'module:function' paths in the hooks section of settings.yaml.",
    }
    if isinstance(error, CycleError):
        return "Break the cycle by removing one of the workspace: dependencies."
    return tips.get(error.kind, "See the error details above.")
